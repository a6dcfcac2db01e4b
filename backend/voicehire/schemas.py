from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class LiveKitTokenRequest(_CamelModel):
    room_name: str = Field(alias="roomName")
    participant_name: str = Field(alias="participantName")
    interview_id: str | None = Field(default=None, alias="interviewId")


class LiveKitTokenResponse(_CamelModel):
    token: str
    endpoint_url: str = Field(serialization_alias="endpointUrl")


class SpeakQuestionRequest(_CamelModel):
    interview_id: str | None = Field(default=None, alias="interviewId")
    question: str
    room_name: str | None = Field(default=None, alias="roomName")


class SpeakQuestionResponse(_CamelModel):
    success: bool
    audio_url: str | None = Field(default=None, serialization_alias="audioUrl")
    message: str


class TranscriptLine(BaseModel):
    speaker: str
    message: str


class GenerateSummaryRequest(_CamelModel):
    candidate_name: str = Field(default="", alias="candidateName")
    job_title: str = Field(default="", alias="jobTitle")
    transcripts: list[TranscriptLine] = Field(default_factory=list)


class GenerateSummaryResponse(BaseModel):
    summary: str
    score: int


class GenerateResponseRequest(_CamelModel):
    question: str
    candidate_answer: str = Field(alias="candidateAnswer")
    context: str | None = None


class GenerateResponseResponse(BaseModel):
    response: str


class TranscribeRequest(_CamelModel):
    audio_url: str = Field(alias="audioUrl")


class TranscribeResponse(BaseModel):
    transcript: str
