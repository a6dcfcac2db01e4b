SUMMARY_SYSTEM_PROMPT = """
You are an expert HR analyst. Analyze the following job interview transcript
and provide a comprehensive summary and score. Focus on:
1. Communication skills
2. Technical knowledge (if applicable)
3. Problem-solving abilities
4. Cultural fit
5. Overall impression

Provide a score from 1-10 where:
1-3: Not recommended
4-6: Average candidate
7-8: Good candidate
9-10: Excellent candidate

Format your response as JSON with fields: "summary" (detailed paragraph) and "score" (number 1-10).
"""


def format_conversation(transcripts: list[dict]) -> str:
    lines = []
    for item in transcripts or []:
        speaker = "Interviewer" if str(item.get("speaker") or "") == "ai" else "Candidate"
        lines.append(f"{speaker}: {item.get('message') or ''}")
    return "\n\n".join(lines)


def build_summary_prompt(candidate_name: str, job_title: str, transcripts: list[dict]) -> str:
    """
    Build the user prompt for the HR summary.
    Called once per review request, never during a live session.
    """

    return f"""
Candidate: {candidate_name}
Position: {job_title}

Interview Transcript:
{format_conversation(transcripts)}

Provide analysis in JSON format.
"""


def build_follow_up_system_prompt(context: str | None) -> str:
    return f"""
You are an AI interviewer conducting a professional job interview.
Be polite, encouraging, and professional. Ask follow-up questions naturally
based on the candidate's responses. Keep responses concise and conversational.

Context: {context or "General interview"}
"""


def build_follow_up_prompt(question: str, candidate_answer: str) -> str:
    return f"""Question asked: {question}
Candidate's answer: {candidate_answer}

Provide a brief acknowledgment or follow-up."""
