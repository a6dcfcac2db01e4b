"""
LiveKit access tokens.

LiveKit accepts an HS256 JWT signed with the project's API secret: ``iss`` is
the API key, ``sub`` the participant identity and ``video`` the room grant.
"""

import json
import time

from jose import jwt

from voicehire.models import JoinCredential


class CredentialsUnavailable(Exception):
    pass


def mint_access_token(
    api_key: str,
    api_secret: str,
    *,
    room: str,
    identity: str,
    name: str | None = None,
    ttl_sec: int = 6 * 3600,
    metadata: dict | None = None,
    can_publish: bool = True,
    can_subscribe: bool = True,
) -> str:
    if not api_key or not api_secret:
        raise CredentialsUnavailable("LiveKit credentials not configured")
    if not str(room or "").strip() or not str(identity or "").strip():
        raise ValueError("room and identity are required")

    now = int(time.time())
    claims = {
        "iss": api_key,
        "sub": identity,
        "name": name or identity,
        "nbf": now,
        "exp": now + max(60, int(ttl_sec)),
        "video": {
            "roomJoin": True,
            "room": room,
            "canPublish": can_publish,
            "canSubscribe": can_subscribe,
            "canPublishData": True,
        },
    }
    if metadata:
        claims["metadata"] = json.dumps(metadata)
    return jwt.encode(claims, api_secret, algorithm="HS256")


class LiveKitTokenIssuer:
    def __init__(self, settings):
        self.api_key = settings.livekit_api_key
        self.api_secret = settings.livekit_api_secret
        self.endpoint_url = settings.livekit_url
        self.ttl_sec = settings.livekit_token_ttl_sec

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.api_secret and self.endpoint_url)

    def issue(self, room: str, participant: str, interview_id: str | None = None) -> JoinCredential:
        if not self.configured:
            raise CredentialsUnavailable("LiveKit credentials not configured")
        token = mint_access_token(
            self.api_key,
            self.api_secret,
            room=room,
            identity=participant,
            ttl_sec=self.ttl_sec,
            metadata={"interview_id": interview_id} if interview_id else None,
        )
        return JoinCredential(token=token, endpoint_url=self.endpoint_url)

    async def __call__(self, room: str, participant: str, interview_id: str | None = None) -> JoinCredential:
        return self.issue(room, participant, interview_id)
