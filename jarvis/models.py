"""Request/response models for the receiver."""

from pydantic import BaseModel, ConfigDict


class TranscriptSegment(BaseModel):
    model_config = ConfigDict(extra="allow")

    text: str | None = None
    start: float | None = None
    is_user: bool | None = False
    speaker: str | None = None


class WebhookPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    session_id: str | int | None = None
    uid: str | int | None = None
    segments: list[TranscriptSegment] | None = None


class StatusResponse(BaseModel):
    active_sessions: int
    database_sessions: int
    uptime: float


class ChatMessage(BaseModel):
    text: str
    timestamp: float
    is_user: bool


class ChatResponse(BaseModel):
    session_id: str | None = None
    messages: list[ChatMessage]
