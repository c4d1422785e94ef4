# app/models/api/webhook_request.py
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class WebhookCall(BaseModel):
    """Call reference inside a provider event."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)


class CallEndedEvent(BaseModel):
    """
    End-of-call report from the voice provider.

    Accepts the flat shape ``{type, call: {id}, transcript, duration}`` and
    Vapi's wrapped shape ``{"message": {type, call, artifact, durationSeconds}}``.
    """

    model_config = ConfigDict(extra="ignore")

    type: str
    call: WebhookCall | None = None
    transcript: str | None = None
    duration: float | None = None

    @model_validator(mode="before")
    @classmethod
    def unwrap_message(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data

        message = data.get("message")
        if isinstance(message, dict) and "type" in message:
            data = message

        normalized = dict(data)
        if normalized.get("duration") is None and normalized.get("durationSeconds") is not None:
            normalized["duration"] = normalized["durationSeconds"]

        artifact = normalized.get("artifact")
        if not normalized.get("transcript") and isinstance(artifact, dict):
            normalized["transcript"] = artifact.get("transcript")

        return normalized

    @property
    def is_end_of_call(self) -> bool:
        return self.type == "end-of-call-report"

    @property
    def call_id(self) -> str | None:
        return self.call.id if self.call else None

    @property
    def duration_seconds(self) -> int:
        """Rounded duration; missing or negative values count as zero."""
        if not self.duration or self.duration < 0:
            return 0
        return round(self.duration)
