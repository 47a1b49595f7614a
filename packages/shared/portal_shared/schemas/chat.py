"""
Chat wire schemas shared by the portal server and the chat client.

Realtime frames are a closed set of envelopes discriminated on ``type``:

- ``chat_message`` (client → server): submit a message to a channel
- ``new_message`` (server → client): a persisted message, broadcast to everyone
- ``error`` (server → sender only, when error replies are enabled)

Any other ``type`` decodes to ``UnknownEnvelope`` so that neither side
crashes on frames it does not understand.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional, Union

from pydantic import ConfigDict, Field, ValidationError, field_validator

from .common import WireModel


# ---------------------------------------------------------------------------
# Channel & message shapes (REST + realtime)
# ---------------------------------------------------------------------------

class ChannelResponse(WireModel):
    id: int
    name: str
    description: Optional[str] = None
    is_private: bool = False


class ChannelCreateRequest(WireModel):
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = None
    is_private: bool = False

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name must not be blank")
        return value


class ChannelUpdateRequest(WireModel):
    """Only the description of a channel is editable."""
    description: Optional[str] = None


class AuthorInfo(WireModel):
    id: str
    display_name: str
    profile_image_url: Optional[str] = None


class ChatMessagePayload(WireModel):
    id: int
    channel_id: int
    user_id: Optional[str] = None
    content: str
    created_at: datetime
    author: Optional[AuthorInfo] = None


class PostMessageRequest(WireModel):
    """REST fallback for clients without a live connection."""
    content: str


# ---------------------------------------------------------------------------
# Realtime envelopes
# ---------------------------------------------------------------------------

class ChatMessageEnvelope(WireModel):
    type: str = Field(default="chat_message", pattern="^chat_message$")
    channel_id: int
    content: str
    user_id: Optional[str] = None

    @field_validator("content")
    @classmethod
    def _content_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("content must not be empty")
        return value


class NewMessageEnvelope(WireModel):
    type: str = Field(default="new_message", pattern="^new_message$")
    message: ChatMessagePayload


class ErrorEnvelope(WireModel):
    type: str = Field(default="error", pattern="^error$")
    code: str
    message: str


class UnknownEnvelope(WireModel):
    """A frame whose ``type`` is not one we handle. Kept, never acted on."""

    model_config = ConfigDict(extra="allow")

    type: Any = None


Envelope = Union[ChatMessageEnvelope, NewMessageEnvelope, ErrorEnvelope, UnknownEnvelope]

ENVELOPE_TYPES: dict[str, type[WireModel]] = {
    "chat_message": ChatMessageEnvelope,
    "new_message": NewMessageEnvelope,
    "error": ErrorEnvelope,
}


class EnvelopeError(ValueError):
    """A frame could not be decoded into an envelope."""

    def __init__(self, code: str, message: str, frame_type: Any = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.frame_type = frame_type


def decode_envelope(raw: Union[str, bytes, bytearray, dict]) -> Envelope:
    """
    Decode one realtime frame.

    Raises EnvelopeError for non-JSON input, non-object JSON, or a known
    envelope type with invalid fields. Unknown types never raise.
    """
    if isinstance(raw, (str, bytes, bytearray)):
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise EnvelopeError("INVALID_JSON", "Could not parse frame as JSON.") from exc
    else:
        data = raw

    if not isinstance(data, dict):
        raise EnvelopeError("INVALID_FRAME", "Frame must be a JSON object.")

    frame_type = data.get("type")
    model = ENVELOPE_TYPES.get(frame_type) if isinstance(frame_type, str) else None
    if model is None:
        return UnknownEnvelope.model_validate(data)

    try:
        return model.model_validate(data)
    except ValidationError as exc:
        fields = ", ".join(str(err["loc"][0]) for err in exc.errors() if err.get("loc"))
        raise EnvelopeError(
            "INVALID_MESSAGE",
            f"Invalid {frame_type} frame ({fields or 'fields'}).",
            frame_type=frame_type,
        ) from exc
