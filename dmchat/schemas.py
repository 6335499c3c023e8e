"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming chat operations
- Response models for hydrated chats returned to clients and broadcast
  over the realtime channel
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, StrictStr, field_validator

from dmchat.utils import parse_timestamp


# =============================================================================
# Pydantic Request Models
# =============================================================================

class MessagePayload(BaseModel):
    """
    A message as submitted by a client.

    Validates:
    - msg: non-empty after trimming
    - msgFrom: non-empty sender username
    - msgDateTime: optional, must parse as an ISO-8601 timestamp when present
    """
    msg: StrictStr = Field(..., description="Message text")
    msg_from: StrictStr = Field(..., alias="msgFrom", min_length=1, description="Sender username")
    msg_date_time: Optional[datetime] = Field(
        None,
        alias="msgDateTime",
        description="Message timestamp (ISO-8601); defaults to server time",
    )

    model_config = {"populate_by_name": True}

    @field_validator("msg")
    @classmethod
    def validate_msg_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("msg must not be empty")
        return v

    @field_validator("msg_from")
    @classmethod
    def validate_sender_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("msgFrom must not be empty")
        return v

    @field_validator("msg_date_time", mode="before")
    @classmethod
    def validate_msg_date_time(cls, v):
        """Accept a missing timestamp or an ISO-8601 string; reject anything else."""
        if v is None or isinstance(v, datetime):
            return v
        if not isinstance(v, str):
            raise ValueError("msgDateTime must be an ISO-8601 string")
        try:
            return parse_timestamp(v)
        except ValueError:
            raise ValueError("msgDateTime must be a valid ISO-8601 timestamp (e.g., 2025-01-15T10:00:00Z)")


class CreateChatRequest(BaseModel):
    """
    Request body for creating a chat.

    Validates:
    - participants: at least two distinct, non-empty usernames
    - messages: optional seed messages, each a valid MessagePayload
    """
    participants: List[StrictStr] = Field(..., min_length=2, description="Participant usernames")
    messages: List[MessagePayload] = Field(default_factory=list, description="Seed messages")

    @field_validator("participants")
    @classmethod
    def validate_participants(cls, v: List[str]) -> List[str]:
        if any(not p.strip() for p in v):
            raise ValueError("participants must be non-empty strings")
        if len(set(v)) != len(v):
            raise ValueError("participants must be unique")
        return v

    @field_validator("messages", mode="before")
    @classmethod
    def default_messages(cls, v):
        return [] if v is None else v


class AddMessageRequest(MessagePayload):
    """Request body for appending a message to a chat."""

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"msg": "hi", "msgFrom": "alice", "msgDateTime": "2025-01-15T10:00:00Z"}
            ]
        },
    }


class AddParticipantRequest(BaseModel):
    """Request body for adding a participant (by username) to a chat."""
    participant: StrictStr = Field(..., min_length=1, description="Participant username")

    @field_validator("participant")
    @classmethod
    def validate_participant_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("participant must not be empty")
        return v


# =============================================================================
# Pydantic Response Models
# =============================================================================

class UserResponse(BaseModel):
    """Hydrated identity reference."""
    id: str = Field(..., alias="_id", serialization_alias="_id")
    username: str

    model_config = {"populate_by_name": True}


class MessageResponse(BaseModel):
    """Hydrated message with its sender expanded."""
    id: str = Field(..., alias="_id", serialization_alias="_id")
    msg: str
    msg_from: str = Field(..., alias="msgFrom", serialization_alias="msgFrom")
    msg_date_time: str = Field(..., alias="msgDateTime", serialization_alias="msgDateTime")
    type: str = "direct"
    user: UserResponse

    model_config = {"populate_by_name": True}


class ChatResponse(BaseModel):
    """
    Fully hydrated chat as returned by every chat route and carried in
    realtime chatUpdate events.
    """
    id: str = Field(..., alias="_id", serialization_alias="_id")
    participants: List[UserResponse] = Field(default_factory=list)
    messages: List[MessageResponse] = Field(default_factory=list)
    created_at: str = Field(..., alias="createdAt", serialization_alias="createdAt")
    updated_at: str = Field(..., alias="updatedAt", serialization_alias="updatedAt")

    model_config = {"populate_by_name": True}

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    error: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
