"""Message-related Pydantic schemas."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from parlor.models import MessageStatus


class MessageOut(BaseModel):
    """Schema for a chat message as pushed to clients and returned by history."""

    id: int
    sender: str
    receiver: str
    message: str = Field(..., validation_alias="body")
    timestamp: datetime = Field(..., validation_alias="created_at")
    status: MessageStatus

    model_config = ConfigDict(from_attributes=True)


class DeletedMessage(BaseModel):
    """Identity of a removed message, mirrored to the counterpart's session."""

    id: int
    sender: str
    receiver: str

    model_config = ConfigDict(from_attributes=True)


class DeleteMessagesRequest(BaseModel):
    """Body of ``DELETE /messages``."""

    message_ids: list[int] = Field(..., alias="messageIds", min_length=1)
    user_id: str = Field(..., alias="userId")


class ClearChatRequest(BaseModel):
    """Body of ``DELETE /messages/clear-chat``."""

    user_id: str = Field(..., alias="userId")
    other_user_id: str = Field(..., alias="otherUserId")


class DeleteMessagesResponse(BaseModel):
    success: bool = True
    message: str
    deleted_messages: list[DeletedMessage] = Field(
        default_factory=list,
        serialization_alias="deletedMessages",
    )
