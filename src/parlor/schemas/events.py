"""Payload schemas for inbound socket events.

Signaling payloads (offers, answers, candidates) are opaque to the relay and
are carried as arbitrary JSON objects.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class EventPayload(BaseModel):
    """Base for inbound payloads; unknown keys are ignored."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class TypingIn(EventPayload):
    receiver: str
    is_typing: bool = Field(..., alias="isTyping")


class SendMessageIn(EventPayload):
    receiver: str
    message: str
    client_id: str | None = Field(default=None, alias="clientId")


class MarkAsReadIn(EventPayload):
    message_id: int = Field(..., alias="messageId")
    sender: str


class MessagesDeletedIn(EventPayload):
    """Either an explicit id list or a whole conversation to clear."""

    message_ids: list[int] | None = Field(default=None, alias="messageIds")
    clear_with: str | None = Field(default=None, alias="clearWith")

    @model_validator(mode="after")
    def exactly_one_target(self) -> MessagesDeletedIn:
        if (self.message_ids is None) == (self.clear_with is None):
            raise ValueError("Provide exactly one of messageIds or clearWith")
        return self


class CallSignalIn(EventPayload):
    to: str
    signal: dict[str, Any]


class CallCandidateIn(EventPayload):
    to: str
    candidate: dict[str, Any]


class CallPeerIn(EventPayload):
    to: str


INBOUND_SCHEMAS: dict[str, type[EventPayload]] = {
    "typing": TypingIn,
    "send_message": SendMessageIn,
    "mark_as_read": MarkAsReadIn,
    "messages_deleted": MessagesDeletedIn,
    "call_initiate": CallSignalIn,
    "call_answer": CallSignalIn,
    "call_candidate": CallCandidateIn,
    "call_reject": CallPeerIn,
    "call_end": CallPeerIn,
    "call_connected": CallPeerIn,
}
