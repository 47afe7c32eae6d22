"""User-related Pydantic schemas."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, field_validator

HANDLE_PATTERN = r"^[A-Za-z0-9_.\-]+$"


class UserCreate(BaseModel):
    """Schema for registering a chat handle."""

    username: str = Field(..., min_length=1, max_length=64, pattern=HANDLE_PATTERN)

    @field_validator("username", mode="before")
    @classmethod
    def strip_username(cls, value: str) -> str:
        return value.strip() if isinstance(value, str) else value


class UserOut(BaseModel):
    """Public view of a user."""

    username: str
    last_seen: datetime = Field(..., serialization_alias="lastSeen")
    online: bool = False
