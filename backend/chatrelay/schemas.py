from typing import Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from .config import settings


# Auth
class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"


class DevLoginIn(BaseModel):
    email: EmailStr


# Conversations
class ConversationCreate(BaseModel):
    assistant_id: Optional[int] = None


class AdminConversationCreate(BaseModel):
    assistant_id: int


class MessageIn(BaseModel):
    content: str = Field(min_length=1, max_length=settings.MAX_MESSAGE_LENGTH)

    @field_validator("content")
    @classmethod
    def strip_content(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Message cannot be empty")
        return v


class ConversationUpdate(BaseModel):
    title: str = Field(min_length=1, max_length=255)

    @field_validator("title")
    @classmethod
    def strip_title(cls, v: str) -> str:
        v = " ".join(v.split())
        if not v:
            raise ValueError("Title cannot be empty")
        return v
