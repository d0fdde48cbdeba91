# SPDX-License-Identifier: Apache-2.0

from sqlalchemy import Boolean, Date, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship, Mapped, mapped_column
from sqlalchemy.sql import func
import enum
import datetime
from .db import Base


class Provider(str, enum.Enum):
    OPENAI = "openai"
    DEEPSEEK = "deepseek"


class ConversationType(str, enum.Enum):
    USER_CHAT = "user_chat"
    ADMIN_TEST = "admin_test"


class MessageRole(str, enum.Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="1")
    is_admin: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    tokens_balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    tokens_used_month: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    conversations = relationship("Conversation", back_populates="user")


class SoftDeleteMixin:
    deleted_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def soft_delete(self) -> datetime.datetime:
        ts = datetime.datetime.now(datetime.timezone.utc)
        self.deleted_at = ts
        return ts

    def restore(self) -> None:
        self.deleted_at = None


class Assistant(Base):
    """Admin-managed model configuration; read-only to the relay."""

    __tablename__ = "assistants"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider: Mapped[str] = mapped_column(String(20), nullable=False, default=Provider.OPENAI.value)
    model: Mapped[str] = mapped_column(String(100), nullable=False)
    system_prompt: Mapped[str] = mapped_column(Text, nullable=False, default="")
    temperature: Mapped[float] = mapped_column(Float, nullable=False, default=0.7)
    max_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=2000)
    top_p: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    frequency_penalty: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    presence_penalty: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    response_format: Mapped[str] = mapped_column(String(20), nullable=False, default="text")  # text | json_object
    stop_sequences: Mapped[str | None] = mapped_column(Text, nullable=True)  # comma-separated
    seed: Mapped[int | None] = mapped_column(Integer, nullable=True)
    context_messages: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    filter_unsafe_content: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    include_user_id: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    use_knowledge_base: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reasoning_effort: Mapped[str | None] = mapped_column(String(10), nullable=True)  # low | medium | high
    openai_assistant_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    openai_vector_store_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Conversation(SoftDeleteMixin, Base):
    __tablename__ = "conversations"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    assistant_id: Mapped[int | None] = mapped_column(ForeignKey("assistants.id"), nullable=True)
    type: Mapped[str] = mapped_column(String(20), nullable=False, default=ConversationType.USER_CHAT.value)
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    total_tokens_input: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    total_tokens_output: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    last_message_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    archived_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    openai_thread_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    user = relationship("User", back_populates="conversations")
    assistant = relationship("Assistant")
    messages = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Message.id",
    )

    @property
    def is_archived(self) -> bool:
        return self.archived_at is not None

    @property
    def is_admin_test(self) -> bool:
        return self.type == ConversationType.ADMIN_TEST.value


class Message(Base):
    __tablename__ = "messages"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    conversation_id: Mapped[int] = mapped_column(
        ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    role: Mapped[str] = mapped_column(String(20), nullable=False)  # system | user | assistant
    content: Mapped[str] = mapped_column(Text, nullable=False)
    tokens_input: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    tokens_output: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    conversation = relationship("Conversation", back_populates="messages")


class TokenUsage(Base):
    """Append-only usage ledger; one row per settled turn."""

    __tablename__ = "token_usage"
    __table_args__ = (UniqueConstraint("turn_id", name="uq_token_usage_turn_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    turn_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subject_type: Mapped[str] = mapped_column(String(10), nullable=False)  # user | admin
    subject_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    model: Mapped[str | None] = mapped_column(String(100), nullable=True)
    date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    tokens_input: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tokens_output: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
