"""
Test factories.

Rules:
- NEVER create own sessions
- NEVER call commit() - use flush() only
- Accept db session as first parameter
"""

from sqlalchemy.orm import Session

from chatrelay.models import Assistant, Conversation, ConversationType, Message, MessageRole, User


class UserFactory:
    _counter = 0

    @classmethod
    def create(
        cls,
        db: Session,
        *,
        email: str | None = None,
        is_admin: bool = False,
        is_active: bool = True,
        tokens_balance: int = 5000,
    ) -> User:
        cls._counter += 1
        email = email or f"test-user-{cls._counter}@example.com"
        user = User(email=email.lower(), is_admin=is_admin, is_active=is_active, tokens_balance=tokens_balance)
        db.add(user)
        db.flush()
        db.refresh(user)
        return user

    @classmethod
    def create_admin(cls, db: Session, **kwargs) -> User:
        kwargs.setdefault("is_admin", True)
        return cls.create(db, **kwargs)


class AssistantFactory:
    _counter = 0

    @classmethod
    def create(
        cls,
        db: Session,
        *,
        name: str | None = None,
        provider: str = "openai",
        model: str = "gpt-4o-mini",
        system_prompt: str = "You are a helpful assistant.",
        **fields,
    ) -> Assistant:
        cls._counter += 1
        fields.setdefault("filter_unsafe_content", False)
        assistant = Assistant(
            name=name or f"Assistant {cls._counter}",
            provider=provider,
            model=model,
            system_prompt=system_prompt,
            **fields,
        )
        db.add(assistant)
        db.flush()
        db.refresh(assistant)
        return assistant


class ConversationFactory:
    @classmethod
    def create(
        cls,
        db: Session,
        *,
        user: User,
        assistant: Assistant,
        type: str = ConversationType.USER_CHAT.value,
        title: str | None = None,
        openai_thread_id: str | None = None,
    ) -> Conversation:
        conversation = Conversation(
            user_id=user.id,
            assistant_id=assistant.id,
            type=type,
            title=title,
            openai_thread_id=openai_thread_id,
        )
        db.add(conversation)
        db.flush()
        db.refresh(conversation)
        return conversation


class MessageFactory:
    @classmethod
    def create(cls, db: Session, *, conversation: Conversation, role: str = MessageRole.USER.value, content: str = "hi"):
        message = Message(conversation_id=conversation.id, role=role, content=content)
        db.add(message)
        db.flush()
        return message
