import pytest
from pydantic import ValidationError

from chatrelay.config import settings
from chatrelay.schemas import AdminConversationCreate, ConversationCreate, DevLoginIn, MessageIn


def test_message_content_is_stripped() -> None:
    assert MessageIn.model_validate({"content": "  hello \n"}).content == "hello"


@pytest.mark.parametrize("content", ["", "   ", "\n\t"])
def test_blank_message_is_rejected(content: str) -> None:
    with pytest.raises(ValidationError):
        MessageIn.model_validate({"content": content})


def test_message_length_is_capped() -> None:
    MessageIn.model_validate({"content": "a" * settings.MAX_MESSAGE_LENGTH})
    with pytest.raises(ValidationError):
        MessageIn.model_validate({"content": "a" * (settings.MAX_MESSAGE_LENGTH + 1)})


def test_conversation_assistant_is_optional_for_users_only() -> None:
    assert ConversationCreate.model_validate({}).assistant_id is None
    with pytest.raises(ValidationError):
        AdminConversationCreate.model_validate({})


def test_dev_login_requires_email() -> None:
    with pytest.raises(ValidationError):
        DevLoginIn.model_validate({"email": "not-an-email"})
