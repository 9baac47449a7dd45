"""Chat message model and the JSON frame codec used on the WebSocket."""

from pydantic import BaseModel, ConfigDict, ValidationError

from app.exceptions import ProtocolError


class ChatMessage(BaseModel):
    """One chat message. Ordering is implicit; there is no id or timestamp.

    Neither field is validated beyond being a string: usernames are not
    authenticated and text has no length bound.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    username: str = ""
    text: str = ""


def decode_message(frame: str | bytes) -> ChatMessage:
    try:
        return ChatMessage.model_validate_json(frame)
    except ValidationError as exc:
        raise ProtocolError(f"malformed chat frame: {exc.error_count()} error(s)") from exc


def encode_message(message: ChatMessage) -> str:
    return message.model_dump_json()
