from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from lms_chat.exceptions import MalformedEventError
from lms_chat.utils.ids import canonical_id


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _first(data: dict, *keys: str) -> Any:
    return next((data[k] for k in keys if data.get(k) is not None), None)


class Message(BaseModel):
    """A chat message after id normalization.

    Accepts both the backend document (``_id``, ``sender``/``senderId``,
    ``course``/``courseId``, ``createdAt``) and snake_case keyword construction.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    sender_id: str
    recipient_id: str
    course_id: Optional[str] = None
    text: str = ""
    created_at: datetime = Field(default_factory=_utcnow)
    sender_name: Optional[str] = None
    sender_role: Optional[str] = None
    client_message_id: Optional[str] = None
    # provisional local copy of an outgoing message, keyed by its client id
    pending: bool = False

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        populated = data.get("sender") if isinstance(data.get("sender"), dict) else {}
        normalized = {
            "id": canonical_id(_first(data, "id", "_id")),
            "sender_id": canonical_id(_first(data, "sender_id", "senderId", "sender")),
            "recipient_id": canonical_id(_first(data, "recipient_id", "recipientId", "recipient")),
            "course_id": canonical_id(_first(data, "course_id", "courseId", "course")),
            "text": _first(data, "text") or "",
            "sender_name": _first(data, "sender_name", "senderName") or populated.get("name"),
            "sender_role": _first(data, "sender_role") or populated.get("role"),
            "client_message_id": canonical_id(_first(data, "client_message_id", "clientMessageId")),
            "pending": bool(data.get("pending", False)),
        }
        created_at = _first(data, "created_at", "createdAt")
        if created_at is not None:
            normalized["created_at"] = created_at
        for required in ("id", "sender_id", "recipient_id"):
            if normalized[required] is None:
                raise ValueError(f"message has no resolvable {required}")
        return normalized

    @field_validator("created_at")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def other_party(self, me_id: str) -> str:
        """The counterparty from *me_id*'s point of view."""
        return self.recipient_id if self.sender_id == me_id else self.sender_id


def parse_message(payload: Any) -> Message:
    """Build a ``Message`` from a wire payload or raise ``MalformedEventError``."""
    if not isinstance(payload, dict):
        raise MalformedEventError(f"expected an object, got {type(payload).__name__}")
    try:
        return Message.model_validate(payload)
    except ValidationError as exc:
        raise MalformedEventError(str(exc)) from exc


class SendState(str, Enum):

    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class OutgoingMessage(BaseModel):
    """Per-send state machine: PENDING -> CONFIRMED | FAILED."""

    client_id: str = Field(default_factory=lambda: uuid4().hex)
    counterparty_id: str
    course_id: Optional[str] = None
    text: str
    state: SendState = SendState.PENDING
    message: Optional[Message] = None
    error: Optional[str] = None

    def provisional(self, me_id: str) -> Message:
        return Message(
            id=self.client_id,
            sender_id=me_id,
            recipient_id=self.counterparty_id,
            course_id=self.course_id,
            text=self.text,
            client_message_id=self.client_id,
            pending=True,
        )

    def confirm(self, message: Message) -> None:
        # server truth wins even over a local failure
        self.state = SendState.CONFIRMED
        self.message = message
        self.error = None

    def fail(self, error: str) -> None:
        if self.state is SendState.PENDING:
            self.state = SendState.FAILED
            self.error = error
