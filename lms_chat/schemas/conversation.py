from datetime import datetime, timezone
from typing import Any, NamedTuple, Optional, Tuple

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from lms_chat.schemas.user import UserRef
from lms_chat.utils.ids import canonical_id

NO_MESSAGES_PLACEHOLDER = "No messages yet"


class ThreadKey(NamedTuple):
    """Identity of a thread: the counterparty, optionally scoped to a course."""

    counterparty_id: str
    course_id: Optional[str] = None


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Conversation(BaseModel):
    """One row of the server's conversation list, seen from the current user."""

    model_config = ConfigDict(frozen=True)

    counterparty: UserRef
    last_message: Optional[str] = None
    last_message_at: Optional[datetime] = None
    unread_count: int = 0
    course_id: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "counterparty" in data:
            return data
        user = data.get("user") or data.get("counterpartyRef") or {}
        if isinstance(user, dict) and canonical_id(user) is None:
            user = {**user, "_id": data.get("counterpartyId") or data.get("_id")}
        return {
            "counterparty": user,
            "last_message": data.get("lastMessage"),
            "last_message_at": data.get("lastMessageAt"),
            "unread_count": data.get("unreadCount") or 0,
            "course_id": canonical_id(data.get("courseId") or data.get("course")),
        }

    @field_validator("last_message_at")
    @classmethod
    def _aware_timestamp(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _aware(value)

    @property
    def counterparty_id(self) -> str:
        return self.counterparty.id


class DirectoryEntry(BaseModel):
    """A row of the directory list: an existing conversation or a placeholder."""

    model_config = ConfigDict(frozen=True)

    user: UserRef
    has_conversation: bool = False
    last_message: str = NO_MESSAGES_PLACEHOLDER
    last_message_at: Optional[datetime] = None
    unread_count: int = 0
    course_id: Optional[str] = None

    @property
    def counterparty_id(self) -> str:
        return self.user.id

    @classmethod
    def from_conversation(cls, conversation: Conversation) -> "DirectoryEntry":
        return cls(
            user=conversation.counterparty,
            has_conversation=True,
            last_message=conversation.last_message or NO_MESSAGES_PLACEHOLDER,
            last_message_at=conversation.last_message_at,
            unread_count=conversation.unread_count,
            course_id=conversation.course_id,
        )

    @classmethod
    def placeholder(cls, user: UserRef, course_id: Optional[str] = None, unread_count: int = 0) -> "DirectoryEntry":
        return cls(user=user, course_id=course_id, unread_count=unread_count)


class CourseRoster(BaseModel):
    """A course with the members the current user may chat with inside it."""

    model_config = ConfigDict(frozen=True)

    course_id: str
    title: str = ""
    members: Tuple[DirectoryEntry, ...] = ()

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "course_id" in data:
            return data
        course_id = canonical_id(data)
        raw_members = data.get("students") or data.get("teachers") or []
        members = [
            DirectoryEntry.placeholder(
                UserRef.model_validate(member),
                course_id=course_id,
                unread_count=member.get("unreadCount") or 0,
            )
            for member in raw_members
            if isinstance(member, dict) and canonical_id(member) is not None
        ]
        return {"course_id": course_id, "title": data.get("title") or "", "members": members}

    @property
    def total_unread(self) -> int:
        return sum(m.unread_count for m in self.members)
