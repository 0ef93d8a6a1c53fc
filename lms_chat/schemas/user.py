from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, model_validator

from lms_chat.utils.ids import canonical_id


class Role(str, Enum):

    ADMIN = "admin"
    TEACHER = "teacher"
    STUDENT = "student"
    INTERN = "intern"
    JOB = "job"


# tabs an admin can browse, in display order; "all" is the recent list
RECENT_TAB = "all"
ROLE_TABS = (Role.STUDENT.value, Role.INTERN.value, Role.TEACHER.value, Role.JOB.value)
OTHER_TAB = "other"

PRIVILEGED_ROLES = frozenset({Role.ADMIN.value, Role.TEACHER.value})


def tab_for_role(role: Optional[str]) -> str:
    """Map a counterparty role onto its unread tab; unknown roles share a catch-all."""
    normalized = (role or "").strip().lower()
    return normalized if normalized in ROLE_TABS else OTHER_TAB


class UserRef(BaseModel):
    """A chat participant, normalized from any populated or bare user payload."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str = "User"
    role: str = ""
    email: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        user_id = canonical_id(data)
        if user_id is None:
            raise ValueError("user reference has no resolvable id")
        nested = data.get("user") if isinstance(data.get("user"), dict) else {}
        role = data.get("role") or nested.get("role") or ""
        if isinstance(role, Enum):
            role = role.value
        return {
            "id": user_id,
            "name": data.get("name") or data.get("userName") or nested.get("name") or "User",
            "role": str(role).strip().lower(),
            "email": data.get("email"),
        }

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN.value

    @property
    def is_privileged(self) -> bool:
        return self.role in PRIVILEGED_ROLES
