from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_SENDER_NAME = "New Message"


class Notification(BaseModel):
    """A transient "new message" toast shown while the thread is not visible."""

    model_config = ConfigDict(frozen=True)

    sender_name: str = DEFAULT_SENDER_NAME
    text: str = ""
    counterparty_id: Optional[str] = None
    course_id: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
