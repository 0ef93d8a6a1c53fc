from typing import Any, Dict, List, Optional, Tuple

from loguru import logger

from lms_chat.exceptions import ClearHistoryError, MalformedEventError, SendMessageError
from lms_chat.models.message import MessageDocument
from lms_chat.repositories.base import ApiRepository
from lms_chat.schemas.message import Message, parse_message


class MessageRepository(ApiRepository):

    def _parse_items(self, items: Optional[List[MessageDocument]]) -> List[Message]:
        messages: List[Message] = []
        for item in items or []:
            try:
                messages.append(parse_message(item))
            except MalformedEventError as exc:
                logger.debug("Skipping malformed message in history: {}", exc)
        return messages

    async def get_messages(
        self,
        counterparty_id: str,
        course_id: Optional[str] = None,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> Tuple[List[Message], Optional[str]]:
        """Return the thread with *counterparty_id* (oldest first) and the next cursor."""
        if course_id:
            path = f"/chat/course/{course_id}/messages/{counterparty_id}"
        else:
            path = f"/chat/messages/{counterparty_id}"
        params: Dict[str, Any] = {}
        if limit is not None:
            params["limit"] = limit
        if cursor:
            params["cursor"] = cursor
        body = await self._call("GET", path, params=params or None)
        messages = sorted(self._parse_items(body.get("data")), key=lambda m: m.created_at)
        return messages, body.get("next_cursor")

    async def send_message(
        self,
        counterparty_id: str,
        text: str,
        course_id: Optional[str] = None,
        client_message_id: Optional[str] = None,
    ) -> Message:
        path = f"/chat/course/{course_id}/send" if course_id else "/chat/messages"
        payload: Dict[str, Any] = {"recipientId": counterparty_id, "text": text}
        if client_message_id:
            payload["clientMessageId"] = client_message_id
        body = await self._call("POST", path, error_cls=SendMessageError, json=payload)
        doc: Optional[MessageDocument] = body.get("data")
        try:
            return parse_message(doc)
        except MalformedEventError as exc:
            raise SendMessageError(f"server returned an unusable message: {exc}") from exc

    async def mark_read(self, counterparty_id: str, course_id: Optional[str] = None) -> None:
        if course_id:
            path = f"/chat/course/{course_id}/read/{counterparty_id}"
        else:
            path = f"/chat/read/{counterparty_id}"
        await self._call("PUT", path)

    async def clear_history(self, counterparty_id: str) -> int:
        """Delete every message with *counterparty_id*; the user account is untouched."""
        body = await self._call(
            "POST", f"/chat/action/clear-messages/{counterparty_id}", error_cls=ClearHistoryError
        )
        return int(body.get("messagesRemoved") or 0)
