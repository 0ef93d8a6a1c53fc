import json
from collections import OrderedDict
from enum import Enum
from typing import Any, Optional

from loguru import logger

from lms_chat.exceptions import MalformedEventError
from lms_chat.models.message import BusEnvelope
from lms_chat.schemas.conversation import ThreadKey
from lms_chat.schemas.message import Message, parse_message
from lms_chat.schemas.notification import DEFAULT_SENDER_NAME, Notification
from lms_chat.services.directory_service import DirectoryService
from lms_chat.services.thread_service import ThreadService
from lms_chat.services.unread_service import UnreadService
from lms_chat.utils.debounce import Debouncer
from lms_chat.utils.live_ref import LiveRef
from lms_chat.utils.notifications import Notifier

MESSAGE_EVENTS = frozenset({"new_message", "new_global_message"})

# ids of recently handled events, to ignore a broadcast delivered twice
_SEEN_LIMIT = 512


class EventKind(str, Enum):

    ACTIVE_THREAD = "active_thread"
    BACKGROUND = "background"
    SYNC = "sync"
    DROPPED = "dropped"


def decode_event(raw: Any) -> Optional[Message]:
    """Parse a live event into a ``Message``.

    Accepts an enveloped ``{"type", "data"}`` event or a bare message
    document, as JSON text, bytes or an already-decoded dict. Returns None
    for event types that carry no message; raises ``MalformedEventError``
    for anything unparseable.
    """
    payload = raw
    if isinstance(payload, (bytes, bytearray)):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedEventError("event is not utf-8") from exc
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except ValueError as exc:
            raise MalformedEventError(f"event is not JSON: {exc}") from exc
    if isinstance(payload, dict) and "type" in payload and "data" in payload:
        envelope: BusEnvelope = payload
        if envelope["type"] not in MESSAGE_EVENTS:
            return None
        payload = envelope["data"]
    return parse_message(payload)


class ReconciliationService:
    """Routes every inbound message to the thread, the unread ledger or a refresh.

    * active thread: append; read at once if the widget is visible,
      otherwise counted and notified
    * background, addressed to me: counted, notified, refresh scheduled
    * anything else (my own mirrored sends, other scopes): refresh only

    The visible flag and the active thread are read through live
    references on every event, never captured at subscription time.
    """

    def __init__(
        self,
        me_id: str,
        thread: ThreadService,
        unread: UnreadService,
        directory: DirectoryService,
        notifier: Notifier,
        refresher: Debouncer,
        visible_ref: LiveRef[bool],
        course_scoped: bool = False,
    ) -> None:
        self._me_id = me_id
        self._thread = thread
        self._unread = unread
        self._directory = directory
        self._notifier = notifier
        self._refresher = refresher
        self._visible = visible_ref
        self._course_scoped = course_scoped
        self._seen: "OrderedDict[str, None]" = OrderedDict()

    async def handle_raw(self, raw: Any) -> EventKind:
        try:
            message = decode_event(raw)
        except MalformedEventError as exc:
            logger.debug("Dropping malformed live event: {}", exc)
            return EventKind.DROPPED
        if message is None:
            return EventKind.DROPPED
        return await self.handle_message(message)

    def classify(self, message: Message) -> EventKind:
        if self._me_id not in (message.sender_id, message.recipient_id):
            return EventKind.SYNC
        if (message.course_id is not None) != self._course_scoped:
            return EventKind.SYNC
        if self._thread.matches(message):
            return EventKind.ACTIVE_THREAD
        if message.sender_id == self._me_id:
            return EventKind.SYNC
        return EventKind.BACKGROUND

    def _remember(self, message_id: str) -> bool:
        if message_id in self._seen:
            return False
        self._seen[message_id] = None
        while len(self._seen) > _SEEN_LIMIT:
            self._seen.popitem(last=False)
        return True

    async def handle_message(self, message: Message) -> EventKind:
        kind = self.classify(message)
        key = ThreadKey(message.other_party(self._me_id), message.course_id)

        if kind is EventKind.ACTIVE_THREAD:
            self._remember(message.id)
            if not self._thread.append(message):
                return EventKind.DROPPED
            if message.sender_id == self._me_id:
                return kind
            if self._visible.current:
                await self._unread.mark_read(key)
            else:
                self._unread.record_incoming(key, self._sender_role(message))
                self._notify(message, key)
            return kind

        if kind is EventKind.BACKGROUND:
            if not self._remember(message.id):
                return EventKind.DROPPED
            self._unread.record_incoming(key, self._sender_role(message))
            self._notify(message, key)

        self._refresher.trigger()
        return kind

    def _sender_role(self, message: Message) -> Optional[str]:
        if message.sender_role:
            return message.sender_role
        sender = self._directory.lookup(message.sender_id)
        return sender.role if sender is not None else None

    def _notify(self, message: Message, key: ThreadKey) -> None:
        name = message.sender_name
        if not name:
            sender = self._directory.lookup(message.sender_id)
            name = sender.name if sender is not None else DEFAULT_SENDER_NAME
        self._notifier.show(
            Notification(
                sender_name=name,
                text=message.text,
                counterparty_id=key.counterparty_id,
                course_id=key.course_id,
            )
        )
