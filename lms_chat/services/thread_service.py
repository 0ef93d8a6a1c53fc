import bisect
from datetime import date, datetime, timedelta, tzinfo
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, NamedTuple, Optional, Set, Tuple

from loguru import logger
from pydantic import ValidationError

from lms_chat.exceptions import ChatApiError
from lms_chat.repositories.message_repository import MessageRepository
from lms_chat.schemas.conversation import ThreadKey
from lms_chat.schemas.message import Message, OutgoingMessage, SendState
from lms_chat.schemas.user import UserRef
from lms_chat.utils.ids import canonical_id
from lms_chat.utils.live_ref import LiveRef

MarkReadHook = Callable[[ThreadKey], Awaitable[Any]]


class ThreadState(str, Enum):

    EMPTY = "empty"
    LOADING = "loading"
    LOADED = "loaded"
    SWITCHING = "switching"


class DayGroup(NamedTuple):

    day: date
    label: str
    messages: Tuple[Message, ...]


def day_label(day: date, today: date) -> str:
    if day == today:
        return "Today"
    if day == today - timedelta(days=1):
        return "Yesterday"
    return f"{day:%b} {day.day}"


def _sort_key(message: Message) -> datetime:
    return message.created_at


def _resolve_counterparty(counterparty: Any) -> Optional[UserRef]:
    if isinstance(counterparty, UserRef):
        return counterparty
    if not isinstance(counterparty, dict):
        if canonical_id(counterparty) is None:
            return None
        counterparty = {"_id": counterparty}
    try:
        return UserRef.model_validate(counterparty)
    except ValidationError:
        return None


class ThreadService:
    """Ordered message list of the single active thread.

    Every fetch carries a generation number; a response whose generation no
    longer matches (the user switched threads meanwhile) is dropped. Message
    ids are the only dedup key, for live appends and send confirmations alike.
    """

    def __init__(
        self,
        message_repo: MessageRepository,
        me_id: str,
        active_ref: LiveRef[Optional[ThreadKey]],
        mark_read: Optional[MarkReadHook] = None,
        page_size: Optional[int] = None,
    ) -> None:
        self._repo = message_repo
        self._me_id = me_id
        self._active = active_ref
        self._mark_read = mark_read
        self._page_size = page_size
        self._state = ThreadState.EMPTY
        self._counterparty: Optional[UserRef] = None
        self._messages: List[Message] = []
        self._ids: Set[str] = set()
        self._outbox: Dict[str, OutgoingMessage] = {}
        self._next_cursor: Optional[str] = None
        self._generation = 0

    @property
    def state(self) -> ThreadState:
        return self._state

    @property
    def key(self) -> Optional[ThreadKey]:
        return self._active.current

    @property
    def counterparty(self) -> Optional[UserRef]:
        return self._counterparty

    @property
    def messages(self) -> Tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def outbox(self) -> Tuple[OutgoingMessage, ...]:
        return tuple(self._outbox.values())

    @property
    def has_older(self) -> bool:
        return self._next_cursor is not None

    def _reset_messages(self) -> None:
        self._messages = []
        self._ids = set()
        self._outbox = {}
        self._next_cursor = None

    def _insert(self, message: Message) -> None:
        bisect.insort(self._messages, message, key=_sort_key)
        self._ids.add(message.id)

    def _remove(self, message_id: str) -> None:
        if message_id in self._ids:
            self._ids.discard(message_id)
            self._messages = [m for m in self._messages if m.id != message_id]

    def matches(self, message: Message) -> bool:
        key = self._active.current
        if key is None:
            return False
        return message.other_party(self._me_id) == key.counterparty_id and message.course_id == key.course_id

    async def open(self, counterparty: Any, course_id: Optional[str] = None) -> bool:
        """Make *counterparty* the active thread and load its history.

        Returns False (after logging) when no id can be resolved or the fetch
        fails; never raises to the caller.
        """
        user = _resolve_counterparty(counterparty)
        if user is None:
            logger.error("Cannot open chat: no id found for {!r}", counterparty)
            return False

        key = ThreadKey(user.id, course_id)
        if self._active.current is not None and self._active.current != key:
            self._state = ThreadState.SWITCHING
            logger.debug("Switching thread {} -> {}", self._active.current, key)
        self._active.set(key)
        self._counterparty = user
        self._reset_messages()
        self._state = ThreadState.LOADING
        self._generation += 1
        generation = self._generation

        try:
            history, next_cursor = await self._repo.get_messages(user.id, course_id, limit=self._page_size)
        except ChatApiError as exc:
            if generation == self._generation:
                logger.warning("Loading thread {} failed: {}", key, exc)
                self._state = ThreadState.LOADED
            return False

        if generation != self._generation:
            logger.debug("Dropping stale history for {}", key)
            return False

        # live messages may have been appended while the fetch was in flight
        history_ids = {m.id for m in history}
        live = [m for m in self._messages if m.id not in history_ids]
        self._messages = []
        self._ids = set()
        for message in history:
            if message.id not in self._ids:
                self._insert(message)
        for message in live:
            self._insert(message)
        self._next_cursor = next_cursor
        self._state = ThreadState.LOADED
        logger.debug("Loaded {} messages for {}", len(self._messages), key)

        if self._mark_read is not None:
            await self._mark_read(key)
        return True

    async def load_older(self) -> int:
        """Prepend the next page of older history; returns how many messages were added."""
        key = self._active.current
        cursor = self._next_cursor
        if key is None or cursor is None:
            return 0
        generation = self._generation
        try:
            older, next_cursor = await self._repo.get_messages(
                key.counterparty_id, key.course_id, limit=self._page_size, cursor=cursor
            )
        except ChatApiError as exc:
            logger.warning("Loading older messages for {} failed: {}", key, exc)
            return 0
        if generation != self._generation:
            return 0
        added = 0
        for message in older:
            if message.id not in self._ids:
                self._insert(message)
                added += 1
        self._next_cursor = next_cursor
        return added

    def append(self, message: Message) -> bool:
        """Insert *message* into the active thread unless its id is already present."""
        if not self.matches(message) or message.id in self._ids:
            return False
        outgoing = self._outbox.get(message.client_message_id) if message.client_message_id else None
        if outgoing is not None:
            outgoing.confirm(message)
            self._outbox.pop(outgoing.client_id, None)
            self._remove(outgoing.client_id)
        self._insert(message)
        return True

    async def send(self, text: str) -> Optional[OutgoingMessage]:
        body = (text or "").strip()
        key = self._active.current
        if not body or key is None:
            return None
        outgoing = OutgoingMessage(counterparty_id=key.counterparty_id, course_id=key.course_id, text=body)
        self._outbox[outgoing.client_id] = outgoing
        self._insert(outgoing.provisional(self._me_id))
        return await self._deliver(outgoing, key)

    async def _deliver(self, outgoing: OutgoingMessage, key: ThreadKey) -> OutgoingMessage:
        generation = self._generation
        try:
            message = await self._repo.send_message(
                key.counterparty_id, outgoing.text, key.course_id, client_message_id=outgoing.client_id
            )
        except ChatApiError as exc:
            logger.warning("Sending message to {} failed: {}", key, exc)
            outgoing.fail(exc.message)
            if outgoing.state is SendState.FAILED and generation == self._generation:
                self._remove(outgoing.client_id)
            return outgoing

        outgoing.confirm(message)
        if generation == self._generation:
            self._outbox.pop(outgoing.client_id, None)
            self._remove(outgoing.client_id)
            self.append(message)
        return outgoing

    async def retry(self, client_id: str) -> Optional[OutgoingMessage]:
        """Re-send a failed message of the active thread as a fresh send."""
        outgoing = self._outbox.get(client_id)
        if outgoing is None or outgoing.state is not SendState.FAILED:
            return None
        if ThreadKey(outgoing.counterparty_id, outgoing.course_id) != self._active.current:
            return None
        del self._outbox[client_id]
        return await self.send(outgoing.text)

    def clear(self) -> None:
        self._generation += 1
        self._active.set(None)
        self._counterparty = None
        self._reset_messages()
        self._state = ThreadState.EMPTY

    def grouped_by_day(self, tz: Optional[tzinfo] = None, today: Optional[date] = None) -> List[DayGroup]:
        """Messages grouped by local calendar day, oldest day first."""
        if today is None:
            today = datetime.now(tz).date() if tz else datetime.now().astimezone().date()
        groups: List[DayGroup] = []
        bucket: List[Message] = []
        current: Optional[date] = None
        for message in self._messages:
            day = message.created_at.astimezone(tz).date()
            if day != current and bucket:
                groups.append(DayGroup(current, day_label(current, today), tuple(bucket)))
                bucket = []
            current = day
            bucket.append(message)
        if bucket:
            groups.append(DayGroup(current, day_label(current, today), tuple(bucket)))
        return groups
