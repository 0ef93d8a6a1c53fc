from typing import Any, Dict, List, Optional, Tuple

import httpx
from loguru import logger

from lms_chat.config import Settings
from lms_chat.exceptions import ChatApiError, ClearHistoryError
from lms_chat.repositories.conversation_repository import ConversationRepository
from lms_chat.repositories.message_repository import MessageRepository
from lms_chat.repositories.user_repository import UserRepository
from lms_chat.schemas.conversation import DirectoryEntry, ThreadKey
from lms_chat.schemas.message import Message, OutgoingMessage, SendState
from lms_chat.schemas.notification import Notification
from lms_chat.schemas.user import RECENT_TAB, UserRef
from lms_chat.services.directory_service import DirectoryService
from lms_chat.services.reconciliation_service import ReconciliationService
from lms_chat.services.thread_service import ThreadService
from lms_chat.services.unread_service import UnreadService
from lms_chat.utils.connection_manager import ConnectionManager
from lms_chat.utils.debounce import Debouncer
from lms_chat.utils.ids import canonical_id
from lms_chat.utils.live_ref import LiveRef
from lms_chat.utils.notifications import Notifier
from lms_chat.utils.realtime_bus import Bus


class ChatWidget:
    """One chat widget instance for one signed-in user.

    Owns the live connection, the directory, the unread ledger, the active
    thread and the transient notification. ``start()`` and ``close()`` (or
    ``async with``) bound the lifetime of all of them. With ``course_id`` the
    widget is course chat: threads, sends and reads are scoped to that course
    and the directory is the course roster.
    """

    def __init__(
        self,
        me: UserRef,
        client: httpx.AsyncClient,
        bus: Bus,
        settings: Settings,
        course_id: Optional[str] = None,
    ) -> None:
        self._me = me
        self._course_id = canonical_id(course_id)
        self._message_repo = MessageRepository(client)
        self._conversation_repo = ConversationRepository(client)
        self._user_repo = UserRepository(client)

        self._active: LiveRef[Optional[ThreadKey]] = LiveRef(None)
        self._visible: LiveRef[bool] = LiveRef(False)
        self._tab = RECENT_TAB
        self._query = ""
        self._draft = ""
        self._send_error: Optional[str] = None
        self._sending = False

        self.unread = UnreadService(self._conversation_repo, self._message_repo)
        self.directory = DirectoryService(self._conversation_repo, self._user_repo, me, course_id=self._course_id)
        self.thread = ThreadService(self._message_repo, me.id, self._active, mark_read=self._mark_read_if_visible)
        self.notifier = Notifier(ttl=settings.notification_ttl_seconds)
        self._refresher = Debouncer(settings.refresh_debounce_seconds, self.refresh)
        self.reconciler = ReconciliationService(
            me.id,
            self.thread,
            self.unread,
            self.directory,
            self.notifier,
            self._refresher,
            self._visible,
            course_scoped=self._course_id is not None,
        )
        self._connection = ConnectionManager(
            bus,
            me.id,
            self.reconciler.handle_raw,
            presence_ttl=settings.presence_ttl_seconds,
            heartbeat_interval=settings.presence_heartbeat_seconds,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self._connection.connect()
        await self.refresh()
        if self._course_id is None and not self._me.is_admin:
            await self._resume_support_chat()

    async def close(self) -> None:
        await self._connection.close()
        await self._refresher.aclose()
        self.notifier.close()
        self.thread.clear()
        self.unread.reset()
        self.directory.reset()
        self._visible.set(False)
        logger.debug("Chat widget for {} closed", self._me.id)

    async def __aenter__(self) -> "ChatWidget":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def refresh(self) -> None:
        """Full refetch of the directory and unread state."""
        if self._course_id is not None:
            if await self.directory.refresh_roster():
                self.unread.apply_rosters(self.directory.rosters)
        elif self._me.is_admin:
            if await self.directory.refresh_conversations():
                self.unread.apply_conversations(self.directory.conversations)
            if self._tab != RECENT_TAB:
                await self.directory.load_role(self._tab)
        await self.unread.refresh_global()

    async def _resume_support_chat(self) -> bool:
        contact = await self.directory.resolve_support_contact()
        if contact is None:
            return False
        try:
            history, _ = await self._message_repo.get_messages(contact.id, limit=1)
        except ChatApiError as exc:
            logger.warning("Checking support chat history failed: {}", exc)
            return False
        if not history:
            return False
        logger.debug("Resuming support chat with {}", contact.id)
        return await self.thread.open(contact)

    # ------------------------------------------------------------------
    # Visibility
    # ------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._visible.current

    async def open_widget(self) -> None:
        if self._visible.set(True):
            return
        await self.refresh()
        key = self._active.current
        if key is not None:
            await self._mark_read_if_visible(key)

    def close_widget(self) -> None:
        self._visible.set(False)

    async def toggle(self) -> bool:
        if self._visible.current:
            self.close_widget()
        else:
            await self.open_widget()
        return self._visible.current

    async def _mark_read_if_visible(self, key: ThreadKey) -> bool:
        if not self._visible.current or self._active.current != key:
            return False
        if not await self.unread.mark_read(key):
            return False
        self._refresher.trigger()
        return True

    # ------------------------------------------------------------------
    # Thread
    # ------------------------------------------------------------------

    @property
    def messages(self) -> Tuple[Message, ...]:
        return self.thread.messages

    @property
    def active_thread(self) -> Optional[ThreadKey]:
        return self._active.current

    async def open_thread(self, counterparty: Any) -> bool:
        return await self.thread.open(counterparty, self._course_id)

    def close_thread(self) -> None:
        self.thread.clear()

    @property
    def draft(self) -> str:
        return self._draft

    def set_draft(self, text: str) -> None:
        self._draft = text or ""

    @property
    def send_error(self) -> Optional[str]:
        return self._send_error

    @property
    def is_sending(self) -> bool:
        return self._sending

    async def send(self, text: Optional[str] = None) -> Optional[OutgoingMessage]:
        """Send *text* (or the current draft) to the active thread.

        The draft is cleared as soon as the request is dispatched; on failure
        the text is put back unless the user has typed something new.
        """
        body = self._draft if text is None else text
        if not body.strip() or self._active.current is None:
            return None
        self._draft = ""
        self._send_error = None
        self._sending = True
        try:
            outgoing = await self.thread.send(body)
        finally:
            self._sending = False
        return self._after_send(outgoing, body)

    async def retry(self, client_id: str) -> Optional[OutgoingMessage]:
        failed = next((o for o in self.thread.outbox if o.client_id == client_id), None)
        if failed is None:
            return None
        self._send_error = None
        self._sending = True
        try:
            outgoing = await self.thread.retry(client_id)
        finally:
            self._sending = False
        if outgoing is not None and outgoing.state is SendState.CONFIRMED and self._draft == failed.text:
            self._draft = ""
        return self._after_send(outgoing, failed.text)

    def _after_send(self, outgoing: Optional[OutgoingMessage], body: str) -> Optional[OutgoingMessage]:
        if outgoing is None:
            return None
        if outgoing.state is SendState.FAILED:
            self._send_error = outgoing.error
            if not self._draft:
                self._draft = body
        else:
            self._refresher.trigger()
        return outgoing

    async def clear_history(self, counterparty_id: Any = None) -> int:
        """Delete all messages with a counterparty (admins only).

        Raises ``ClearHistoryError`` and changes nothing locally on failure.
        """
        if not self._me.is_admin:
            raise ClearHistoryError("only admins can clear chat history", status_code=403)
        active = self._active.current
        target = canonical_id(counterparty_id) or (active.counterparty_id if active else None)
        if target is None:
            raise ClearHistoryError("no conversation selected")
        removed = await self._message_repo.clear_history(target)
        logger.info("Cleared {} messages with {}", removed, target)
        if active is not None and active.counterparty_id == target:
            self.thread.clear()
        await self.refresh()
        return removed

    # ------------------------------------------------------------------
    # Directory
    # ------------------------------------------------------------------

    @property
    def tab(self) -> str:
        return self._tab

    @property
    def search_query(self) -> str:
        return self._query

    async def select_tab(self, tab: str) -> None:
        self._tab = tab
        if self._me.is_admin and self._course_id is None:
            await self.directory.load_role(tab)

    def set_search(self, query: str) -> None:
        self._query = query or ""

    def entries(self) -> List[DirectoryEntry]:
        return self.directory.entries(self._tab, self._query)

    async def search_users(self, email: str) -> List[DirectoryEntry]:
        if not self._me.is_privileged:
            return []
        return await self.directory.search(email)

    # ------------------------------------------------------------------
    # Unread + notifications
    # ------------------------------------------------------------------

    @property
    def unread_count(self) -> int:
        return self.unread.global_count

    def tab_counts(self) -> Dict[str, int]:
        return self.unread.tab_counts()

    @property
    def tab_total(self) -> int:
        return self.unread.tab_total

    @property
    def notification(self) -> Optional[Notification]:
        return self.notifier.current

    async def acknowledge_notification(self) -> Optional[Notification]:
        """Act on the current notification: open the widget on its thread."""
        notification = self.notifier.dismiss()
        if notification is None:
            return None
        if self._active.current is None and notification.counterparty_id:
            target = self.directory.lookup(notification.counterparty_id) or notification.counterparty_id
            await self.thread.open(target, notification.course_id)
        await self.open_widget()
        return notification
