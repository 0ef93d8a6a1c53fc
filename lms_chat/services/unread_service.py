from typing import Dict, Iterable, Optional, Tuple

from loguru import logger

from lms_chat.exceptions import ChatApiError
from lms_chat.repositories.conversation_repository import ConversationRepository
from lms_chat.repositories.message_repository import MessageRepository
from lms_chat.schemas.conversation import Conversation, CourseRoster, ThreadKey
from lms_chat.schemas.user import ROLE_TABS, tab_for_role


class UnreadService:
    """Global unread badge plus per-tab totals.

    Per-thread counts live in a single ledger keyed by ``ThreadKey``; tab
    totals are always summed from it. A full rebuild from the conversation
    list (or course rosters) and incremental updates from live events both
    write that ledger, so either path reaches the same totals.

    Tabs are counterparty roles for the global chat and course ids for
    course-scoped chat. Unknown roles count under the catch-all tab.
    """

    def __init__(self, conversation_repo: ConversationRepository, message_repo: MessageRepository) -> None:
        self._conversation_repo = conversation_repo
        self._message_repo = message_repo
        self._global_count = 0
        self._ledger: Dict[ThreadKey, int] = {}
        self._buckets: Dict[ThreadKey, str] = {}
        self._base_tabs: Tuple[str, ...] = ROLE_TABS

    @property
    def global_count(self) -> int:
        return self._global_count

    @staticmethod
    def bucket_for(key: ThreadKey, role: Optional[str] = None) -> str:
        return key.course_id if key.course_id else tab_for_role(role)

    def tab_counts(self) -> Dict[str, int]:
        counts = {tab: 0 for tab in self._base_tabs}
        for key, count in self._ledger.items():
            bucket = self._buckets[key]
            counts[bucket] = counts.get(bucket, 0) + count
        return counts

    @property
    def tab_total(self) -> int:
        """Unread messages across every tab, for checking against ``global_count``."""
        return sum(self._ledger.values())

    def count_for(self, key: ThreadKey) -> int:
        return self._ledger.get(key, 0)

    # ------------------------------------------------------------------
    # Full rebuilds
    # ------------------------------------------------------------------

    def apply_conversations(self, conversations: Iterable[Conversation]) -> None:
        rows = []
        for conversation in conversations:
            key = ThreadKey(conversation.counterparty_id, conversation.course_id)
            rows.append((key, conversation.unread_count, self.bucket_for(key, conversation.counterparty.role)))
        self._rebuild(rows)
        self._base_tabs = ROLE_TABS

    def apply_rosters(self, rosters: Iterable[CourseRoster]) -> None:
        rosters = list(rosters)
        self._rebuild(
            (ThreadKey(m.counterparty_id, roster.course_id), m.unread_count, roster.course_id)
            for roster in rosters
            for m in roster.members
        )
        self._base_tabs = tuple(r.course_id for r in rosters)

    def _rebuild(self, rows: Iterable[Tuple[ThreadKey, int, str]]) -> None:
        ledger: Dict[ThreadKey, int] = {}
        buckets: Dict[ThreadKey, str] = {}
        for key, count, bucket in rows:
            if count > 0:
                ledger[key] = ledger.get(key, 0) + count
                buckets[key] = bucket
        self._ledger = ledger
        self._buckets = buckets

    # ------------------------------------------------------------------
    # Incremental fast path
    # ------------------------------------------------------------------

    def record_incoming(self, key: ThreadKey, role: Optional[str] = None) -> None:
        self._global_count += 1
        self._ledger[key] = self._ledger.get(key, 0) + 1
        self._buckets[key] = self.bucket_for(key, role)

    async def refresh_global(self) -> int:
        try:
            count = await self._conversation_repo.get_unread_count()
        except ChatApiError as exc:
            logger.warning("Fetching unread count failed: {}", exc)
            return self._global_count
        self._global_count = count
        return count

    async def mark_read(self, key: ThreadKey) -> bool:
        """Mark *key* read on the server, then refresh the badge from the server."""
        try:
            await self._message_repo.mark_read(key.counterparty_id, key.course_id)
        except ChatApiError as exc:
            logger.warning("Marking thread {} read failed: {}", key, exc)
            return False
        self._ledger.pop(key, None)
        self._buckets.pop(key, None)
        await self.refresh_global()
        return True

    def reset(self) -> None:
        self._global_count = 0
        self._ledger = {}
        self._buckets = {}
        self._base_tabs = ROLE_TABS
