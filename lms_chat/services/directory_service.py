from typing import Any, Dict, Iterable, List, Optional, Tuple

from loguru import logger

from lms_chat.exceptions import ChatApiError
from lms_chat.repositories.conversation_repository import ConversationRepository
from lms_chat.repositories.user_repository import UserRepository
from lms_chat.schemas.conversation import Conversation, CourseRoster, DirectoryEntry
from lms_chat.schemas.user import RECENT_TAB, Role, UserRef
from lms_chat.utils.ids import canonical_id


def merge_directory(
    conversations: Iterable[Conversation],
    users: Iterable[UserRef],
    tab: str = RECENT_TAB,
) -> List[DirectoryEntry]:
    """Merge existing conversations with the verified-user directory of *tab*.

    The recent tab lists conversations only. A role tab lists every
    directory user, using the existing conversation where there is one and
    a zero-unread placeholder otherwise, followed by any conversations of
    that role the directory did not return. Each counterparty appears once.
    """
    seen = set()
    entries: List[DirectoryEntry] = []

    def emit(entry: DirectoryEntry) -> None:
        if entry.counterparty_id not in seen:
            seen.add(entry.counterparty_id)
            entries.append(entry)

    if tab == RECENT_TAB:
        for conversation in conversations:
            emit(DirectoryEntry.from_conversation(conversation))
        return entries

    by_user: Dict[str, Conversation] = {}
    for conversation in conversations:
        if conversation.counterparty.role == tab:
            by_user.setdefault(conversation.counterparty_id, conversation)

    for user in users:
        conversation = by_user.pop(user.id, None)
        if conversation is not None:
            emit(DirectoryEntry.from_conversation(conversation))
        else:
            emit(DirectoryEntry.placeholder(user))

    for conversation in by_user.values():
        emit(DirectoryEntry.from_conversation(conversation))
    return entries


def filter_entries(entries: Iterable[DirectoryEntry], query: str = "") -> List[DirectoryEntry]:
    needle = (query or "").strip().casefold()
    return [e for e in entries if needle in e.user.name.casefold()]


def sort_entries(entries: Iterable[DirectoryEntry]) -> List[DirectoryEntry]:
    """Most recent message first; entries without messages follow, by name."""
    entries = list(entries)
    dated = sorted((e for e in entries if e.last_message_at), key=lambda e: e.last_message_at, reverse=True)
    undated = sorted((e for e in entries if not e.last_message_at), key=lambda e: e.user.name.casefold())
    return dated + undated


class DirectoryService:
    """Known counterparties of the current user.

    Admins browse conversations plus the verified-user directory per role;
    other users get a single support contact; a course-scoped directory is
    the course roster. Fetch failures keep the last known lists.
    """

    def __init__(
        self,
        conversation_repo: ConversationRepository,
        user_repo: UserRepository,
        me: UserRef,
        course_id: Optional[str] = None,
    ) -> None:
        self._conversation_repo = conversation_repo
        self._user_repo = user_repo
        self._me = me
        self._course_id = course_id
        self._conversations: Tuple[Conversation, ...] = ()
        self._users_by_role: Dict[str, Tuple[UserRef, ...]] = {}
        self._rosters: Tuple[CourseRoster, ...] = ()
        self._support_contact: Optional[UserRef] = None

    @property
    def conversations(self) -> Tuple[Conversation, ...]:
        return self._conversations

    @property
    def rosters(self) -> Tuple[CourseRoster, ...]:
        return self._rosters

    @property
    def support_contact(self) -> Optional[UserRef]:
        return self._support_contact

    def users_for(self, role: str) -> Tuple[UserRef, ...]:
        return self._users_by_role.get(role, ())

    async def refresh_conversations(self) -> bool:
        try:
            conversations = await self._conversation_repo.list_for_user()
        except ChatApiError as exc:
            logger.warning("Fetching conversations failed: {}", exc)
            return False
        self._conversations = tuple(conversations)
        return True

    async def load_role(self, role: str) -> bool:
        if role == RECENT_TAB:
            return True
        try:
            users = await self._user_repo.get_verified_by_role(role)
        except ChatApiError as exc:
            logger.warning("Fetching verified {} users failed: {}", role, exc)
            return False
        self._users_by_role[role] = tuple(users)
        return True

    async def refresh_roster(self) -> bool:
        try:
            if self._me.role == Role.TEACHER.value:
                rosters = await self._conversation_repo.get_teacher_courses()
            else:
                rosters = await self._conversation_repo.get_student_courses()
        except ChatApiError as exc:
            logger.warning("Fetching course rosters failed: {}", exc)
            return False
        self._rosters = tuple(rosters)
        return True

    async def resolve_support_contact(self) -> Optional[UserRef]:
        """The first verified admin; non-admin users chat with support only."""
        try:
            admins = await self._user_repo.get_verified_by_role(Role.ADMIN.value)
        except ChatApiError as exc:
            logger.warning("Fetching support contact failed: {}", exc)
            return self._support_contact
        if admins:
            self._support_contact = admins[0]
        return self._support_contact

    async def search(self, email: str) -> List[DirectoryEntry]:
        if not email.strip():
            return []
        try:
            users = await self._user_repo.search(email.strip(), course_id=self._course_id)
        except ChatApiError as exc:
            logger.warning("User search for {!r} failed: {}", email, exc)
            return []
        known = {e.counterparty_id: e for e in self._known_entries()}
        return sort_entries(known.get(u.id) or DirectoryEntry.placeholder(u, course_id=self._course_id) for u in users)

    def roster(self) -> Optional[CourseRoster]:
        return next((r for r in self._rosters if r.course_id == self._course_id), None)

    def _known_entries(self) -> List[DirectoryEntry]:
        if self._course_id is not None:
            roster = self.roster()
            return list(roster.members) if roster else []
        return [DirectoryEntry.from_conversation(c) for c in self._conversations]

    def entries(self, tab: str = RECENT_TAB, query: str = "") -> List[DirectoryEntry]:
        """The merged, de-duplicated, filtered, sorted display list for *tab*."""
        if self._course_id is not None:
            base = self._known_entries()
        elif self._me.is_admin:
            base = merge_directory(self._conversations, self.users_for(tab), tab)
        elif self._support_contact is not None:
            existing = next((c for c in self._conversations if c.counterparty_id == self._support_contact.id), None)
            base = [
                DirectoryEntry.from_conversation(existing)
                if existing
                else DirectoryEntry.placeholder(self._support_contact)
            ]
        else:
            base = []
        return sort_entries(filter_entries(base, query))

    def lookup(self, counterparty_id: Any) -> Optional[UserRef]:
        counterparty_id = canonical_id(counterparty_id)
        if counterparty_id is None:
            return None
        for conversation in self._conversations:
            if conversation.counterparty_id == counterparty_id:
                return conversation.counterparty
        for users in self._users_by_role.values():
            for user in users:
                if user.id == counterparty_id:
                    return user
        for roster in self._rosters:
            for member in roster.members:
                if member.counterparty_id == counterparty_id:
                    return member.user
        if self._support_contact is not None and self._support_contact.id == counterparty_id:
            return self._support_contact
        return None

    def reset(self) -> None:
        self._conversations = ()
        self._users_by_role = {}
        self._rosters = ()
        self._support_contact = None
