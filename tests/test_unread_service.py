from unittest.mock import AsyncMock

import pytest

from lms_chat.exceptions import ChatApiError
from lms_chat.schemas.conversation import Conversation, CourseRoster, ThreadKey
from lms_chat.schemas.user import OTHER_TAB, UserRef
from lms_chat.services.unread_service import UnreadService


def conversation(user_id, role, unread):
    return Conversation(counterparty=UserRef(id=user_id, role=role), unread_count=unread)


@pytest.fixture()
def repos():
    conversation_repo = AsyncMock()
    message_repo = AsyncMock()
    conversation_repo.get_unread_count.return_value = 0
    return conversation_repo, message_repo


@pytest.fixture()
def service(repos) -> UnreadService:
    return UnreadService(*repos)


class TestTabCounts:
    def test_rebuild_from_conversations(self, service):
        service.apply_conversations(
            [
                conversation("s1", "student", 2),
                conversation("s2", "student", 1),
                conversation("t1", "teacher", 4),
                conversation("j1", "job", 0),
            ]
        )

        assert service.tab_counts() == {"student": 3, "intern": 0, "teacher": 4, "job": 0}
        assert service.count_for(ThreadKey("s1")) == 2

    def test_unknown_roles_go_to_the_catch_all(self, service):
        service.apply_conversations([conversation("x1", "alumni", 5)])

        assert service.tab_counts()[OTHER_TAB] == 5

    def test_rebuild_from_rosters_is_keyed_by_course(self, service):
        service.apply_rosters(
            [
                CourseRoster.model_validate({"_id": "c1", "students": [{"_id": "s1", "unreadCount": 2}, {"_id": "s2", "unreadCount": 1}]}),
                CourseRoster.model_validate({"_id": "c2", "students": [{"_id": "s1"}]}),
            ]
        )

        assert service.tab_counts() == {"c1": 3, "c2": 0}
        assert service.count_for(ThreadKey("s1", "c1")) == 2


class TestReconciliationEquivalence:
    """A full rebuild and the equivalent live increments reach the same totals."""

    @pytest.mark.parametrize(
        "events",
        [
            [("s1", "student")],
            [("s1", "student"), ("s1", "student"), ("t1", "teacher")],
            [("j1", "job"), ("x1", "alumni"), ("s2", "student"), ("x1", "alumni")],
        ],
    )
    def test_incremental_equals_rebuild(self, repos, events):
        incremental = UnreadService(*repos)
        for user_id, role in events:
            incremental.record_incoming(ThreadKey(user_id), role)

        per_user = {}
        for user_id, role in events:
            count, _ = per_user.get(user_id, (0, role))
            per_user[user_id] = (count + 1, role)
        rebuilt = UnreadService(*repos)
        rebuilt.apply_conversations(conversation(uid, role, count) for uid, (count, role) in per_user.items())

        assert incremental.tab_counts() == rebuilt.tab_counts()
        assert incremental.tab_total == sum(incremental.tab_counts().values()) == incremental.global_count
        assert rebuilt.tab_total == len(events)

    async def test_mark_read_matches_a_rebuild_without_that_thread(self, repos):
        incremental = UnreadService(*repos)
        incremental.record_incoming(ThreadKey("s1"), "student")
        incremental.record_incoming(ThreadKey("t1"), "teacher")
        await incremental.mark_read(ThreadKey("s1"))

        rebuilt = UnreadService(*repos)
        rebuilt.apply_conversations([conversation("s1", "student", 0), conversation("t1", "teacher", 1)])

        assert incremental.tab_counts() == rebuilt.tab_counts()

    def test_rebuild_is_idempotent(self, service):
        rows = [conversation("s1", "student", 2), conversation("t1", "teacher", 1)]
        service.apply_conversations(rows)
        first = service.tab_counts()
        service.apply_conversations(rows)

        assert service.tab_counts() == first


class TestGlobalCount:
    def test_record_incoming_increments_by_one(self, service):
        service.record_incoming(ThreadKey("s1"), "student")

        assert service.global_count == 1

    async def test_refresh_global(self, repos, service):
        conversation_repo, _ = repos
        conversation_repo.get_unread_count.return_value = 7

        assert await service.refresh_global() == 7
        assert service.global_count == 7

    async def test_refresh_failure_keeps_prior_value(self, repos, service):
        conversation_repo, _ = repos
        service.record_incoming(ThreadKey("s1"), "student")
        conversation_repo.get_unread_count.side_effect = ChatApiError("down")

        assert await service.refresh_global() == 1
        assert service.global_count == 1


class TestMarkRead:
    async def test_confirms_with_a_refresh(self, repos, service):
        conversation_repo, message_repo = repos
        service.record_incoming(ThreadKey("s1", "c1"), None)

        assert await service.mark_read(ThreadKey("s1", "c1"))

        message_repo.mark_read.assert_awaited_once_with("s1", "c1")
        conversation_repo.get_unread_count.assert_awaited_once()
        assert service.global_count == 0
        assert service.count_for(ThreadKey("s1", "c1")) == 0

    async def test_failed_mark_read_does_not_decrement(self, repos, service):
        conversation_repo, message_repo = repos
        message_repo.mark_read.side_effect = ChatApiError("down")
        service.record_incoming(ThreadKey("s1"), "student")

        assert not await service.mark_read(ThreadKey("s1"))

        assert service.count_for(ThreadKey("s1")) == 1
        assert service.global_count == 1
        conversation_repo.get_unread_count.assert_not_awaited()

    def test_reset(self, service):
        service.record_incoming(ThreadKey("s1"), "student")
        service.reset()

        assert service.global_count == 0
        assert service.tab_counts() == {"student": 0, "intern": 0, "teacher": 0, "job": 0}
