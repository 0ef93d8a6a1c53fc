from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from lms_chat.exceptions import ChatApiError
from lms_chat.schemas.conversation import NO_MESSAGES_PLACEHOLDER, Conversation, CourseRoster, DirectoryEntry
from lms_chat.schemas.user import UserRef
from lms_chat.services.directory_service import DirectoryService, filter_entries, merge_directory, sort_entries

T0 = datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)


def user(user_id, name=None, role="student"):
    return UserRef(id=user_id, name=name or user_id.upper(), role=role)


def conversation(user_id, role="student", minutes=0, unread=0, name=None):
    return Conversation(
        counterparty=user(user_id, name=name, role=role),
        last_message=f"from {user_id}",
        last_message_at=T0 + timedelta(minutes=minutes),
        unread_count=unread,
    )


class TestMergeDirectory:
    def test_empty_inputs_give_empty_result(self):
        assert merge_directory([], [], "student") == []
        assert merge_directory([], [], "all") == []

    def test_recent_tab_lists_conversations_only(self):
        entries = merge_directory([conversation("s1")], [user("s2")], "all")

        assert [e.counterparty_id for e in entries] == ["s1"]

    def test_role_tab_merges_directory_users(self):
        entries = merge_directory(
            [conversation("s1", unread=3), conversation("t1", role="teacher")],
            [user("s1"), user("s2")],
            "student",
        )

        assert [e.counterparty_id for e in entries] == ["s1", "s2"]
        assert entries[0].has_conversation and entries[0].unread_count == 3
        assert not entries[1].has_conversation
        assert entries[1].unread_count == 0
        assert entries[1].last_message == NO_MESSAGES_PLACEHOLDER

    def test_leftover_conversations_of_the_role_are_kept(self):
        entries = merge_directory([conversation("s9")], [user("s1")], "student")

        assert [e.counterparty_id for e in entries] == ["s1", "s9"]

    @pytest.mark.parametrize("tab", ["all", "student"])
    def test_each_counterparty_appears_once(self, tab):
        entries = merge_directory(
            [conversation("s1"), conversation("s1", minutes=5), conversation("s2")],
            [user("s1"), user("s1"), user("s2"), user("s3")],
            tab,
        )

        ids = [e.counterparty_id for e in entries]
        assert len(ids) == len(set(ids))


class TestFilterEntries:
    def test_case_insensitive_substring(self):
        entries = [DirectoryEntry.placeholder(user("a", "Bob Builder")), DirectoryEntry.placeholder(user("b", "Alice"))]

        assert [e.user.name for e in filter_entries(entries, "BUILD")] == ["Bob Builder"]
        assert len(filter_entries(entries, "")) == 2


class TestSortEntries:
    def test_timestamped_first_then_names(self):
        entries = [
            DirectoryEntry.placeholder(user("z", "zed")),
            DirectoryEntry.from_conversation(conversation("old", minutes=1)),
            DirectoryEntry.placeholder(user("a", "Amy")),
            DirectoryEntry.from_conversation(conversation("new", minutes=9)),
        ]

        ordered = sort_entries(entries)

        assert [e.counterparty_id for e in ordered] == ["new", "old", "a", "z"]

    def test_timestamps_are_non_increasing(self):
        entries = [DirectoryEntry.from_conversation(conversation(f"u{i}", minutes=m)) for i, m in enumerate([3, 7, 1, 7, 0])]

        stamps = [e.last_message_at for e in sort_entries(entries)]

        assert all(a >= b for a, b in zip(stamps, stamps[1:]))


@pytest.fixture()
def repos():
    conversation_repo = AsyncMock()
    user_repo = AsyncMock()
    conversation_repo.list_for_user.return_value = [conversation("s1", unread=2), conversation("t1", role="teacher", minutes=1)]
    user_repo.get_verified_by_role.return_value = [user("s1"), user("s2")]
    return conversation_repo, user_repo


class TestDirectoryService:
    async def test_admin_entries_per_tab(self, repos):
        service = DirectoryService(*repos, me=user("a1", role="admin"))
        await service.refresh_conversations()
        await service.load_role("student")

        assert [e.counterparty_id for e in service.entries("all")] == ["t1", "s1"]
        assert [e.counterparty_id for e in service.entries("student")] == ["s1", "s2"]
        assert [e.counterparty_id for e in service.entries("student", query="s2")] == ["s2"]

    async def test_fetch_failure_keeps_prior_state(self, repos):
        conversation_repo, user_repo = repos
        service = DirectoryService(conversation_repo, user_repo, me=user("a1", role="admin"))
        await service.refresh_conversations()

        conversation_repo.list_for_user.side_effect = ChatApiError("down", status_code=500)
        assert not await service.refresh_conversations()

        assert len(service.conversations) == 2

    async def test_non_admin_sees_the_support_contact(self, repos):
        conversation_repo, user_repo = repos
        user_repo.get_verified_by_role.return_value = [user("a1", "Support", role="admin")]
        service = DirectoryService(conversation_repo, user_repo, me=user("s1"))

        contact = await service.resolve_support_contact()

        assert contact.id == "a1"
        user_repo.get_verified_by_role.assert_awaited_with("admin")
        assert [e.counterparty_id for e in service.entries()] == ["a1"]

    async def test_no_support_contact_yields_empty_list(self, repos):
        conversation_repo, user_repo = repos
        user_repo.get_verified_by_role.return_value = []
        service = DirectoryService(conversation_repo, user_repo, me=user("s1"))

        assert await service.resolve_support_contact() is None
        assert service.entries() == []

    async def test_course_scope_uses_roster(self, repos):
        conversation_repo, user_repo = repos
        conversation_repo.get_teacher_courses.return_value = [
            CourseRoster.model_validate({"_id": "c1", "title": "Py", "students": [{"_id": "s1", "name": "Bob", "unreadCount": 1}]}),
            CourseRoster.model_validate({"_id": "c2", "title": "Go", "students": [{"_id": "s7", "name": "Zed"}]}),
        ]
        service = DirectoryService(conversation_repo, user_repo, me=user("t1", role="teacher"), course_id="c1")

        assert await service.refresh_roster()

        conversation_repo.get_student_courses.assert_not_awaited()
        entries = service.entries()
        assert [e.counterparty_id for e in entries] == ["s1"]
        assert entries[0].unread_count == 1
        assert service.lookup("s7").name == "Zed"

    async def test_student_roster(self, repos):
        conversation_repo, user_repo = repos
        conversation_repo.get_student_courses.return_value = []
        service = DirectoryService(conversation_repo, user_repo, me=user("s1"), course_id="c1")

        await service.refresh_roster()

        conversation_repo.get_student_courses.assert_awaited_once()

    async def test_search_reuses_known_entries(self, repos):
        conversation_repo, user_repo = repos
        user_repo.search.return_value = [user("s1"), user("s5", "Eve")]
        service = DirectoryService(conversation_repo, user_repo, me=user("a1", role="admin"))
        await service.refresh_conversations()

        results = await service.search("example.com")

        by_id = {e.counterparty_id: e for e in results}
        assert by_id["s1"].unread_count == 2
        assert not by_id["s5"].has_conversation

    async def test_blank_search_does_not_hit_the_api(self, repos):
        conversation_repo, user_repo = repos
        service = DirectoryService(conversation_repo, user_repo, me=user("a1", role="admin"))

        assert await service.search("   ") == []
        user_repo.search.assert_not_awaited()

    async def test_lookup_and_reset(self, repos):
        service = DirectoryService(*repos, me=user("a1", role="admin"))
        await service.refresh_conversations()
        await service.load_role("student")

        assert service.lookup("t1").role == "teacher"
        assert service.lookup("s2").name == "S2"
        assert service.lookup("nope") is None
        assert service.lookup({"_id": " s2 "}).name == "S2"
        assert service.lookup(None) is None

        service.reset()
        assert service.lookup("t1") is None
