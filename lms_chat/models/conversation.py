from typing import List, Optional, TypedDict

from lms_chat.models.user import UserDocument


class ConversationDocument(TypedDict, total=False):
    # _id is the counterparty's user id
    _id: str
    lastMessage: Optional[str]
    lastMessageAt: Optional[str]
    unreadCount: int
    user: UserDocument


class RosterMemberDocument(UserDocument, total=False):
    unreadCount: int


class CourseRosterDocument(TypedDict, total=False):
    _id: str
    title: str
    # teachers see "students", students/interns see "teachers"
    students: List[RosterMemberDocument]
    teachers: List[RosterMemberDocument]
    totalUnread: int
