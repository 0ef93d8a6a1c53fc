from typing import List, Optional

from loguru import logger
from pydantic import ValidationError

from lms_chat.models.conversation import ConversationDocument, CourseRosterDocument
from lms_chat.repositories.base import ApiRepository
from lms_chat.schemas.conversation import Conversation, CourseRoster


class ConversationRepository(ApiRepository):

    async def list_for_user(self) -> List[Conversation]:
        """Conversations of the current user, newest first as the server sorts them."""
        body = await self._call("GET", "/chat/conversations")
        docs: Optional[List[ConversationDocument]] = body.get("data")
        conversations: List[Conversation] = []
        for item in docs or []:
            try:
                conversations.append(Conversation.model_validate(item))
            except ValidationError as exc:
                logger.debug("Skipping conversation without a counterparty: {}", exc)
        return conversations

    async def get_unread_count(self) -> int:
        body = await self._call("GET", "/chat/unread")
        return int(body.get("count") or 0)

    async def get_teacher_courses(self) -> List[CourseRoster]:
        """Courses taught by the current user with their enrolled students."""
        return await self._rosters("/chat/teacher/courses")

    async def get_student_courses(self) -> List[CourseRoster]:
        """Courses the current user is enrolled in with their teachers."""
        return await self._rosters("/chat/student/courses")

    async def _rosters(self, path: str) -> List[CourseRoster]:
        body = await self._call("GET", path)
        docs: Optional[List[CourseRosterDocument]] = body.get("data")
        rosters: List[CourseRoster] = []
        for item in docs or []:
            try:
                rosters.append(CourseRoster.model_validate(item))
            except ValidationError as exc:
                logger.debug("Skipping malformed course roster: {}", exc)
        return rosters
