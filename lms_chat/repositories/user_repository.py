from typing import Any, Dict, List, Optional

from loguru import logger
from pydantic import ValidationError

from lms_chat.models.user import UserDocument
from lms_chat.repositories.base import ApiRepository
from lms_chat.schemas.user import UserRef


class UserRepository(ApiRepository):

    def _users(self, items: Optional[List[UserDocument]]) -> List[UserRef]:
        users: List[UserRef] = []
        for item in items or []:
            try:
                users.append(UserRef.model_validate(item))
            except ValidationError as exc:
                logger.debug("Skipping user without an id: {}", exc)
        return users

    async def get_verified_by_role(self, role: str) -> List[UserRef]:
        body = await self._call("GET", f"/users/role/{role}/verified")
        return self._users(body.get("data"))

    async def search(self, email: str, course_id: Optional[str] = None) -> List[UserRef]:
        """Case-insensitive email search; teachers are limited to *course_id*'s students."""
        params: Dict[str, Any] = {"email": email}
        if course_id:
            params["courseId"] = course_id
        body = await self._call("GET", "/chat/search", params=params)
        return self._users(body.get("data"))
