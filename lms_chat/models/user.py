from typing import Optional, TypedDict


class UserDocument(TypedDict, total=False):

    _id: str
    name: str
    role: str
    email: Optional[str]
    photo: Optional[str]
