from typing import Literal, Optional, TypedDict, Union

from lms_chat.models.user import UserDocument


class MessageDocument(TypedDict, total=False):
    _id: str
    # sender/recipient arrive either as a bare id or populated with name/role
    sender: Union[str, UserDocument]
    recipient: Union[str, UserDocument]
    senderId: str
    recipientId: str
    senderName: Optional[str]
    text: str
    # null = admin chat, set = course chat
    course: Optional[str]
    courseId: Optional[str]
    isRead: bool
    createdAt: str
    # client ack
    clientMessageId: Optional[str]


EventType = Literal["new_message", "new_global_message", "join_chat"]


class BusEnvelope(TypedDict, total=False):
    type: EventType
    data: dict
