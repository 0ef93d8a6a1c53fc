from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import httpx
from loguru import logger

from lms_chat.config import Settings, get_settings
from lms_chat.logging_config import setup_logging
from lms_chat.schemas.user import UserRef
from lms_chat.services.chat_widget import ChatWidget
from lms_chat.utils.realtime_bus import Bus, create_bus


def build_http_client(settings: Settings) -> httpx.AsyncClient:
    headers = {"Accept": "application/json"}
    if settings.api_token:
        headers["Authorization"] = f"Bearer {settings.api_token}"
    return httpx.AsyncClient(
        base_url=settings.api_base_url,
        headers=headers,
        timeout=settings.request_timeout_seconds,
    )


@asynccontextmanager
async def chat_session(
    me: Any,
    settings: Optional[Settings] = None,
    *,
    client: Optional[httpx.AsyncClient] = None,
    bus: Optional[Bus] = None,
    course_id: Optional[str] = None,
    configure_logging: bool = True,
) -> AsyncIterator[ChatWidget]:
    """Run one chat widget for the signed-in user *me*.

    The http client and the bus are created here unless passed in; whatever
    is created here is also closed here, after the widget.
    """
    settings = settings or get_settings()
    if configure_logging:
        setup_logging(level=settings.log_level, json=settings.log_json)
    user = me if isinstance(me, UserRef) else UserRef.model_validate(me)

    owns_client = client is None
    owns_bus = bus is None
    if client is None:
        client = build_http_client(settings)
    if bus is None:
        bus = create_bus(settings.redis_url)

    widget = ChatWidget(user, client, bus, settings, course_id=course_id)
    logger.info("Chat session started for {} ({})", user.id, user.role or "unknown role")
    try:
        await widget.start()
        yield widget
    finally:
        await widget.close()
        if owns_bus:
            await bus.aclose()
        if owns_client:
            await client.aclose()
        logger.info("Chat session closed for {}", user.id)
