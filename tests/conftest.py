"""Shared fixtures: an in-memory LMS served over httpx, a fake bus, fast settings."""

import httpx
import pytest

from fake_backend import FakeBus, FakeLms, create_app
from lms_chat.config import Settings
from lms_chat.repositories.conversation_repository import ConversationRepository
from lms_chat.repositories.message_repository import MessageRepository
from lms_chat.repositories.user_repository import UserRepository
from lms_chat.schemas.user import UserRef
from lms_chat.services.chat_widget import ChatWidget

BASE_URL = "http://lms.test/api"


def pytest_configure(config):
    """Set pytest-asyncio mode to auto so async test functions work without markers."""
    config.option.asyncio_mode = "auto"


@pytest.fixture()
def store() -> FakeLms:
    lms = FakeLms()
    lms.add_user("a1", "Alice Admin", "admin")
    lms.add_user("s1", "Bob Student", "student")
    lms.add_user("s2", "Carol Student", "student")
    lms.add_user("s3", "Unverified Student", "student", verified=False)
    lms.add_user("t1", "Dana Teacher", "teacher")
    lms.add_user("i1", "Evan Intern", "intern")
    lms.add_user("j1", "Fay Freelancer", "job")
    lms.add_course("c1", "Python 101", teachers=["t1"], students=["s1", "s2"])
    return lms


@pytest.fixture()
def bus(store: FakeLms) -> FakeBus:
    fake = FakeBus()
    store.bus = fake
    return fake


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        _env_file=None,
        api_base_url=BASE_URL,
        notification_ttl_seconds=0.05,
        refresh_debounce_seconds=0.01,
        presence_heartbeat_seconds=10,
    )


@pytest.fixture()
async def make_client(store: FakeLms):
    app = create_app(store)
    clients = []

    def factory(user_id: str) -> httpx.AsyncClient:
        client = httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app),
            base_url=BASE_URL,
            headers={"Authorization": f"Bearer {user_id}"},
        )
        clients.append(client)
        return client

    yield factory
    for client in clients:
        await client.aclose()


@pytest.fixture()
def admin_client(make_client) -> httpx.AsyncClient:
    return make_client("a1")


@pytest.fixture()
def message_repo(admin_client) -> MessageRepository:
    return MessageRepository(admin_client)


@pytest.fixture()
def conversation_repo(admin_client) -> ConversationRepository:
    return ConversationRepository(admin_client)


@pytest.fixture()
def user_repo(admin_client) -> UserRepository:
    return UserRepository(admin_client)


@pytest.fixture()
async def make_widget(store: FakeLms, bus: FakeBus, settings: Settings, make_client):
    widgets = []

    async def factory(user_id: str, course_id=None, start: bool = True) -> ChatWidget:
        me = UserRef.model_validate(store.users[user_id])
        widget = ChatWidget(me, make_client(user_id), bus, settings, course_id=course_id)
        widgets.append(widget)
        if start:
            await widget.start()
        return widget

    yield factory
    for widget in widgets:
        await widget.close()
