import pytest

from tests.telegram_fakes import STAFF_CHAT_ID, FakeBot, Recorder


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def fake_bot() -> FakeBot:
    return FakeBot(staff_chat_id=STAFF_CHAT_ID)


@pytest.fixture
def spawned() -> Recorder:
    return Recorder()
