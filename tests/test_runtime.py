from pathlib import Path

import pytest
from pydantic import SecretStr
from typer.testing import CliRunner

from topicrelay import __version__, cli
from topicrelay.config import ENV_BOT_TOKEN, ENV_STAFF_CHAT_ID
from topicrelay.runtime import open_store, poll_updates
from topicrelay.settings import RelaySettings, StoreSettings
from topicrelay.store import MemoryStore, SqliteStore
from topicrelay.telegram.client import ApiResult
from tests.telegram_fakes import STAFF_CHAT_ID, FakeBot


@pytest.mark.anyio
async def test_poll_updates_advances_offset(fake_bot: FakeBot) -> None:
    fake_bot.script(
        "get_updates",
        ApiResult(ok=True, result=[{"update_id": 10}, {"update_id": 11}]),
        ApiResult(ok=False, description="request timeout"),
        ApiResult(ok=True, result=[{"update_id": 12}]),
    )
    pauses: list[float] = []

    async def sleep(seconds: float) -> None:
        pauses.append(seconds)

    seen: list[int] = []
    async for update in poll_updates(fake_bot, sleep=sleep):
        seen.append(update["update_id"])
        if len(seen) == 3:
            break

    assert seen == [10, 11, 12]
    offsets = [call.args[0] for call in fake_bot.called("get_updates")]
    assert offsets == [None, 12, 12]
    assert pauses == [2.0]


def test_open_store_backends(tmp_path: Path) -> None:
    memory = open_store(
        RelaySettings(
            bot_token=SecretStr("1:a"),
            staff_chat_id=STAFF_CHAT_ID,
            store=StoreSettings(backend="memory"),
        )
    )
    assert isinstance(memory, MemoryStore)

    sqlite = open_store(
        RelaySettings(
            bot_token=SecretStr("1:a"),
            staff_chat_id=STAFF_CHAT_ID,
            store=StoreSettings(path=tmp_path / "relay" / "state.db"),
        )
    )
    try:
        assert isinstance(sqlite, SqliteStore)
        assert (tmp_path / "relay" / "state.db").exists()
    finally:
        sqlite.close()


def test_cli_version() -> None:
    result = CliRunner().invoke(cli.create_app(), ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_cli_check(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv(ENV_BOT_TOKEN, raising=False)
    monkeypatch.delenv(ENV_STAFF_CHAT_ID, raising=False)
    config_file = tmp_path / "topicrelay.toml"
    config_file.write_text('bot_token = "1:a"\nstaff_chat_id = -1001\n')

    result = CliRunner().invoke(cli.create_app(), ["check", "--config", str(config_file)])
    assert result.exit_code == 0
    assert "staff_chat_id = -1001" in result.output


def test_cli_reports_config_errors(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        cli.create_app(), ["check", "--config", str(tmp_path / "missing.toml")]
    )
    assert result.exit_code == 1
    assert "Missing config file" in result.output
