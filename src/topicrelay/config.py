from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any

ENV_BOT_TOKEN = "TOPICRELAY_BOT_TOKEN"
ENV_STAFF_CHAT_ID = "TOPICRELAY_STAFF_CHAT_ID"

CONFIG_DIR_NAME = ".topicrelay"
CONFIG_FILE_NAME = "topicrelay.toml"

SUPERGROUP_PREFIX = "-100"


class ConfigError(RuntimeError):
    pass


def config_search_path() -> list[Path]:
    """Project-local config first, then the one in the home directory."""
    local = Path.cwd() / CONFIG_DIR_NAME / CONFIG_FILE_NAME
    home = Path.home() / CONFIG_DIR_NAME / CONFIG_FILE_NAME
    return [local] if local == home else [local, home]


def _parse_file(cfg_path: Path) -> dict[str, Any]:
    try:
        with cfg_path.open("rb") as fh:
            return tomllib.load(fh)
    except FileNotFoundError:
        raise ConfigError(f"Missing config file {cfg_path}.") from None
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Malformed TOML in {cfg_path}: {exc}") from None
    except OSError as exc:
        raise ConfigError(f"Cannot read config file {cfg_path}: {exc}") from exc


def load_config(path: str | Path | None = None) -> tuple[dict[str, Any], Path]:
    if path:
        cfg_path = Path(path).expanduser()
        return _parse_file(cfg_path), cfg_path

    searched = config_search_path()
    found = next((p for p in searched if p.is_file()), None)
    if found is None:
        locations = ", ".join(str(p) for p in searched)
        raise ConfigError(f"Missing topicrelay config; looked in {locations}.")
    return _parse_file(found), found


def _from_env(name: str) -> str | None:
    value = os.environ.get(name, "").strip()
    return value or None


def _missing(what: str, env_name: str, key: str, config_path: Path) -> ConfigError:
    return ConfigError(
        f"Missing {what}. Set {env_name} or add `{key}` to {config_path}."
    )


def get_bot_token(config: dict[str, Any], config_path: Path) -> str:
    """Resolve the bot token; ``TOPICRELAY_BOT_TOKEN`` wins over the file."""
    env_token = _from_env(ENV_BOT_TOKEN)
    if env_token is not None:
        return env_token
    if "bot_token" not in config:
        raise _missing("bot token", ENV_BOT_TOKEN, "bot_token", config_path)
    token = config["bot_token"]
    if isinstance(token, str) and token.strip():
        return token.strip()
    raise ConfigError(
        f"Invalid `bot_token` in {config_path}; expected a non-empty string."
    )


def get_staff_chat_id(config: dict[str, Any], config_path: Path) -> int:
    """Resolve the staff forum id; ``TOPICRELAY_STAFF_CHAT_ID`` wins over the file."""
    env_value = _from_env(ENV_STAFF_CHAT_ID)
    if env_value is not None:
        try:
            chat_id = int(env_value)
        except ValueError:
            raise ConfigError(
                f"Invalid {ENV_STAFF_CHAT_ID}; expected an integer."
            ) from None
    elif "staff_chat_id" not in config:
        raise _missing("staff chat ID", ENV_STAFF_CHAT_ID, "staff_chat_id", config_path)
    else:
        chat_id = config["staff_chat_id"]
        # bool is an int subclass
        if type(chat_id) is not int:
            raise ConfigError(
                f"Invalid `staff_chat_id` in {config_path}; expected an integer."
            )

    # forum topics only exist in supergroups
    if not str(chat_id).startswith(SUPERGROUP_PREFIX):
        raise ConfigError(
            f"Invalid staff chat ID {chat_id}; supergroup ids start with {SUPERGROUP_PREFIX}."
        )
    return chat_id
