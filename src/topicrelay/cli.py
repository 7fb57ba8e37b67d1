from __future__ import annotations

from pathlib import Path

import anyio
import typer

from . import __version__
from .config import ConfigError
from .logging import get_logger, setup_logging
from .runtime import run_polling
from .settings import RelaySettings, load_settings

logger = get_logger(__name__)

_CONFIG_PATH_OPTION = typer.Option(
    None,
    "--config",
    help="Path to topicrelay.toml (defaults to ./.topicrelay or ~/.topicrelay).",
)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(__version__)
        raise typer.Exit()


def _load_settings_or_exit(config_path: Path | None) -> tuple[RelaySettings, Path]:
    try:
        return load_settings(config_path)
    except ConfigError as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=1) from exc


def run(
    config_path: Path | None = _CONFIG_PATH_OPTION,
    debug: bool = typer.Option(
        False,
        "--debug/--no-debug",
        help="Log gateway requests and console-formatted events.",
    ),
) -> None:
    """Start the relay with long polling."""
    setup_logging(debug=debug)
    settings, resolved = _load_settings_or_exit(config_path)
    logger.info("cli.config_loaded", config_path=str(resolved))
    try:
        anyio.run(run_polling, settings)
    except KeyboardInterrupt:
        logger.info("cli.shutdown")
        raise typer.Exit(code=130) from None


def check(config_path: Path | None = _CONFIG_PATH_OPTION) -> None:
    """Validate the configuration and print the effective settings."""
    setup_logging(debug=False, cache_logger_on_first_use=False)
    settings, resolved = _load_settings_or_exit(config_path)
    typer.echo(f"config: {resolved}")
    typer.echo(f"staff_chat_id = {settings.staff_chat_id}")
    typer.echo(f"api_base = {settings.api_base}")
    typer.echo(f"store = {settings.store.backend} ({settings.store.path})")


def app_main(
    version: bool = typer.Option(
        False,
        "--version",
        help="Show the version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """Verified support relay between private chats and forum topics."""


def create_app() -> typer.Typer:
    app = typer.Typer(add_completion=False, no_args_is_help=True)
    app.callback()(app_main)
    app.command(name="run")(run)
    app.command(name="check")(check)
    return app


def main() -> None:
    app = create_app()
    app()


if __name__ == "__main__":
    main()
