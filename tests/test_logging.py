import json
import logging

import pytest
import structlog

from topicrelay.logging import redact_token, redact_token_processor, setup_logging


def test_redacts_tokens_in_strings() -> None:
    url = "https://api.telegram.org/bot123456789:ABCdefGHI_jkl/sendMessage"
    assert "123456789" not in redact_token(url)
    assert "bot[REDACTED]" in redact_token(url)
    assert redact_token("Token is 123456789:ABCDEFGHIJ_klmnop") == "Token is [REDACTED_TOKEN]"


def test_processor_redacts_every_string_field() -> None:
    event = {
        "event": "telegram.network_error",
        "error": "POST https://api.telegram.org/bot1:abcdefghijklmn/getUpdates",
        "status": 500,
    }
    out = redact_token_processor(None, "error", event)
    assert "abcdefghijklmn" not in out["error"]
    assert out["status"] == 500


def test_setup_logging_renders_json(capsys: pytest.CaptureFixture[str]) -> None:
    setup_logging(debug=False, cache_logger_on_first_use=False)
    try:
        structlog.get_logger("topicrelay.test").info(
            "relay.sample", token="42:abcdefghijklmnop", user_id=7
        )
        line = capsys.readouterr().out.strip().splitlines()[-1]
        payload = json.loads(line)
        assert payload["event"] == "relay.sample"
        assert payload["user_id"] == 7
        assert payload["level"] == "info"
        assert "abcdefghijklmnop" not in payload["token"]
        assert logging.getLogger("httpx").level == logging.WARNING
    finally:
        structlog.reset_defaults()
        logging.basicConfig(force=True)
