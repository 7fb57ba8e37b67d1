from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from ..logging import get_logger

logger = get_logger(__name__)

TIMEOUT_DESCRIPTION = "request timeout"


@dataclass(frozen=True, slots=True)
class ApiResult:
    ok: bool
    result: Any = None
    description: str | None = None
    error_code: int | None = None
    retry_after: float | None = None

    @property
    def message_id(self) -> int | None:
        if isinstance(self.result, dict):
            value = self.result.get("message_id")
            if isinstance(value, int):
                return value
        return None

    @property
    def thread_id(self) -> int | None:
        if isinstance(self.result, dict):
            value = self.result.get("message_thread_id")
            if isinstance(value, int):
                return value
        return None


class BotClient(Protocol):
    async def close(self) -> None: ...

    async def get_updates(
        self,
        offset: int | None,
        timeout_s: int = 50,
        allowed_updates: list[str] | None = None,
    ) -> ApiResult: ...

    async def send_message(
        self,
        chat_id: int,
        text: str,
        *,
        thread_id: int | None = None,
        reply_to_message_id: int | None = None,
        parse_mode: str | None = None,
        reply_markup: dict[str, Any] | None = None,
    ) -> ApiResult: ...

    async def forward_message(
        self,
        chat_id: int,
        from_chat_id: int,
        message_id: int,
        *,
        thread_id: int | None = None,
    ) -> ApiResult: ...

    async def copy_message(
        self,
        chat_id: int,
        from_chat_id: int,
        message_id: int,
        *,
        thread_id: int | None = None,
    ) -> ApiResult: ...

    async def send_media_group(
        self,
        chat_id: int,
        media: list[dict[str, Any]],
        *,
        thread_id: int | None = None,
    ) -> ApiResult: ...

    async def create_forum_topic(self, chat_id: int, name: str) -> ApiResult: ...

    async def close_forum_topic(self, chat_id: int, thread_id: int) -> ApiResult: ...

    async def reopen_forum_topic(self, chat_id: int, thread_id: int) -> ApiResult: ...

    async def answer_callback_query(
        self,
        callback_query_id: str,
        text: str | None = None,
        *,
        show_alert: bool = False,
    ) -> ApiResult: ...

    async def edit_message_text(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        *,
        parse_mode: str | None = None,
    ) -> ApiResult: ...

    async def delete_message(self, chat_id: int, message_id: int) -> ApiResult: ...


_RETRY_AFTER_RE = re.compile(r"retry after (\d+)", re.IGNORECASE)


def _retry_after_from_payload(payload: dict[str, Any]) -> float | None:
    """Flood control hint, from `parameters` or else from the description text."""
    params = payload.get("parameters")
    hint = params.get("retry_after") if isinstance(params, dict) else None
    if isinstance(hint, (int, float)) and not isinstance(hint, bool):
        return float(hint)
    match = _RETRY_AFTER_RE.search(str(payload.get("description") or ""))
    return float(match.group(1)) if match else None


def _result_from_payload(payload: dict[str, Any]) -> ApiResult:
    description = payload.get("description")
    error_code = payload.get("error_code")
    return ApiResult(
        ok=bool(payload.get("ok")),
        result=payload.get("result"),
        description=description if isinstance(description, str) else None,
        error_code=error_code if isinstance(error_code, int) else None,
        retry_after=_retry_after_from_payload(payload),
    )


class TelegramClient:
    def __init__(
        self,
        token: str,
        *,
        api_base: str = "https://api.telegram.org",
        timeout_s: float = 10,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not token:
            raise ValueError("bot token is empty")
        self._base = f"{api_base.rstrip('/')}/bot{token}"
        self._client = client or httpx.AsyncClient(timeout=timeout_s)
        self._owns_client = client is None

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _post(
        self, method: str, json_data: dict[str, Any], *, timeout_s: float | None = None
    ) -> ApiResult:
        logger.debug("telegram.request", method=method, payload=json_data)
        try:
            resp = await self._client.post(
                f"{self._base}/{method}",
                json=json_data,
                timeout=httpx.USE_CLIENT_DEFAULT if timeout_s is None else timeout_s,
            )
        except httpx.TimeoutException as e:
            logger.warning(
                "telegram.timeout",
                method=method,
                error_type=e.__class__.__name__,
            )
            return ApiResult(ok=False, description=TIMEOUT_DESCRIPTION)
        except httpx.HTTPError as e:
            logger.error(
                "telegram.network_error",
                method=method,
                error=str(e),
                error_type=e.__class__.__name__,
            )
            return ApiResult(ok=False, description=f"network error: {e.__class__.__name__}")

        try:
            payload = resp.json()
        except ValueError as e:
            logger.error(
                "telegram.bad_response",
                method=method,
                status=resp.status_code,
                error=str(e),
                body=resp.text,
            )
            return ApiResult(
                ok=False,
                description=f"bad response (HTTP {resp.status_code})",
                error_code=resp.status_code,
            )

        if not isinstance(payload, dict):
            logger.error("telegram.invalid_payload", method=method, payload=payload)
            return ApiResult(
                ok=False, description="invalid payload", error_code=resp.status_code
            )

        result = _result_from_payload(payload)
        if result.ok:
            logger.debug("telegram.response", method=method, payload=payload)
            return result

        if result.retry_after is not None:
            logger.info(
                "telegram.rate_limited",
                method=method,
                status=resp.status_code,
                retry_after=result.retry_after,
            )
        elif resp.status_code >= 500:
            logger.warning(
                "telegram.server_error",
                method=method,
                status=resp.status_code,
                description=result.description,
            )
        else:
            logger.info(
                "telegram.api_error",
                method=method,
                status=resp.status_code,
                description=result.description,
            )
        return result

    async def get_updates(
        self,
        offset: int | None,
        timeout_s: int = 50,
        allowed_updates: list[str] | None = None,
    ) -> ApiResult:
        params: dict[str, Any] = {"timeout": timeout_s}
        if offset is not None:
            params["offset"] = offset
        if allowed_updates is not None:
            params["allowed_updates"] = allowed_updates
        # the long poll outlives the default request timeout
        return await self._post("getUpdates", params, timeout_s=timeout_s + 10)

    async def send_message(
        self,
        chat_id: int,
        text: str,
        *,
        thread_id: int | None = None,
        reply_to_message_id: int | None = None,
        parse_mode: str | None = None,
        reply_markup: dict[str, Any] | None = None,
    ) -> ApiResult:
        params: dict[str, Any] = {"chat_id": chat_id, "text": text}
        if thread_id is not None:
            params["message_thread_id"] = thread_id
        if reply_to_message_id is not None:
            params["reply_to_message_id"] = reply_to_message_id
        if parse_mode is not None:
            params["parse_mode"] = parse_mode
        if reply_markup is not None:
            params["reply_markup"] = reply_markup
        return await self._post("sendMessage", params)

    async def forward_message(
        self,
        chat_id: int,
        from_chat_id: int,
        message_id: int,
        *,
        thread_id: int | None = None,
    ) -> ApiResult:
        params: dict[str, Any] = {
            "chat_id": chat_id,
            "from_chat_id": from_chat_id,
            "message_id": message_id,
        }
        if thread_id is not None:
            params["message_thread_id"] = thread_id
        return await self._post("forwardMessage", params)

    async def copy_message(
        self,
        chat_id: int,
        from_chat_id: int,
        message_id: int,
        *,
        thread_id: int | None = None,
    ) -> ApiResult:
        params: dict[str, Any] = {
            "chat_id": chat_id,
            "from_chat_id": from_chat_id,
            "message_id": message_id,
        }
        if thread_id is not None:
            params["message_thread_id"] = thread_id
        return await self._post("copyMessage", params)

    async def send_media_group(
        self,
        chat_id: int,
        media: list[dict[str, Any]],
        *,
        thread_id: int | None = None,
    ) -> ApiResult:
        params: dict[str, Any] = {"chat_id": chat_id, "media": media}
        if thread_id is not None:
            params["message_thread_id"] = thread_id
        return await self._post("sendMediaGroup", params)

    async def create_forum_topic(self, chat_id: int, name: str) -> ApiResult:
        return await self._post("createForumTopic", {"chat_id": chat_id, "name": name})

    async def close_forum_topic(self, chat_id: int, thread_id: int) -> ApiResult:
        return await self._post(
            "closeForumTopic", {"chat_id": chat_id, "message_thread_id": thread_id}
        )

    async def reopen_forum_topic(self, chat_id: int, thread_id: int) -> ApiResult:
        return await self._post(
            "reopenForumTopic", {"chat_id": chat_id, "message_thread_id": thread_id}
        )

    async def answer_callback_query(
        self,
        callback_query_id: str,
        text: str | None = None,
        *,
        show_alert: bool = False,
    ) -> ApiResult:
        params: dict[str, Any] = {"callback_query_id": callback_query_id}
        if text is not None:
            params["text"] = text
        if show_alert:
            params["show_alert"] = True
        return await self._post("answerCallbackQuery", params)

    async def edit_message_text(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        *,
        parse_mode: str | None = None,
    ) -> ApiResult:
        params: dict[str, Any] = {
            "chat_id": chat_id,
            "message_id": message_id,
            "text": text,
        }
        if parse_mode is not None:
            params["parse_mode"] = parse_mode
        return await self._post("editMessageText", params)

    async def delete_message(self, chat_id: int, message_id: int) -> ApiResult:
        return await self._post(
            "deleteMessage", {"chat_id": chat_id, "message_id": message_id}
        )
