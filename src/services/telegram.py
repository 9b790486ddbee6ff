"""Telegram Bot API Client - Outbound messages and update polling.

Every failure is translated into the engine's error taxonomy:

- 429 (honoring ``retry_after``), 5xx, timeouts, connection errors ->
  TransientError
- 400, 401, 403, 404 and any other 4xx -> TerminalError
"""

from typing import Any, Protocol

import httpx

from src.config.settings import get_settings
from src.contracts.updates import OutboundRequest
from src.core.errors import TerminalError, TransientError
from src.utils.logger import get_logger

logger = get_logger(__name__)

TERMINAL_REASONS: dict[int, str] = {
    400: "bad_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
}


class OutboundTransport(Protocol):
    """Anything able to deliver an OutboundRequest."""

    async def send(self, request: OutboundRequest) -> dict[str, Any]: ...


def classify_response(status_code: int, body: Any) -> dict[str, Any]:
    """Return the Bot API result or raise a classified error.

    Args:
        status_code: HTTP status code.
        body: Decoded JSON body (None if it wasn't JSON).

    Returns:
        The ``result`` field of a successful response.

    Raises:
        TransientError: Rate limit or server side failure.
        TerminalError: Request rejected for good.
    """
    if isinstance(body, dict) and body.get("ok") is True:
        result = body.get("result")
        return result if result is not None else {}

    code = status_code
    description = f"HTTP {status_code}"
    retry_after = None
    if isinstance(body, dict):
        code = int(body.get("error_code") or status_code)
        description = body.get("description") or description
        retry_after = (body.get("parameters") or {}).get("retry_after")

    if code == 429:
        raise TransientError(f"rate limited: {description}", retry_after=retry_after)
    if code >= 500 or code < 400:
        raise TransientError(f"telegram error {code}: {description}")
    raise TerminalError(
        f"telegram rejected request ({code}): {description}",
        reason=TERMINAL_REASONS.get(code, f"telegram_{code}"),
    )


class TelegramClient:
    """Client for the Telegram Bot API.

    Handles sending messages and fetching updates.
    """

    def __init__(
        self,
        bot_token: str | None = None,
        base_url: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the Bot API client.

        Args:
            bot_token: Bot token from BotFather.
            base_url: Bot API base URL.
            timeout: Request timeout in seconds.
            transport: Custom httpx transport (tests).
        """
        settings = get_settings()
        self.bot_token = bot_token or settings.telegram_bot_token
        self.base_url = (base_url or settings.telegram_api_url).rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client.

        Returns:
            Async HTTP client.
        """
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=f"{self.base_url}/bot{self.bot_token}",
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def _call(
        self, method: str, payload: dict[str, Any], timeout: float | None = None
    ) -> Any:
        client = await self._get_client()
        try:
            response = await client.post(
                f"/{method}",
                json=payload,
                timeout=timeout if timeout is not None else self.timeout,
            )
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise TransientError(f"{method}: {type(e).__name__}: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = None
        return classify_response(response.status_code, body)

    async def send_message(self, chat_id: int, text: str) -> dict[str, Any]:
        """Send text message.

        Args:
            chat_id: Target chat.
            text: Message text.

        Returns:
            The sent Message object.
        """
        logger.info("telegram_send_message", chat_id=chat_id, text_length=len(text))

        try:
            result = await self._call("sendMessage", {"chat_id": chat_id, "text": text})
        except (TransientError, TerminalError) as e:
            logger.warning(
                "telegram_send_error",
                chat_id=chat_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

        logger.info(
            "telegram_message_sent",
            chat_id=chat_id,
            message_id=result.get("message_id"),
        )
        return result

    async def send(self, request: OutboundRequest) -> dict[str, Any]:
        """Deliver an outbound request built by the dispatcher."""
        return await self.send_message(
            request.chat_id, str(request.message_payload["text"])
        )

    async def get_updates(
        self, offset: int | None = None, timeout: int = 30
    ) -> list[dict[str, Any]]:
        """Long-poll for new updates.

        Args:
            offset: First update id to return.
            timeout: Long polling timeout in seconds.

        Returns:
            Raw Update objects.
        """
        payload: dict[str, Any] = {"timeout": timeout, "allowed_updates": ["message"]}
        if offset is not None:
            payload["offset"] = offset
        return await self._call("getUpdates", payload, timeout=timeout + self.timeout)

    async def get_me(self) -> dict[str, Any]:
        return await self._call("getMe", {})

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
