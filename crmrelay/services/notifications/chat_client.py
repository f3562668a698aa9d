from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from typing import Any, Protocol

import httpx

from crmrelay.core.config import get_settings
from crmrelay.core.errors import ChatDeliveryError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChatAck:
    status_code: int
    latency_ms: int
    message_name: str | None = None


class ChatSink(Protocol):
    async def post(self, address: str, message: dict[str, Any]) -> ChatAck: ...


class GoogleChatClient:
    # Post rendered messages to incoming-webhook URLs; non-2xx replies raise with the status code.
    def __init__(
        self,
        *,
        timeout_ms: int | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        timeout_s = max(0.2, (timeout_ms or get_settings().chat_send_timeout_ms) / 1000.0)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_s)

    async def post(self, address: str, message: dict[str, Any]) -> ChatAck:
        started = time.monotonic()
        try:
            response = await self._client.post(
                address,
                json=message,
                headers={"Content-Type": "application/json; charset=UTF-8"},
            )
        except httpx.TimeoutException as exc:
            raise ChatDeliveryError(f"chat endpoint timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise ChatDeliveryError(f"chat endpoint unreachable: {exc}") from exc
        latency_ms = int((time.monotonic() - started) * 1000)
        if response.status_code >= 400:
            raise ChatDeliveryError(
                f"chat endpoint rejected message ({response.status_code}): {response.text[:200]}",
                status_code=int(response.status_code),
            )
        name = None
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            name = body.get("name")
        return ChatAck(status_code=int(response.status_code), latency_ms=latency_ms, message_name=name)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def is_retryable_send_error(exc: Exception) -> bool:
    # Transport failures and 5xx/429 replies are worth one more try; other 4xx are permanent.
    if isinstance(exc, ChatDeliveryError):
        if exc.status_code is None:
            return True
        return exc.status_code >= 500 or exc.status_code == 429
    return isinstance(exc, (TimeoutError, OSError))
