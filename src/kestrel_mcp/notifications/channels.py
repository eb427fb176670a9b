"""Transports for session status messages."""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Protocol

import httpx

from .format import Keyboard

logger = logging.getLogger(__name__)


class NotificationError(RuntimeError):
    """Raised when a channel rejects a send or edit."""


class NotificationChannel(Protocol):
    async def send(self, text: str, keyboard: Keyboard | None = None) -> str | None:
        ...

    async def edit(self, message_id: str, text: str, keyboard: Keyboard | None = None) -> str | None:
        ...


class LogChannel:
    """Logs messages instead of delivering them. Used when no transport is configured."""

    def __init__(self) -> None:
        self._ids = itertools.count(1)

    async def send(self, text: str, keyboard: Keyboard | None = None) -> str | None:
        message_id = f"log-{next(self._ids)}"
        logger.info("Session notification\n%s", text, extra={"message_id": message_id})
        return message_id

    async def edit(self, message_id: str, text: str, keyboard: Keyboard | None = None) -> str | None:
        logger.info("Session notification (edit)\n%s", text, extra={"message_id": message_id})
        return message_id


class TelegramChannel:
    """Send and edit messages in one Telegram chat through the Bot API."""

    def __init__(
        self,
        token: str,
        chat_id: str,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        base_url: str = "https://api.telegram.org",
    ) -> None:
        self._chat_id = chat_id
        self._endpoint = f"{base_url.rstrip('/')}/bot{token}"
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._client_loop: asyncio.AbstractEventLoop | None = None

    def _http(self) -> httpx.AsyncClient:
        """Return a client bound to the running loop, replacing one left on a closed loop."""

        loop = asyncio.get_running_loop()
        if self._client is None or self._client_loop is not loop:
            self._client = httpx.AsyncClient(timeout=30.0, transport=self._transport)
            self._client_loop = loop
        return self._client

    async def _call(self, method: str, payload: dict[str, Any]) -> dict[str, Any]:
        response = await self._http().post(f"{self._endpoint}/{method}", json=payload)
        try:
            body = response.json()
        except ValueError as exc:
            raise NotificationError(f"Telegram {method} returned HTTP {response.status_code}") from exc
        if not body.get("ok"):
            raise NotificationError(
                f"Telegram {method} failed: {body.get('description') or response.status_code}"
            )
        return body.get("result") or {}

    def _payload(self, text: str, keyboard: Keyboard | None) -> dict[str, Any]:
        payload: dict[str, Any] = {"chat_id": self._chat_id, "text": text}
        if keyboard is not None:
            payload["reply_markup"] = keyboard
        return payload

    async def send(self, text: str, keyboard: Keyboard | None = None) -> str | None:
        result = await self._call("sendMessage", self._payload(text, keyboard))
        message_id = result.get("message_id")
        return str(message_id) if message_id is not None else None

    async def edit(self, message_id: str, text: str, keyboard: Keyboard | None = None) -> str | None:
        """Edit in place; when Telegram refuses, post a fresh message and return its id."""

        payload = self._payload(text, keyboard)
        payload["message_id"] = int(message_id) if message_id.isdigit() else message_id
        try:
            await self._call("editMessageText", payload)
            return message_id
        except NotificationError as exc:
            if "message is not modified" in str(exc):
                return message_id
            logger.info(
                "Edit failed, sending a new message",
                extra={"message_id": message_id, "reason": str(exc)},
            )
        return await self.send(text, keyboard)

    async def aclose(self) -> None:
        client, self._client, self._client_loop = self._client, None, None
        if client is not None:
            await client.aclose()


__all__ = ["LogChannel", "NotificationChannel", "NotificationError", "TelegramChannel"]
