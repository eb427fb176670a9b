"""One live, edited-in-place status message per session."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict

from ..background import BackgroundTasks
from .channels import NotificationChannel
from .format import Keyboard

logger = logging.getLogger(__name__)


class NotificationBridge:
    """Keep each session's status message current on a notification channel.

    Delivery is best effort: :meth:`update` never raises, and :meth:`notify`
    returns immediately. Updates for one session are applied in call order.
    """

    def __init__(self, channel: NotificationChannel, *, tasks: BackgroundTasks | None = None) -> None:
        self._channel = channel
        self._tasks = tasks or BackgroundTasks()
        self._message_ids: dict[str, str] = {}
        self._sessions_by_message: dict[str, str] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def message_id_for(self, session_id: str) -> str | None:
        return self._message_ids.get(session_id)

    def session_for_message(self, message_id: str) -> str | None:
        """Resolve a replied-to message back to its session."""

        return self._sessions_by_message.get(str(message_id))

    def _remember(self, session_id: str, message_id: str) -> None:
        previous = self._message_ids.get(session_id)
        if previous is not None and previous != message_id:
            self._sessions_by_message.pop(previous, None)
        self._message_ids[session_id] = message_id
        self._sessions_by_message[message_id] = session_id

    async def update(self, session_id: str, text: str, keyboard: Keyboard | None = None) -> None:
        async with self._locks[session_id]:
            try:
                existing = self._message_ids.get(session_id)
                if existing is not None:
                    new_id = await self._channel.edit(existing, text, keyboard)
                    if new_id and new_id != existing:
                        self._remember(session_id, new_id)
                else:
                    new_id = await self._channel.send(text, keyboard)
                    if new_id:
                        self._remember(session_id, new_id)
            except Exception:
                logger.warning(
                    "Notification update failed",
                    extra={"session_id": session_id},
                    exc_info=True,
                )

    def notify(self, session_id: str, text: str, keyboard: Keyboard | None = None) -> None:
        self._tasks.spawn(
            self.update(session_id, text, keyboard),
            description="notification",
            session_id=session_id,
        )

    async def drain(self) -> None:
        await self._tasks.drain()


__all__ = ["NotificationBridge"]
