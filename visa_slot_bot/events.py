"""
Event channel from the watcher core to its host process.

Ядро не знает, как хост хранит статусы: оно отправляет события
``(kind, payload)`` в ограниченную очередь, а ``pump()`` раздаёт их
подписчикам (stdout для супервизора, Telegram-бот и т.п.).
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import Any, Awaitable, Callable, List

from .models import WatchEvent

logger = logging.getLogger(__name__)


EventSink = Callable[[WatchEvent], Awaitable[None]]

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class EventBus:
    """Bounded, non-blocking status/log channel."""

    def __init__(self, session_id: str = "", maxsize: int = 1000) -> None:
        self.session_id = session_id
        self._queue: asyncio.Queue[WatchEvent] = asyncio.Queue(maxsize=maxsize)
        self._sinks: List[EventSink] = []
        self.last_status: str | None = None

    def subscribe(self, sink: EventSink) -> None:
        self._sinks.append(sink)

    def status(self, state: str, message: str = "", **extra: Any) -> None:
        self.last_status = state
        logger.info("STATUS %s - %s", state, message)
        self._put(
            WatchEvent(
                kind="status",
                session_id=self.session_id,
                state=state,
                message=message,
                extra={k: str(v) for k, v in extra.items()},
            )
        )

    def log(self, level: str, message: str) -> None:
        logger.log(_LEVELS.get(level, logging.INFO), message)
        self._put(
            WatchEvent(kind="log", session_id=self.session_id, level=level, message=message)
        )

    def _put(self, event: WatchEvent) -> None:
        if self._queue.full():
            # Старые события менее ценны, чем свежие
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
        self._queue.put_nowait(event)

    def drain(self) -> List[WatchEvent]:
        events: List[WatchEvent] = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                return events

    async def _deliver(self, event: WatchEvent) -> None:
        for sink in self._sinks:
            try:
                await sink(event)
            except Exception as e:  # noqa: BLE001
                logger.warning("Event sink %r failed: %s", sink, e)

    async def pump(self) -> None:
        """Forward queued events to sinks until cancelled."""
        while True:
            event = await self._queue.get()
            await self._deliver(event)

    async def flush(self) -> None:
        for event in self.drain():
            await self._deliver(event)


async def stdout_sink(event: WatchEvent) -> None:
    """One JSON object per line, read by the supervising process."""
    sys.stdout.write(json.dumps(event.to_wire(), ensure_ascii=False) + "\n")
    sys.stdout.flush()


__all__ = ["EventBus", "EventSink", "stdout_sink"]
