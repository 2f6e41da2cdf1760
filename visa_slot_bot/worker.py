"""
Worker process entrypoint: one booking session per process.

Процесс-воркер запускается внешним супервизором. Статусы и логи идут
в stdout построчно в JSON; SIGTERM закрывает браузер и завершает
процесс с кодом 0, фатальные ошибки старта дают код 1.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys

from pydantic import ValidationError

from .config import Settings, get_settings
from .events import EventBus, stdout_sink
from .models import AttemptResult, WatchEvent
from .scheduler import WatchService
from .session import LoginTimeout
from .utils import setup_logging

logger = logging.getLogger(__name__)


async def _watch(service: WatchService, stop: asyncio.Event) -> int:
    try:
        result = await service.run()
    except LoginTimeout as e:
        # BLOCKED уже отправлен монитором сессии
        logger.error("Login not completed: %s", e)
        return 1
    except Exception as e:  # noqa: BLE001
        logger.exception("Worker failed: %s", e)
        service.events.status("FATAL", f"Unhandled error: {e}")
        return 1

    if result is AttemptResult.SUCCESS:
        logger.info("Bot idle on dashboard. Browser remains open.")
        await stop.wait()
    return 0


def _install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows: обработчики сигналов в цикле событий недоступны
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop.set))


async def run_worker(settings: Settings, service: WatchService | None = None) -> int:
    events = service.events if service else EventBus(settings.booking.session_id)
    events.subscribe(stdout_sink)
    pump = asyncio.create_task(events.pump(), name="event-pump")

    service = service or WatchService(settings, events)
    stop = asyncio.Event()
    _install_signal_handlers(stop)

    runner = asyncio.create_task(_watch(service, stop), name="visa-worker")
    stopper = asyncio.create_task(stop.wait(), name="stop-signal")
    done, _ = await asyncio.wait({runner, stopper}, return_when=asyncio.FIRST_COMPLETED)

    code = 0
    if stopper in done:
        events.status("STOPPED", "Received SIGTERM; shutting down")
        runner.cancel()
        await asyncio.gather(runner, return_exceptions=True)
    else:
        stopper.cancel()
        code = runner.result()

    await service.browser.close()
    pump.cancel()
    await asyncio.gather(pump, return_exceptions=True)
    await events.flush()
    return code


def _report_fatal(message: str) -> None:
    event = WatchEvent(
        kind="status",
        session_id=os.environ.get("VISA_SESSION_ID", ""),
        state="FATAL",
        message=message,
    )
    asyncio.run(stdout_sink(event))


def main() -> None:
    """Entry point for the ``visa-slot-worker`` command."""
    try:
        settings = get_settings()
    except (ValidationError, ValueError) as e:
        setup_logging()
        logger.error("Invalid configuration: %s", e)
        _report_fatal(f"Invalid configuration: {e}")
        sys.exit(1)

    log_name = f"worker_{settings.booking.session_id}" if settings.booking.session_id else "visa_slot_bot"
    setup_logging(settings.logging, log_name=log_name)
    sys.exit(asyncio.run(run_worker(settings)))


if __name__ == "__main__":
    main()
