"""
Attempt scheduler and the monitoring loop.

Сервис мониторинга:
- попытки не чаще одной в ``interval_ms``
- не более ``max_per_window`` попыток за окно ``window_ms``
- при исчерпании бюджета ждём смены окна, поддерживая сессию живой
- закрытый браузер перезапускается, прочие ошибки логируются с паузой
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from .booking import BookingAttempt
from .browser import BookingBrowser
from .calendar_nav import CalendarNavigator
from .config import AttemptsConfig, Settings
from .events import EventBus
from .models import AttemptResult, PickupToggleState, WatchState
from .navigation import AppointmentNavigator
from .overlays import OverlayStabilizer
from .pickup import PickupSelector
from .session import LoginTimeout, SessionMonitor
from .utils import Clock, Sleep, is_closed_error

logger = logging.getLogger(__name__)


KeepAliveFunc = Callable[[], Awaitable[None]]


@dataclass
class AttemptBudget:
    """Rolling attempt budget; all timestamps are clock seconds."""

    window_s: float
    max_per_window: int
    interval_s: float
    window_start: float = 0.0
    attempts_in_window: int = 0
    next_attempt_at: float = 0.0

    def roll(self, now: float) -> bool:
        """Start a new window once the current one has elapsed."""
        if now - self.window_start < self.window_s:
            return False
        self.window_start = now
        self.attempts_in_window = 0
        return True

    def exhausted(self) -> bool:
        return self.attempts_in_window >= self.max_per_window

    def seconds_until_rollover(self, now: float) -> float:
        return max(0.0, self.window_start + self.window_s - now)

    def seconds_until_next(self, now: float) -> float:
        return max(0.0, self.next_attempt_at - now)

    def register(self, now: float) -> int:
        self.attempts_in_window += 1
        self.next_attempt_at = now + self.interval_s
        return self.attempts_in_window

    def defer(self, now: float) -> None:
        """Restart the pacing interval (after navigation or a reset)."""
        self.next_attempt_at = now + self.interval_s


class AttemptGovernor:
    """Paces attempts and enforces the per-window budget."""

    def __init__(
        self,
        cfg: AttemptsConfig,
        events: EventBus,
        *,
        keepalive: Optional[KeepAliveFunc] = None,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.cfg = cfg
        self.events = events
        self.keepalive = keepalive
        self._clock = clock
        self._sleep = sleep
        now = clock()
        self.budget = AttemptBudget(
            window_s=cfg.window_ms / 1000,
            max_per_window=cfg.max_per_window,
            interval_s=cfg.interval_ms / 1000,
            window_start=now,
            next_attempt_at=now,
        )

    async def acquire(self) -> int:
        """Wait until the next attempt may start and count it; returns its number in the window."""
        while True:
            now = self._clock()
            if self.budget.roll(now):
                self.events.log(
                    "info",
                    f"Attempt window reset (every {round(self.cfg.window_ms / 60_000)}min).",
                )
            if not self.budget.exhausted():
                break
            wait_s = self.budget.seconds_until_rollover(now)
            self.events.status(
                "RATE_LIMIT",
                f"Attempt budget reached ({self.budget.attempts_in_window}/{self.budget.max_per_window}); "
                f"waiting {round(wait_s)}s",
            )
            # Ожидание может быть долгим: поддерживаем сессию
            await self.sleep_with_keepalive(wait_s)

        wait_s = self.budget.seconds_until_next(self._clock())
        if wait_s > 0:
            await self._sleep(wait_s)
        return self.budget.register(self._clock())

    def defer(self) -> None:
        self.budget.defer(self._clock())

    async def sleep_with_keepalive(self, total_s: float) -> None:
        """Sleep in pulses, running the keep-alive check (never a reload) between them."""
        pulse_s = self.cfg.keepalive_pulse_ms / 1000
        deadline = self._clock() + total_s
        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                return
            await self._sleep(min(pulse_s, remaining))
            if self.keepalive is None:
                continue
            try:
                await self.keepalive()
            except Exception as e:  # noqa: BLE001
                if is_closed_error(e):
                    raise
                logger.warning("Keep-alive check failed: %s", e)


@dataclass
class WatchComponents:
    """Everything bound to one live page; rebuilt after a browser restart."""

    stabilizer: OverlayStabilizer
    session: SessionMonitor
    navigator: AppointmentNavigator
    pickup: PickupSelector
    calendar: CalendarNavigator
    attempt: BookingAttempt


@dataclass
class WatchService:
    """High-level monitoring loop for one booking session."""

    settings: Settings
    events: EventBus
    browser: Optional[BookingBrowser] = None
    clock: Clock = time.monotonic
    sleep: Sleep = asyncio.sleep
    _state: WatchState = field(default_factory=WatchState)
    _toggle_state: PickupToggleState = field(default_factory=PickupToggleState)
    _components: Optional[WatchComponents] = None
    _governor: Optional[AttemptGovernor] = None
    _task: Optional[asyncio.Task[None]] = None
    _stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    _restart_pending: bool = False

    def __post_init__(self) -> None:
        if self.browser is None:
            self.browser = BookingBrowser(self.settings.booking, screenshots_dir=self.settings.logging.logs_dir)

    @property
    def is_running(self) -> bool:
        return self._state.is_running

    @property
    def state(self) -> WatchState:
        return self._state

    @property
    def components(self) -> WatchComponents:
        if self._components is None:
            raise RuntimeError("Watch session not opened")
        return self._components

    def build_components(self, page) -> WatchComponents:
        settings = self.settings
        stabilizer = OverlayStabilizer(page, self.events, clock=self.clock)
        session = SessionMonitor(
            page,
            stabilizer,
            self.events,
            booking=settings.booking,
            screenshot=self.browser.screenshot,
            clock=self.clock,
            sleep=self.sleep,
        )
        navigator = AppointmentNavigator(page, stabilizer, session, self.events, booking=settings.booking)
        pickup = PickupSelector(
            page,
            stabilizer,
            self.events,
            target=settings.booking.pickup_point,
            toggle=settings.pickup_toggle,
            state=self._toggle_state,
            clock=self.clock,
        )
        calendar = CalendarNavigator(page, self.events, cfg=settings.calendar)
        attempt = BookingAttempt(
            page,
            stabilizer,
            pickup,
            calendar,
            self.events,
            date_window=settings.booking.date_window,
        )
        self._components = WatchComponents(stabilizer, session, navigator, pickup, calendar, attempt)
        return self._components

    async def _sign_in(self, page) -> None:
        components = self.build_components(page)
        if await components.session.login_required():
            await components.session.login()
        else:
            self.events.status("DASHBOARD", "Saved session is signed in; login skipped")

    async def open(self) -> None:
        """Open the login page and wait for the human to sign in."""
        await self._sign_in(await self.browser.open_login())

    async def _restart(self) -> None:
        self.events.log("error", "Browser window was closed/crashed. Restarting browser...")
        await self._sign_in(await self.browser.restart())

    async def _keepalive(self) -> None:
        c = self.components
        if not await c.session.is_alive():
            await c.session.recover()
        else:
            await c.stabilizer.dismiss_overlays()

    async def _ensure_booking_page(self) -> bool:
        """Navigate to the booking page if needed; True if a navigation happened."""
        c = self.components
        if await c.navigator.is_on_booking_page():
            return False
        self.events.status("NAV", "Not on appointment page; navigating (not counted as an attempt)")
        if not await c.session.is_alive():
            await c.session.recover()
        await c.navigator.go_to_appointment_page(force_from_dashboard=True)
        await c.calendar.align_to_window(self.settings.booking.date_window())
        return True

    async def tick(self) -> Optional[AttemptResult]:
        """One loop iteration; returns None when the iteration was navigation only."""
        governor = self._governor
        if await self._ensure_booking_page():
            # Переход перезапускает интервал между попытками
            governor.defer()
            return None

        n = await governor.acquire()
        self._state.attempts_total += 1
        self._state.last_attempt_at = datetime.now(timezone.utc)
        msg = f"Attempt {n}/{governor.budget.max_per_window} (every {self.settings.attempts.interval_ms}ms)"
        if n == 1 or n % 10 == 0:
            self.events.status("ATTEMPT", msg)
        else:
            self.events.log("info", msg)

        c = self.components
        if not await c.stabilizer.wait_loading_clear(8000):
            await c.stabilizer.stabilize("loading overlay stuck at attempt start")
        if not await c.session.is_alive():
            await c.session.recover()

        result = await c.attempt.run()
        self._state.result = result
        if result is AttemptResult.SUCCESS:
            return result

        self.events.status("LOOP", f"Reset pickup and retry ({result.value})")
        try:
            await c.pickup.reset()
        except Exception as e:  # noqa: BLE001
            if is_closed_error(e):
                raise
            logger.warning("Pickup reset failed: %s", e)
        governor.defer()
        return result

    async def watch(self) -> Optional[AttemptResult]:
        """
        Run attempts until success or stop.

        Наружу выходит только LoginTimeout; закрытый браузер перезапускается
        (неудачный перезапуск повторяется после паузы),
        остальные ошибки логируются с паузой ``error_backoff_ms``.
        """
        self._governor = AttemptGovernor(
            self.settings.attempts,
            self.events,
            keepalive=self._keepalive,
            clock=self.clock,
            sleep=self.sleep,
        )
        self.events.status("RUNNING", "Entering monitoring mode")
        while not self._stop_event.is_set():
            try:
                if self._restart_pending:
                    await self._restart()
                    self._restart_pending = False
                result = await self.tick()
                if result is AttemptResult.SUCCESS:
                    self.events.status("COMPLETED", "Appointment booking flow progressed")
                    return result
                self._state.last_error = None
            except LoginTimeout:
                raise
            except Exception as e:  # noqa: BLE001
                if is_closed_error(e) and not self._restart_pending:
                    self._restart_pending = True
                    continue
                logger.exception("Watcher error: %s", e)
                self._state.last_error = str(e)
                self.events.log("error", str(e))
                await self.sleep(self.settings.attempts.error_backoff_ms / 1000)
        return None

    async def run(self) -> Optional[AttemptResult]:
        """Login, watch, and on success park the browser on the dashboard."""
        self._state.is_running = True
        self._state.last_error = None
        try:
            await self.open()
            result = await self.watch()
            if result is AttemptResult.SUCCESS:
                try:
                    await self.components.navigator.go_to_dashboard()
                except Exception as e:  # noqa: BLE001
                    logger.warning("Failed to return to dashboard: %s", e)
                self.events.status("IDLE", "Success; idling on dashboard")
            return result
        finally:
            self._state.is_running = False

    # region background task (used by the Telegram bot)
    async def _run_task(self) -> None:
        try:
            await self.run()
        except LoginTimeout as e:
            self._state.last_error = str(e)
        except Exception as e:  # noqa: BLE001
            logger.exception("Watch task failed: %s", e)
            self._state.last_error = str(e)
            self.events.status("FATAL", f"Watch task failed: {e}")

    async def start(self) -> None:
        if self._task and not self._task.done():
            logger.info("Watcher already running")
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_task(), name="visa-watch-loop")

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task and not self._task.done():
            try:
                await asyncio.wait_for(self._task, timeout=30)
            except asyncio.TimeoutError:
                logger.warning("Watch task did not stop within timeout; cancelling")
                self._task.cancel()
        self._task = None
        self._state.is_running = False
        await self.browser.close()
        self.events.status("STOPPED", "Watcher stopped")

    # endregion


__all__ = [
    "AttemptBudget",
    "AttemptGovernor",
    "KeepAliveFunc",
    "WatchComponents",
    "WatchService",
]
