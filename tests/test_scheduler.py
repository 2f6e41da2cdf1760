import asyncio
from pathlib import Path
from typing import List, Optional, Tuple, Union

import pytest
from playwright.async_api import Error as PlaywrightError

from fakes import FakeBrowser, FakeClock, FakePage
from visa_slot_bot.config import AttemptsConfig, load_settings
from visa_slot_bot.events import EventBus
from visa_slot_bot.models import AttemptResult, DateWindow
from visa_slot_bot.scheduler import AttemptBudget, AttemptGovernor, WatchComponents, WatchService
from visa_slot_bot.session import LoginTimeout


def _governor(clock: FakeClock, keepalive=None, **cfg: int) -> AttemptGovernor:
    return AttemptGovernor(
        AttemptsConfig(**cfg),
        EventBus(),
        keepalive=keepalive,
        clock=clock,
        sleep=clock.sleep,
    )


def test_budget_counts_and_rolls_over() -> None:
    budget = AttemptBudget(window_s=60, max_per_window=2, interval_s=2)
    assert budget.register(0) == 1
    assert budget.register(2) == 2
    assert budget.exhausted()
    assert budget.seconds_until_rollover(10) == 50
    assert not budget.roll(59.9)
    assert budget.roll(60)
    assert budget.attempts_in_window == 0
    assert not budget.exhausted()


def test_budget_pacing() -> None:
    budget = AttemptBudget(window_s=60, max_per_window=10, interval_s=2)
    budget.register(5)
    assert budget.seconds_until_next(5.5) == 1.5
    assert budget.seconds_until_next(9) == 0
    budget.defer(20)
    assert budget.next_attempt_at == 22


def test_attempts_are_paced_by_interval() -> None:
    clock = FakeClock()
    governor = _governor(clock, interval_ms=2000)

    async def scenario() -> List[float]:
        starts = []
        for _ in range(3):
            await governor.acquire()
            starts.append(clock.now)
        return starts

    assert asyncio.run(scenario()) == [0, 2, 4]


def test_exhausted_budget_waits_for_rollover_with_keepalive() -> None:
    clock = FakeClock()
    pulses: List[float] = []

    async def keepalive() -> None:
        pulses.append(clock.now)

    governor = _governor(clock, keepalive, interval_ms=2000, window_ms=60_000, max_per_window=3)

    async def scenario() -> List[int]:
        return [await governor.acquire() for _ in range(4)]

    assert asyncio.run(scenario()) == [1, 2, 3, 1]
    assert clock.now >= 60
    assert governor.budget.window_start == 60
    assert pulses == [60]
    assert "RATE_LIMIT" in [e.state for e in governor.events.drain()]


def test_budget_never_exceeded_within_window() -> None:
    clock = FakeClock()
    governor = _governor(clock, interval_ms=500, window_ms=60_000, max_per_window=5)

    async def scenario() -> List[float]:
        return [(await governor.acquire(), clock.now)[1] for _ in range(12)]

    starts = asyncio.run(scenario())
    for first in starts:
        in_window = [t for t in starts if first <= t < first + 60]
        assert len(in_window) <= 5


def test_long_wait_pulses_keepalive_every_fifteen_minutes() -> None:
    clock = FakeClock()
    pulses: List[float] = []

    async def keepalive() -> None:
        pulses.append(clock.now)

    governor = _governor(clock, keepalive)
    asyncio.run(governor.sleep_with_keepalive(40 * 60))

    assert pulses == [900, 1800, 2400]


def test_keepalive_errors_do_not_stop_waiting() -> None:
    clock = FakeClock()

    async def broken() -> None:
        raise RuntimeError("overlay stuck")

    governor = _governor(clock, broken)
    asyncio.run(governor.sleep_with_keepalive(1800))
    assert clock.now == 1800


def test_defer_restarts_interval() -> None:
    clock = FakeClock()
    governor = _governor(clock, interval_ms=2000)

    async def scenario() -> float:
        await governor.acquire()
        clock.now = 10
        governor.defer()
        await governor.acquire()
        return clock.now

    assert asyncio.run(scenario()) == 12


# region WatchService

CLOSED = "Target page, context or browser has been closed"
SETTINGS = load_settings(
    {
        "VISA_USER_EMAIL": "user@example.com",
        "VISA_USER_PASSWORD": "secret-pass",
        "VISA_USER_DISPLAY_NAME": "Kofi Mensah",
        "VISA_SESSION_ID": "s-1",
    }
)


class StubStabilizer:
    async def wait_loading_clear(self, timeout_ms: float) -> bool:
        return True

    async def stabilize(self, reason: str) -> None:
        return None

    async def dismiss_overlays(self) -> None:
        return None


class StubSession:
    def __init__(self, needs_login: bool = False) -> None:
        self.needs_login = needs_login
        self.logins = 0

    async def is_alive(self) -> bool:
        return True

    async def recover(self) -> bool:
        return True

    async def login_required(self) -> bool:
        return self.needs_login

    async def login(self) -> None:
        self.logins += 1


class StubNavigator:
    def __init__(self, on_booking_page: bool = True) -> None:
        self.on_booking_page = on_booking_page
        self.navigations = 0
        self.dashboard_visits = 0

    async def is_on_booking_page(self) -> bool:
        return self.on_booking_page

    async def go_to_appointment_page(self, *, force_from_dashboard: bool = False) -> bool:
        self.navigations += 1
        self.on_booking_page = True
        return True

    async def go_to_dashboard(self) -> bool:
        self.dashboard_visits += 1
        return True


class StubPickup:
    def __init__(self) -> None:
        self.resets = 0

    async def reset(self) -> None:
        self.resets += 1


class StubCalendar:
    def __init__(self) -> None:
        self.aligned: List[DateWindow] = []

    async def align_to_window(self, window: DateWindow) -> bool:
        self.aligned.append(window)
        return True


class StubAttempt:
    """Plays back results; an exception in the list is raised instead."""

    def __init__(self, clock: FakeClock, outcomes: List[Union[AttemptResult, Exception]]) -> None:
        self.clock = clock
        self.outcomes = list(outcomes)
        self.started: List[float] = []

    async def run(self) -> AttemptResult:
        self.started.append(self.clock.now)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _service(
    clock: FakeClock,
    outcomes: List[Union[AttemptResult, Exception]],
    *,
    browser: Optional[FakeBrowser] = None,
    on_booking_page: bool = True,
    needs_login: bool = False,
) -> Tuple[WatchService, WatchComponents, FakeBrowser]:
    browser = browser or FakeBrowser()
    service = WatchService(SETTINGS, EventBus("s-1"), browser=browser, clock=clock, sleep=clock.sleep)  # type: ignore[arg-type]
    parts = WatchComponents(
        StubStabilizer(),  # type: ignore[arg-type]
        StubSession(needs_login),  # type: ignore[arg-type]
        StubNavigator(on_booking_page),  # type: ignore[arg-type]
        StubPickup(),  # type: ignore[arg-type]
        StubCalendar(),  # type: ignore[arg-type]
        StubAttempt(clock, outcomes),  # type: ignore[arg-type]
    )

    def build(page: FakePage) -> WatchComponents:
        service._components = parts
        return parts

    service.build_components = build  # type: ignore[method-assign]
    service._components = parts
    return service, parts, browser


def _states(service: WatchService) -> List[Optional[str]]:
    return [e.state for e in service.events.drain() if e.kind == "status"]


def test_reset_pickup_resets_and_keeps_interval() -> None:
    clock = FakeClock()
    reset = AttemptResult.RESET_PICKUP
    service, parts, _ = _service(clock, [reset, reset, AttemptResult.SUCCESS])

    assert asyncio.run(service.watch()) is AttemptResult.SUCCESS
    assert parts.pickup.resets == 2
    assert parts.attempt.started == [0, 2, 4]
    assert service.state.attempts_total == 3
    states = _states(service)
    assert states.count("LOOP") == 2
    assert states[-1] == "COMPLETED"


def test_navigation_is_not_counted_as_attempt() -> None:
    clock = FakeClock()
    service, parts, _ = _service(clock, [AttemptResult.SUCCESS], on_booking_page=False)

    assert asyncio.run(service.watch()) is AttemptResult.SUCCESS
    assert parts.navigator.navigations == 1
    assert len(parts.calendar.aligned) == 1
    assert parts.attempt.started == [2]
    assert service.state.attempts_total == 1
    assert service._governor.budget.attempts_in_window == 1
    assert "NAV" in _states(service)


def test_closed_browser_is_restarted_and_monitoring_resumes() -> None:
    clock = FakeClock()
    service, parts, browser = _service(clock, [PlaywrightError(CLOSED), AttemptResult.SUCCESS])

    assert asyncio.run(service.watch()) is AttemptResult.SUCCESS
    assert browser.restarts == 1
    assert 10 not in clock.sleeps
    assert "DASHBOARD" in _states(service)


def test_restart_after_relogin_when_form_shows() -> None:
    clock = FakeClock()
    service, parts, browser = _service(
        clock, [PlaywrightError(CLOSED), AttemptResult.SUCCESS], needs_login=True
    )

    assert asyncio.run(service.watch()) is AttemptResult.SUCCESS
    assert parts.session.logins == 1


def test_failed_restart_is_retried_after_backoff() -> None:
    clock = FakeClock()
    launch_error = PlaywrightError("browserType.launch: Executable doesn't exist")
    browser = FakeBrowser(launch_errors=[launch_error])
    service, parts, _ = _service(clock, [PlaywrightError(CLOSED), AttemptResult.SUCCESS], browser=browser)

    assert asyncio.run(service.watch()) is AttemptResult.SUCCESS
    assert browser.restarts == 2
    assert 10 in clock.sleeps
    errors = [e.message for e in service.events.drain() if e.kind == "log" and e.level == "error"]
    assert any("browserType.launch" in message for message in errors)


def test_unexpected_error_is_logged_and_retried_after_backoff() -> None:
    clock = FakeClock()
    service, parts, browser = _service(clock, [RuntimeError("unexpected dialog"), AttemptResult.SUCCESS])

    assert asyncio.run(service.watch()) is AttemptResult.SUCCESS
    assert parts.attempt.started == [0, 10]
    assert browser.restarts == 0
    assert service.state.last_error == "unexpected dialog"
    assert "unexpected dialog" in [e.message for e in service.events.drain() if e.kind == "log"]


def test_login_timeout_stops_watching() -> None:
    clock = FakeClock()
    service, _, _ = _service(clock, [LoginTimeout("Login wait timed out")])

    with pytest.raises(LoginTimeout):
        asyncio.run(service.watch())


def test_run_completes_then_idles_on_dashboard() -> None:
    clock = FakeClock()
    service, parts, _ = _service(clock, [AttemptResult.SUCCESS])

    assert asyncio.run(service.run()) is AttemptResult.SUCCESS
    assert parts.session.logins == 0
    assert parts.navigator.dashboard_visits == 1
    assert not service.is_running
    assert _states(service) == ["DASHBOARD", "RUNNING", "ATTEMPT", "COMPLETED", "IDLE"]


def test_open_fills_login_when_form_shows() -> None:
    clock = FakeClock()
    service, parts, _ = _service(clock, [], needs_login=True)

    asyncio.run(service.open())
    assert parts.session.logins == 1


def test_screenshots_go_to_configured_logs_dir(tmp_path: Path) -> None:
    settings = load_settings(
        {
            "VISA_USER_EMAIL": "user@example.com",
            "VISA_USER_PASSWORD": "secret-pass",
            "VISA_USER_DISPLAY_NAME": "Kofi Mensah",
            "LOGS_DIR": str(tmp_path),
        }
    )
    service = WatchService(settings, EventBus())
    service.browser._page = FakePage()  # type: ignore[union-attr]

    path = asyncio.run(service.browser.screenshot("captcha"))  # type: ignore[union-attr]
    assert path is not None
    assert path.parent == tmp_path
    assert path.exists()


# endregion
