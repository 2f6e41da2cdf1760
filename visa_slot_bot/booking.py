"""
Booking attempt state machine.

Одна попытка записи:
SELECT_PICKUP -> SCAN_DATE -> WAIT_OVERLAY -> CONFIRM_APPLICANT ->
WAIT_SLOT_HEADER -> SELECT_SLOT -> PROCEED -> [SELECT_SLOT -> PROCEED] -> SUCCESS.

Любой сбой на любом шаге даёт RESET_PICKUP: вызывающий код сбрасывает
пункт выдачи и повторяет всё с начала. Промежуточный прогресс между
попытками не сохраняется, исключения наружу не выходят.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, List, Optional, Tuple

from playwright.async_api import Error as PlaywrightError, Page

from . import locators
from .browser import (
    background_color,
    is_visible,
    js_click,
    query_all,
    scroll_into_center,
    text_of,
    wait_for_element,
)
from .calendar_nav import CalendarNavigator
from .events import EventBus
from .models import AttemptResult, AttemptStage, DateScanResult, DateWindow
from .overlays import OverlayStabilizer
from .pickup import PickupSelector
from .signals import in_window, is_green, is_opaque_non_green, looks_like_time_text, resolve_date
from .utils import is_closed_error, poll_until

logger = logging.getLogger(__name__)


WindowProvider = Callable[[], DateWindow]


class BookingAttempt:
    """Runs single booking attempts against the live booking page."""

    OVERLAY_APPEAR_MS = 2500
    OVERLAY_DISAPPEAR_MS = 15_000
    SLOT_HEADER_MS = 4000
    SLOT_STAGE1_MS = 2500
    SLOT_STAGE2_MS = 6000
    SLOT_CONFIRM_MS = 2500
    PROCEED_WAIT_MS = 12_000

    def __init__(
        self,
        page: Page,
        stabilizer: OverlayStabilizer,
        pickup: PickupSelector,
        navigator: CalendarNavigator,
        events: EventBus,
        *,
        date_window: WindowProvider,
    ) -> None:
        self.page = page
        self.stabilizer = stabilizer
        self.pickup = pickup
        self.navigator = navigator
        self.events = events
        self.date_window = date_window
        self.stage: Optional[AttemptStage] = None

    def _enter(self, stage: AttemptStage) -> None:
        self.stage = stage
        logger.debug("Attempt stage: %s", stage.value)

    async def run(self) -> AttemptResult:
        """One full pass; never raises except when the browser itself is gone."""
        self.stage = None
        try:
            return await self._run()
        except Exception as e:  # noqa: BLE001
            if is_closed_error(e):
                raise
            stage = self.stage.value if self.stage else "?"
            self.events.log("error", f"Attempt failed at {stage}: {e}")
            return AttemptResult.RESET_PICKUP

    async def _run(self) -> AttemptResult:
        self.events.status("ALGO", "Starting booking attempt (green-date algorithm)")
        self.pickup.begin_attempt()

        self._enter(AttemptStage.SELECT_PICKUP)
        self.events.status("SELECT_PICKUP", f"Selecting pickup: {self.pickup.target}")
        await self.pickup.trigger_check()
        self.events.status("SELECT_PICKUP_DONE", f"Pickup active: {self.pickup.target}")

        self._enter(AttemptStage.SCAN_DATE)
        scan = await self.scan_date()
        if not scan.clicked:
            return AttemptResult.RESET_PICKUP

        self._enter(AttemptStage.WAIT_OVERLAY)
        self.events.status("OVERLAY", "Waiting for loading overlay transition")
        if not await self.stabilizer.wait_overlay_cycle(self.OVERLAY_APPEAR_MS, self.OVERLAY_DISAPPEAR_MS):
            self.events.status(
                "OVERLAY_TIMEOUT",
                "Overlay did not appear+disappear as expected; resetting pickup",
            )
            return AttemptResult.RESET_PICKUP

        self._enter(AttemptStage.CONFIRM_APPLICANT)
        self.events.status("APPLICANT", "Checking applicant checkbox")
        try:
            await self.confirm_applicant()
        except PlaywrightError as e:
            if is_closed_error(e):
                raise
            self.events.log("warn", f"Applicant checkbox not confirmed: {e}")

        self._enter(AttemptStage.WAIT_SLOT_HEADER)
        self.events.status("HEADER", "Waiting for Available Slot header")
        if not await self.wait_slot_header():
            self.events.status("HEADER_MISSING", "Available Slot header not visible; resetting pickup")
            return AttemptResult.RESET_PICKUP

        self._enter(AttemptStage.SELECT_SLOT)
        self.events.status("SLOT", "Clicking first available time slot")
        if not await self.select_time_slot(self.SLOT_STAGE1_MS):
            self.events.status(
                "SLOT_MISSING_STAGE1",
                "No time slot clickable before proceed; will try proceed and re-scan",
            )

        self._enter(AttemptStage.PROCEED)
        self.events.status("PROCEED", "Clicking SELECT POST AND PROCEED")
        if not await self.proceed():
            self.events.status("PROCEED_MISSING", "Proceed button not clickable/visible; resetting pickup")
            return AttemptResult.RESET_PICKUP

        # Некоторые сценарии показывают список времени только ПОСЛЕ proceed
        self.events.status("OVERLAY", "Waiting for loading overlay after proceed")
        await self.stabilizer.wait_loading_clear(15_000)
        await self.stabilizer.dismiss_overlays()

        self._enter(AttemptStage.SELECT_SLOT_STAGE2)
        self.events.status("SLOT_STAGE2", "Scanning for time slot buttons after proceed")
        if await self.select_time_slot(self.SLOT_STAGE2_MS):
            self.events.status("SLOT_SELECTED_STAGE2", "Selected a time slot after proceed")
            self._enter(AttemptStage.PROCEED_STAGE2)
            if await self.proceed():
                self.events.status("PROCEED_STAGE2", "Clicked proceed after slot selection")
                await self.stabilizer.wait_loading_clear(15_000)
            else:
                self.events.status(
                    "PROCEED_STAGE2_MISSING",
                    "Proceed button not found after slot selection; continuing",
                )
        else:
            self.events.status("SLOT_STAGE2_NONE", "No post-proceed time-slot list detected (ok)")

        self.events.status("SUCCESS", "Success")
        return AttemptResult.SUCCESS

    # region SCAN_DATE
    async def _is_date_selected(self, cell: Any, content: Any) -> bool:
        if await cell.get_attribute("aria-pressed") == "true":
            return True
        if content is not None:
            classes = await content.get_attribute("class") or ""
            if locators.CALENDAR_SELECTED_CLASS in classes:
                return True
        return False

    async def _cell_is_green(self, cell: Any, content: Any) -> bool:
        colors = [await background_color(content)] if content is not None else []
        colors.append(await background_color(cell))
        return any(is_green(color) for color in colors)

    async def scan_date(self) -> DateScanResult:
        """
        Click the first green, in-window, not yet selected day of the visible month.

        Только текущий видимый месяц: внутри попытки календарь не листается.
        """
        window = self.date_window()
        result = DateScanResult()
        self.events.status("DATE_SCAN", f"Scanning for green dates (allowed: {window.describe()})")

        month = await self.navigator.current_month()
        if month is None:
            self.events.status("CALENDAR_HEADER_MISSING", "Calendar header not found; cannot parse dates reliably")
            self.events.log("warn", "Calendar header not found; cannot parse dates reliably")
            return result

        cells = await query_all(self.page, locators.CALENDAR_CELLS)
        self.events.log("info", f"Calendar month context: {month.label()} (cells: {len(cells)})")

        for cell in cells:
            try:
                content = await cell.query_selector(locators.CALENDAR_CELL_CONTENT)
                if await self._is_date_selected(cell, content):
                    continue
                if not await self._cell_is_green(cell, content):
                    continue
                result.green_found += 1

                day = resolve_date(await text_of(content) if content is not None else "", month)
                if day is None:
                    continue
                if not in_window(day, window):
                    result.out_of_range_found = True
                    self.events.status("OUT_OF_RANGE", f"Green date {day.isoformat()} outside allowed range")
                    continue
                result.green_in_range += 1

                await scroll_into_center(cell)
                await asyncio.sleep(0.1)
                self.events.status("DATE", "Selecting green available date (in range)")
                await self.stabilizer.safe_click(cell)
                result.clicked = True
                result.selected_date = day
                self.events.status("DATE_SELECTED", f"Clicked in-range green date {day.isoformat()}")
                return result
            except PlaywrightError as e:
                if is_closed_error(e):
                    raise
                logger.debug("Skipping calendar cell: %s", e)

        if result.green_found == 0:
            self.events.status(
                "NO_GREEN_DATE",
                f"No green dates found in current calendar view (cells scanned: {len(cells)})",
            )
        elif result.green_in_range == 0:
            self.events.status(
                "NO_IN_RANGE_GREEN",
                f"Found {result.green_found} green date(s), but none within allowed range; will reset pickup",
            )
        else:
            self.events.status(
                "NO_DATE_CLICK",
                f"Found {result.green_found} green date(s) ({result.green_in_range} in-range) "
                "but failed to click; will reset pickup",
            )
        return result

    # endregion

    async def confirm_applicant(self) -> bool:
        """Tick the checkbox under "Applicant List" (not any checkbox on the page)."""
        checkbox = await wait_for_element(self.page, locators.APPLICANT_CHECKBOX, 3000)
        if checkbox is None:
            self.events.log("warn", "Applicant checkbox not found")
            return False
        if not await checkbox.is_checked():
            try:
                await js_click(checkbox)
            except PlaywrightError:
                await checkbox.click()
        self.events.status("APPLICANT_SELECTED", "Applicant checkbox selected")
        return True

    async def wait_slot_header(self, timeout_ms: Optional[float] = None) -> bool:
        header = await wait_for_element(
            self.page, locators.SLOT_HEADER, timeout_ms or self.SLOT_HEADER_MS
        )
        if header is None:
            return False
        await poll_until(lambda: is_visible(header), 1500)
        return True

    # region SELECT_SLOT
    async def _is_enabled_clickable(self, el: Any) -> bool:
        if await el.get_attribute("disabled") is not None:
            return False
        if await el.get_attribute("aria-disabled") == "true":
            return False
        return await is_visible(el)

    async def _is_green_slot(self, el: Any) -> bool:
        colors = [await background_color(el)]
        for wrapper_selector in locators.SLOT_COLOR_WRAPPERS:
            wrapper = await el.query_selector(wrapper_selector)
            if wrapper is not None:
                colors.append(await background_color(wrapper))
        return any(is_green(color) for color in colors)

    async def _is_selected_slot(self, el: Any) -> bool:
        classes = await el.get_attribute("class") or ""
        if locators.SLOT_SELECTED_CLASS in classes:
            return True
        # Выбранный слот становится серым: любой непрозрачный не-зелёный фон
        return is_opaque_non_green(await background_color(el))

    async def _slot_candidates(self) -> Tuple[List[Tuple[Any, str]], List[Tuple[Any, str]]]:
        elements = await query_all(self.page, locators.SLOT_BUTTONS_PREFERRED)
        if not elements:
            elements = await query_all(self.page, locators.SLOT_BUTTONS_FALLBACK)

        green: List[Tuple[Any, str]] = []
        other: List[Tuple[Any, str]] = []
        for el in elements:
            try:
                text = await text_of(el)
                if not looks_like_time_text(text):
                    continue
                if not await self._is_enabled_clickable(el):
                    continue
                (green if await self._is_green_slot(el) else other).append((el, text))
            except PlaywrightError as e:
                if is_closed_error(e):
                    raise
                logger.debug("Skipping slot candidate: %s", e)
        return green, other

    async def select_time_slot(self, timeout_ms: float) -> bool:
        """
        Click the first time-like button, preferring green ones, within ``timeout_ms``.

        Выбор подтверждается классом ``selected-slot`` или сменой цвета;
        неподтверждённый выбор только логируется.
        """
        deadline = time.monotonic() + timeout_ms / 1000
        while time.monotonic() < deadline:
            green, other = await self._slot_candidates()
            pick = green[0] if green else other[0] if other else None
            if pick is not None:
                el, text = pick
                try:
                    await scroll_into_center(el)
                    await asyncio.sleep(0.15)
                    await self.stabilizer.safe_click(el)
                except PlaywrightError as e:
                    if is_closed_error(e):
                        raise
                    logger.debug("Slot click failed, retrying: %s", e)
                else:
                    confirmed = await poll_until(lambda: self._is_selected_slot(el), self.SLOT_CONFIRM_MS)
                    if not confirmed:
                        self.events.status(
                            "SLOT_CLICK_NO_CONFIRM",
                            f"Clicked time slot but selection not confirmed yet: {text}",
                        )
                    suffix = " (green)" if green else ""
                    self.events.status("SLOT_SELECTED", f"Time slot selected: {text}{suffix}")
                    return True
            await asyncio.sleep(0.25)
        return False

    # endregion

    async def proceed(self) -> bool:
        """Click "SELECT POST ... PROCEED" / "BOOK POST APPOINTMENT"; False if absent."""
        button = await wait_for_element(self.page, locators.PROCEED_BUTTON, self.PROCEED_WAIT_MS)
        if button is None:
            return False
        await wait_for_element(self.page, locators.PROCEED_BUTTON, 5000, visible=True)
        await js_click(button)
        self.events.status("PROCEEDED", "Proceeded to next step (SELECT/BOOK POST)")
        return True


__all__ = ["BookingAttempt", "WindowProvider"]
