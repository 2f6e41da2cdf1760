"""
Calendar month navigation (mat-calendar).

Читает заголовок календаря («JAN 2026») и умеет переключать календарь на
нужный месяц через выбор периода: годы -> год -> месяцы -> месяц.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from playwright.async_api import Page

from . import locators
from .browser import js_click, text_of, wait_for_element
from .config import CalendarConfig
from .events import EventBus
from .models import CalendarMonthRef, DateWindow
from .signals import MONTH_ABBREVIATIONS, add_months, month_key, month_of, parse_month_year
from .utils import poll_until

logger = logging.getLogger(__name__)


class CalendarNavigator:
    def __init__(
        self,
        page: Page,
        events: EventBus,
        *,
        cfg: Optional[CalendarConfig] = None,
        timeout_ms: int = 10_000,
    ) -> None:
        self.page = page
        self.events = events
        self.cfg = cfg or CalendarConfig()
        self.timeout_ms = timeout_ms

    async def header_text(self) -> str:
        header = await self.page.query_selector(locators.CALENDAR_HEADER)
        return await text_of(header) if header else ""

    async def current_month(self) -> Optional[CalendarMonthRef]:
        return parse_month_year(await self.header_text())

    def month_allowed(self, ref: CalendarMonthRef) -> bool:
        """Configured month-of-year window (1-based, inclusive)."""
        return self.cfg.window_start_month <= ref.month_index + 1 <= self.cfg.window_end_month

    async def _is_showing(self, target: CalendarMonthRef) -> bool:
        current = await self.current_month()
        return current is not None and month_key(current) == month_key(target)

    async def set_month(self, target: CalendarMonthRef) -> bool:
        """Jump to ``target`` through the period picker; no-op if already shown."""
        if not self.month_allowed(target):
            logger.info("Month %s is outside the configured month window", target.label())
            return False
        if await self._is_showing(target):
            return True

        period = await self.page.query_selector(locators.CALENDAR_HEADER)
        if period is None:
            return False
        await js_click(period)

        year_cell = await wait_for_element(self.page, locators.picker_year_cell(target.year), self.timeout_ms)
        if year_cell is None:
            logger.info("Year %s not offered by the calendar picker", target.year)
            return False
        await js_click(year_cell)

        label = MONTH_ABBREVIATIONS[target.month_index]
        month_cell = await wait_for_element(self.page, locators.picker_month_cell(label), self.timeout_ms)
        if month_cell is None:
            logger.info("Month %s not offered by the calendar picker", label)
            return False
        await js_click(month_cell)

        return await poll_until(lambda: self._is_showing(target), self.timeout_ms, interval_ms=200)

    async def _nav_enabled(self, selector: str) -> bool:
        button = await self.page.query_selector(selector)
        if button is None:
            return False
        disabled = await button.get_attribute("disabled")
        aria_disabled = await button.get_attribute("aria-disabled")
        return disabled is None and aria_disabled != "true"

    async def next_month(self) -> bool:
        """
        Click the "next month" arrow.

        Неактивная кнопка означает, что сайт ограничил диапазон дат: это не
        ошибка, просто месяцев больше нет.
        """
        current = await self.current_month()
        if current is not None and not self.month_allowed(add_months(current, 1)):
            return False
        if not await self._nav_enabled(locators.CALENDAR_NEXT):
            return False
        button = await self.page.query_selector(locators.CALENDAR_NEXT)
        await button.click()
        await asyncio.sleep(1.2)
        return True

    async def align_to_window(self, window: DateWindow) -> bool:
        """
        Show the first month of ``window`` (best effort, used on entering the page).

        Сначала через выбор периода, при неудаче шагаем стрелкой вперёд не
        дальше ``max_months`` месяцев.
        """
        if window.start is None:
            return True
        target = month_of(window.start)
        current = await self.current_month()
        if current is None:
            self.events.log("warn", "Calendar header not found; cannot align to date window")
            return False
        if month_key(current) >= month_key(target):
            return True

        if await self.set_month(target):
            self.events.log("info", f"Calendar moved to {target.label()}")
            return True

        for _ in range(self.cfg.max_months):
            if await self._is_showing(target):
                return True
            if not await self.next_month():
                break
        return await self._is_showing(target)


__all__ = ["CalendarNavigator"]
