"""
Navigation between dashboard and the appointment booking page.

Два пути на страницу записи:
- обычный: плитка «PENDING APPOINTMENT REQUEST» на дашборде;
- перенос записи: My Appointments -> RESCHEDULE -> Confirm в диалоге.
Переход не считается попыткой записи.
"""

from __future__ import annotations

import asyncio
import logging

from playwright.async_api import Error as PlaywrightError, Page

from . import locators
from .browser import element_exists, is_visible, js_click, scroll_into_center, wait_for_element
from .config import BookingConfig
from .events import EventBus
from .overlays import OverlayStabilizer
from .session import SessionMonitor
from .utils import is_closed_error, poll_until

logger = logging.getLogger(__name__)


# Кликаем ближайшего кликабельного предка, а не весь контейнер с плитками
JS_CLICK_CLOSEST = (
    "(el, sel) => { const t = el.closest(sel) || el;"
    " t.scrollIntoView({block: 'center', inline: 'nearest'}); t.click(); }"
)


class NavigationError(Exception):
    """Booking page could not be reached."""


class AppointmentNavigator:
    def __init__(
        self,
        page: Page,
        stabilizer: OverlayStabilizer,
        session: SessionMonitor,
        events: EventBus,
        *,
        booking: BookingConfig,
    ) -> None:
        self.page = page
        self.stabilizer = stabilizer
        self.session = session
        self.events = events
        self.booking = booking

    async def _url_contains(self, fragment: str, timeout_ms: float) -> bool:
        async def _matches() -> bool:
            return fragment in self.page.url

        return await poll_until(_matches, timeout_ms, interval_ms=250)

    async def go_to_dashboard(self) -> bool:
        if "/dashboard" in self.page.url:
            return True
        await self.page.goto(self.booking.dashboard_url, wait_until="domcontentloaded")
        await self.stabilizer.wait_loading_clear(15_000)

        async def _ready() -> bool:
            return "/dashboard" in self.page.url or await self.session.is_alive()

        return await poll_until(_ready, 20_000, interval_ms=250)

    async def is_on_booking_page(self) -> bool:
        url = self.page.url
        if "/appointment" in url and "/myappointment" not in url:
            return True
        return await element_exists(self.page, locators.BOOKING_BLOCK)

    async def go_to_appointment_page(self, *, force_from_dashboard: bool = False) -> bool:
        if self.booking.reschedule:
            return await self._go_reschedule(force_from_dashboard)
        return await self._go_pending(force_from_dashboard)

    # region pending appointment
    async def _click_pending_tile(self) -> None:
        for label in locators.PENDING_LABELS:
            el = await wait_for_element(self.page, locators.exact_text(label), 12_000)
            if el is None:
                continue
            await wait_for_element(self.page, locators.exact_text(label), 8000, visible=True)
            await el.evaluate(JS_CLICK_CLOSEST, locators.CLICKABLE_ANCESTOR)
            return

        # Запасной вариант: любой элемент с фразой, кроме плитки отмены
        el = await wait_for_element(self.page, locators.PENDING_FALLBACK, 12_000)
        if el is None:
            raise NavigationError("Pending Appointment Request button not found on dashboard")
        await scroll_into_center(el)
        await asyncio.sleep(0.3)
        await js_click(el)

    async def _go_pending(self, force_from_dashboard: bool) -> bool:
        if not force_from_dashboard and "/appointment" in self.page.url:
            self.events.status("APPOINTMENT_PAGE", "Already on appointment page")
            return True

        await self.go_to_dashboard()
        try:
            await self._click_pending_tile()
        except (NavigationError, PlaywrightError) as e:
            if is_closed_error(e):
                raise
            self.events.log("warn", "Pending Appointment tile not found; retrying")
            await self.stabilizer.dismiss_overlays()
            await asyncio.sleep(1.2)
            await self.go_to_dashboard()
            await self._click_pending_tile()

        if not await self._url_contains("/appointment", 20_000):
            raise NavigationError("Appointment page did not open")
        self.events.status("APPOINTMENT_PAGE", "Appointment page reached")
        return True

    # endregion

    # region reschedule
    async def _go_reschedule(self, force_from_dashboard: bool) -> bool:
        if not force_from_dashboard and "/appointment" in self.page.url:
            self.events.status("APPOINTMENT_PAGE", "Already on appointment page")
            return True

        self.events.status("RESCHEDULE_NAV", "Navigating: My Appointments -> RESCHEDULE -> Confirm")
        await self.go_to_dashboard()
        await self.stabilizer.dismiss_overlays()
        await self.stabilizer.wait_loading_clear(10_000)

        url = self.booking.my_appointments_url
        self.events.status("MY_APPOINTMENTS", f"Opening My Appointments URL: {url}")
        await self.page.goto(url, wait_until="domcontentloaded")
        if not await self._url_contains("/home/appointment/myappointment", 25_000):
            raise NavigationError("My Appointments page did not open")
        self.events.status("MY_APPOINTMENTS_PAGE", "My Appointments page detected")

        await self.stabilizer.dismiss_overlays()
        await self.stabilizer.wait_loading_clear(15_000)

        button = await wait_for_element(self.page, locators.RESCHEDULE_BUTTON, 15_000)
        if button is None:
            self.events.status("RESCHEDULE_NAV_FAILED", "RESCHEDULE button not found")
            raise NavigationError("RESCHEDULE button not found on My Appointments page")
        await scroll_into_center(button)
        await asyncio.sleep(0.25)
        await js_click(button)
        self.events.status("RESCHEDULE_CLICK", "Clicked RESCHEDULE")

        dialog = await wait_for_element(self.page, locators.DIALOG_CONTAINER, 15_000)
        if dialog is None:
            self.events.status("RESCHEDULE_NAV_FAILED", "Confirmation modal not found")
            raise NavigationError("Reschedule confirmation modal did not appear")

        confirm = await wait_for_element(dialog, locators.DIALOG_CONFIRM, 8000)
        if confirm is None:
            self.events.status("RESCHEDULE_NAV_FAILED", "Confirm button not found")
            raise NavigationError("Confirm button not found in reschedule confirmation modal")
        await asyncio.sleep(0.2)
        await js_click(confirm)
        self.events.status("RESCHEDULE_CONFIRM", "Clicked Confirm")

        # Диалог должен закрыться, затем приложение открывает страницу записи
        async def _dialog_closed() -> bool:
            return not await is_visible(dialog)

        await poll_until(_dialog_closed, 15_000, interval_ms=250)
        await self.stabilizer.wait_loading_clear(20_000)
        await poll_until(self.is_on_booking_page, 30_000, interval_ms=250)
        await self.stabilizer.dismiss_overlays()
        await self.stabilizer.wait_loading_clear(15_000)

        self.events.status("APPOINTMENT_PAGE", "Appointment booking page reached")
        return True

    # endregion


__all__ = ["AppointmentNavigator", "NavigationError", "JS_CLICK_CLOSEST"]
