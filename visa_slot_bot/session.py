"""
Session health monitor and manual-CAPTCHA login.

Проверка, жива ли авторизованная сессия, и восстановление без
перезагрузки страницы. Вход выполняет человек: бот только заполняет
логин/пароль и ждёт дашборд до 5 минут.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, List, Optional

from playwright.async_api import Page

from . import locators
from .browser import element_exists, wait_for_element
from .config import BookingConfig
from .events import EventBus
from .overlays import OverlayStabilizer
from .utils import Clock, Sleep, poll_until

logger = logging.getLogger(__name__)


ScreenshotFunc = Callable[[str], Awaitable[Optional[Path]]]

LOGIN_TIMEOUT_S = 5 * 60


@dataclass
class LoginTimeout(Exception):
    """Raised when the human did not finish the login in time."""

    message: str = "Login wait timed out"


class LoginFormMissing(Exception):
    """Raised when the login form never rendered, so credentials cannot be filled."""


class SessionMonitor:
    FIELD_WAIT_MS = 15_000

    def __init__(
        self,
        page: Page,
        stabilizer: OverlayStabilizer,
        events: EventBus,
        *,
        booking: BookingConfig,
        screenshot: Optional[ScreenshotFunc] = None,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.page = page
        self.stabilizer = stabilizer
        self.events = events
        self.booking = booking
        self._screenshot = screenshot
        self._clock = clock
        self._sleep = sleep

    async def is_alive(self) -> bool:
        """
        Login URL means dead; the display name anywhere on the page means alive.

        Иначе считаем сессию живой, если на странице нет полей логина
        (слабая проверка, смещённая в сторону «жива»).
        """
        if "/login" in self.page.url:
            return False
        if self.booking.display_name and await element_exists(
            self.page, locators.contains_text(self.booking.display_name)
        ):
            return True
        return not await element_exists(self.page, locators.LOGIN_FIELDS)

    async def recover(self) -> bool:
        self.events.log("warn", "Session check failed; attempting recovery")

        # Без перезагрузки: закрываем оверлеи и ждём окончания загрузки
        await self.stabilizer.dismiss_overlays()
        await self.stabilizer.wait_loading_clear(10_000)

        if await self.is_alive():
            logger.info("Session recovered")
            return True

        if "/login" in self.page.url or await element_exists(self.page, locators.LOGIN_USERNAME):
            self.events.status("WAITING_CAPTCHA", "Session lost; manual login required")
            await self.login()
        else:
            # Неясное состояние: формы логина нет, имени пользователя тоже
            self.events.log("warn", "Session unclear, but not on login screen; continuing")
        return True

    async def login_required(self, timeout_ms: Optional[float] = None) -> bool:
        """
        Wait until the page shows either the login form or a signed-in view.

        С сохранённым профилем браузер может сразу попасть на дашборд,
        тогда вход не нужен. Если страница так и не определилась, пробуем войти.
        """
        verdict: List[bool] = []

        async def _settled() -> bool:
            if "dashboard" in self.page.url:
                verdict.append(False)
            elif await element_exists(self.page, locators.LOGIN_USERNAME):
                verdict.append(True)
            elif "/login" not in self.page.url and self.booking.display_name and await element_exists(
                self.page, locators.contains_text(self.booking.display_name)
            ):
                verdict.append(False)
            return bool(verdict)

        await poll_until(_settled, self.FIELD_WAIT_MS if timeout_ms is None else timeout_ms)
        return verdict[0] if verdict else True

    async def _fill(self, selector: str, value: str) -> None:
        field = await wait_for_element(self.page, selector, self.FIELD_WAIT_MS)
        if field is None:
            raise LoginFormMissing(f"Login form field not found: {selector}")
        await field.fill("")
        await field.fill(value)

    async def login(self, timeout_s: float = LOGIN_TIMEOUT_S) -> None:
        """Fill credentials, then wait for the human to solve the CAPTCHA and sign in."""
        self.events.status("LOGIN", "Waiting for login form")
        await self._fill(locators.LOGIN_USERNAME, self.booking.email)
        await self._fill(locators.LOGIN_PASSWORD, self.booking.password)

        extra = {}
        if self._screenshot is not None:
            path = await self._screenshot("captcha")
            if path is not None:
                extra["screenshot"] = path
        logger.info("Credentials filled. Solve CAPTCHA and click SIGN IN.")
        self.events.status("WAITING_CAPTCHA", "Credentials filled; waiting for dashboard", **extra)

        deadline = self._clock() + timeout_s
        while self._clock() < deadline:
            if "dashboard" in self.page.url:
                self.events.status("DASHBOARD", "Dashboard detected")
                return
            await self._sleep(0.5)

        self.events.status("BLOCKED", "Login wait timed out")
        raise LoginTimeout("Login wait timed out")


__all__ = ["SessionMonitor", "LoginTimeout", "LoginFormMissing", "LOGIN_TIMEOUT_S", "ScreenshotFunc"]
