"""
Overlay / modal stabilizer.

Приложение на Angular Material показывает спиннер загрузки во время
запросов и оставляет открытые cdk-overlay панели; пока они на экране,
клики молча теряются. Здесь только закрытие оверлеев и ожидание:
страница НИКОГДА не перезагружается (перезагрузка приводит к HTTP 429).
"""

from __future__ import annotations

import logging
import time
from typing import Any, Optional

from playwright.async_api import Error as PlaywrightError, Page

from . import locators
from .browser import any_visible, is_visible, js_click, query_all
from .events import EventBus
from .utils import Clock, poll_until

logger = logging.getLogger(__name__)


_INTERCEPT_MARKERS = (
    "intercepts pointer events",
    "element click intercepted",
    "other element would receive the click",
)


def is_intercepted_click(exc: BaseException) -> bool:
    msg = str(exc).lower()
    return any(marker in msg for marker in _INTERCEPT_MARKERS)


class OverlayStabilizer:
    """Dismisses transient overlays and waits for the loading spinner."""

    def __init__(
        self,
        page: Page,
        events: Optional[EventBus] = None,
        *,
        click_timeout_ms: int = 4000,
        clock: Clock = time.monotonic,
    ) -> None:
        self.page = page
        self.events = events
        self.click_timeout_ms = click_timeout_ms
        self._clock = clock

    async def is_loading_visible(self) -> bool:
        return await any_visible(self.page, locators.LOADING_SPINNER)

    async def wait_loading_clear(self, timeout_ms: float = 15_000) -> bool:
        async def _cleared() -> bool:
            return not await self.is_loading_visible()

        return await poll_until(_cleared, timeout_ms, interval_ms=500, clock=self._clock)

    async def wait_overlay_cycle(self, appear_ms: float = 2500, disappear_ms: float = 15_000) -> bool:
        """
        Wait for the spinner to APPEAR and then DISAPPEAR.

        Если спиннер так и не появился, возвращаем False сразу: отсутствие
        загрузки означает, что клик, скорее всего, не дошёл до сервера.
        """
        appeared = await poll_until(self.is_loading_visible, appear_ms, interval_ms=100, clock=self._clock)
        if not appeared:
            return False
        return await self.wait_loading_clear(disappear_ms)

    async def _any_pane_visible(self) -> bool:
        return await any_visible(self.page, locators.OVERLAY_PANE)

    async def dismiss_overlays(self, settle_ms: float = 1500) -> bool:
        """
        Close open dropdown panels / backdrops.

        Вызывать только между шагами: может закрыть выпадающий список,
        который вызывающий код ещё собирался использовать.
        """
        for backdrop in await query_all(self.page, locators.OVERLAY_BACKDROP):
            try:
                if not await is_visible(backdrop):
                    continue
                await js_click(backdrop)
                break
            except PlaywrightError as e:
                logger.debug("Backdrop click failed: %s", e)

        # Escape надёжно закрывает mat-select
        try:
            await self.page.keyboard.press("Escape")
        except PlaywrightError as e:
            logger.debug("Escape press failed: %s", e)

        async def _panes_gone() -> bool:
            return not await self._any_pane_visible()

        return await poll_until(_panes_gone, settle_ms, interval_ms=100, clock=self._clock)

    async def stabilize(self, reason: str, timeout_ms: float = 15_000) -> bool:
        """Recover an unresponsive UI without reloading."""
        if self.events:
            self.events.log("warn", f"Stabilizing (no refresh): {reason}")
        else:
            logger.warning("Stabilizing (no refresh): %s", reason)
        await self.dismiss_overlays()
        return await self.wait_loading_clear(timeout_ms)

    async def safe_click(self, el: Any) -> bool:
        """
        Native click; if an overlay intercepts it, dismiss overlays and click via JS.

        Прочие ошибки пробрасываются вызывающему коду.
        """
        try:
            await el.click(timeout=self.click_timeout_ms)
            return True
        except PlaywrightError as e:
            if not is_intercepted_click(e):
                raise
            logger.debug("Native click intercepted, falling back to JS click")
        await self.dismiss_overlays()
        await js_click(el)
        return True


__all__ = ["OverlayStabilizer", "is_intercepted_click"]
