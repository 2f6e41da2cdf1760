"""
Pickup-point dropdown control.

Сайт запускает проверку доступности только при СМЕНЕ выбранного пункта
выдачи, поэтому здесь есть принудительный перевыбор и трюк
«переключиться на соседний пункт и обратно» вместо перезагрузки страницы.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import List, Optional

from playwright.async_api import Error as PlaywrightError, Page

from . import locators
from .browser import query_all, scroll_into_center, text_of, wait_for_element
from .config import PickupToggleConfig
from .events import EventBus
from .models import PickupToggleState
from .overlays import OverlayStabilizer
from .utils import Clock

logger = logging.getLogger(__name__)


class PickupNotFound(Exception):
    """Raised when the pickup option cannot be selected after all retries."""


class PickupSelector:
    """Owns the pickup dropdown and its toggle bookkeeping for one session."""

    SELECT_RETRIES = 3
    RETRY_BACKOFF_S = 1.2

    def __init__(
        self,
        page: Page,
        stabilizer: OverlayStabilizer,
        events: EventBus,
        *,
        target: str,
        toggle: Optional[PickupToggleConfig] = None,
        state: Optional[PickupToggleState] = None,
        clock: Clock = time.monotonic,
        timeout_ms: int = 12_000,
    ) -> None:
        self.page = page
        self.stabilizer = stabilizer
        self.events = events
        self.target = target
        self.toggle = toggle or PickupToggleConfig()
        self.state = state or PickupToggleState()
        self._clock = clock
        self.timeout_ms = timeout_ms

    @staticmethod
    def _is_real_value(text: str) -> bool:
        return bool(text) and "Select" not in text

    async def current_value(self) -> str:
        block = await wait_for_element(self.page, locators.BOOKING_BLOCK, self.timeout_ms)
        if block is None:
            return ""
        value = await block.query_selector(locators.PICKUP_VALUE_TEXT)
        return await text_of(value) if value else ""

    async def _open_dropdown(self):
        select = await wait_for_element(self.page, locators.PICKUP_SELECT, self.timeout_ms)
        if select is None:
            raise PickupNotFound("Pickup dropdown not found in booking block")
        await scroll_into_center(select)
        await self.stabilizer.safe_click(select)
        pane = await wait_for_element(self.page, locators.OVERLAY_PANE, self.timeout_ms)
        if pane is None:
            raise PickupNotFound("Pickup dropdown panel did not open")
        return select

    async def _click_option(self, name: str, timeout_ms: float) -> bool:
        option = await wait_for_element(self.page, locators.pickup_option(name), timeout_ms)
        if option is None:
            return False
        await wait_for_element(self.page, locators.pickup_option(name), 2000, visible=True)
        await self.stabilizer.safe_click(option)
        return True

    async def select(self, name: str) -> None:
        """
        Open the dropdown and click the option containing ``name``.

        До трёх попыток: панель иногда открывается раньше, чем в ней
        появляются опции.
        """
        await self._ensure_not_loading("loading overlay stuck before pickup select")

        for attempt in range(1, self.SELECT_RETRIES + 1):
            try:
                await self._open_dropdown()
                if not await self._click_option(name, 8000):
                    logger.info(
                        "Pickup option '%s' not found (attempt %s/%s). Retrying...",
                        name,
                        attempt,
                        self.SELECT_RETRIES,
                    )
                    await self.stabilizer.dismiss_overlays()
                    await asyncio.sleep(self.RETRY_BACKOFF_S)
                    continue

                # Закрываем выпадающий список, иначе следующие клики зависают
                await self.stabilizer.dismiss_overlays()
                self.events.status("PICKUP_SELECTED", f"Pickup selected: {name}")
                return
            except (PickupNotFound, PlaywrightError) as e:
                logger.info("Pickup selection failed (attempt %s/%s): %s", attempt, self.SELECT_RETRIES, e)
                await self.stabilizer.dismiss_overlays()
                await asyncio.sleep(self.RETRY_BACKOFF_S)

        raise PickupNotFound(f"Failed to select pickup point: {name}")

    async def select_if_changed(self, name: str) -> bool:
        """Select ``name`` unless it is already shown; returns True if a selection happened."""
        current = await self.current_value()
        if self._is_real_value(current) and name in current:
            return False
        if self._is_real_value(current):
            # Запоминаем предыдущий пункт как кандидата для переключения
            self.state.last_alternate_option = current
        await self.select(name)
        return True

    async def force_reselect(self, name: str) -> None:
        """Reopen the dropdown and click ``name`` again to retrigger the backend check."""
        await self.stabilizer.wait_loading_clear(4000)
        await self.stabilizer.dismiss_overlays()

        await self._open_dropdown()
        if not await self._click_option(name, self.timeout_ms):
            await self.stabilizer.dismiss_overlays()
            raise PickupNotFound(f"Pickup option '{name}' not found for reselect")

        await self.stabilizer.dismiss_overlays()
        await self.stabilizer.wait_loading_clear(10_000)
        self.state.last_toggle_at = self._clock()

    async def read_options(self) -> List[str]:
        await self._open_dropdown()
        try:
            labels: List[str] = []
            for option in await query_all(self.page, locators.PICKUP_OPTIONS):
                text = await text_of(option)
                if text:
                    labels.append(text)
            return labels
        finally:
            await self.stabilizer.dismiss_overlays()

    async def discover_alternate(self, name: str) -> Optional[str]:
        """Option right before ``name`` in the list, or any other option if ``name`` is first/absent."""
        options = await self.read_options()
        idx = next((i for i, text in enumerate(options) if name in text), -1)
        if idx > 0:
            return options[idx - 1]
        return next((text for text in options if name not in text), None)

    async def _alternate(self) -> Optional[str]:
        alt: Optional[str] = None
        try:
            alt = await self.discover_alternate(self.target)
        except (PickupNotFound, PlaywrightError) as e:
            logger.debug("Alternate pickup discovery failed: %s", e)
        return alt or self.state.last_alternate_option

    def begin_attempt(self) -> None:
        self.state.toggles_this_attempt = 0

    async def toggle_for_refresh(self, *, force: bool = False) -> bool:
        """
        Switch to an alternate option and back to the target.

        Ограничено кулдауном и лимитом переключений на попытку, чтобы не
        создавать лишних запросов к сайту.
        """
        now = self._clock()
        if not force:
            last = self.state.last_toggle_at
            if last is not None and now - last < self.toggle.cooldown_ms / 1000:
                logger.debug("Pickup toggle skipped: cooldown")
                return False
            if self.state.toggles_this_attempt >= self.toggle.max_toggles_per_attempt:
                logger.debug("Pickup toggle skipped: per-attempt limit")
                return False

        alt = await self._alternate()
        if not alt or self.target in alt:
            self.state.last_toggle_at = self._clock()
            return False

        self.events.log("info", f"Toggling pickup to refresh availability: '{alt}' -> '{self.target}'")
        await self._select_quietly(alt)
        await self.stabilizer.wait_loading_clear(10_000)
        await self._select_quietly(self.target)
        await self.stabilizer.wait_loading_clear(10_000)

        self.state.last_alternate_option = alt
        self.state.last_toggle_at = self._clock()
        self.state.toggles_this_attempt += 1
        return True

    async def _select_quietly(self, name: str) -> None:
        try:
            await self.select_if_changed(name)
        except PickupNotFound as e:
            self.events.log("warn", str(e))

    async def trigger_check(self) -> None:
        """Make sure the site runs a fresh availability check for the target."""
        current = await self.current_value()
        if self._is_real_value(current) and self.target in current:
            await self.force_reselect(self.target)
            return
        await self.select(self.target)

    async def reset(self) -> None:
        """
        Reset the control after a failed attempt.

        Сначала пробуем переключение через соседний пункт (с учётом кулдауна),
        затем в любом случае принудительно перевыбираем целевой пункт.
        """
        self.events.status("RESET_PICKUP", f"Resetting pickup (previous option -> {self.target})")
        if not await self.toggle_for_refresh():
            await self._select_quietly(self.target)
        try:
            await self.force_reselect(self.target)
        except PickupNotFound as e:
            self.events.log("warn", str(e))

    async def _ensure_not_loading(self, reason: str) -> None:
        if not await self.stabilizer.wait_loading_clear(10_000):
            await self.stabilizer.stabilize(reason)


__all__ = ["PickupSelector", "PickupNotFound"]
