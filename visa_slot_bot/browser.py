"""
Playwright-based browser lifecycle and element helpers.

Browser-модуль на Playwright:
- запуск Chromium (headless по флагу, опциональный профиль на диске)
- низкоуровневые хелперы для элементов: цвет фона, JS-клик, скролл
- распознавание ошибок «окно/браузер закрыт» для перезапуска
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional

from playwright.async_api import Browser, BrowserContext, Error as PlaywrightError, Page, Playwright, async_playwright

from .config import BASE_DIR, BookingConfig
from .utils import async_retry, is_closed_error, poll_until

logger = logging.getLogger(__name__)


JS_BACKGROUND_COLOR = "el => getComputedStyle(el).backgroundColor"
JS_CLICK = "el => el.click()"
JS_SCROLL_INTO_VIEW = "el => el.scrollIntoView({block: 'center', inline: 'nearest'})"

CHROME_ARGS = [
    # Обычно нужно в контейнерах Linux
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-background-networking",
    "--disable-background-timer-throttling",
    "--disable-renderer-backgrounding",
    "--disable-backgrounding-occluded-windows",
    "--disable-sync",
    "--disable-default-apps",
    "--disable-extensions",
    "--disable-notifications",
    "--no-first-run",
    "--no-default-browser-check",
    "--disable-gpu",
    "--disable-dev-shm-usage",
    "--disable-features=PushMessaging",
]


# region element helpers
async def query_all(root: Any, selector: str) -> List[Any]:
    try:
        return list(await root.query_selector_all(selector))
    except Exception as e:  # noqa: BLE001
        if is_closed_error(e):
            raise
        logger.debug("query_selector_all(%s) failed: %s", selector, e)
        return []


async def element_exists(root: Any, selector: str) -> bool:
    return len(await query_all(root, selector)) > 0


async def is_visible(el: Any) -> bool:
    try:
        return bool(await el.is_visible())
    except Exception as e:  # noqa: BLE001
        if is_closed_error(e):
            raise
        return False


async def any_visible(root: Any, selector: str) -> bool:
    for el in await query_all(root, selector):
        if await is_visible(el):
            return True
    return False


async def first_visible(root: Any, selector: str) -> Optional[Any]:
    for el in await query_all(root, selector):
        if await is_visible(el):
            return el
    return None


async def wait_for_element(
    root: Any,
    selector: str,
    timeout_ms: float,
    *,
    visible: bool = False,
    interval_ms: float = 100,
) -> Optional[Any]:
    """Poll until ``selector`` resolves (optionally to a visible element) or time out."""
    found: List[Any] = []

    async def _probe() -> bool:
        el = await (first_visible(root, selector) if visible else _first(root, selector))
        if el is None:
            return False
        found.append(el)
        return True

    await poll_until(_probe, timeout_ms, interval_ms=interval_ms)
    return found[0] if found else None


async def _first(root: Any, selector: str) -> Optional[Any]:
    elements = await query_all(root, selector)
    return elements[0] if elements else None


async def background_color(el: Any) -> str:
    try:
        return str(await el.evaluate(JS_BACKGROUND_COLOR) or "")
    except Exception as e:  # noqa: BLE001
        if is_closed_error(e):
            raise
        return ""


async def text_of(el: Any) -> str:
    try:
        return ((await el.inner_text()) or "").strip()
    except Exception as e:  # noqa: BLE001
        if is_closed_error(e):
            raise
        return ""


async def js_click(el: Any) -> None:
    await el.evaluate(JS_CLICK)


async def scroll_into_center(el: Any) -> None:
    await el.evaluate(JS_SCROLL_INTO_VIEW)


# endregion


class BookingBrowser:
    """
    High-level wrapper around Playwright for one booking session.
    """

    def __init__(self, booking: BookingConfig, *, screenshots_dir: Optional[Path] = None) -> None:
        self._booking = booking
        self._screenshots_dir = screenshots_dir or BASE_DIR / "logs"
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None

    @property
    def page(self) -> Page:
        if not self._page:
            raise RuntimeError("Browser not initialised")
        return self._page

    async def start(self) -> Page:
        """Launch Chromium and open an empty page (idempotent)."""
        if self._page:
            return self._page

        logger.info("Starting Playwright browser (headless=%s)", self._booking.headless)
        self._playwright = await async_playwright().start()
        chromium = self._playwright.chromium
        if self._booking.profile_dir:
            # Отдельный профиль на сессию: куки переживают перезапуск воркера
            profile_dir = Path(self._booking.profile_dir)
            profile_dir.mkdir(parents=True, exist_ok=True)
            self._context = await chromium.launch_persistent_context(
                str(profile_dir),
                headless=self._booking.headless,
                args=CHROME_ARGS,
                viewport={"width": 1280, "height": 900},
            )
            self._page = self._context.pages[0] if self._context.pages else await self._context.new_page()
        else:
            self._browser = await chromium.launch(headless=self._booking.headless, args=CHROME_ARGS)
            self._context = await self._browser.new_context(viewport={"width": 1280, "height": 900})
            self._page = await self._context.new_page()

        return self._page

    @async_retry(attempts=3, base_delay=3, max_delay=60, exceptions=(PlaywrightError,))
    async def open_login(self) -> Page:
        page = await self.start()
        logger.info("Opening %s", self._booking.platform_url)
        await page.goto(self._booking.platform_url, wait_until="domcontentloaded", timeout=60000)
        return page

    async def restart(self) -> Page:
        logger.warning("Restarting browser")
        await self.close()
        return await self.open_login()

    async def close(self) -> None:
        """Close page, context, browser and Playwright; errors on a dead browser are ignored."""
        logger.info("Closing Playwright browser")
        for closer in (
            self._page.close if self._page else None,
            self._context.close if self._context else None,
            self._browser.close if self._browser else None,
            self._playwright.stop if self._playwright else None,
        ):
            if closer is None:
                continue
            try:
                await closer()
            except Exception as e:  # noqa: BLE001
                logger.debug("Ignoring error during close: %s", e)

        self._playwright = None
        self._browser = None
        self._context = None
        self._page = None

    async def screenshot(self, name: str, directory: Optional[Path] = None) -> Optional[Path]:
        """Capture a full-page screenshot into the logs directory; returns None on failure."""
        directory = directory or self._screenshots_dir
        try:
            directory.mkdir(parents=True, exist_ok=True)
            stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
            path = directory / f"{name}_{stamp}.png"
            await self.page.screenshot(path=str(path), full_page=True)
            return path
        except Exception as e:  # noqa: BLE001
            logger.warning("Failed to capture screenshot: %s", e)
            return None


__all__ = [
    "BookingBrowser",
    "CHROME_ARGS",
    "JS_BACKGROUND_COLOR",
    "JS_CLICK",
    "JS_SCROLL_INTO_VIEW",
    "is_closed_error",
    "query_all",
    "element_exists",
    "is_visible",
    "any_visible",
    "first_visible",
    "wait_for_element",
    "background_color",
    "text_of",
    "js_click",
    "scroll_into_center",
]
