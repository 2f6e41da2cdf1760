"""
Utility helpers: logging setup, retry decorator, polling helpers.

Вспомогательные функции: настройка логирования, ретраи и ожидание условий.
"""

from __future__ import annotations

import asyncio
import logging
import time
from functools import wraps
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Awaitable, Callable, TypeVar

from .config import LoggingConfig


T = TypeVar("T")

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]

_CLOSED_MARKERS = (
    "target page, context or browser has been closed",
    "target closed",
    "browser has been closed",
    "no such window",
    "target window already closed",
    "web view not found",
)


def is_closed_error(exc: BaseException) -> bool:
    """True for errors meaning the browser window is gone (crash or manual close)."""
    msg = str(exc).lower()
    return type(exc).__name__ == "TargetClosedError" or any(m in msg for m in _CLOSED_MARKERS)


def setup_logging(logging_cfg: LoggingConfig | None = None, *, log_name: str = "visa_slot_bot") -> None:
    """
    Configure application-wide logging with rotation.

    Настраивает логирование в файл с ротацией и вывод в консоль (stderr;
    stdout воркера занят потоком событий для хоста).
    """
    if logging_cfg is None:
        logging_cfg = LoggingConfig()

    logs_dir: Path = logging_cfg.logs_dir
    logs_dir.mkdir(parents=True, exist_ok=True)
    log_file = logs_dir / f"{log_name}.log"

    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=logging_cfg.max_bytes,
        backupCount=logging_cfg.backup_count,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(logging_cfg.log_level.upper())
    root.handlers.clear()
    root.addHandler(file_handler)
    root.addHandler(console_handler)


async def poll_until(
    predicate: Callable[[], Awaitable[bool]],
    timeout_ms: float,
    *,
    interval_ms: float = 100,
    clock: Clock = time.monotonic,
) -> bool:
    """
    Await ``predicate`` until it returns True or ``timeout_ms`` elapses.

    Исключения внутри предиката считаются «ещё не готово».
    """
    deadline = clock() + timeout_ms / 1000
    while True:
        try:
            if await predicate():
                return True
        except Exception as exc:  # noqa: BLE001
            if is_closed_error(exc):
                raise
            logging.getLogger(__name__).debug("poll predicate failed: %s", exc)
        if clock() >= deadline:
            return False
        await asyncio.sleep(interval_ms / 1000)


def async_retry(
    attempts: int = 3,
    base_delay: float = 2.0,
    max_delay: float = 60.0,
    exceptions: tuple[type[BaseException], ...] = (Exception,),
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """
    Simple exponential backoff retry decorator for async functions.

    Простой декоратор ретраев с экспоненциальной задержкой.
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            attempt = 0
            delay = base_delay
            while True:
                try:
                    return await func(*args, **kwargs)
                except exceptions as exc:  # type: ignore[misc]
                    attempt += 1
                    if attempt >= attempts:
                        raise
                    logging.getLogger(func.__module__).warning(
                        "Retrying %s after error %s (attempt %s/%s, delay %.1fs)",
                        func.__name__,
                        exc,
                        attempt,
                        attempts,
                        delay,
                    )
                    await asyncio.sleep(delay)
                    delay = min(max_delay, delay * 2)

        return wrapper

    return decorator


__all__ = ["setup_logging", "is_closed_error", "poll_until", "async_retry", "Clock", "Sleep"]
