"""
Config loading via Pydantic v2 and python-dotenv.

Загрузка конфигурации воркера из окружения (и .env) и базовая валидация.
Ошибки конфигурации поднимаются до запуска браузера.
"""

from __future__ import annotations

import os
from datetime import date, datetime, timedelta, timezone
from functools import lru_cache
from pathlib import Path
from typing import Mapping, Optional
from urllib.parse import urlparse

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, computed_field, field_validator, model_validator

from .models import DateWindow


BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"

DEFAULT_PLATFORM_URL = "https://www.usvisaappt.com/visaapplicantui/login"
APP_PATH_MARKER = "/visaapplicantui"

# Явно загружаем переменные окружения из .env, если файл существует
if ENV_PATH.exists():
    load_dotenv(ENV_PATH, override=False)


class BotConfig(BaseModel):
    token: str
    admin_chat_id: int


class BookingConfig(BaseModel):
    platform_url: str = DEFAULT_PLATFORM_URL
    email: str = Field(min_length=1)
    password: str = Field(min_length=1)
    # Имя пользователя в сайдбаре: признак живой сессии
    display_name: str = Field(min_length=1)
    pickup_point: str = Field(default="Accra", min_length=1)
    session_id: str = ""
    headless: bool = False
    reschedule: bool = False
    profile_dir: Optional[Path] = None

    date_start: Optional[date] = None
    date_end: Optional[date] = None
    days_from_now_min: Optional[int] = Field(default=None, ge=0)
    days_from_now_max: Optional[int] = Field(default=None, ge=0)
    weeks_from_now_min: Optional[int] = Field(default=None, ge=0)
    weeks_from_now_max: Optional[int] = Field(default=None, ge=0)

    @field_validator("date_start", "date_end", mode="before")
    @classmethod
    def _iso_date_only(cls, value: object) -> object:
        if value is None or isinstance(value, date):
            return value
        text = str(value).strip()
        if not text:
            return None
        try:
            return datetime.strptime(text, "%Y-%m-%d").date()
        except ValueError as exc:
            raise ValueError(f"expected YYYY-MM-DD, got {text!r}") from exc

    @computed_field  # type: ignore[misc]
    @property
    def app_base_url(self) -> str:
        # https://host/visaapplicantui/login -> https://host/visaapplicantui
        parsed = urlparse(self.platform_url)
        idx = parsed.path.find(APP_PATH_MARKER)
        base_path = parsed.path[: idx + len(APP_PATH_MARKER)] if idx >= 0 else ""
        return f"{parsed.scheme}://{parsed.netloc}{base_path}"

    @property
    def dashboard_url(self) -> str:
        return f"{self.app_base_url}/dashboard"

    @property
    def my_appointments_url(self) -> str:
        return f"{self.app_base_url}/home/appointment/myappointment"

    def date_window(self, today: Optional[date] = None) -> DateWindow:
        """
        Effective acceptance window.

        Каждая граница берётся по приоритету: явная дата, затем дни от
        сегодня, затем недели от сегодня. Если начало позже конца, окно
        игнорируется (пользователь не блокируется из-за ошибки ввода).
        """
        if today is None:
            today = datetime.now(timezone.utc).date()

        start = self.date_start
        end = self.date_end
        if start is None and self.days_from_now_min is not None:
            start = today + timedelta(days=self.days_from_now_min)
        if end is None and self.days_from_now_max is not None:
            end = today + timedelta(days=self.days_from_now_max)
        if start is None and self.weeks_from_now_min is not None:
            start = today + timedelta(weeks=self.weeks_from_now_min)
        if end is None and self.weeks_from_now_max is not None:
            end = today + timedelta(weeks=self.weeks_from_now_max)

        if start is not None and end is not None and start > end:
            return DateWindow()
        return DateWindow(start=start, end=end)


class AttemptsConfig(BaseModel):
    # Бизнес-правило: попытка каждые 2 секунды, не более 1800 в час
    interval_ms: int = Field(default=2000, ge=200)
    window_ms: int = Field(default=60 * 60 * 1000, ge=60_000)
    max_per_window: int = Field(default=1800, ge=1)
    keepalive_pulse_ms: int = Field(default=15 * 60 * 1000, ge=1000)
    error_backoff_ms: int = Field(default=10_000, ge=0)


class PickupToggleConfig(BaseModel):
    cooldown_ms: int = Field(default=2000, ge=0)
    max_toggles_per_attempt: int = Field(default=1, ge=0)


class CalendarConfig(BaseModel):
    # 1-based, включительно
    window_start_month: int = Field(default=1, ge=1, le=12)
    window_end_month: int = Field(default=12, ge=1, le=12)
    max_months: int = Field(default=6, ge=1)

    @model_validator(mode="after")
    def _ordered(self) -> "CalendarConfig":
        if self.window_start_month > self.window_end_month:
            raise ValueError("window_start_month must not be after window_end_month")
        return self


class LoggingConfig(BaseModel):
    logs_dir: Path = Field(default_factory=lambda: BASE_DIR / "logs")
    log_level: str = Field(default="INFO")
    max_bytes: int = Field(default=5 * 1024 * 1024)  # 5 MB
    backup_count: int = Field(default=5)


class Settings(BaseModel):
    booking: BookingConfig
    attempts: AttemptsConfig = AttemptsConfig()
    pickup_toggle: PickupToggleConfig = PickupToggleConfig()
    calendar: CalendarConfig = CalendarConfig()
    logging: LoggingConfig = LoggingConfig()
    bot: Optional[BotConfig] = None


def _flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes")


def _int_or_none(value: Optional[str]) -> Optional[int]:
    text = (value or "").strip()
    if not text:
        return None
    return int(text)


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build settings from an environment mapping (``os.environ`` by default).

    Raises ValidationError (or ValueError for non-numeric values) on bad input.
    """
    if env is None:
        env = os.environ

    def _num(name: str, model: type[BaseModel], field: str) -> int:
        raw = _int_or_none(env.get(name))
        if raw is None:
            return model.model_fields[field].default
        return raw

    booking = BookingConfig(
        platform_url=env.get("VISA_PLATFORM_URL") or DEFAULT_PLATFORM_URL,
        email=env.get("VISA_USER_EMAIL", ""),
        password=env.get("VISA_USER_PASSWORD", ""),
        display_name=env.get("VISA_USER_DISPLAY_NAME", ""),
        pickup_point=env.get("VISA_PICKUP_POINT") or "Accra",
        session_id=env.get("VISA_SESSION_ID", ""),
        headless=_flag(env.get("VISA_HEADLESS")),
        reschedule=_flag(env.get("VISA_RESCHEDULE")),
        profile_dir=env.get("VISA_PROFILE_DIR") or None,
        # VISA_MIN_DATE/VISA_MAX_DATE имеют приоритет над DATE_START/DATE_END
        date_start=env.get("VISA_MIN_DATE") or env.get("VISA_DATE_START") or None,
        date_end=env.get("VISA_MAX_DATE") or env.get("VISA_DATE_END") or None,
        days_from_now_min=_int_or_none(env.get("VISA_DAYS_FROM_NOW_MIN")),
        days_from_now_max=_int_or_none(env.get("VISA_DAYS_FROM_NOW_MAX")),
        weeks_from_now_min=_int_or_none(env.get("VISA_WEEKS_FROM_NOW_MIN")),
        weeks_from_now_max=_int_or_none(env.get("VISA_WEEKS_FROM_NOW_MAX")),
    )
    attempts = AttemptsConfig(
        interval_ms=_num("VISA_ATTEMPT_INTERVAL_MS", AttemptsConfig, "interval_ms"),
        window_ms=_num("VISA_ATTEMPT_WINDOW_MS", AttemptsConfig, "window_ms"),
        max_per_window=_num("VISA_ATTEMPTS_PER_WINDOW", AttemptsConfig, "max_per_window"),
    )
    pickup_toggle = PickupToggleConfig(
        cooldown_ms=_num("VISA_PICKUP_TOGGLE_COOLDOWN_MS", PickupToggleConfig, "cooldown_ms"),
        max_toggles_per_attempt=_num(
            "VISA_PICKUP_TOGGLE_MAX_PER_ATTEMPT", PickupToggleConfig, "max_toggles_per_attempt"
        ),
    )
    calendar = CalendarConfig(
        window_start_month=_num("VISA_WINDOW_START_MONTH", CalendarConfig, "window_start_month"),
        window_end_month=_num("VISA_WINDOW_END_MONTH", CalendarConfig, "window_end_month"),
        max_months=_num("VISA_CALENDAR_MAX_MONTHS", CalendarConfig, "max_months"),
    )
    logging_cfg = LoggingConfig()
    if env.get("LOGS_DIR"):
        logging_cfg.logs_dir = Path(env["LOGS_DIR"])
    if env.get("LOG_LEVEL"):
        logging_cfg.log_level = env["LOG_LEVEL"]

    bot = None
    if env.get("BOT_TOKEN"):
        bot = BotConfig(
            token=env["BOT_TOKEN"],
            admin_chat_id=int(env.get("ADMIN_CHAT_ID", "0") or "0"),
        )

    return Settings(
        booking=booking,
        attempts=attempts,
        pickup_toggle=pickup_toggle,
        calendar=calendar,
        logging=logging_cfg,
        bot=bot,
    )


@lru_cache
def get_settings() -> Settings:
    """
    Load and cache settings.

    Raises ValidationError if the environment is incomplete or invalid.
    """
    try:
        return load_settings()
    except ValidationError:
        # Пробрасываем дальше, чтобы верхний уровень мог вывести аккуратную ошибку
        raise


__all__ = [
    "Settings",
    "BookingConfig",
    "AttemptsConfig",
    "PickupToggleConfig",
    "CalendarConfig",
    "LoggingConfig",
    "BotConfig",
    "load_settings",
    "get_settings",
    "BASE_DIR",
]
