"""
Colour and date signals read from calendar cells and slot buttons.

Сайт помечает доступные даты и слоты только цветом фона (#14a38b),
поэтому сравнение строго точное: любой другой цвет, включая близкие
оттенки, считается недоступным.
"""

from __future__ import annotations

import re
from datetime import date
from typing import NamedTuple, Optional

from .models import CalendarMonthRef, DateWindow


GREEN_RGB = (20, 163, 139)

MONTH_ABBREVIATIONS = (
    "JAN", "FEB", "MAR", "APR", "MAY", "JUN",
    "JUL", "AUG", "SEP", "OCT", "NOV", "DEC",
)

_RGB_RE = re.compile(r"rgba?\((\d+)\s*,\s*(\d+)\s*,\s*(\d+)(?:\s*,\s*([\d.]+))?\)")
_TIME_RE = re.compile(r"\b\d{1,2}:\d{2}\s*(AM|PM)?\b", re.IGNORECASE)
_HOUR_RE = re.compile(r"\b\d{1,2}\s*(AM|PM)\b", re.IGNORECASE)


class RGBA(NamedTuple):
    r: int
    g: int
    b: int
    a: float


def parse_rgb(color: Optional[str]) -> Optional[RGBA]:
    """Parse ``rgb()``/``rgba()`` text as returned by getComputedStyle."""
    match = _RGB_RE.search(str(color or "").strip().lower())
    if not match:
        return None
    alpha = match.group(4)
    return RGBA(
        int(match.group(1)),
        int(match.group(2)),
        int(match.group(3)),
        1.0 if alpha is None else float(alpha),
    )


def is_green(color: Optional[str]) -> bool:
    rgb = parse_rgb(color)
    if rgb is None:
        return False
    return (rgb.r, rgb.g, rgb.b) == GREEN_RGB and rgb.a != 0


def is_opaque_non_green(color: Optional[str]) -> bool:
    """Gray "selected" state of a slot: any visible colour except the green one."""
    rgb = parse_rgb(color)
    if rgb is None or rgb.a == 0:
        return False
    return not is_green(color)


def parse_day(text: Optional[str]) -> Optional[int]:
    try:
        day = int(str(text or "").strip())
    except ValueError:
        return None
    if day < 1 or day > 31:
        return None
    return day


def resolve_date(day_text: Optional[str], month: CalendarMonthRef) -> Optional[date]:
    """
    Combine a cell's day-of-month with the visible header month.

    Возвращает None, если день не распознан или не существует в этом месяце:
    такую ячейку вызывающий код пропускает.
    """
    day = parse_day(day_text)
    if day is None:
        return None
    try:
        return date(month.year, month.month_index + 1, day)
    except ValueError:
        return None


def in_window(value: Optional[date], window: DateWindow) -> bool:
    if value is None:
        return False
    start, end = window.start, window.end
    if start is not None and end is not None and start > end:
        # Ошибочное окно не блокирует пользователя: считаем, что ограничений нет
        return True
    if start is not None and value < start:
        return False
    if end is not None and value > end:
        return False
    return True


def parse_month_year(header_text: Optional[str]) -> Optional[CalendarMonthRef]:
    parts = str(header_text or "").strip().split()
    if len(parts) < 2:
        return None
    month = parts[0].upper()
    try:
        year = int(parts[1])
    except ValueError:
        return None
    if month not in MONTH_ABBREVIATIONS:
        return None
    return CalendarMonthRef(month_index=MONTH_ABBREVIATIONS.index(month), year=year)


def month_key(ref: CalendarMonthRef) -> int:
    return ref.year * 12 + ref.month_index


def add_months(ref: CalendarMonthRef, count: int) -> CalendarMonthRef:
    total = month_key(ref) + count
    return CalendarMonthRef(month_index=total % 12, year=total // 12)


def month_of(value: date) -> CalendarMonthRef:
    return CalendarMonthRef(month_index=value.month - 1, year=value.year)


def looks_like_time_text(text: Optional[str]) -> bool:
    """``3:30 PM``, ``03:30PM``, ``15:30``, ``3 PM``."""
    value = str(text or "").strip()
    if not value:
        return False
    return bool(_TIME_RE.search(value) or _HOUR_RE.search(value))


__all__ = [
    "GREEN_RGB",
    "MONTH_ABBREVIATIONS",
    "RGBA",
    "parse_rgb",
    "is_green",
    "is_opaque_non_green",
    "parse_day",
    "resolve_date",
    "in_window",
    "parse_month_year",
    "month_key",
    "add_months",
    "month_of",
    "looks_like_time_text",
]
