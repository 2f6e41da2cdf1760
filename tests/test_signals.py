from datetime import date

import pytest

from visa_slot_bot.models import CalendarMonthRef, DateWindow
from visa_slot_bot.signals import (
    add_months,
    in_window,
    is_green,
    is_opaque_non_green,
    looks_like_time_text,
    parse_day,
    parse_month_year,
    parse_rgb,
    resolve_date,
)

JAN_2026 = CalendarMonthRef(month_index=0, year=2026)


@pytest.mark.parametrize(
    "color",
    ["rgb(20, 163, 139)", "rgba(20, 163, 139, 1)", "rgba(20,163,139,0.5)", "RGB(20,163,139)"],
)
def test_is_green_exact_signature(color: str) -> None:
    assert is_green(color)


@pytest.mark.parametrize(
    "color",
    [
        "rgb(21, 163, 139)",
        "rgb(20, 164, 139)",
        "rgb(20, 163, 138)",
        "rgba(20, 163, 139, 0)",
        "rgba(0, 0, 0, 0)",
        "#14a38b",
        "",
        None,
    ],
)
def test_is_green_rejects_everything_else(color) -> None:
    assert not is_green(color)


def test_parse_rgb_defaults_alpha_to_one() -> None:
    rgb = parse_rgb("rgb(1, 2, 3)")
    assert rgb is not None
    assert (rgb.r, rgb.g, rgb.b, rgb.a) == (1, 2, 3, 1.0)


def test_selected_slot_colour_is_opaque_non_green() -> None:
    assert is_opaque_non_green("rgb(189, 189, 189)")
    assert not is_opaque_non_green("rgb(20, 163, 139)")
    assert not is_opaque_non_green("rgba(189, 189, 189, 0)")
    assert not is_opaque_non_green("transparent")


@pytest.mark.parametrize("text", ["abc", "0", "32", "-1", "", "1.5"])
def test_parse_day_rejects_invalid(text: str) -> None:
    assert parse_day(text) is None


def test_resolve_date_uses_header_month() -> None:
    assert resolve_date(" 15 ", JAN_2026) == date(2026, 1, 15)
    assert resolve_date("x", JAN_2026) is None
    # 30 февраля не существует: ячейку пропускаем
    assert resolve_date("30", CalendarMonthRef(month_index=1, year=2026)) is None


def test_in_window_inclusive_bounds() -> None:
    window = DateWindow(start=date(2026, 1, 10), end=date(2026, 1, 20))
    assert in_window(date(2026, 1, 10), window)
    assert in_window(date(2026, 1, 20), window)
    assert in_window(date(2026, 1, 15), window)
    assert not in_window(date(2026, 1, 9), window)
    assert not in_window(date(2026, 1, 21), window)
    assert not in_window(None, window)


def test_in_window_open_sides() -> None:
    assert in_window(date(1999, 1, 1), DateWindow())
    assert in_window(date(2030, 1, 1), DateWindow(start=date(2026, 1, 1)))
    assert not in_window(date(2030, 1, 1), DateWindow(end=date(2026, 1, 1)))


def test_in_window_reversed_window_is_unconstrained() -> None:
    window = DateWindow(start=date(2026, 2, 1), end=date(2026, 1, 1))
    assert in_window(date(2020, 5, 5), window)
    assert in_window(date(2026, 1, 15), window)


def test_parse_month_year() -> None:
    assert parse_month_year("JAN 2026") == JAN_2026
    assert parse_month_year(" dec 2025 ") == CalendarMonthRef(month_index=11, year=2025)
    assert parse_month_year("JANUARY 2026") is None
    assert parse_month_year("JAN") is None
    assert parse_month_year("") is None


def test_add_months_rolls_year() -> None:
    assert add_months(CalendarMonthRef(month_index=11, year=2025), 1) == JAN_2026
    assert add_months(JAN_2026, -1).label() == "2025-12"


@pytest.mark.parametrize("text", ["10:30 AM", "3 PM", "15:30", "09:00am"])
def test_time_text_detected(text: str) -> None:
    assert looks_like_time_text(text)


@pytest.mark.parametrize("text", ["SELECT POST", "15", "", "Available Slots"])
def test_non_time_text_ignored(text: str) -> None:
    assert not looks_like_time_text(text)
