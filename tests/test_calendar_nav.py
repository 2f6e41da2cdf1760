import asyncio
from datetime import date

from fakes import FakeElement, FakePage
from visa_slot_bot import locators
from visa_slot_bot.calendar_nav import CalendarNavigator
from visa_slot_bot.config import CalendarConfig
from visa_slot_bot.events import EventBus
from visa_slot_bot.models import CalendarMonthRef, DateWindow


def _navigator(page: FakePage, **cfg: int) -> CalendarNavigator:
    return CalendarNavigator(page, EventBus(), cfg=CalendarConfig(**cfg), timeout_ms=500)


def _picker_page(header_text: str = "JAN 2026") -> FakePage:
    """Period picker: header -> year grid -> month grid, last click updates the header."""
    page = FakePage()
    header = page.add(locators.CALENDAR_HEADER, FakeElement(header_text))
    page.add(locators.picker_year_cell(2026), FakeElement("2026"))
    for label in ("MAR", "JUN"):
        page.add(
            locators.picker_month_cell(label),
            FakeElement(label, on_click=lambda _, label=label: setattr(header, "text", f"{label} 2026")),
        )
    return page


def test_current_month_from_header() -> None:
    page = FakePage()
    page.add(locators.CALENDAR_HEADER, FakeElement("FEB 2026"))
    assert asyncio.run(_navigator(page).current_month()) == CalendarMonthRef(month_index=1, year=2026)


def test_current_month_without_header() -> None:
    assert asyncio.run(_navigator(FakePage()).current_month()) is None


def test_set_month_is_noop_when_already_shown() -> None:
    page = _picker_page("MAR 2026")
    ok = asyncio.run(_navigator(page).set_month(CalendarMonthRef(month_index=2, year=2026)))
    assert ok
    assert page.elements[locators.CALENDAR_HEADER][0].js_clicks == 0


def test_set_month_through_period_picker() -> None:
    page = _picker_page()
    ok = asyncio.run(_navigator(page).set_month(CalendarMonthRef(month_index=2, year=2026)))
    assert ok
    assert page.elements[locators.CALENDAR_HEADER][0].text == "MAR 2026"
    assert page.elements[locators.picker_year_cell(2026)][0].js_clicks == 1


def test_set_month_outside_month_window_refused() -> None:
    page = _picker_page()
    nav = _navigator(page, window_start_month=1, window_end_month=3)
    assert not asyncio.run(nav.set_month(CalendarMonthRef(month_index=5, year=2026)))
    assert page.elements[locators.CALENDAR_HEADER][0].js_clicks == 0


def test_month_allowed_is_inclusive() -> None:
    nav = _navigator(FakePage(), window_start_month=3, window_end_month=5)
    assert nav.month_allowed(CalendarMonthRef(month_index=2, year=2026))
    assert nav.month_allowed(CalendarMonthRef(month_index=4, year=2026))
    assert not nav.month_allowed(CalendarMonthRef(month_index=1, year=2026))
    assert not nav.month_allowed(CalendarMonthRef(month_index=5, year=2026))


def test_disabled_next_button_means_no_more_months() -> None:
    page = FakePage()
    page.add(locators.CALENDAR_HEADER, FakeElement("JAN 2026"))
    button = page.add(locators.CALENDAR_NEXT, FakeElement(attrs={"disabled": "true"}))

    assert not asyncio.run(_navigator(page).next_month())
    assert button.clicks == 0


def test_next_month_stops_at_window_end() -> None:
    page = FakePage()
    page.add(locators.CALENDAR_HEADER, FakeElement("MAR 2026"))
    button = page.add(locators.CALENDAR_NEXT, FakeElement())

    assert not asyncio.run(_navigator(page, window_end_month=3).next_month())
    assert button.clicks == 0


def test_align_to_window_jumps_forward() -> None:
    page = _picker_page()
    window = DateWindow(start=date(2026, 6, 3), end=date(2026, 6, 30))

    assert asyncio.run(_navigator(page).align_to_window(window))
    assert page.elements[locators.CALENDAR_HEADER][0].text == "JUN 2026"


def test_align_to_window_never_goes_back() -> None:
    page = _picker_page("JUN 2026")
    window = DateWindow(start=date(2026, 3, 1))

    assert asyncio.run(_navigator(page).align_to_window(window))
    assert page.elements[locators.CALENDAR_HEADER][0].text == "JUN 2026"
