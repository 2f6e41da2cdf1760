"""
Locator registry for the applicant UI (Angular Material).

Все CSS/XPath-селекторы целевого сайта собраны здесь, чтобы модули
и тесты ссылались на одни и те же строки.
"""

from __future__ import annotations


def _xpath_literal(value: str) -> str:
    text = str(value)
    if '"' not in text:
        return f'"{text}"'
    if "'" not in text:
        return f"'{text}'"
    # В тексте оба вида кавычек: собираем через concat()
    parts = text.split('"')
    return "concat(" + ", '\"', ".join(f'"{part}"' for part in parts) + ")"


def _upper(expr: str) -> str:
    return f"translate({expr}, 'abcdefghijklmnopqrstuvwxyz', 'ABCDEFGHIJKLMNOPQRSTUVWXYZ')"


# region overlays
OVERLAY_BACKDROP = ".cdk-overlay-backdrop"
OVERLAY_PANE = ".cdk-overlay-pane"
LOADING_SPINNER = ".ngx-spinner-overlay"
DIALOG_CONTAINER = "mat-dialog-container.mat-dialog-container"
# endregion

# region pickup
BOOKING_BLOCK = ".ofc-book-slot-block"
PICKUP_SELECT = (
    ".ofc-book-slot-block mat-select[panelclass*='drop-down-panelcls'], "
    ".ofc-book-slot-block mat-select"
)
PICKUP_VALUE_TEXT = ".mat-select-value-text"
PICKUP_OPTIONS = ".cdk-overlay-pane mat-option"


def pickup_option(name: str) -> str:
    return (
        "xpath=//div[contains(@class,'cdk-overlay-pane')]//mat-option"
        f"//span[contains(normalize-space(.), {_xpath_literal(name)})]"
    )


# endregion

# region calendar
CALENDAR_HEADER = ".mat-calendar-period-button"
CALENDAR_NEXT = "button.mat-calendar-next-button"
CALENDAR_CELLS = (
    "button.mat-calendar-body-cell:not(.mat-calendar-body-disabled), "
    "td.mat-calendar-body-cell:not(.mat-calendar-body-disabled)"
)
CALENDAR_CELL_CONTENT = ".mat-calendar-body-cell-content"
CALENDAR_SELECTED_CLASS = "mat-calendar-body-selected"


def picker_year_cell(year: int) -> str:
    return (
        "xpath=//mat-multi-year-view//td//div[contains(@class,'mat-calendar-body-cell-content')"
        f" and normalize-space(.)={_xpath_literal(str(year))}]"
    )


def picker_month_cell(label: str) -> str:
    return (
        "xpath=//mat-year-view//td//div[contains(@class,'mat-calendar-body-cell-content')"
        f" and contains(normalize-space(.), {_xpath_literal(label)})]"
    )


# endregion

# region booking flow
APPLICANT_CHECKBOX = (
    "xpath=//h3[contains(normalize-space(.),'Applicant List')]"
    "/ancestor::*[contains(@class,'group-data-holder')][1]//input[@type='checkbox']"
)
SLOT_HEADER = (
    "xpath=//*[contains(normalize-space(.), 'Available Slot') "
    "or contains(normalize-space(.), 'Available Slots')]"
)
SLOT_BUTTONS_PREFERRED = (
    ".ofc-appoinment-sloat-block .booking-time-buttons.slot_calender button.green-button, "
    ".booking-time-buttons.slot_calender button.green-button"
)
_TIMEISH = (
    "contains(normalize-space(.), ':') "
    "or contains(translate(normalize-space(.),'amp','AMP'),'AM') "
    "or contains(translate(normalize-space(.),'amp','AMP'),'PM')"
)
SLOT_BUTTONS_FALLBACK = (
    f"xpath=//button[{_TIMEISH}] | //a[{_TIMEISH}] | //*[@role='button' and ({_TIMEISH})]"
)
SLOT_SELECTED_CLASS = "selected-slot"
SLOT_COLOR_WRAPPERS = (".mat-button-wrapper", "span")

_TEXT = _upper("normalize-space(.)")
PROCEED_BUTTON = (
    f"xpath=//button[(contains({_TEXT}, 'SELECT POST') and contains({_TEXT}, 'PROCEED'))"
    f" or (contains({_TEXT}, 'BOOK') and contains({_TEXT}, 'POST')"
    f" and contains({_TEXT}, 'APPOINTMENT'))]"
)
# endregion

# region session / navigation
LOGIN_USERNAME = 'input[formcontrolname="username"]'
LOGIN_PASSWORD = 'input[formcontrolname="password"]'
LOGIN_FIELDS = f"{LOGIN_USERNAME}, {LOGIN_PASSWORD}"

PENDING_LABELS = ("PENDING APPOINTMENT REQUEST", "PENDING APPOINTMENT")
PENDING_FALLBACK = (
    "xpath=//*[contains(normalize-space(.), 'PENDING APPOINTMENT') "
    "and not(contains(normalize-space(.), 'CANCEL APPOINTMENT'))]"
)
RESCHEDULE_BUTTON = (
    "xpath=//a[normalize-space(.)='RESCHEDULE' and contains(@class,'my-app-button-popup-resch')]"
    " | //a[normalize-space(.)='RESCHEDULE']"
    " | //button[normalize-space(.)='RESCHEDULE' or .//span[normalize-space(.)='RESCHEDULE']]"
)
DIALOG_CONFIRM = (
    "xpath=.//button[@cdkfocusinitial or .//span[normalize-space(.)='Confirm' "
    "or normalize-space(.)='CONFIRM'] or normalize-space(.)='Confirm' or normalize-space(.)='CONFIRM']"
)
CLICKABLE_ANCESTOR = "button, a, [role='button'], [tabindex], .create-taskbutton"


def exact_text(text: str) -> str:
    return f"xpath=//*[normalize-space(.)={_xpath_literal(text)}]"


def contains_text(text: str) -> str:
    return f"xpath=//*[contains(normalize-space(.), {_xpath_literal(text)})]"


# endregion


__all__ = [name for name in dir() if name.isupper() and not name.startswith("_")] + [
    "pickup_option",
    "picker_year_cell",
    "picker_month_cell",
    "exact_text",
    "contains_text",
]
