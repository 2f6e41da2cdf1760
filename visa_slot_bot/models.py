"""
Pydantic models for the booking watcher domain.

Pydantic-модели: окно дат, месяц календаря, результат попытки,
состояние переключателя пункта выдачи и события для хоста.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class AttemptResult(str, Enum):
    """Sole output of one booking attempt."""

    SUCCESS = "SUCCESS"
    RESET_PICKUP = "RESET_PICKUP"


class AttemptStage(str, Enum):
    SELECT_PICKUP = "SELECT_PICKUP"
    SCAN_DATE = "SCAN_DATE"
    WAIT_OVERLAY = "WAIT_OVERLAY"
    CONFIRM_APPLICANT = "CONFIRM_APPLICANT"
    WAIT_SLOT_HEADER = "WAIT_SLOT_HEADER"
    SELECT_SLOT = "SELECT_SLOT"
    PROCEED = "PROCEED"
    SELECT_SLOT_STAGE2 = "SELECT_SLOT_STAGE2"
    PROCEED_STAGE2 = "PROCEED_STAGE2"


class CalendarMonthRef(BaseModel):
    """Month shown in the calendar header, e.g. ``JAN 2026``."""

    month_index: int = Field(ge=0, le=11)
    year: int

    def label(self) -> str:
        return f"{self.year}-{self.month_index + 1:02d}"


class DateWindow(BaseModel):
    """Inclusive date acceptance window; ``None`` means unbounded on that side."""

    start: Optional[date] = None
    end: Optional[date] = None

    @property
    def is_bounded(self) -> bool:
        return self.start is not None or self.end is not None

    def describe(self) -> str:
        start = self.start.isoformat() if self.start else "(none)"
        end = self.end.isoformat() if self.end else "(none)"
        return f"{start}..{end}"


class DateScanResult(BaseModel):
    clicked: bool = False
    out_of_range_found: bool = False
    green_found: int = 0
    green_in_range: int = 0
    selected_date: Optional[date] = None


class PickupToggleState(BaseModel):
    """Toggle bookkeeping owned by one pickup selector (monotonic seconds)."""

    last_alternate_option: Optional[str] = None
    last_toggle_at: Optional[float] = None
    toggles_this_attempt: int = 0


class WatchState(BaseModel):
    """State of the watch loop, used by the operator bot."""

    is_running: bool = False
    attempts_total: int = 0
    last_attempt_at: Optional[datetime] = None
    last_status: Optional[str] = None
    last_error: Optional[str] = None
    result: Optional[AttemptResult] = None


class WatchEvent(BaseModel):
    """Single ``(kind, payload)`` event sent from the core to its host."""

    kind: str  # "status" | "log"
    session_id: str = ""
    state: Optional[str] = None
    level: Optional[str] = None
    message: str = ""
    ts: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    extra: Dict[str, Any] = Field(default_factory=dict)

    def to_wire(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": self.kind, "sessionId": self.session_id}
        if self.kind == "status":
            payload["state"] = self.state
        else:
            payload["level"] = self.level
        payload["message"] = self.message
        payload.update(self.extra)
        return payload


__all__ = [
    "AttemptResult",
    "AttemptStage",
    "CalendarMonthRef",
    "DateWindow",
    "DateScanResult",
    "PickupToggleState",
    "WatchState",
    "WatchEvent",
]
