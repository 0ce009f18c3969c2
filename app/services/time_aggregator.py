"""Reduce committed clock data to per-employee hour totals for a window.

The pay-period ledger only depends on the ``TimeAggregator`` call shape;
``compute_totals`` is the default implementation over ``TimeEntry`` rows.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Dict, List

from sqlalchemy.orm import Session

from app.core.config import WEEKLY_OVERTIME_THRESHOLD_HOURS
from app.core.timeutil import as_utc
from app.models.time_correction import TimeCorrection
from app.models.time_entry import TimeEntry

_CENT = Decimal("0.01")
ZERO_HOURS = Decimal("0.00")


@dataclass(frozen=True)
class EmployeeTotals:
    employee_id: int
    regular_hours: Decimal = ZERO_HOURS
    overtime_hours: Decimal = ZERO_HOURS
    issues: List[str] = field(default_factory=list)

    @property
    def total_hours(self) -> Decimal:
        return self.regular_hours + self.overtime_hours

    @property
    def has_hours(self) -> bool:
        return self.total_hours > 0


TimeAggregator = Callable[[Session, int, int, date, date], EmployeeTotals]


def _hours(value: Decimal) -> Decimal:
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


def _week_start(day: date) -> date:
    # Sunday-start weeks; date.weekday() is Monday=0.
    return day - timedelta(days=(day.weekday() + 1) % 7)


def _net_hours(entry: TimeEntry) -> Decimal:
    started = as_utc(entry.started_at)
    ended = as_utc(entry.ended_at)
    seconds = Decimal(str((ended - started).total_seconds()))
    seconds -= Decimal(int(entry.break_minutes or 0) * 60)
    if seconds < 0:
        return Decimal("0")
    return seconds / Decimal(3600)


def compute_totals(
    db: Session,
    company_id: int,
    employee_id: int,
    period_start: date,
    period_end: date,
) -> EmployeeTotals:
    entries = (
        db.query(TimeEntry)
        .filter(
            TimeEntry.company_id == int(company_id),
            TimeEntry.employee_id == int(employee_id),
            TimeEntry.work_date >= period_start,
            TimeEntry.work_date <= period_end,
        )
        .order_by(TimeEntry.started_at.asc())
        .all()
    )

    issues: List[str] = []
    weekly: Dict[date, Decimal] = defaultdict(Decimal)

    for entry in entries:
        if entry.ended_at is None:
            issues.append(f"Missing clock-out on {entry.work_date.isoformat()}")
            continue
        weekly[_week_start(entry.work_date)] += _net_hours(entry)

    pending_corrections = (
        db.query(TimeCorrection)
        .filter(
            TimeCorrection.company_id == int(company_id),
            TimeCorrection.employee_id == int(employee_id),
            TimeCorrection.status == "pending",
            TimeCorrection.work_date >= period_start,
            TimeCorrection.work_date <= period_end,
        )
        .count()
    )
    if pending_corrections:
        issues.append(f"{pending_corrections} pending correction(s)")

    threshold = Decimal(WEEKLY_OVERTIME_THRESHOLD_HOURS)
    regular = Decimal("0")
    overtime = Decimal("0")
    for week_hours in weekly.values():
        week_hours = _hours(week_hours)
        regular += min(week_hours, threshold)
        overtime += max(Decimal("0"), week_hours - threshold)

    return EmployeeTotals(
        employee_id=int(employee_id),
        regular_hours=_hours(regular),
        overtime_hours=_hours(overtime),
        issues=issues,
    )
