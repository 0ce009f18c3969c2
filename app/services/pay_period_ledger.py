"""Approval/lock state machine for a (company, pay period) window.

pending -> approved -> locked, and locked -> approved through unlock.
``exported`` is a separate flag on the period that only the sync side sets,
once every snapshot line has a confirmed external transaction.

Every transition is a conditional UPDATE on (status, version); a caller that
loses the race re-reads the row and reports what actually happened.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Iterator, List, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import sync_export_priority
from app.core.errors import NotFoundError, ValidationError
from app.core.timeutil import utcnow
from app.database import SessionLocal
from app.models.employee import Employee
from app.models.pay_period import (
    PERIOD_APPROVED,
    PERIOD_LOCKED,
    PERIOD_PENDING,
    PayPeriod,
    PayPeriodLine,
)
from app.models.payroll_company import PayrollCompany
from app.models.sync_queue_item import ITEM_COMPLETED, ITEM_FAILED, SyncQueueItem
from app.models.time_entry import TimeEntry
from app.services import sync_ledger, sync_queue
from app.services.sync_payloads import ACTION_ADD, ACTION_MODIFY, TYPE_TIME_ENTRY
from app.services.time_aggregator import ZERO_HOURS, EmployeeTotals, TimeAggregator, compute_totals

logger = logging.getLogger(__name__)

LINE_REFERENCE_TYPE = "pay_period_line"

VALID_TRANSITIONS = {
    PERIOD_PENDING: {PERIOD_APPROVED},
    PERIOD_APPROVED: {PERIOD_LOCKED},
    PERIOD_LOCKED: {PERIOD_APPROVED},
}

UNLOCK_AFTER_EXPORT_WARNING = (
    "Period was unlocked after export; records in the accounting system may no "
    "longer match local time data and are not reconciled automatically."
)

EXPORTED_WHILE_UNLOCKED_WARNING = (
    "An export was confirmed while the period was unlocked; records in the "
    "accounting system may not match local time data."
)


@dataclass
class PeriodIssue:
    message: str
    employee_id: Optional[int] = None
    sync_item_id: Optional[int] = None


@dataclass
class PeriodSummary:
    pay_period_id: str
    company_id: int
    start_date: date
    end_date: date
    status: str
    live: bool
    employee_count: int
    regular_hours: Decimal
    overtime_hours: Decimal
    total_hours: Decimal
    issue_count: int
    issues: List[PeriodIssue] = field(default_factory=list)
    employees: List[EmployeeTotals] = field(default_factory=list)
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    approval_notes: Optional[str] = None
    locked_by: Optional[str] = None
    locked_at: Optional[datetime] = None
    exported: bool = False
    exported_at: Optional[datetime] = None
    export_batch: int = 0
    export_items: dict = field(default_factory=dict)
    divergence_warning: Optional[str] = None


@dataclass
class TransitionResult:
    summary: PeriodSummary
    changed: bool
    enqueued: int = 0
    warning: Optional[str] = None


@contextmanager
def _session_scope(db: Optional[Session]) -> Iterator[Session]:
    """Yield the caller's session untouched, or own a fresh one and commit it."""
    if db is not None:
        yield db
        return

    owned = SessionLocal()
    try:
        yield owned
        owned.commit()
    except Exception:
        owned.rollback()
        raise
    finally:
        owned.close()


def _check_window(start: date, end: date) -> None:
    if start > end:
        raise ValidationError("Pay period start must not be after its end")


def _find_period(db: Session, company_id: int, start: date, end: date) -> Optional[PayPeriod]:
    return (
        db.query(PayPeriod)
        .filter(
            PayPeriod.company_id == int(company_id),
            PayPeriod.start_date == start,
            PayPeriod.end_date == end,
        )
        .one_or_none()
    )


def get_or_create_period(db: Session, company_id: int, start: date, end: date) -> PayPeriod:
    _check_window(start, end)
    period = _find_period(db, company_id, start, end)
    if period is not None:
        return period

    period = PayPeriod(company_id=int(company_id), start_date=start, end_date=end, status=PERIOD_PENDING)
    try:
        with db.begin_nested():
            db.add(period)
            db.flush()
    except IntegrityError:
        # First view raced with another viewer; theirs wins.
        period = _find_period(db, company_id, start, end)
        if period is None:
            raise
    return period


def _require_period(db: Session, company_id: int, start: date, end: date) -> PayPeriod:
    _check_window(start, end)
    period = _find_period(db, company_id, start, end)
    if period is None:
        raise NotFoundError(f"No pay period {start.isoformat()}..{end.isoformat()} for company {company_id}")
    return period


def employees_in_scope(db: Session, company_id: int, start: date, end: date) -> List[int]:
    active_ids = {
        row[0]
        for row in db.query(Employee.id)
        .filter(Employee.company_id == int(company_id), Employee.is_active.is_(True))
        .all()
    }
    # Employees deactivated mid-period still have hours to settle.
    worked_ids = {
        row[0]
        for row in db.query(TimeEntry.employee_id)
        .filter(
            TimeEntry.company_id == int(company_id),
            TimeEntry.work_date >= start,
            TimeEntry.work_date <= end,
        )
        .distinct()
        .all()
    }
    return sorted(active_ids | worked_ids)


def _live_totals(
    db: Session,
    company_id: int,
    start: date,
    end: date,
    aggregator: TimeAggregator,
) -> List[EmployeeTotals]:
    totals = []
    for employee_id in employees_in_scope(db, company_id, start, end):
        t = aggregator(db, int(company_id), employee_id, start, end)
        if t.has_hours or t.issues:
            totals.append(t)
    return totals


def _export_item_counts(db: Session, period: PayPeriod) -> dict:
    rows = (
        db.query(SyncQueueItem.status, func.count(SyncQueueItem.id))
        .filter(
            SyncQueueItem.pay_period_id == period.pay_period_id,
            SyncQueueItem.type == TYPE_TIME_ENTRY,
        )
        .group_by(SyncQueueItem.status)
        .all()
    )
    return {str(status): int(count) for status, count in rows}


def _failed_export_issues(db: Session, period: PayPeriod) -> List[PeriodIssue]:
    """Export items that failed for good on lines that still have no external record."""
    items = (
        db.query(SyncQueueItem)
        .filter(
            SyncQueueItem.pay_period_id == period.pay_period_id,
            SyncQueueItem.type == TYPE_TIME_ENTRY,
            SyncQueueItem.reference_type == LINE_REFERENCE_TYPE,
        )
        .order_by(SyncQueueItem.id.desc())
        .all()
    )
    lines = {str(line.id): line for line in _lines(db, period)}

    issues: List[PeriodIssue] = []
    seen = set()
    # Newest item per line decides; a later retry supersedes an older failure.
    for item in items:
        if item.reference_id in seen:
            continue
        seen.add(item.reference_id)
        line = lines.get(item.reference_id)
        if item.status != ITEM_FAILED or line is None or line.exported_at is not None:
            continue
        issues.append(
            PeriodIssue(
                message=f"Export failed: {item.last_error or 'unknown error'}",
                employee_id=line.employee_id,
                sync_item_id=item.id,
            )
        )
    issues.reverse()
    return issues


def _summarize(db: Session, period: PayPeriod, aggregator: Optional[TimeAggregator]) -> PeriodSummary:
    base = dict(
        pay_period_id=period.pay_period_id,
        company_id=period.company_id,
        start_date=period.start_date,
        end_date=period.end_date,
        status=period.status,
        approved_by=period.approved_by,
        approved_at=period.approved_at,
        approval_notes=period.approval_notes,
        locked_by=period.locked_by,
        locked_at=period.locked_at,
        exported=bool(period.exported),
        exported_at=period.exported_at,
        export_batch=int(period.export_batch or 0),
        divergence_warning=period.divergence_warning,
    )

    if period.status == PERIOD_PENDING:
        totals = _live_totals(db, period.company_id, period.start_date, period.end_date, aggregator or compute_totals)
        issues = [PeriodIssue(message=msg, employee_id=t.employee_id) for t in totals for msg in t.issues]
        regular = sum((t.regular_hours for t in totals), ZERO_HOURS)
        overtime = sum((t.overtime_hours for t in totals), ZERO_HOURS)
        return PeriodSummary(
            live=True,
            employee_count=sum(1 for t in totals if t.has_hours),
            regular_hours=regular,
            overtime_hours=overtime,
            total_hours=regular + overtime,
            issue_count=len(issues),
            issues=issues,
            employees=totals,
            **base,
        )

    employees = [
        EmployeeTotals(
            employee_id=line.employee_id,
            regular_hours=Decimal(line.regular_hours),
            overtime_hours=Decimal(line.overtime_hours),
        )
        for line in _lines(db, period)
    ]
    issues = _failed_export_issues(db, period)
    return PeriodSummary(
        live=False,
        employee_count=int(period.employee_count),
        regular_hours=Decimal(period.regular_hours),
        overtime_hours=Decimal(period.overtime_hours),
        total_hours=Decimal(period.total_hours),
        issue_count=len(issues),
        issues=issues,
        employees=employees,
        export_items=_export_item_counts(db, period),
        **base,
    )


def _lines(db: Session, period: PayPeriod) -> List[PayPeriodLine]:
    return (
        db.query(PayPeriodLine)
        .filter(PayPeriodLine.pay_period_id == period.pay_period_id)
        .order_by(PayPeriodLine.employee_id.asc())
        .all()
    )


def _transition(db: Session, period: PayPeriod, to_status: str, now: datetime, **values) -> bool:
    """Check-and-set ``period`` into ``to_status``; False if another writer got there first."""
    from_status = period.status
    if to_status not in VALID_TRANSITIONS.get(from_status, set()):
        raise ValidationError(f"Invalid transition from '{from_status}' to '{to_status}'")

    result = db.execute(
        update(PayPeriod)
        .where(
            PayPeriod.pay_period_id == period.pay_period_id,
            PayPeriod.status == from_status,
            PayPeriod.version == period.version,
        )
        .values(status=to_status, version=PayPeriod.version + 1, updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    db.refresh(period)
    return (result.rowcount or 0) == 1


def get_period_summary(
    company_id: int,
    start: date,
    end: date,
    *,
    db: Optional[Session] = None,
    aggregator: Optional[TimeAggregator] = None,
) -> PeriodSummary:
    """Current totals and status; live-recomputed only while pending.

    The only write is the implicit creation of the period row on first view.
    """
    with _session_scope(db) as session:
        period = get_or_create_period(session, company_id, start, end)
        return _summarize(session, period, aggregator)


def approve(
    company_id: int,
    start: date,
    end: date,
    approver: str,
    notes: Optional[str] = None,
    *,
    db: Optional[Session] = None,
    aggregator: Optional[TimeAggregator] = None,
    now: Optional[datetime] = None,
) -> TransitionResult:
    now = now or utcnow()
    with _session_scope(db) as session:
        period = get_or_create_period(session, company_id, start, end)
        if period.status != PERIOD_PENDING:
            raise ValidationError(f"Pay period is already {period.status}")

        summary = _summarize(session, period, aggregator)
        if summary.issue_count > 0:
            raise ValidationError(
                f"Pay period has {summary.issue_count} unresolved issue(s); resolve them before approval"
            )

        won = _transition(
            session,
            period,
            PERIOD_APPROVED,
            now,
            employee_count=summary.employee_count,
            regular_hours=summary.regular_hours,
            overtime_hours=summary.overtime_hours,
            total_hours=summary.total_hours,
            issue_count=0,
            approved_by=str(approver),
            approved_at=now,
            approval_notes=notes,
        )
        if not won:
            raise ValidationError(f"Pay period is already {period.status}")

        for totals in summary.employees:
            if not totals.has_hours:
                continue
            session.add(
                PayPeriodLine(
                    pay_period_id=period.pay_period_id,
                    company_id=period.company_id,
                    employee_id=totals.employee_id,
                    regular_hours=totals.regular_hours,
                    overtime_hours=totals.overtime_hours,
                    total_hours=totals.total_hours,
                )
            )
        session.flush()

        logger.info(
            "Pay period approved",
            extra={
                "company_id": period.company_id,
                "pay_period_id": period.pay_period_id,
                "approved_by": str(approver),
                "employee_count": summary.employee_count,
                "total_hours": str(summary.total_hours),
            },
        )
        return TransitionResult(summary=_summarize(session, period, aggregator), changed=True)


def _enqueue_exports(session: Session, period: PayPeriod, batch: int, now: datetime) -> int:
    enqueued = 0
    for line in _lines(session, period):
        if line.exported_at is not None:
            continue
        sync_queue.enqueue(
            session,
            company_id=period.company_id,
            item_type=TYPE_TIME_ENTRY,
            action=ACTION_MODIFY if line.qb_txn_id else ACTION_ADD,
            reference_type=LINE_REFERENCE_TYPE,
            reference_id=str(line.id),
            payload={
                "pay_period_id": period.pay_period_id,
                "line_id": line.id,
                "employee_id": line.employee_id,
                "period_start": period.start_date,
                "period_end": period.end_date,
                "regular_hours": line.regular_hours,
                "overtime_hours": line.overtime_hours,
                "total_hours": line.total_hours,
                "export_batch": batch,
            },
            priority=sync_export_priority(),
            pay_period_id=period.pay_period_id,
            export_batch=batch,
            now=now,
        )
        enqueued += 1
    return enqueued


def lock(
    company_id: int,
    start: date,
    end: date,
    locker: str,
    *,
    db: Optional[Session] = None,
    now: Optional[datetime] = None,
) -> TransitionResult:
    """Freeze an approved period and fan out one export item per snapshot line.

    Locking an already-locked period is a no-op. The fan-out happens in the
    same transaction as the status change, so export work exists if and only
    if the lock committed. Lines already confirmed are not re-sent; when all
    of them are, the relock marks the period exported instead.
    """
    now = now or utcnow()
    with _session_scope(db) as session:
        period = _require_period(session, company_id, start, end)
        if period.status == PERIOD_PENDING:
            raise ValidationError("Pay period must be approved before it can be locked")
        if period.status == PERIOD_LOCKED:
            return TransitionResult(summary=_summarize(session, period, None), changed=False)

        batch = int(period.export_batch or 0) + 1
        won = _transition(
            session,
            period,
            PERIOD_LOCKED,
            now,
            locked_by=str(locker),
            locked_at=now,
            export_batch=batch,
        )
        if not won:
            if period.status == PERIOD_LOCKED:
                return TransitionResult(summary=_summarize(session, period, None), changed=False)
            raise ValidationError(f"Pay period changed concurrently (status={period.status})")

        # Lines confirmed while the period was unlocked count toward the relock.
        enqueued = 0
        if not mark_exported_if_complete(session, period.pay_period_id, now=now):
            enqueued = _enqueue_exports(session, period, batch, now)

        logger.info(
            "Pay period locked",
            extra={
                "company_id": period.company_id,
                "pay_period_id": period.pay_period_id,
                "locked_by": str(locker),
                "enqueued": enqueued,
                "export_batch": batch,
            },
        )
        return TransitionResult(summary=_summarize(session, period, None), changed=True, enqueued=enqueued)


def unlock(
    company_id: int,
    start: date,
    end: date,
    actor: str,
    *,
    db: Optional[Session] = None,
    now: Optional[datetime] = None,
) -> TransitionResult:
    """Return a locked period to approved.

    Queued or exported sync items are left as they are. Unlocking a period
    that was already exported records a divergence warning instead of trying
    to reconcile the accounting system.
    """
    now = now or utcnow()
    with _session_scope(db) as session:
        period = _require_period(session, company_id, start, end)
        if period.status != PERIOD_LOCKED:
            raise ValidationError(f"Only locked periods can be unlocked (status={period.status})")

        warning = UNLOCK_AFTER_EXPORT_WARNING if period.exported else None
        values = dict(unlocked_by=str(actor), unlocked_at=now, locked_by=None, locked_at=None)
        if warning:
            values["divergence_warning"] = warning

        won = _transition(session, period, PERIOD_APPROVED, now, **values)
        if not won:
            raise ValidationError(f"Pay period changed concurrently (status={period.status})")

        if warning:
            logger.warning(
                "Exported pay period unlocked",
                extra={
                    "company_id": period.company_id,
                    "pay_period_id": period.pay_period_id,
                    "actor": str(actor),
                },
            )
            sync_ledger.record(
                session,
                company_id=period.company_id,
                operation="unlock_after_export",
                direction=sync_ledger.DIRECTION_EXPORT,
                status="warning",
                record_type="pay_period",
                record_id=period.pay_period_id,
                message=warning,
            )

        return TransitionResult(summary=_summarize(session, period, None), changed=True, warning=warning)


def export_now(
    company_id: int,
    start: date,
    end: date,
    actor: str,
    *,
    db: Optional[Session] = None,
    now: Optional[datetime] = None,
) -> TransitionResult:
    """Re-enqueue export items for every snapshot line not yet confirmed exported."""
    now = now or utcnow()
    with _session_scope(db) as session:
        period = _require_period(session, company_id, start, end)
        if period.status != PERIOD_LOCKED:
            raise ValidationError("Pay period must be locked before it can be exported")
        if period.exported:
            raise ValidationError("Pay period has already been exported")

        batch = int(period.export_batch or 0) + 1
        result = session.execute(
            update(PayPeriod)
            .where(
                PayPeriod.pay_period_id == period.pay_period_id,
                PayPeriod.status == PERIOD_LOCKED,
                PayPeriod.version == period.version,
            )
            .values(export_batch=batch, version=PayPeriod.version + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        session.refresh(period)
        if (result.rowcount or 0) != 1:
            raise ValidationError("Pay period changed concurrently; reload and retry")

        enqueued = _enqueue_exports(session, period, batch, now)
        logger.info(
            "Pay period export requested",
            extra={
                "company_id": period.company_id,
                "pay_period_id": period.pay_period_id,
                "actor": str(actor),
                "enqueued": enqueued,
                "export_batch": batch,
            },
        )
        return TransitionResult(summary=_summarize(session, period, None), changed=True, enqueued=enqueued)


def record_line_export(
    db: Session,
    *,
    line_id: int,
    txn_id: Optional[str],
    edit_sequence: Optional[str],
    export_batch: Optional[int],
    now: Optional[datetime] = None,
) -> PayPeriodLine:
    """Store the external transaction for a line and settle the period's exported flag."""
    now = now or utcnow()
    line = db.get(PayPeriodLine, int(line_id))
    if line is None:
        raise NotFoundError(f"Pay period line {line_id} not found")

    if txn_id:
        line.qb_txn_id = txn_id
    if edit_sequence:
        line.qb_edit_sequence = edit_sequence
    line.exported_batch = export_batch
    line.exported_at = now
    db.flush()

    period = db.get(PayPeriod, line.pay_period_id)
    if period.status != PERIOD_LOCKED:
        _flag_export_while_unlocked(db, period, line, now)
        return line

    mark_exported_if_complete(db, line.pay_period_id, now=now)
    return line


def _flag_export_while_unlocked(db: Session, period: PayPeriod, line: PayPeriodLine, now: datetime) -> None:
    db.execute(
        update(PayPeriod)
        .where(PayPeriod.pay_period_id == period.pay_period_id)
        .values(divergence_warning=EXPORTED_WHILE_UNLOCKED_WARNING, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.refresh(period)

    logger.warning(
        "Export confirmed for unlocked pay period",
        extra={
            "company_id": period.company_id,
            "pay_period_id": period.pay_period_id,
            "line_id": line.id,
            "status": period.status,
        },
    )
    sync_ledger.record(
        db,
        company_id=period.company_id,
        operation="export_while_unlocked",
        direction=sync_ledger.DIRECTION_EXPORT,
        status="warning",
        record_type="pay_period_line",
        record_id=line.id,
        message=EXPORTED_WHILE_UNLOCKED_WARNING,
    )


def mark_exported_if_complete(db: Session, pay_period_id: str, *, now: Optional[datetime] = None) -> bool:
    """Set ``exported`` once every line is confirmed; only locked periods qualify."""
    now = now or utcnow()
    period = db.get(PayPeriod, str(pay_period_id))
    if period is None:
        raise NotFoundError(f"Pay period {pay_period_id} not found")
    if period.exported:
        return True
    if period.status != PERIOD_LOCKED:
        return False

    lines = _lines(db, period)
    if not lines or any(line.exported_at is None for line in lines):
        return False

    result = db.execute(
        update(PayPeriod)
        .where(
            PayPeriod.pay_period_id == period.pay_period_id,
            PayPeriod.status == PERIOD_LOCKED,
            PayPeriod.exported.is_(False),
        )
        .values(exported=True, exported_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.refresh(period)
    if (result.rowcount or 0) == 1:
        logger.info(
            "Pay period exported",
            extra={"company_id": period.company_id, "pay_period_id": period.pay_period_id},
        )
    return bool(period.exported)


def locked_period_for(db: Session, company_id: int, day: date) -> Optional[PayPeriod]:
    return (
        db.query(PayPeriod)
        .filter(
            PayPeriod.company_id == int(company_id),
            PayPeriod.status == PERIOD_LOCKED,
            PayPeriod.start_date <= day,
            PayPeriod.end_date >= day,
        )
        .first()
    )


def list_periods(
    db: Session,
    *,
    company_id: int,
    count: int = 6,
    today: Optional[date] = None,
) -> List[dict]:
    """Recent period windows by the company's cadence, newest first, with any stored state."""
    today = today or utcnow().date()
    company = db.get(PayrollCompany, int(company_id)) or PayrollCompany()

    windows = []
    day = today
    for _ in range(max(1, int(count))):
        start, end = company.period_for(day)
        windows.append((start, end))
        day = start - timedelta(days=1)

    rows = []
    for start, end in windows:
        period = _find_period(db, company_id, start, end)
        rows.append(
            {
                "start_date": start,
                "end_date": end,
                "is_current": start <= today <= end,
                "is_past": end < today,
                "pay_period_id": None if period is None else period.pay_period_id,
                "status": PERIOD_PENDING if period is None else period.status,
                "exported": False if period is None else bool(period.exported),
                "employee_count": None if period is None or period.status == PERIOD_PENDING else period.employee_count,
                "total_hours": None if period is None or period.status == PERIOD_PENDING else period.total_hours,
            }
        )
    return rows


def export_progress(db: Session, pay_period_id: str, *, company_id: int) -> dict:
    period = db.get(PayPeriod, str(pay_period_id))
    if period is None or period.company_id != int(company_id):
        raise NotFoundError(f"Pay period {pay_period_id} not found")
    lines = _lines(db, period)
    counts = _export_item_counts(db, period)
    return {
        "pay_period_id": period.pay_period_id,
        "lines": len(lines),
        "lines_exported": sum(1 for line in lines if line.exported_at is not None),
        "items": counts,
        "completed": counts.get(ITEM_COMPLETED, 0),
        "exported": bool(period.exported),
    }
