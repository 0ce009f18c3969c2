from datetime import date, datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from app.core.errors import NotFoundError, ValidationError
from app.core.timeutil import as_utc, utcnow
from app.database import SessionLocal
from app.models.time_correction import TimeCorrection
from app.models.time_entry import TimeEntry
from app.services.pay_period_ledger import locked_period_for

CORRECTION_TYPES = {"edit", "add_missed", "delete"}


def _get_active_entry(
    db: Session,
    company_id: int,
    employee_id: int,
) -> Optional[TimeEntry]:
    return (
        db.query(TimeEntry)
        .filter(
            TimeEntry.company_id == company_id,
            TimeEntry.employee_id == employee_id,
            TimeEntry.status == "active",
        )
        .first()
    )


def ensure_editable(db: Session, company_id: int, work_date: date) -> None:
    period = locked_period_for(db, company_id, work_date)
    if period is not None:
        raise ValidationError(
            f"Pay period {period.start_date.isoformat()}..{period.end_date.isoformat()} "
            "is locked for payroll processing"
        )


def can_edit_time_entry(db: Session, company_id: int, work_date: date) -> dict:
    try:
        ensure_editable(db, company_id, work_date)
    except ValidationError as exc:
        return {"can_edit": False, "reason": str(exc)}
    return {"can_edit": True, "reason": None}


def clock_in(
    company_id: int,
    employee_id: int,
    started_at: datetime,
    *,
    work_date: Optional[date] = None,
    db: Optional[Session] = None,
) -> TimeEntry:
    """
    If db is provided, this function will NOT commit/close. Caller owns the transaction.
    If db is None, this function manages its own session + commit.
    """
    owns_db = db is None
    if owns_db:
        db = SessionLocal()

    try:
        work_date = work_date or as_utc(started_at).date()
        ensure_editable(db, company_id, work_date)

        active_entry = _get_active_entry(db, company_id, employee_id)
        if active_entry is not None:
            raise ValidationError("Active time entry already exists for employee in company")

        time_entry = TimeEntry(
            time_entry_id=str(uuid4()),
            company_id=company_id,
            employee_id=employee_id,
            work_date=work_date,
            started_at=started_at,
            ended_at=None,
            status="active",
        )

        db.add(time_entry)
        db.flush()
        db.refresh(time_entry)

        if owns_db:
            db.commit()

        return time_entry
    except Exception:
        if owns_db:
            db.rollback()
        raise
    finally:
        if owns_db:
            db.close()


def clock_out(
    company_id: int,
    employee_id: int,
    ended_at: datetime,
    *,
    break_minutes: int = 0,
    db: Optional[Session] = None,
) -> TimeEntry:
    """
    If db is provided, this function will NOT commit/close. Caller owns the transaction.
    If db is None, this function manages its own session + commit.
    """
    owns_db = db is None
    if owns_db:
        db = SessionLocal()

    try:
        active_entry = _get_active_entry(db, company_id, employee_id)
        if active_entry is None:
            raise ValidationError("No active time entry found for employee in company")

        ensure_editable(db, company_id, active_entry.work_date)

        if as_utc(ended_at) < as_utc(active_entry.started_at):
            raise ValidationError("ended_at must not be before started_at")

        active_entry.ended_at = ended_at
        active_entry.break_minutes = max(0, int(break_minutes))
        active_entry.status = "completed"

        db.flush()
        db.refresh(active_entry)

        if owns_db:
            db.commit()

        return active_entry
    except Exception:
        if owns_db:
            db.rollback()
        raise
    finally:
        if owns_db:
            db.close()


def adjust_entry(
    db: Session,
    *,
    company_id: int,
    time_entry_id: str,
    started_at: Optional[datetime] = None,
    ended_at: Optional[datetime] = None,
    break_minutes: Optional[int] = None,
    notes: Optional[str] = None,
) -> TimeEntry:
    entry = (
        db.query(TimeEntry)
        .filter(TimeEntry.company_id == company_id, TimeEntry.time_entry_id == str(time_entry_id))
        .one_or_none()
    )
    if entry is None:
        raise NotFoundError("Time entry not found")

    ensure_editable(db, company_id, entry.work_date)

    if started_at is not None:
        new_work_date = as_utc(started_at).date()
        ensure_editable(db, company_id, new_work_date)
        entry.started_at = started_at
        entry.work_date = new_work_date
    if ended_at is not None:
        entry.ended_at = ended_at
        entry.status = "completed"
    if break_minutes is not None:
        entry.break_minutes = max(0, int(break_minutes))
    if notes is not None:
        entry.notes = notes

    if entry.ended_at is not None and as_utc(entry.ended_at) < as_utc(entry.started_at):
        raise ValidationError("ended_at must not be before started_at")

    db.flush()
    return entry


def request_correction(
    db: Session,
    *,
    company_id: int,
    employee_id: int,
    work_date: date,
    request_type: str,
    reason: str,
    time_entry_id: Optional[str] = None,
) -> TimeCorrection:
    if request_type not in CORRECTION_TYPES:
        raise ValidationError(f"Unknown correction type: {request_type}")
    ensure_editable(db, company_id, work_date)

    row = TimeCorrection(
        company_id=company_id,
        employee_id=employee_id,
        time_entry_id=time_entry_id,
        work_date=work_date,
        request_type=request_type,
        reason=reason,
        status="pending",
    )
    db.add(row)
    db.flush()
    return row


def review_correction(
    db: Session,
    *,
    company_id: int,
    correction_id: int,
    approve: bool,
    reviewer: str,
) -> TimeCorrection:
    row = (
        db.query(TimeCorrection)
        .filter(TimeCorrection.company_id == company_id, TimeCorrection.id == int(correction_id))
        .one_or_none()
    )
    if row is None:
        raise NotFoundError("Time correction not found")
    if row.status != "pending":
        raise ValidationError(f"Correction already {row.status}")

    ensure_editable(db, company_id, row.work_date)

    row.status = "approved" if approve else "denied"
    row.reviewed_by = reviewer
    row.reviewed_at = utcnow()
    db.flush()
    return row
