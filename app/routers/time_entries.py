from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from app.core.authorization import Actor, Role, require_role
from app.core.errors import PayrollSyncError
from app.database import SessionLocal
from app.deps.errors import http_error
from app.models.time_correction import TimeCorrection
from app.models.time_entry import TimeEntry
from app.services import time_clock

router = APIRouter(
    prefix="/time_entries",
    tags=["Time Entries"],
)


class ClockInRequest(BaseModel):
    employee_id: int
    started_at: Optional[datetime] = Field(
        default=None,
        description="If omitted, server uses current UTC time.",
    )
    work_date: Optional[date] = None


class ClockOutRequest(BaseModel):
    employee_id: int
    ended_at: Optional[datetime] = Field(
        default=None,
        description="If omitted, server uses current UTC time.",
    )
    break_minutes: int = Field(default=0, ge=0)


class AdjustRequest(BaseModel):
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    break_minutes: Optional[int] = Field(default=None, ge=0)
    notes: Optional[str] = None


class CorrectionRequest(BaseModel):
    employee_id: int
    work_date: date
    request_type: str
    reason: str = Field(min_length=1)
    time_entry_id: Optional[str] = None


class CorrectionReview(BaseModel):
    approve: bool


class TimeEntryResponse(BaseModel):
    time_entry_id: str
    company_id: int
    employee_id: int
    work_date: date
    status: str
    started_at: datetime
    ended_at: Optional[datetime]
    break_minutes: int
    notes: Optional[str]


class CorrectionResponse(BaseModel):
    id: int
    employee_id: int
    time_entry_id: Optional[str]
    work_date: date
    request_type: str
    reason: str
    status: str
    reviewed_by: Optional[str]
    reviewed_at: Optional[datetime]


class CanEditResponse(BaseModel):
    can_edit: bool
    reason: Optional[str]


def _to_response(entry: TimeEntry) -> TimeEntryResponse:
    return TimeEntryResponse(
        time_entry_id=entry.time_entry_id,
        company_id=entry.company_id,
        employee_id=entry.employee_id,
        work_date=entry.work_date,
        status=entry.status,
        started_at=entry.started_at,
        ended_at=entry.ended_at,
        break_minutes=entry.break_minutes or 0,
        notes=entry.notes,
    )


def _correction_out(row: TimeCorrection) -> CorrectionResponse:
    return CorrectionResponse(
        id=row.id,
        employee_id=row.employee_id,
        time_entry_id=row.time_entry_id,
        work_date=row.work_date,
        request_type=row.request_type,
        reason=row.reason,
        status=row.status,
        reviewed_by=row.reviewed_by,
        reviewed_at=row.reviewed_at,
    )


def _commit_and_render(db, operation, render):
    try:
        row = operation()
        db.commit()
        db.refresh(row)
        return render(row)
    except PayrollSyncError as exc:
        db.rollback()
        raise http_error(exc) from exc
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@router.get("", response_model=list[TimeEntryResponse])
def list_time_entries(
    employee_id: Optional[int] = None,
    status: Optional[str] = None,
    work_date_from: Optional[date] = None,
    work_date_to: Optional[date] = None,
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    actor: Actor = Depends(require_role(Role.EMPLOYEE)),
):
    db = SessionLocal()
    try:
        q = db.query(TimeEntry).filter(TimeEntry.company_id == actor.company_id)

        if employee_id is not None:
            q = q.filter(TimeEntry.employee_id == int(employee_id))
        if status is not None:
            q = q.filter(TimeEntry.status == str(status))
        if work_date_from is not None:
            q = q.filter(TimeEntry.work_date >= work_date_from)
        if work_date_to is not None:
            q = q.filter(TimeEntry.work_date <= work_date_to)

        rows = (
            q.order_by(TimeEntry.started_at.desc())
            .offset(int(offset))
            .limit(int(limit))
            .all()
        )
        return [_to_response(r) for r in rows]
    finally:
        db.close()


@router.post("/clock_in", response_model=TimeEntryResponse)
def clock_in_endpoint(payload: ClockInRequest, actor: Actor = Depends(require_role(Role.EMPLOYEE))):
    started_at = payload.started_at or datetime.now(timezone.utc)
    db = SessionLocal()
    return _commit_and_render(
        db,
        lambda: time_clock.clock_in(
            company_id=actor.company_id,
            employee_id=int(payload.employee_id),
            started_at=started_at,
            work_date=payload.work_date,
            db=db,
        ),
        _to_response,
    )


@router.post("/clock_out", response_model=TimeEntryResponse)
def clock_out_endpoint(payload: ClockOutRequest, actor: Actor = Depends(require_role(Role.EMPLOYEE))):
    ended_at = payload.ended_at or datetime.now(timezone.utc)
    db = SessionLocal()
    return _commit_and_render(
        db,
        lambda: time_clock.clock_out(
            company_id=actor.company_id,
            employee_id=int(payload.employee_id),
            ended_at=ended_at,
            break_minutes=payload.break_minutes,
            db=db,
        ),
        _to_response,
    )


@router.patch("/{time_entry_id}", response_model=TimeEntryResponse)
def adjust_time_entry(
    time_entry_id: str,
    payload: AdjustRequest,
    actor: Actor = Depends(require_role(Role.MANAGER)),
):
    db = SessionLocal()
    return _commit_and_render(
        db,
        lambda: time_clock.adjust_entry(
            db,
            company_id=actor.company_id,
            time_entry_id=time_entry_id,
            **payload.model_dump(exclude_unset=True),
        ),
        _to_response,
    )


@router.get("/can_edit", response_model=CanEditResponse)
def can_edit(work_date: date, actor: Actor = Depends(require_role(Role.EMPLOYEE))):
    db = SessionLocal()
    try:
        return time_clock.can_edit_time_entry(db, actor.company_id, work_date)
    finally:
        db.close()


@router.get("/active", response_model=TimeEntryResponse)
def get_active_time_entry(employee_id: int, actor: Actor = Depends(require_role(Role.EMPLOYEE))):
    db = SessionLocal()
    try:
        entry = (
            db.query(TimeEntry)
            .filter(
                TimeEntry.company_id == actor.company_id,
                TimeEntry.employee_id == int(employee_id),
                TimeEntry.status == "active",
            )
            .order_by(TimeEntry.started_at.desc())
            .first()
        )
        if entry is None:
            raise HTTPException(status_code=404, detail="No active time entry")
        return _to_response(entry)
    finally:
        db.close()


@router.post("/corrections", response_model=CorrectionResponse)
def request_correction(payload: CorrectionRequest, actor: Actor = Depends(require_role(Role.EMPLOYEE))):
    db = SessionLocal()
    return _commit_and_render(
        db,
        lambda: time_clock.request_correction(db, company_id=actor.company_id, **payload.model_dump()),
        _correction_out,
    )


@router.post("/corrections/{correction_id}/review", response_model=CorrectionResponse)
def review_correction(
    correction_id: int,
    payload: CorrectionReview,
    actor: Actor = Depends(require_role(Role.MANAGER)),
):
    db = SessionLocal()
    return _commit_and_render(
        db,
        lambda: time_clock.review_correction(
            db,
            company_id=actor.company_id,
            correction_id=correction_id,
            approve=payload.approve,
            reviewer=actor.user_id,
        ),
        _correction_out,
    )
