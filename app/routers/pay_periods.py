from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, model_validator

from app.core.authorization import Actor, Role, require_role
from app.core.errors import PayrollSyncError
from app.database import SessionLocal
from app.deps.errors import http_error
from app.services import pay_period_ledger
from app.services.pay_period_ledger import PeriodSummary, TransitionResult

router = APIRouter(prefix="/pay_periods", tags=["Pay Periods"])


class PeriodWindow(BaseModel):
    start_date: date
    end_date: date

    @model_validator(mode="after")
    def _check_window(self):
        if self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        return self


class ApproveRequest(PeriodWindow):
    notes: Optional[str] = None


class PeriodIssueRow(BaseModel):
    message: str
    employee_id: Optional[int]
    sync_item_id: Optional[int]


class EmployeeHoursRow(BaseModel):
    employee_id: int
    regular_hours: str
    overtime_hours: str
    total_hours: str
    issues: list[str]


class PeriodSummaryResponse(BaseModel):
    pay_period_id: str
    company_id: int
    start_date: date
    end_date: date
    status: str
    live: bool
    employee_count: int
    regular_hours: str
    overtime_hours: str
    total_hours: str
    issue_count: int
    issues: list[PeriodIssueRow]
    employees: list[EmployeeHoursRow]
    approved_by: Optional[str]
    approved_at: Optional[datetime]
    approval_notes: Optional[str]
    locked_by: Optional[str]
    locked_at: Optional[datetime]
    exported: bool
    exported_at: Optional[datetime]
    export_batch: int
    export_items: dict[str, int]
    divergence_warning: Optional[str]


class TransitionResponse(BaseModel):
    changed: bool
    enqueued: int
    warning: Optional[str]
    period: PeriodSummaryResponse


class PeriodListRow(BaseModel):
    start_date: date
    end_date: date
    is_current: bool
    is_past: bool
    pay_period_id: Optional[str]
    status: str
    exported: bool
    employee_count: Optional[int]
    total_hours: Optional[str]


class ExportProgressResponse(BaseModel):
    pay_period_id: str
    lines: int
    lines_exported: int
    items: dict[str, int]
    completed: int
    exported: bool


def _summary_out(summary: PeriodSummary) -> PeriodSummaryResponse:
    return PeriodSummaryResponse(
        pay_period_id=summary.pay_period_id,
        company_id=summary.company_id,
        start_date=summary.start_date,
        end_date=summary.end_date,
        status=summary.status,
        live=summary.live,
        employee_count=summary.employee_count,
        regular_hours=str(summary.regular_hours),
        overtime_hours=str(summary.overtime_hours),
        total_hours=str(summary.total_hours),
        issue_count=summary.issue_count,
        issues=[
            PeriodIssueRow(message=i.message, employee_id=i.employee_id, sync_item_id=i.sync_item_id)
            for i in summary.issues
        ],
        employees=[
            EmployeeHoursRow(
                employee_id=e.employee_id,
                regular_hours=str(e.regular_hours),
                overtime_hours=str(e.overtime_hours),
                total_hours=str(e.total_hours),
                issues=list(e.issues),
            )
            for e in summary.employees
        ],
        approved_by=summary.approved_by,
        approved_at=summary.approved_at,
        approval_notes=summary.approval_notes,
        locked_by=summary.locked_by,
        locked_at=summary.locked_at,
        exported=summary.exported,
        exported_at=summary.exported_at,
        export_batch=summary.export_batch,
        export_items=summary.export_items,
        divergence_warning=summary.divergence_warning,
    )


def _transition_out(result: TransitionResult) -> TransitionResponse:
    return TransitionResponse(
        changed=result.changed,
        enqueued=result.enqueued,
        warning=result.warning,
        period=_summary_out(result.summary),
    )


def _run_transition(operation, actor: Actor, window: PeriodWindow, **kwargs) -> TransitionResponse:
    db = SessionLocal()
    try:
        result = operation(
            actor.company_id,
            window.start_date,
            window.end_date,
            actor.user_id,
            db=db,
            **kwargs,
        )
        db.commit()
        return _transition_out(result)
    except PayrollSyncError as exc:
        db.rollback()
        raise http_error(exc) from exc
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@router.get("", response_model=list[PeriodListRow])
def list_pay_periods(
    count: int = Query(6, ge=1, le=52),
    actor: Actor = Depends(require_role(Role.MANAGER)),
):
    db = SessionLocal()
    try:
        rows = pay_period_ledger.list_periods(db, company_id=actor.company_id, count=count)
        return [
            PeriodListRow(**{**r, "total_hours": None if r["total_hours"] is None else str(r["total_hours"])})
            for r in rows
        ]
    finally:
        db.close()


@router.get("/summary", response_model=PeriodSummaryResponse)
def get_summary(
    start_date: date,
    end_date: date,
    actor: Actor = Depends(require_role(Role.MANAGER)),
):
    db = SessionLocal()
    try:
        summary = pay_period_ledger.get_period_summary(actor.company_id, start_date, end_date, db=db)
        # Only the implicit first-view row creation is persisted.
        db.commit()
        return _summary_out(summary)
    except PayrollSyncError as exc:
        db.rollback()
        raise http_error(exc) from exc
    finally:
        db.close()


@router.post("/approve", response_model=TransitionResponse)
def approve_period(payload: ApproveRequest, actor: Actor = Depends(require_role(Role.MANAGER))):
    return _run_transition(pay_period_ledger.approve, actor, payload, notes=payload.notes)


@router.post("/lock", response_model=TransitionResponse)
def lock_period(payload: PeriodWindow, actor: Actor = Depends(require_role(Role.MANAGER))):
    return _run_transition(pay_period_ledger.lock, actor, payload)


@router.post("/unlock", response_model=TransitionResponse)
def unlock_period(payload: PeriodWindow, actor: Actor = Depends(require_role(Role.ADMIN))):
    return _run_transition(pay_period_ledger.unlock, actor, payload)


@router.post("/export", response_model=TransitionResponse)
def export_period(payload: PeriodWindow, actor: Actor = Depends(require_role(Role.MANAGER))):
    return _run_transition(pay_period_ledger.export_now, actor, payload)


@router.get("/{pay_period_id}/export_progress", response_model=ExportProgressResponse)
def get_export_progress(pay_period_id: str, actor: Actor = Depends(require_role(Role.MANAGER))):
    db = SessionLocal()
    try:
        return pay_period_ledger.export_progress(db, pay_period_id, company_id=actor.company_id)
    except PayrollSyncError as exc:
        raise http_error(exc) from exc
    finally:
        db.close()
