from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from app.core.authorization import Actor, Role, require_role
from app.core.errors import PayrollSyncError
from app.database import SessionLocal
from app.deps.errors import http_error
from app.models.sync_queue_item import SyncQueueItem
from app.services import sync_ledger, sync_queue

router = APIRouter(prefix="/sync", tags=["Sync Queue"])


class SyncItemRow(BaseModel):
    id: int
    company_id: int
    type: str
    action: str
    reference_type: str
    reference_id: str
    pay_period_id: Optional[str]
    export_batch: Optional[int]
    status: str
    priority: int
    attempts: int
    max_attempts: int
    last_error: Optional[str]
    error_kind: Optional[str]
    correlation_id: Optional[str]
    created_at: str
    last_attempt_at: Optional[str]
    completed_at: Optional[str]


class SyncItemListResponse(BaseModel):
    limit: int
    offset: int
    rows: list[SyncItemRow]


class SyncLogRow(BaseModel):
    id: int
    session_id: Optional[str]
    operation: str
    direction: str
    record_type: Optional[str]
    record_id: Optional[str]
    record_count: Optional[int]
    status: str
    message: Optional[str]
    error_details: Optional[str]
    duration_ms: Optional[int]
    created_at: str


class SyncSessionRow(BaseModel):
    session_id: str
    agent_username: str
    status: str
    company_file: Optional[str]
    request_count: int
    completed_count: int
    failed_count: int
    discarded_count: int
    started_at: str
    ended_at: Optional[str]
    duration_ms: Optional[int]
    error: Optional[str]


def _iso(value) -> Optional[str]:
    return None if value is None else value.isoformat()


def _item_row(r: SyncQueueItem) -> dict:
    return {
        "id": r.id,
        "company_id": r.company_id,
        "type": r.type,
        "action": r.action,
        "reference_type": r.reference_type,
        "reference_id": r.reference_id,
        "pay_period_id": r.pay_period_id,
        "export_batch": r.export_batch,
        "status": r.status,
        "priority": r.priority,
        "attempts": r.attempts,
        "max_attempts": r.max_attempts,
        "last_error": r.last_error,
        "error_kind": r.error_kind,
        "correlation_id": r.correlation_id,
        "created_at": r.created_at.isoformat(),
        "last_attempt_at": _iso(r.last_attempt_at),
        "completed_at": _iso(r.completed_at),
    }


@router.get("/items", response_model=SyncItemListResponse)
def list_sync_items(
    status: Optional[str] = None,
    pay_period_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0, le=1_000_000),
    actor: Actor = Depends(require_role(Role.MANAGER)),
):
    db = SessionLocal()
    try:
        rows = sync_queue.list_items(
            db,
            company_id=actor.company_id,
            status=status,
            pay_period_id=pay_period_id,
            limit=limit,
            offset=offset,
        )
        return {
            "limit": int(limit),
            "offset": int(offset),
            "rows": [_item_row(r) for r in rows],
        }
    finally:
        db.close()


@router.post("/items/{item_id}/requeue", response_model=SyncItemRow)
def requeue_sync_item(item_id: int, actor: Actor = Depends(require_role(Role.MANAGER))):
    db = SessionLocal()
    try:
        item = sync_queue.requeue(db, item_id, company_id=actor.company_id)
        db.commit()
        db.refresh(item)
        return _item_row(item)
    except PayrollSyncError as exc:
        db.rollback()
        raise http_error(exc) from exc
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@router.get("/stats")
def get_sync_stats(actor: Actor = Depends(require_role(Role.MANAGER))):
    db = SessionLocal()
    try:
        return sync_queue.queue_stats(db, company_id=actor.company_id)
    finally:
        db.close()


@router.get("/logs", response_model=list[SyncLogRow])
def list_sync_logs(
    session_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    actor: Actor = Depends(require_role(Role.MANAGER)),
):
    db = SessionLocal()
    try:
        rows = sync_ledger.recent_logs(
            db,
            company_id=actor.company_id,
            limit=limit,
            offset=offset,
            session_id=session_id,
        )
        return [
            {
                "id": r.id,
                "session_id": r.session_id,
                "operation": r.operation,
                "direction": r.direction,
                "record_type": r.record_type,
                "record_id": r.record_id,
                "record_count": r.record_count,
                "status": r.status,
                "message": r.message,
                "error_details": r.error_details,
                "duration_ms": r.duration_ms,
                "created_at": r.created_at.isoformat(),
            }
            for r in rows
        ]
    finally:
        db.close()


@router.get("/sessions", response_model=list[SyncSessionRow])
def list_sync_sessions(
    limit: int = Query(20, ge=1, le=100),
    actor: Actor = Depends(require_role(Role.MANAGER)),
):
    db = SessionLocal()
    try:
        rows = sync_ledger.list_sessions(db, company_id=actor.company_id, limit=limit)
        return [
            {
                "session_id": s.session_id,
                "agent_username": s.agent_username,
                "status": s.status,
                "company_file": s.company_file,
                "request_count": s.request_count,
                "completed_count": s.completed_count,
                "failed_count": s.failed_count,
                "discarded_count": s.discarded_count,
                "started_at": s.started_at.isoformat(),
                "ended_at": _iso(s.ended_at),
                "duration_ms": s.duration_ms,
                "error": s.error,
            }
            for s in rows
        ]
    finally:
        db.close()
