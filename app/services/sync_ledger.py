import logging
import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from app.core.errors import AuthError
from app.core.timeutil import as_utc, utcnow
from app.models.sync_log import SESSION_CLOSED, SESSION_ERROR, SESSION_OPEN, SyncLog, SyncSession

logger = logging.getLogger(__name__)

DIRECTION_EXPORT = "export"
DIRECTION_IMPORT = "import"


def record(
    db: Session,
    *,
    company_id: int,
    operation: str,
    direction: str,
    status: str,
    session_id: Optional[str] = None,
    record_type: Optional[str] = None,
    record_id: Optional[str] = None,
    record_count: Optional[int] = None,
    message: Optional[str] = None,
    error_details: Optional[str] = None,
    duration_ms: Optional[int] = None,
) -> SyncLog:
    row = SyncLog(
        company_id=int(company_id),
        session_id=session_id,
        operation=operation,
        direction=direction,
        record_type=record_type,
        record_id=None if record_id is None else str(record_id),
        record_count=record_count,
        status=status,
        message=message,
        error_details=error_details,
        duration_ms=duration_ms,
    )
    db.add(row)
    db.flush()
    return row


def recent_logs(
    db: Session,
    *,
    company_id: int,
    limit: int = 50,
    offset: int = 0,
    session_id: Optional[str] = None,
) -> List[SyncLog]:
    q = db.query(SyncLog).filter(SyncLog.company_id == int(company_id))
    if session_id is not None:
        q = q.filter(SyncLog.session_id == str(session_id))
    return (
        q.order_by(SyncLog.created_at.desc(), SyncLog.id.desc())
        .offset(int(offset))
        .limit(int(limit))
        .all()
    )


def open_session(
    db: Session,
    *,
    company_id: int,
    connection_id: int,
    agent_username: str,
    now: Optional[datetime] = None,
) -> SyncSession:
    now = now or utcnow()
    session = SyncSession(
        session_id=f"QBWC-{uuid.uuid4()}",
        company_id=int(company_id),
        connection_id=int(connection_id),
        agent_username=agent_username,
        status=SESSION_OPEN,
        started_at=now,
        last_activity_at=now,
    )
    db.add(session)
    db.flush()
    return session


def get_open_session(db: Session, session_id: str) -> SyncSession:
    session = db.query(SyncSession).filter(SyncSession.session_id == str(session_id)).one_or_none()
    if session is None or session.status != SESSION_OPEN:
        raise AuthError("Unknown or closed session ticket")
    return session


def touch_session(session: SyncSession, now: Optional[datetime] = None) -> None:
    session.last_activity_at = now or utcnow()


def close_session(
    db: Session,
    session: SyncSession,
    *,
    now: Optional[datetime] = None,
    error: Optional[str] = None,
) -> SyncSession:
    if session.status != SESSION_OPEN:
        return session

    now = now or utcnow()
    session.status = SESSION_ERROR if error else SESSION_CLOSED
    session.error = error
    session.ended_at = now
    session.duration_ms = int((as_utc(now) - as_utc(session.started_at)).total_seconds() * 1000)
    db.flush()

    logger.info(
        "Sync session closed",
        extra={
            "session_id": session.session_id,
            "company_id": session.company_id,
            "request_count": session.request_count,
            "completed_count": session.completed_count,
            "failed_count": session.failed_count,
            "discarded_count": session.discarded_count,
            "duration_ms": session.duration_ms,
        },
    )
    return session


def list_sessions(db: Session, *, company_id: int, limit: int = 20) -> List[SyncSession]:
    return (
        db.query(SyncSession)
        .filter(SyncSession.company_id == int(company_id))
        .order_by(SyncSession.started_at.desc())
        .limit(int(limit))
        .all()
    )
