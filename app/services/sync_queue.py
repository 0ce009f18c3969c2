import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Union

from sqlalchemy import and_, func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import (
    sync_default_priority,
    sync_max_attempts,
    sync_processing_timeout_seconds,
)
from app.core.errors import NotFoundError, SyncError, TerminalSyncError, TransientSyncError, ValidationError
from app.core.timeutil import utcnow
from app.models.sync_queue_item import (
    ITEM_COMPLETED,
    ITEM_FAILED,
    ITEM_PENDING,
    ITEM_PROCESSING,
    OPEN_STATUSES,
    SyncQueueItem,
)
from app.services.sync_payloads import validate_payload

logger = logging.getLogger(__name__)

OUTCOME_COMPLETED = "completed"
OUTCOME_FAILED = "failed"


@dataclass(frozen=True)
class ResolveResult:
    item_id: int
    applied: bool
    status: str
    attempts: int
    terminal: bool = False


def _stale_cutoff(now: datetime, processing_timeout: Optional[int]) -> datetime:
    seconds = processing_timeout if processing_timeout is not None else sync_processing_timeout_seconds()
    return now - timedelta(seconds=int(seconds))


def correlation_id_for(item_id: int, attempt: int) -> str:
    return f"{int(item_id)}-{int(attempt)}"


def enqueue(
    db: Session,
    *,
    company_id: int,
    item_type: str,
    action: str,
    reference_type: str,
    reference_id: str,
    payload,
    priority: Optional[int] = None,
    pay_period_id: Optional[str] = None,
    export_batch: Optional[int] = None,
    max_attempts: Optional[int] = None,
    now: Optional[datetime] = None,
) -> SyncQueueItem:
    """Create a pending item, or refresh the open one for the same reference.

    Idempotent per (company, reference_type, reference_id, type): a pending
    item is updated in place; an item already being processed is left alone
    so an in-flight exchange never sees its payload change underneath it.
    """
    data = validate_payload(item_type, action, payload)
    now = now or utcnow()
    priority = sync_default_priority() if priority is None else int(priority)

    existing = _open_item(db, company_id, reference_type, reference_id, item_type)
    if existing is not None:
        return _refresh_open_item(existing, action, data, priority, pay_period_id, export_batch, now)

    item = SyncQueueItem(
        company_id=int(company_id),
        type=item_type,
        action=action,
        reference_type=reference_type,
        reference_id=str(reference_id),
        pay_period_id=pay_period_id,
        export_batch=export_batch,
        payload=data,
        status=ITEM_PENDING,
        priority=priority,
        attempts=0,
        max_attempts=int(max_attempts or sync_max_attempts()),
        created_at=now,
        updated_at=now,
    )

    try:
        with db.begin_nested():
            db.add(item)
            db.flush()
    except IntegrityError:
        # Lost a race with a concurrent enqueue for the same reference.
        existing = _open_item(db, company_id, reference_type, reference_id, item_type)
        if existing is None:
            raise
        return _refresh_open_item(existing, action, data, priority, pay_period_id, export_batch, now)

    logger.info(
        "Sync item enqueued",
        extra={
            "company_id": int(company_id),
            "sync_item_id": item.id,
            "item_type": item_type,
            "action": action,
            "reference": f"{reference_type}:{reference_id}",
        },
    )
    return item


def _open_item(db: Session, company_id: int, reference_type: str, reference_id: str, item_type: str):
    return (
        db.query(SyncQueueItem)
        .filter(
            SyncQueueItem.company_id == int(company_id),
            SyncQueueItem.reference_type == reference_type,
            SyncQueueItem.reference_id == str(reference_id),
            SyncQueueItem.type == item_type,
            SyncQueueItem.status.in_(OPEN_STATUSES),
        )
        .order_by(SyncQueueItem.id.desc())
        .first()
    )


def _refresh_open_item(item, action, data, priority, pay_period_id, export_batch, now) -> SyncQueueItem:
    if item.status == ITEM_PROCESSING:
        logger.info(
            "Sync item already in flight; enqueue left it unchanged",
            extra={"sync_item_id": item.id, "attempts": item.attempts},
        )
        return item

    item.action = action
    item.payload = data
    item.priority = min(int(item.priority), int(priority))
    if pay_period_id is not None:
        item.pay_period_id = pay_period_id
    if export_batch is not None:
        item.export_batch = export_batch
    item.updated_at = now
    return item


def expire_stale(
    db: Session,
    *,
    now: Optional[datetime] = None,
    company_id: Optional[int] = None,
    processing_timeout: Optional[int] = None,
) -> int:
    """Fail items stuck in processing that have no attempts left.

    Stale items with attempts remaining stay reclaimable by claim_batch.
    """
    now = now or utcnow()
    cutoff = _stale_cutoff(now, processing_timeout)

    stmt = (
        update(SyncQueueItem)
        .where(
            SyncQueueItem.status == ITEM_PROCESSING,
            SyncQueueItem.last_attempt_at < cutoff,
            SyncQueueItem.attempts >= SyncQueueItem.max_attempts,
        )
        .values(
            status=ITEM_FAILED,
            error_kind="transient",
            last_error="Processing timed out with no attempts remaining",
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if company_id is not None:
        stmt = stmt.where(SyncQueueItem.company_id == int(company_id))

    expired = db.execute(stmt).rowcount or 0
    if expired:
        logger.warning(
            "Stale sync items permanently failed",
            extra={"company_id": company_id, "expired": int(expired)},
        )
    return int(expired)


def claim_batch(
    db: Session,
    max_items: int,
    *,
    company_id: Optional[int] = None,
    types: Optional[Iterable[str]] = None,
    session_id: Optional[str] = None,
    now: Optional[datetime] = None,
    processing_timeout: Optional[int] = None,
) -> List[SyncQueueItem]:
    """Claim up to ``max_items`` items in (priority, created_at) order.

    Each claim is a conditional pending->processing update keyed on the
    status and attempt count observed at selection time, so two pollers can
    never both win the same item. Items left in processing past the
    staleness window are claimable again while attempts remain.
    """
    now = now or utcnow()
    max_items = int(max_items)
    if max_items <= 0:
        return []

    expire_stale(db, now=now, company_id=company_id, processing_timeout=processing_timeout)
    cutoff = _stale_cutoff(now, processing_timeout)

    q = db.query(SyncQueueItem).filter(
        or_(
            SyncQueueItem.status == ITEM_PENDING,
            and_(
                SyncQueueItem.status == ITEM_PROCESSING,
                SyncQueueItem.last_attempt_at < cutoff,
                SyncQueueItem.attempts < SyncQueueItem.max_attempts,
            ),
        )
    )
    if company_id is not None:
        q = q.filter(SyncQueueItem.company_id == int(company_id))
    if types is not None:
        q = q.filter(SyncQueueItem.type.in_(list(types)))

    candidates = (
        q.order_by(
            SyncQueueItem.priority.asc(),
            SyncQueueItem.created_at.asc(),
            SyncQueueItem.id.asc(),
        )
        .with_for_update(skip_locked=True)
        .limit(max_items * 4)
        .all()
    )

    claimed: List[SyncQueueItem] = []
    for item in candidates:
        if len(claimed) >= max_items:
            break
        if try_claim(db, item, now=now, session_id=session_id):
            claimed.append(item)

    return claimed


def try_claim(
    db: Session,
    item: SyncQueueItem,
    *,
    now: Optional[datetime] = None,
    session_id: Optional[str] = None,
) -> bool:
    now = now or utcnow()
    observed_status = item.status
    observed_attempts = int(item.attempts)
    attempt = observed_attempts + 1

    result = db.execute(
        update(SyncQueueItem)
        .where(
            SyncQueueItem.id == item.id,
            SyncQueueItem.status == observed_status,
            SyncQueueItem.attempts == observed_attempts,
        )
        .values(
            status=ITEM_PROCESSING,
            attempts=attempt,
            last_attempt_at=now,
            updated_at=now,
            claimed_by_session=session_id,
            correlation_id=correlation_id_for(item.id, attempt),
        )
        .execution_options(synchronize_session=False)
    )
    won = (result.rowcount or 0) == 1
    db.refresh(item)

    if won:
        logger.info(
            "Sync item claimed",
            extra={
                "sync_item_id": item.id,
                "session_id": session_id,
                "attempts": attempt,
                "reclaimed": observed_status == ITEM_PROCESSING,
            },
        )
    return won


def resolve(
    db: Session,
    item_id: int,
    outcome: str,
    *,
    response_payload: Optional[str] = None,
    error: Union[SyncError, str, None] = None,
    correlation_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ResolveResult:
    """Close one delivery attempt of a processing item.

    A failed attempt goes back to pending while attempts remain, unless the
    error is terminal. Resolving an item that is not processing (or whose
    correlation id belongs to an earlier attempt) changes nothing and
    reports ``applied=False``.
    """
    if outcome not in (OUTCOME_COMPLETED, OUTCOME_FAILED):
        raise ValidationError(f"Unknown outcome: {outcome}")

    now = now or utcnow()
    item = db.get(SyncQueueItem, int(item_id))
    if item is None:
        raise NotFoundError(f"Sync queue item {item_id} not found")

    if item.status != ITEM_PROCESSING or (
        correlation_id is not None and correlation_id != item.correlation_id
    ):
        return ResolveResult(item_id=item.id, applied=False, status=item.status, attempts=item.attempts)

    if outcome == OUTCOME_COMPLETED:
        values = {
            "status": ITEM_COMPLETED,
            "completed_at": now,
            "last_error": None,
            "error_kind": None,
        }
        terminal = False
    else:
        if isinstance(error, SyncError):
            sync_error = error
        else:
            sync_error = TransientSyncError(str(error or "Unknown sync failure"))
        exhausted = int(item.attempts) >= int(item.max_attempts)
        terminal = isinstance(sync_error, TerminalSyncError) or exhausted
        values = {
            "status": ITEM_FAILED if terminal else ITEM_PENDING,
            "last_error": str(sync_error),
            "error_kind": "transient" if sync_error.retryable else "terminal",
        }

    values["updated_at"] = now
    if response_payload is not None:
        values["response_xml"] = response_payload

    result = db.execute(
        update(SyncQueueItem)
        .where(
            SyncQueueItem.id == item.id,
            SyncQueueItem.status == ITEM_PROCESSING,
            SyncQueueItem.correlation_id == item.correlation_id,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    applied = (result.rowcount or 0) == 1
    db.refresh(item)

    if applied and item.status == ITEM_FAILED:
        logger.warning(
            "Sync item permanently failed",
            extra={
                "sync_item_id": item.id,
                "company_id": item.company_id,
                "attempts": item.attempts,
                "max_attempts": item.max_attempts,
                "error": item.last_error,
            },
        )
    elif applied and item.status == ITEM_PENDING:
        logger.info(
            "Sync item attempt failed; returned to pending",
            extra={"sync_item_id": item.id, "attempts": item.attempts, "error": item.last_error},
        )

    return ResolveResult(
        item_id=item.id,
        applied=applied,
        status=item.status,
        attempts=item.attempts,
        terminal=applied and item.status == ITEM_FAILED,
    )


def requeue(db: Session, item_id: int, *, company_id: int, now: Optional[datetime] = None) -> SyncQueueItem:
    """Give a permanently failed item a fresh set of attempts.

    The attempt counter is not reset: correlation ids are built from it, and
    a late response to an earlier attempt must never match the new one.
    """
    now = now or utcnow()
    item = (
        db.query(SyncQueueItem)
        .filter(SyncQueueItem.id == int(item_id), SyncQueueItem.company_id == int(company_id))
        .one_or_none()
    )
    if item is None:
        raise NotFoundError(f"Sync queue item {item_id} not found")
    if item.status != ITEM_FAILED:
        raise ValidationError(f"Only failed items can be requeued (status={item.status})")

    if _open_item(db, item.company_id, item.reference_type, item.reference_id, item.type) is not None:
        raise ValidationError("Another item for the same record is already queued")

    result = db.execute(
        update(SyncQueueItem)
        .where(SyncQueueItem.id == item.id, SyncQueueItem.status == ITEM_FAILED)
        .values(
            status=ITEM_PENDING,
            max_attempts=int(item.attempts) + sync_max_attempts(),
            last_error=None,
            error_kind=None,
            claimed_by_session=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if (result.rowcount or 0) != 1:
        raise ValidationError("Item changed concurrently; reload and retry")
    db.refresh(item)
    return item


def find_by_correlation(db: Session, correlation_id: str, *, company_id: int) -> Optional[SyncQueueItem]:
    try:
        item_id = int(str(correlation_id).split("-", 1)[0])
    except (TypeError, ValueError):
        return None
    return (
        db.query(SyncQueueItem)
        .filter(SyncQueueItem.id == item_id, SyncQueueItem.company_id == int(company_id))
        .one_or_none()
    )


def latest_in_flight(db: Session, *, session_id: str) -> Optional[SyncQueueItem]:
    return (
        db.query(SyncQueueItem)
        .filter(
            SyncQueueItem.claimed_by_session == str(session_id),
            SyncQueueItem.status == ITEM_PROCESSING,
        )
        .order_by(SyncQueueItem.last_attempt_at.desc(), SyncQueueItem.id.desc())
        .first()
    )


def count_claimable(
    db: Session,
    *,
    company_id: int,
    types: Optional[Iterable[str]] = None,
) -> int:
    q = db.query(func.count(SyncQueueItem.id)).filter(
        SyncQueueItem.company_id == int(company_id),
        SyncQueueItem.status == ITEM_PENDING,
    )
    if types is not None:
        q = q.filter(SyncQueueItem.type.in_(list(types)))
    return int(q.scalar() or 0)


def queue_stats(db: Session, *, company_id: int) -> Dict[str, int]:
    rows = (
        db.query(SyncQueueItem.status, func.count(SyncQueueItem.id))
        .filter(SyncQueueItem.company_id == int(company_id))
        .group_by(SyncQueueItem.status)
        .all()
    )
    stats = {ITEM_PENDING: 0, ITEM_PROCESSING: 0, ITEM_COMPLETED: 0, ITEM_FAILED: 0}
    for status, count in rows:
        stats[str(status)] = int(count)
    return stats


def list_items(
    db: Session,
    *,
    company_id: int,
    status: Optional[str] = None,
    pay_period_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[SyncQueueItem]:
    q = db.query(SyncQueueItem).filter(SyncQueueItem.company_id == int(company_id))
    if status is not None:
        q = q.filter(SyncQueueItem.status == str(status))
    if pay_period_id is not None:
        q = q.filter(SyncQueueItem.pay_period_id == str(pay_period_id))
    return q.order_by(SyncQueueItem.id.asc()).offset(int(offset)).limit(int(limit)).all()

