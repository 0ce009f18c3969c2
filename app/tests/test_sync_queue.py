from datetime import date, datetime, timedelta, timezone

import pytest

from app.core.errors import NotFoundError, TerminalSyncError, TransientSyncError, ValidationError
from app.database import SessionLocal
from app.models.sync_queue_item import SyncQueueItem
from app.services import sync_queue
from app.services.sync_payloads import ACTION_ADD, ACTION_QUERY, TYPE_EMPLOYEE, TYPE_PAYCHECK_QUERY

COMPANY = 11
T0 = datetime(2024, 2, 1, 12, 0, tzinfo=timezone.utc)


def _enqueue(db, ref, *, priority=None, now=T0, max_attempts=None, company_id=COMPANY):
    return sync_queue.enqueue(
        db,
        company_id=company_id,
        item_type=TYPE_PAYCHECK_QUERY,
        action=ACTION_QUERY,
        reference_type="paycheck_range",
        reference_id=ref,
        payload={"from_date": date(2024, 1, 1), "to_date": date(2024, 1, 14)},
        priority=priority,
        max_attempts=max_attempts,
        now=now,
    )


def test_enqueue_is_idempotent_per_reference():
    db = SessionLocal()
    try:
        first = _enqueue(db, "r1", priority=10)
        second = _enqueue(db, "r1", priority=3)
        db.commit()

        assert first.id == second.id
        assert db.query(SyncQueueItem).count() == 1
        assert second.priority == 3
    finally:
        db.close()


def test_enqueue_rejects_malformed_payload():
    db = SessionLocal()
    try:
        with pytest.raises(ValidationError):
            sync_queue.enqueue(
                db,
                company_id=COMPANY,
                item_type=TYPE_EMPLOYEE,
                action=ACTION_ADD,
                reference_type="employee",
                reference_id="1",
                payload={"employee_id": 1},
            )
        with pytest.raises(ValidationError, match="Unsupported"):
            sync_queue.enqueue(
                db,
                company_id=COMPANY,
                item_type="invoice",
                action=ACTION_ADD,
                reference_type="invoice",
                reference_id="1",
                payload={},
            )
    finally:
        db.close()


def test_claim_orders_by_priority_then_age():
    db = SessionLocal()
    try:
        low = _enqueue(db, "low", priority=10, now=T0)
        urgent = _enqueue(db, "urgent", priority=1, now=T0 + timedelta(seconds=5))
        older_low = _enqueue(db, "older", priority=10, now=T0 - timedelta(seconds=5))
        db.commit()

        claimed = sync_queue.claim_batch(db, 3, company_id=COMPANY, now=T0 + timedelta(minutes=1))
        db.commit()

        assert [i.id for i in claimed] == [urgent.id, older_low.id, low.id]
        assert all(i.status == "processing" for i in claimed)
        assert all(i.attempts == 1 for i in claimed)
        assert claimed[0].correlation_id == f"{urgent.id}-1"
    finally:
        db.close()


def test_claim_respects_company_and_type_filters():
    db = SessionLocal()
    try:
        _enqueue(db, "a", company_id=COMPANY)
        _enqueue(db, "b", company_id=COMPANY + 1)
        db.commit()

        assert sync_queue.claim_batch(db, 5, company_id=COMPANY, types=[TYPE_EMPLOYEE]) == []
        claimed = sync_queue.claim_batch(db, 5, company_id=COMPANY)
        db.commit()
        assert len(claimed) == 1
        assert claimed[0].company_id == COMPANY
    finally:
        db.close()


def test_stale_snapshot_cannot_claim_twice():
    db = SessionLocal()
    try:
        item = _enqueue(db, "race")
        db.commit()
        item_id = item.id
    finally:
        db.close()

    db1 = SessionLocal()
    db2 = SessionLocal()
    try:
        seen_by_second = db2.get(SyncQueueItem, item_id)
        db2.commit()

        first = db1.get(SyncQueueItem, item_id)
        assert sync_queue.try_claim(db1, first, now=T0, session_id="s1") is True
        db1.commit()

        # db2 still holds the pending/0-attempt snapshot.
        assert seen_by_second.status == "pending"
        assert sync_queue.try_claim(db2, seen_by_second, now=T0, session_id="s2") is False
        db2.commit()
        assert seen_by_second.claimed_by_session == "s1"
    finally:
        db1.close()
        db2.close()


def test_transient_failures_retry_until_max_attempts():
    db = SessionLocal()
    try:
        item = _enqueue(db, "retry", max_attempts=3)
        db.commit()

        statuses = []
        for attempt in range(1, 4):
            now = T0 + timedelta(minutes=attempt)
            claimed = sync_queue.claim_batch(db, 1, company_id=COMPANY, now=now)
            assert [c.id for c in claimed] == [item.id]
            result = sync_queue.resolve(
                db, item.id, sync_queue.OUTCOME_FAILED, error=TransientSyncError("busy"), now=now
            )
            assert result.applied is True
            statuses.append(result.status)
        db.commit()

        assert statuses == ["pending", "pending", "failed"]
        db.refresh(item)
        assert item.attempts == 3
        assert item.error_kind == "transient"
        assert sync_queue.claim_batch(db, 1, company_id=COMPANY, now=T0 + timedelta(hours=1)) == []
    finally:
        db.close()


def test_terminal_failure_skips_remaining_attempts():
    db = SessionLocal()
    try:
        item = _enqueue(db, "terminal", max_attempts=5)
        sync_queue.claim_batch(db, 1, company_id=COMPANY, now=T0)

        result = sync_queue.resolve(
            db, item.id, sync_queue.OUTCOME_FAILED, error=TerminalSyncError("rejected", status_code=3100), now=T0
        )
        db.commit()

        assert result.terminal is True
        assert result.status == "failed"
        assert result.attempts == 1
        db.refresh(item)
        assert item.last_error == "[3100] rejected"
        assert item.error_kind == "terminal"
    finally:
        db.close()


def test_resolve_ignores_mismatched_correlation_and_non_processing_items():
    db = SessionLocal()
    try:
        item = _enqueue(db, "corr")
        unresolved = sync_queue.resolve(db, item.id, sync_queue.OUTCOME_COMPLETED, now=T0)
        assert unresolved.applied is False

        sync_queue.claim_batch(db, 1, company_id=COMPANY, now=T0)
        stale = sync_queue.resolve(db, item.id, sync_queue.OUTCOME_COMPLETED, correlation_id=f"{item.id}-0", now=T0)
        assert stale.applied is False
        assert stale.status == "processing"

        done = sync_queue.resolve(
            db,
            item.id,
            sync_queue.OUTCOME_COMPLETED,
            correlation_id=f"{item.id}-1",
            response_payload="<QBXML/>",
            now=T0,
        )
        again = sync_queue.resolve(db, item.id, sync_queue.OUTCOME_COMPLETED, now=T0)
        db.commit()

        assert done.applied is True
        assert done.status == "completed"
        assert again.applied is False
        db.refresh(item)
        assert item.response_xml == "<QBXML/>"
        assert item.completed_at is not None
    finally:
        db.close()


def test_stale_processing_item_is_reclaimed_with_new_correlation():
    db = SessionLocal()
    try:
        item = _enqueue(db, "stale", max_attempts=3)
        sync_queue.claim_batch(db, 1, company_id=COMPANY, now=T0, session_id="s1")
        db.commit()

        assert sync_queue.claim_batch(db, 1, company_id=COMPANY, now=T0 + timedelta(seconds=60)) == []

        later = T0 + timedelta(seconds=901)
        reclaimed = sync_queue.claim_batch(db, 1, company_id=COMPANY, now=later, session_id="s2")
        db.commit()

        assert [i.id for i in reclaimed] == [item.id]
        assert item.attempts == 2
        assert item.correlation_id == f"{item.id}-2"
        assert item.claimed_by_session == "s2"

        # A late answer to the first attempt must not close the second.
        late = sync_queue.resolve(db, item.id, sync_queue.OUTCOME_COMPLETED, correlation_id=f"{item.id}-1", now=later)
        assert late.applied is False
    finally:
        db.close()


def test_stale_item_without_attempts_left_is_failed():
    db = SessionLocal()
    try:
        item = _enqueue(db, "exhausted", max_attempts=1)
        sync_queue.claim_batch(db, 1, company_id=COMPANY, now=T0)
        db.commit()

        expired = sync_queue.expire_stale(db, now=T0 + timedelta(hours=1))
        db.commit()

        assert expired == 1
        db.refresh(item)
        assert item.status == "failed"
        assert "timed out" in item.last_error
    finally:
        db.close()


def test_requeue_resets_failed_item():
    db = SessionLocal()
    try:
        item = _enqueue(db, "requeue", max_attempts=1)
        sync_queue.claim_batch(db, 1, company_id=COMPANY, now=T0)
        sync_queue.resolve(db, item.id, sync_queue.OUTCOME_FAILED, error="boom", now=T0)

        with pytest.raises(NotFoundError):
            sync_queue.requeue(db, item.id, company_id=COMPANY + 1)

        requeued = sync_queue.requeue(db, item.id, company_id=COMPANY)
        db.commit()

        assert requeued.status == "pending"
        assert requeued.attempts == 1
        assert requeued.max_attempts == 4
        assert requeued.last_error is None
        with pytest.raises(ValidationError):
            sync_queue.requeue(db, item.id, company_id=COMPANY)
    finally:
        db.close()


def test_enqueue_leaves_in_flight_item_untouched():
    db = SessionLocal()
    try:
        item = _enqueue(db, "inflight")
        sync_queue.claim_batch(db, 1, company_id=COMPANY, now=T0)
        again = _enqueue(db, "inflight", priority=1)
        db.commit()

        assert again.id == item.id
        assert again.status == "processing"
        assert again.priority == 10
    finally:
        db.close()


def test_queue_stats_counts_by_status():
    db = SessionLocal()
    try:
        _enqueue(db, "s1")
        second = _enqueue(db, "s2")
        _enqueue(db, "s3", company_id=COMPANY + 1)
        db.commit()
        sync_queue.try_claim(db, second, now=T0)
        db.commit()

        stats = sync_queue.queue_stats(db, company_id=COMPANY)
        assert stats == {"pending": 1, "processing": 1, "completed": 0, "failed": 0}
        assert sync_queue.count_claimable(db, company_id=COMPANY) == 1
    finally:
        db.close()
