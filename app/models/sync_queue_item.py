from sqlalchemy import CheckConstraint, Column, DateTime, Index, Integer, String, Text, text

from app.core.timeutil import utcnow
from app.database import Base, JSONVariant

ITEM_PENDING = "pending"
ITEM_PROCESSING = "processing"
ITEM_COMPLETED = "completed"
ITEM_FAILED = "failed"

OPEN_STATUSES = (ITEM_PENDING, ITEM_PROCESSING)


class SyncQueueItem(Base):
    __tablename__ = "qb_sync_queue"

    id = Column(Integer, primary_key=True)
    company_id = Column(Integer, nullable=False, index=True)

    type = Column(String, nullable=False)  # time_entry|employee|paycheck_query
    action = Column(String, nullable=False)  # add|modify|query
    reference_type = Column(String, nullable=False)
    reference_id = Column(String, nullable=False)

    pay_period_id = Column(String, nullable=True, index=True)
    export_batch = Column(Integer, nullable=True)

    payload = Column(JSONVariant, nullable=False)
    request_xml = Column(Text, nullable=True)
    response_xml = Column(Text, nullable=True)
    correlation_id = Column(String, nullable=True, index=True)

    status = Column(String, nullable=False, default=ITEM_PENDING)
    priority = Column(Integer, nullable=False, default=10)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)

    last_error = Column(Text, nullable=True)
    error_kind = Column(String, nullable=True)  # transient|terminal
    claimed_by_session = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("attempts >= 0", name="ck_qb_sync_queue_attempts_nonnegative"),
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_qb_sync_queue_status",
        ),
        Index("ix_qb_sync_queue_claim", "status", "priority", "created_at"),
        Index("ix_qb_sync_queue_reference", "company_id", "reference_type", "reference_id", "type"),
        # One open item per reference; closed items are kept for audit.
        Index(
            "uq_qb_sync_queue_open_reference",
            "company_id",
            "reference_type",
            "reference_id",
            "type",
            unique=True,
            postgresql_where=text("status IN ('pending', 'processing')"),
            sqlite_where=text("status IN ('pending', 'processing')"),
        ),
    )
