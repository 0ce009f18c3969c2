from sqlalchemy import Column, DateTime, Index, Integer, String, Text

from app.core.timeutil import utcnow
from app.database import Base

SESSION_OPEN = "open"
SESSION_CLOSED = "closed"
SESSION_ERROR = "error"


class SyncSession(Base):
    """One polling round-trip from authenticate to closeConnection."""

    __tablename__ = "qb_sync_sessions"

    session_id = Column(String, primary_key=True)
    company_id = Column(Integer, nullable=False, index=True)
    connection_id = Column(Integer, nullable=False)
    agent_username = Column(String, nullable=False)

    status = Column(String, nullable=False, default=SESSION_OPEN)
    company_file = Column(String, nullable=True)
    qb_version = Column(String, nullable=True)

    request_count = Column(Integer, nullable=False, default=0)
    completed_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)
    discarded_count = Column(Integer, nullable=False, default=0)

    started_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_activity_at = Column(DateTime(timezone=True), nullable=True)
    ended_at = Column(DateTime(timezone=True), nullable=True)
    duration_ms = Column(Integer, nullable=True)
    error = Column(Text, nullable=True)


class SyncLog(Base):
    """Append-only audit trail; rows are never updated."""

    __tablename__ = "qb_sync_logs"

    id = Column(Integer, primary_key=True)
    company_id = Column(Integer, nullable=False, index=True)
    session_id = Column(String, nullable=True, index=True)

    operation = Column(String, nullable=False)
    direction = Column(String, nullable=False)  # export|import
    record_type = Column(String, nullable=True)
    record_id = Column(String, nullable=True)
    record_count = Column(Integer, nullable=True)

    status = Column(String, nullable=False)
    message = Column(Text, nullable=True)
    error_details = Column(Text, nullable=True)
    duration_ms = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (Index("ix_qb_sync_logs_company_created", "company_id", "created_at"),)
