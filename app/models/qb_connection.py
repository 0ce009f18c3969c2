from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text

from app.core.timeutil import utcnow
from app.database import Base

STATUS_PENDING = "pending"
STATUS_CONNECTED = "connected"
STATUS_DISCONNECTED = "disconnected"
STATUS_ERROR = "error"


class QBConnection(Base):
    """Integration endpoint configuration, one per payroll company."""

    __tablename__ = "qb_connections"

    id = Column(Integer, primary_key=True)
    company_id = Column(Integer, nullable=False, unique=True, index=True)
    company_name = Column(String, nullable=False)

    wc_username = Column(String, nullable=False, index=True)
    wc_secret_salt = Column(String, nullable=False)
    wc_secret_hash = Column(String, nullable=False)

    is_active = Column(Boolean, nullable=False, default=True)
    sync_time_entries = Column(Boolean, nullable=False, default=True)
    sync_pay_stubs = Column(Boolean, nullable=False, default=False)
    sync_employees = Column(Boolean, nullable=False, default=True)
    auto_sync_enabled = Column(Boolean, nullable=False, default=True)
    sync_interval_minutes = Column(Integer, nullable=False, default=60)

    connection_status = Column(String, nullable=False, default=STATUS_PENDING)
    qb_version = Column(String, nullable=True)
    company_file = Column(String, nullable=True)
    last_connected_at = Column(DateTime(timezone=True), nullable=True)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)
    last_error_at = Column(DateTime(timezone=True), nullable=True)

    created_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
