from sqlalchemy import Column, Date, DateTime, Integer, String, Text

from app.core.timeutil import utcnow
from app.database import Base


class TimeCorrection(Base):
    """Employee-requested change to clock data, pending manager review."""

    __tablename__ = "time_corrections"

    id = Column(Integer, primary_key=True)
    company_id = Column(Integer, nullable=False, index=True)
    employee_id = Column(Integer, nullable=False, index=True)
    time_entry_id = Column(String, nullable=True)

    work_date = Column(Date, nullable=False, index=True)
    request_type = Column(String, nullable=False)  # edit|add_missed|delete
    reason = Column(Text, nullable=False)

    status = Column(String, nullable=False, default="pending", index=True)
    requested_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    reviewed_by = Column(String, nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
