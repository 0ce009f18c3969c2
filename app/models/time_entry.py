from sqlalchemy import Column, Date, DateTime, Index, Integer, String, Text, text

from app.database import Base


class TimeEntry(Base):
    __tablename__ = "time_entries"

    time_entry_id = Column(String, primary_key=True, index=True)

    company_id = Column(Integer, nullable=False, index=True)
    employee_id = Column(Integer, nullable=False, index=True)

    # Local calendar day the shift started on; decides the owning pay period.
    work_date = Column(Date, nullable=False, index=True)

    started_at = Column(DateTime(timezone=True), nullable=False)
    ended_at = Column(DateTime(timezone=True), nullable=True)
    break_minutes = Column(Integer, nullable=False, default=0)

    status = Column(String, nullable=False, index=True)  # active|completed
    notes = Column(Text, nullable=True)

    __table_args__ = (
        Index(
            "uq_time_entries_one_active_per_employee",
            "company_id",
            "employee_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )
