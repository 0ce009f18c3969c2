from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String, Text, text

from app.core.timeutil import utcnow
from app.database import Base


class EmployeeMapping(Base):
    __tablename__ = "qb_employee_mappings"

    id = Column(Integer, primary_key=True)
    company_id = Column(Integer, nullable=False, index=True)
    employee_id = Column(Integer, nullable=False, index=True)

    qb_list_id = Column(String, nullable=True, index=True)
    qb_name = Column(String, nullable=False)
    # Opaque optimistic-update token owned by the accounting system.
    edit_sequence = Column(String, nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)
    is_synced = Column(Boolean, nullable=False, default=False)
    sync_error = Column(Text, nullable=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index(
            "uq_qb_employee_mapping_active",
            "company_id",
            "employee_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )
