import uuid

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from app.core.timeutil import utcnow
from app.database import Base

PERIOD_PENDING = "pending"
PERIOD_APPROVED = "approved"
PERIOD_LOCKED = "locked"


class PayPeriod(Base):
    __tablename__ = "pay_period"

    pay_period_id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    company_id = Column(Integer, index=True, nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    status = Column(String, nullable=False, default=PERIOD_PENDING)

    # Row version for check-and-set transitions.
    version = Column(Integer, nullable=False, default=1)

    employee_count = Column(Integer, nullable=False, default=0)
    regular_hours = Column(Numeric(10, 2), nullable=False, default=0)
    overtime_hours = Column(Numeric(10, 2), nullable=False, default=0)
    total_hours = Column(Numeric(10, 2), nullable=False, default=0)
    issue_count = Column(Integer, nullable=False, default=0)

    approved_by = Column(String, nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    approval_notes = Column(Text, nullable=True)

    locked_by = Column(String, nullable=True)
    locked_at = Column(DateTime(timezone=True), nullable=True)
    unlocked_by = Column(String, nullable=True)
    unlocked_at = Column(DateTime(timezone=True), nullable=True)

    exported = Column(Boolean, nullable=False, default=False)
    exported_at = Column(DateTime(timezone=True), nullable=True)
    export_batch = Column(Integer, nullable=False, default=0)
    divergence_warning = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    lines = relationship(
        "PayPeriodLine",
        back_populates="pay_period",
        order_by="PayPeriodLine.employee_id",
    )

    __table_args__ = (
        UniqueConstraint("company_id", "start_date", "end_date", name="uq_pay_period_window"),
        CheckConstraint("start_date <= end_date", name="ck_pay_period_start_before_end"),
        CheckConstraint(
            "status IN ('pending', 'approved', 'locked')",
            name="ck_pay_period_status",
        ),
    )


class PayPeriodLine(Base):
    """Per-employee totals frozen at approval time."""

    __tablename__ = "pay_period_lines"

    id = Column(Integer, primary_key=True, autoincrement=True)
    pay_period_id = Column(
        String,
        ForeignKey("pay_period.pay_period_id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    company_id = Column(Integer, nullable=False, index=True)
    employee_id = Column(Integer, nullable=False, index=True)

    regular_hours = Column(Numeric(10, 2), nullable=False, default=0)
    overtime_hours = Column(Numeric(10, 2), nullable=False, default=0)
    total_hours = Column(Numeric(10, 2), nullable=False, default=0)

    # External transaction identity, filled from the accounting system's response.
    qb_txn_id = Column(String, nullable=True)
    qb_edit_sequence = Column(String, nullable=True)
    exported_batch = Column(Integer, nullable=True)
    exported_at = Column(DateTime(timezone=True), nullable=True)

    pay_period = relationship("PayPeriod", back_populates="lines")

    __table_args__ = (
        UniqueConstraint("pay_period_id", "employee_id", name="uq_pay_period_line_employee"),
    )
