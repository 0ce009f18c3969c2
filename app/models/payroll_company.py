from datetime import date, datetime, timedelta

from sqlalchemy import Boolean, Column, Date, DateTime, Integer, String

from app.core.config import DEFAULT_PAY_PERIOD_DAYS, DEFAULT_PAY_PERIOD_REFERENCE
from app.database import Base


class PayrollCompany(Base):
    __tablename__ = "payroll_companies"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    code = Column(String, nullable=False, unique=True)
    qb_company_name = Column(String, nullable=True)

    pay_period_reference = Column(Date, nullable=False, default=DEFAULT_PAY_PERIOD_REFERENCE)
    pay_period_days = Column(Integer, nullable=False, default=DEFAULT_PAY_PERIOD_DAYS)

    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    def period_for(self, day: date) -> tuple[date, date]:
        reference = self.pay_period_reference or DEFAULT_PAY_PERIOD_REFERENCE
        length = int(self.pay_period_days or DEFAULT_PAY_PERIOD_DAYS)

        number = (day - reference).days // length
        start = reference + timedelta(days=number * length)
        return start, start + timedelta(days=length - 1)
