from app.models.employee import Employee
from app.models.employee_mapping import EmployeeMapping
from app.models.pay_period import PayPeriod, PayPeriodLine
from app.models.payroll_company import PayrollCompany
from app.models.qb_connection import QBConnection
from app.models.sync_log import SyncLog, SyncSession
from app.models.sync_queue_item import SyncQueueItem
from app.models.time_correction import TimeCorrection
from app.models.time_entry import TimeEntry

__all__ = [
    "Employee",
    "EmployeeMapping",
    "PayPeriod",
    "PayPeriodLine",
    "PayrollCompany",
    "QBConnection",
    "SyncLog",
    "SyncQueueItem",
    "SyncSession",
    "TimeCorrection",
    "TimeEntry",
]
