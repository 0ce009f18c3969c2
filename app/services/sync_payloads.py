"""Payload schemas for sync queue items, keyed by (type, action).

Payloads are validated when work is enqueued so the gateway never has to
guess at a queue item's shape when it renders the outbound document.
"""

from datetime import date
from decimal import Decimal
from typing import Dict, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, model_validator
from pydantic import ValidationError as PydanticValidationError

from app.core.errors import ValidationError

TYPE_TIME_ENTRY = "time_entry"
TYPE_EMPLOYEE = "employee"
TYPE_PAYCHECK_QUERY = "paycheck_query"

ACTION_ADD = "add"
ACTION_MODIFY = "modify"
ACTION_QUERY = "query"


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid")


class TimeEntryExportPayload(_Payload):
    pay_period_id: str
    line_id: int
    employee_id: int
    period_start: date
    period_end: date
    regular_hours: Decimal
    overtime_hours: Decimal
    total_hours: Decimal
    export_batch: int

    @model_validator(mode="after")
    def _check_hours(self):
        if self.regular_hours < 0 or self.overtime_hours < 0:
            raise ValueError("hours must be non-negative")
        if self.regular_hours + self.overtime_hours != self.total_hours:
            raise ValueError("total_hours must equal regular_hours + overtime_hours")
        if self.period_start > self.period_end:
            raise ValueError("period_start must not be after period_end")
        return self


class EmployeeUpsertPayload(_Payload):
    employee_id: int
    name: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class EmployeeQueryPayload(_Payload):
    active_only: bool = True


class PaycheckQueryPayload(_Payload):
    from_date: date
    to_date: date
    employee_id: Optional[int] = None

    @model_validator(mode="after")
    def _check_range(self):
        if self.from_date > self.to_date:
            raise ValueError("from_date must not be after to_date")
        return self


PAYLOAD_SCHEMAS: Dict[Tuple[str, str], Type[_Payload]] = {
    (TYPE_TIME_ENTRY, ACTION_ADD): TimeEntryExportPayload,
    (TYPE_TIME_ENTRY, ACTION_MODIFY): TimeEntryExportPayload,
    (TYPE_EMPLOYEE, ACTION_ADD): EmployeeUpsertPayload,
    (TYPE_EMPLOYEE, ACTION_MODIFY): EmployeeUpsertPayload,
    (TYPE_EMPLOYEE, ACTION_QUERY): EmployeeQueryPayload,
    (TYPE_PAYCHECK_QUERY, ACTION_QUERY): PaycheckQueryPayload,
}


def validate_payload(item_type: str, action: str, payload) -> dict:
    """Validate ``payload`` against the schema for its tag and return JSON-ready data."""
    schema = PAYLOAD_SCHEMAS.get((item_type, action))
    if schema is None:
        raise ValidationError(f"Unsupported sync item type/action: {item_type}/{action}")

    try:
        if isinstance(payload, schema):
            model = payload
        else:
            model = schema.model_validate(payload or {})
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid {item_type}/{action} payload: {exc}") from exc

    return model.model_dump(mode="json")


def load_payload(item_type: str, action: str, payload: dict) -> _Payload:
    schema = PAYLOAD_SCHEMAS.get((item_type, action))
    if schema is None:
        raise ValidationError(f"Unsupported sync item type/action: {item_type}/{action}")
    return schema.model_validate(payload or {})
