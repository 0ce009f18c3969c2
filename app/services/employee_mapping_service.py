import logging
from datetime import date, datetime
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.errors import NotFoundError, ValidationError
from app.core.timeutil import utcnow
from app.models.employee import Employee
from app.models.employee_mapping import EmployeeMapping
from app.models.sync_queue_item import SyncQueueItem
from app.services import connection_service, sync_queue
from app.services.sync_payloads import (
    ACTION_ADD,
    ACTION_MODIFY,
    ACTION_QUERY,
    TYPE_EMPLOYEE,
    TYPE_PAYCHECK_QUERY,
)

logger = logging.getLogger(__name__)

EMPLOYEE_REFERENCE_TYPE = "employee"
ROSTER_REFERENCE_TYPE = "employee_roster"
PAYCHECK_REFERENCE_TYPE = "paycheck_range"


def get_active_mapping(db: Session, company_id: int, employee_id: int) -> Optional[EmployeeMapping]:
    return (
        db.query(EmployeeMapping)
        .filter(
            EmployeeMapping.company_id == int(company_id),
            EmployeeMapping.employee_id == int(employee_id),
            EmployeeMapping.is_active.is_(True),
        )
        .one_or_none()
    )


def find_by_list_id(db: Session, company_id: int, qb_list_id: str) -> Optional[EmployeeMapping]:
    return (
        db.query(EmployeeMapping)
        .filter(
            EmployeeMapping.company_id == int(company_id),
            EmployeeMapping.qb_list_id == str(qb_list_id),
            EmployeeMapping.is_active.is_(True),
        )
        .first()
    )


def _require_employee(db: Session, company_id: int, employee_id: int) -> Employee:
    employee = (
        db.query(Employee)
        .filter(Employee.company_id == int(company_id), Employee.id == int(employee_id))
        .one_or_none()
    )
    if employee is None:
        raise NotFoundError(f"Employee {employee_id} not found")
    return employee


def create_mapping(
    db: Session,
    *,
    company_id: int,
    employee_id: int,
    qb_name: str,
    qb_list_id: Optional[str] = None,
    edit_sequence: Optional[str] = None,
    now: Optional[datetime] = None,
) -> EmployeeMapping:
    _require_employee(db, company_id, employee_id)
    if get_active_mapping(db, company_id, employee_id) is not None:
        raise ValidationError("Employee already has an active mapping")

    now = now or utcnow()
    mapping = EmployeeMapping(
        company_id=int(company_id),
        employee_id=int(employee_id),
        qb_name=qb_name,
        qb_list_id=qb_list_id,
        edit_sequence=edit_sequence,
        is_active=True,
        is_synced=bool(qb_list_id),
        last_synced_at=now if qb_list_id else None,
        created_at=now,
        updated_at=now,
    )
    try:
        with db.begin_nested():
            db.add(mapping)
            db.flush()
    except IntegrityError as exc:
        raise ValidationError("Employee already has an active mapping") from exc

    logger.info(
        "Employee mapping created",
        extra={"company_id": int(company_id), "employee_id": int(employee_id), "qb_list_id": qb_list_id},
    )
    return mapping


def update_mapping(
    db: Session,
    mapping_id: int,
    *,
    company_id: int,
    qb_name: Optional[str] = None,
    qb_list_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> EmployeeMapping:
    mapping = _require_mapping(db, mapping_id, company_id)
    now = now or utcnow()
    if qb_name is not None:
        mapping.qb_name = qb_name
    if qb_list_id is not None and qb_list_id != mapping.qb_list_id:
        # A different external record; its edit sequence is unknown until the next response.
        mapping.qb_list_id = qb_list_id
        mapping.edit_sequence = None
    mapping.updated_at = now
    db.flush()
    return mapping


def deactivate_mapping(db: Session, mapping_id: int, *, company_id: int, now: Optional[datetime] = None) -> EmployeeMapping:
    mapping = _require_mapping(db, mapping_id, company_id)
    mapping.is_active = False
    mapping.updated_at = now or utcnow()
    db.flush()
    return mapping


def _require_mapping(db: Session, mapping_id: int, company_id: int) -> EmployeeMapping:
    mapping = (
        db.query(EmployeeMapping)
        .filter(EmployeeMapping.id == int(mapping_id), EmployeeMapping.company_id == int(company_id))
        .one_or_none()
    )
    if mapping is None:
        raise NotFoundError(f"Employee mapping {mapping_id} not found")
    return mapping


def list_mappings(db: Session, *, company_id: int, include_inactive: bool = False) -> List[EmployeeMapping]:
    q = db.query(EmployeeMapping).filter(EmployeeMapping.company_id == int(company_id))
    if not include_inactive:
        q = q.filter(EmployeeMapping.is_active.is_(True))
    return q.order_by(EmployeeMapping.employee_id.asc()).all()


def list_unmapped(db: Session, *, company_id: int) -> List[Employee]:
    """Active employees with no active mapping carrying an external list id."""
    mapped = (
        db.query(EmployeeMapping.employee_id)
        .filter(
            EmployeeMapping.company_id == int(company_id),
            EmployeeMapping.is_active.is_(True),
            EmployeeMapping.qb_list_id.isnot(None),
        )
    )
    return (
        db.query(Employee)
        .filter(
            Employee.company_id == int(company_id),
            Employee.is_active.is_(True),
            Employee.id.notin_(mapped),
        )
        .order_by(Employee.name.asc())
        .all()
    )


def record_external_identity(
    db: Session,
    *,
    company_id: int,
    employee_id: int,
    qb_list_id: Optional[str],
    edit_sequence: Optional[str],
    qb_name: Optional[str] = None,
    now: Optional[datetime] = None,
) -> EmployeeMapping:
    """Refresh (or create) the active mapping from an accounting-system response."""
    now = now or utcnow()
    mapping = get_active_mapping(db, company_id, employee_id)
    if mapping is None:
        employee = _require_employee(db, company_id, employee_id)
        mapping = create_mapping(
            db,
            company_id=company_id,
            employee_id=employee_id,
            qb_name=qb_name or employee.name,
            qb_list_id=qb_list_id,
            edit_sequence=edit_sequence,
            now=now,
        )
        return mapping

    if qb_list_id:
        mapping.qb_list_id = qb_list_id
    if edit_sequence:
        mapping.edit_sequence = edit_sequence
    if qb_name:
        mapping.qb_name = qb_name
    mapping.is_synced = True
    mapping.sync_error = None
    mapping.last_synced_at = now
    mapping.updated_at = now
    db.flush()
    return mapping


def record_sync_error(db: Session, *, company_id: int, employee_id: int, error: str) -> None:
    mapping = get_active_mapping(db, company_id, employee_id)
    if mapping is None:
        return
    mapping.is_synced = False
    mapping.sync_error = error
    mapping.updated_at = utcnow()
    db.flush()


def refresh_from_roster(db: Session, *, company_id: int, records: List[dict], now: Optional[datetime] = None) -> int:
    """Apply imported (list_id, name, edit_sequence) records to known mappings; returns rows touched."""
    now = now or utcnow()
    touched = 0
    for record in records:
        list_id = record.get("list_id")
        if not list_id:
            continue
        mapping = find_by_list_id(db, company_id, list_id)
        if mapping is None:
            continue
        if record.get("name"):
            mapping.qb_name = record["name"]
        if record.get("edit_sequence"):
            mapping.edit_sequence = record["edit_sequence"]
        mapping.is_synced = True
        mapping.sync_error = None
        mapping.last_synced_at = now
        mapping.updated_at = now
        touched += 1
    db.flush()
    return touched


def enqueue_employee_sync(db: Session, *, company_id: int, employee_id: int) -> SyncQueueItem:
    employee = _require_employee(db, company_id, employee_id)
    connection = connection_service.get_connection(db, company_id)
    if not connection.sync_employees:
        raise ValidationError("Employee sync is disabled for this connection")

    mapping = get_active_mapping(db, company_id, employee_id)
    action = ACTION_MODIFY if mapping is not None and mapping.qb_list_id else ACTION_ADD
    return sync_queue.enqueue(
        db,
        company_id=company_id,
        item_type=TYPE_EMPLOYEE,
        action=action,
        reference_type=EMPLOYEE_REFERENCE_TYPE,
        reference_id=str(employee.id),
        payload={"employee_id": employee.id, "name": employee.name},
    )


def enqueue_roster_import(db: Session, *, company_id: int, active_only: bool = True) -> SyncQueueItem:
    connection = connection_service.get_connection(db, company_id)
    if not connection.sync_employees:
        raise ValidationError("Employee sync is disabled for this connection")
    return sync_queue.enqueue(
        db,
        company_id=company_id,
        item_type=TYPE_EMPLOYEE,
        action=ACTION_QUERY,
        reference_type=ROSTER_REFERENCE_TYPE,
        reference_id=str(company_id),
        payload={"active_only": bool(active_only)},
    )


def enqueue_paycheck_query(
    db: Session,
    *,
    company_id: int,
    from_date: date,
    to_date: date,
    employee_id: Optional[int] = None,
) -> SyncQueueItem:
    connection = connection_service.get_connection(db, company_id)
    if not connection.sync_pay_stubs:
        raise ValidationError("Pay stub sync is disabled for this connection")
    reference = f"{from_date.isoformat()}:{to_date.isoformat()}:{employee_id or '*'}"
    return sync_queue.enqueue(
        db,
        company_id=company_id,
        item_type=TYPE_PAYCHECK_QUERY,
        action=ACTION_QUERY,
        reference_type=PAYCHECK_REFERENCE_TYPE,
        reference_id=reference,
        payload={"from_date": from_date, "to_date": to_date, "employee_id": employee_id},
    )
