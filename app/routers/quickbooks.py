from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from pydantic import BaseModel, Field

from app.core.authorization import Actor, Role, require_role
from app.core.errors import PayrollSyncError
from app.database import SessionLocal
from app.deps.errors import http_error
from app.models.employee_mapping import EmployeeMapping
from app.models.qb_connection import QBConnection
from app.models.sync_queue_item import SyncQueueItem
from app.services import connection_service, employee_mapping_service

router = APIRouter(prefix="/quickbooks", tags=["QuickBooks"])


class ConnectionRequest(BaseModel):
    company_name: str = Field(min_length=1)
    wc_username: str = Field(min_length=1)
    wc_secret: Optional[str] = Field(default=None, min_length=8)
    sync_time_entries: Optional[bool] = None
    sync_pay_stubs: Optional[bool] = None
    sync_employees: Optional[bool] = None
    auto_sync_enabled: Optional[bool] = None
    sync_interval_minutes: Optional[int] = Field(default=None, ge=1, le=1440)


class ConnectionResponse(BaseModel):
    company_id: int
    company_name: str
    wc_username: str
    is_active: bool
    sync_time_entries: bool
    sync_pay_stubs: bool
    sync_employees: bool
    auto_sync_enabled: bool
    sync_interval_minutes: int
    connection_status: str
    qb_version: Optional[str]
    company_file: Optional[str]
    last_connected_at: Optional[datetime]
    last_sync_at: Optional[datetime]
    last_error: Optional[str]
    last_error_at: Optional[datetime]


class MappingRequest(BaseModel):
    employee_id: int
    qb_name: str = Field(min_length=1)
    qb_list_id: Optional[str] = None


class MappingUpdateRequest(BaseModel):
    qb_name: Optional[str] = None
    qb_list_id: Optional[str] = None


class MappingResponse(BaseModel):
    id: int
    employee_id: int
    qb_list_id: Optional[str]
    qb_name: str
    edit_sequence: Optional[str]
    is_active: bool
    is_synced: bool
    sync_error: Optional[str]
    last_synced_at: Optional[datetime]


class UnmappedEmployee(BaseModel):
    id: int
    name: str
    department: Optional[str]


class PaycheckQueryRequest(BaseModel):
    from_date: date
    to_date: date
    employee_id: Optional[int] = None


class EnqueuedItem(BaseModel):
    id: int
    type: str
    action: str
    status: str
    priority: int


def _connection_out(c: QBConnection) -> ConnectionResponse:
    return ConnectionResponse(
        company_id=c.company_id,
        company_name=c.company_name,
        wc_username=c.wc_username,
        is_active=c.is_active,
        sync_time_entries=c.sync_time_entries,
        sync_pay_stubs=c.sync_pay_stubs,
        sync_employees=c.sync_employees,
        auto_sync_enabled=c.auto_sync_enabled,
        sync_interval_minutes=c.sync_interval_minutes,
        connection_status=c.connection_status,
        qb_version=c.qb_version,
        company_file=c.company_file,
        last_connected_at=c.last_connected_at,
        last_sync_at=c.last_sync_at,
        last_error=c.last_error,
        last_error_at=c.last_error_at,
    )


def _mapping_out(m: EmployeeMapping) -> MappingResponse:
    return MappingResponse(
        id=m.id,
        employee_id=m.employee_id,
        qb_list_id=m.qb_list_id,
        qb_name=m.qb_name,
        edit_sequence=m.edit_sequence,
        is_active=m.is_active,
        is_synced=m.is_synced,
        sync_error=m.sync_error,
        last_synced_at=m.last_synced_at,
    )


def _item_out(item: SyncQueueItem) -> EnqueuedItem:
    return EnqueuedItem(
        id=item.id,
        type=item.type,
        action=item.action,
        status=item.status,
        priority=item.priority,
    )


def _write(operation, to_response):
    """Run ``operation(db)`` in a request-scoped transaction."""
    db = SessionLocal()
    try:
        result = operation(db)
        db.commit()
        db.refresh(result)
        return to_response(result)
    except PayrollSyncError as exc:
        db.rollback()
        raise http_error(exc) from exc
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@router.get("/connection", response_model=ConnectionResponse)
def get_connection(actor: Actor = Depends(require_role(Role.MANAGER))):
    db = SessionLocal()
    try:
        return _connection_out(connection_service.get_connection(db, actor.company_id))
    except PayrollSyncError as exc:
        raise http_error(exc) from exc
    finally:
        db.close()


@router.put("/connection", response_model=ConnectionResponse)
def save_connection(payload: ConnectionRequest, actor: Actor = Depends(require_role(Role.ADMIN))):
    return _write(
        lambda db: connection_service.save_connection(
            db,
            company_id=actor.company_id,
            created_by=actor.user_id,
            **payload.model_dump(),
        ),
        _connection_out,
    )


@router.get("/connection/qwc")
def download_qwc(
    app_url: str = Query(..., min_length=1),
    app_name: str = Query("Payroll Sync", min_length=1),
    actor: Actor = Depends(require_role(Role.ADMIN)),
):
    db = SessionLocal()
    try:
        connection = connection_service.get_connection(db, actor.company_id)
        qwc = connection_service.generate_qwc_file(connection, app_url=app_url, app_name=app_name)
    except PayrollSyncError as exc:
        raise http_error(exc) from exc
    finally:
        db.close()

    return Response(
        content=qwc["content"],
        media_type="application/xml",
        headers={"Content-Disposition": f'attachment; filename="{qwc["file_name"]}"'},
    )


@router.get("/mappings", response_model=list[MappingResponse])
def list_mappings(
    include_inactive: bool = False,
    actor: Actor = Depends(require_role(Role.MANAGER)),
):
    db = SessionLocal()
    try:
        rows = employee_mapping_service.list_mappings(
            db, company_id=actor.company_id, include_inactive=include_inactive
        )
        return [_mapping_out(m) for m in rows]
    finally:
        db.close()


@router.post("/mappings", response_model=MappingResponse)
def create_mapping(payload: MappingRequest, actor: Actor = Depends(require_role(Role.MANAGER))):
    return _write(
        lambda db: employee_mapping_service.create_mapping(
            db,
            company_id=actor.company_id,
            employee_id=payload.employee_id,
            qb_name=payload.qb_name,
            qb_list_id=payload.qb_list_id,
        ),
        _mapping_out,
    )


@router.patch("/mappings/{mapping_id}", response_model=MappingResponse)
def update_mapping(
    mapping_id: int,
    payload: MappingUpdateRequest,
    actor: Actor = Depends(require_role(Role.MANAGER)),
):
    return _write(
        lambda db: employee_mapping_service.update_mapping(
            db,
            mapping_id,
            company_id=actor.company_id,
            qb_name=payload.qb_name,
            qb_list_id=payload.qb_list_id,
        ),
        _mapping_out,
    )


@router.delete("/mappings/{mapping_id}", response_model=MappingResponse)
def deactivate_mapping(mapping_id: int, actor: Actor = Depends(require_role(Role.MANAGER))):
    return _write(
        lambda db: employee_mapping_service.deactivate_mapping(db, mapping_id, company_id=actor.company_id),
        _mapping_out,
    )


@router.get("/unmapped", response_model=list[UnmappedEmployee])
def list_unmapped(actor: Actor = Depends(require_role(Role.MANAGER))):
    db = SessionLocal()
    try:
        rows = employee_mapping_service.list_unmapped(db, company_id=actor.company_id)
        return [UnmappedEmployee(id=e.id, name=e.name, department=e.department) for e in rows]
    finally:
        db.close()


@router.post("/employees/{employee_id}/sync", response_model=EnqueuedItem)
def sync_employee(employee_id: int, actor: Actor = Depends(require_role(Role.MANAGER))):
    return _write(
        lambda db: employee_mapping_service.enqueue_employee_sync(
            db, company_id=actor.company_id, employee_id=employee_id
        ),
        _item_out,
    )


@router.post("/employees/import", response_model=EnqueuedItem)
def import_roster(
    active_only: bool = True,
    actor: Actor = Depends(require_role(Role.MANAGER)),
):
    return _write(
        lambda db: employee_mapping_service.enqueue_roster_import(
            db, company_id=actor.company_id, active_only=active_only
        ),
        _item_out,
    )


@router.post("/paychecks/query", response_model=EnqueuedItem)
def query_paychecks(payload: PaycheckQueryRequest, actor: Actor = Depends(require_role(Role.MANAGER))):
    return _write(
        lambda db: employee_mapping_service.enqueue_paycheck_query(
            db,
            company_id=actor.company_id,
            from_date=payload.from_date,
            to_date=payload.to_date,
            employee_id=payload.employee_id,
        ),
        _item_out,
    )
