from typing import List

from fastapi import APIRouter, Depends, HTTPException

from app.core.authorization import Actor, Role, require_role
from app.database import SessionLocal
from app.models.employee import Employee
from app.schemas.employee import EmployeeCreate, EmployeeResponse, EmployeeUpdate

router = APIRouter(prefix="/employees", tags=["Employees"])


def _get_or_404(db, company_id: int, employee_id: int) -> Employee:
    row = (
        db.query(Employee)
        .filter(Employee.id == int(employee_id), Employee.company_id == int(company_id))
        .first()
    )
    if row is None:
        raise HTTPException(status_code=404, detail="Employee not found")
    return row


@router.post("", response_model=EmployeeResponse)
def create_employee(payload: EmployeeCreate, actor: Actor = Depends(require_role(Role.MANAGER))):
    db = SessionLocal()
    try:
        row = Employee(
            company_id=actor.company_id,
            name=payload.name,
            department=payload.department,
            is_active=True,
        )
        db.add(row)
        db.commit()
        db.refresh(row)
        return row
    finally:
        db.close()


@router.get("", response_model=List[EmployeeResponse])
def list_employees(
    include_inactive: bool = False,
    actor: Actor = Depends(require_role(Role.MANAGER)),
):
    db = SessionLocal()
    try:
        q = db.query(Employee).filter(Employee.company_id == actor.company_id)
        if not include_inactive:
            q = q.filter(Employee.is_active.is_(True))
        return q.order_by(Employee.id.asc()).all()
    finally:
        db.close()


@router.get("/{employee_id}", response_model=EmployeeResponse)
def get_employee(employee_id: int, actor: Actor = Depends(require_role(Role.MANAGER))):
    db = SessionLocal()
    try:
        return _get_or_404(db, actor.company_id, employee_id)
    finally:
        db.close()


@router.patch("/{employee_id}", response_model=EmployeeResponse)
def update_employee(
    employee_id: int,
    payload: EmployeeUpdate,
    actor: Actor = Depends(require_role(Role.MANAGER)),
):
    db = SessionLocal()
    try:
        row = _get_or_404(db, actor.company_id, employee_id)
        for name, value in payload.model_dump(exclude_unset=True).items():
            if value is not None:
                setattr(row, name, value)
        db.commit()
        db.refresh(row)
        return row
    finally:
        db.close()
