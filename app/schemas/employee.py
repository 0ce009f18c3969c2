from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class EmployeeCreate(BaseModel):
    name: str = Field(min_length=1)
    department: Optional[str] = None


class EmployeeUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    department: Optional[str] = None
    is_active: Optional[bool] = None


class EmployeeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    company_id: int
    name: str
    department: Optional[str]
    is_active: bool
    created_at: datetime
