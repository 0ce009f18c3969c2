import os
_default_test_secret = "test-jwt-secret-for-pytest-only-0000000000000000"
if len(os.environ.get("JWT_SECRET", "")) < 32:
    os.environ["JWT_SECRET"] = _default_test_secret
os.environ.setdefault("ENV", "test")

import subprocess
import tempfile
from datetime import date, datetime, time, timedelta, timezone
from itertools import count
from pathlib import Path
from uuid import uuid4

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.engine import make_url

_default_sqlite_path = Path(tempfile.gettempdir()) / f"payroll_sync_test_{os.getpid()}.db"
TEST_DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{_default_sqlite_path}")
os.environ["DATABASE_URL"] = TEST_DATABASE_URL

from app import database
from app.models.employee import Employee
from app.models.employee_mapping import EmployeeMapping
from app.models.payroll_company import PayrollCompany
from app.models.time_entry import TimeEntry
from app.services import connection_service

_seq = count(1)


def _get_access_token(client, company_id: int, user_id: str = "test", role: str = "MANAGER") -> str:
    resp = client.post("/auth/token", json={"user_id": user_id, "company_id": company_id, "role": role})
    assert resp.status_code == 200, f"token request failed: {resp.status_code} {resp.text}"
    data = resp.json()
    assert "access_token" in data, f"token response missing access_token: {data}"
    return data["access_token"]


def _ensure_database_exists(database_url: str) -> None:
    url = make_url(database_url)

    if not url.drivername.startswith("postgresql"):
        return

    db_name = url.database
    admin_url = url.set(database="postgres")
    admin_engine = create_engine(admin_url, isolation_level="AUTOCOMMIT")

    try:
        with admin_engine.connect() as conn:
            exists = conn.execute(
                text("SELECT 1 FROM pg_database WHERE datname = :name"),
                {"name": db_name},
            ).scalar()
            if not exists:
                safe_db_name = db_name.replace('"', '""')
                conn.execute(text(f'CREATE DATABASE "{safe_db_name}"'))
    finally:
        admin_engine.dispose()


@pytest.fixture(scope="session", autouse=True)
def _prepare_test_database():
    database.configure_database()

    if database.is_postgres():
        _ensure_database_exists(TEST_DATABASE_URL)
        env = os.environ.copy()
        env["DATABASE_URL"] = TEST_DATABASE_URL
        subprocess.run(
            ["alembic", "upgrade", "head"],
            check=True,
            cwd=Path(__file__).resolve().parents[2],
            env=env,
        )
    else:
        database.Base.metadata.drop_all(bind=database.engine)
        database.Base.metadata.create_all(bind=database.engine)

    yield

    database.engine.dispose()
    if not database.is_postgres() and TEST_DATABASE_URL == f"sqlite:///{_default_sqlite_path}":
        _default_sqlite_path.unlink(missing_ok=True)


def _clear_tables() -> None:
    tables = list(reversed(database.Base.metadata.sorted_tables))
    with database.engine.begin() as conn:
        if database.is_postgres():
            quoted = ", ".join(f'"public"."{t.name}"' for t in tables)
            conn.execute(text(f"TRUNCATE TABLE {quoted} RESTART IDENTITY CASCADE"))
        else:
            for table in tables:
                conn.execute(table.delete())


@pytest.fixture(scope="function", autouse=True)
def _truncate_tables_between_tests():
    _clear_tables()
    yield
    _clear_tables()


def _persist(row):
    db = database.SessionLocal()
    try:
        db.add(row)
        db.commit()
        db.refresh(row)
        return row
    finally:
        db.close()


@pytest.fixture
def company_factory():
    def _make(**kwargs) -> PayrollCompany:
        n = next(_seq)
        kwargs.setdefault("name", f"Company {n}")
        kwargs.setdefault("code", f"C{n:04d}")
        return _persist(PayrollCompany(**kwargs))

    return _make


@pytest.fixture
def employee_factory():
    def _make(company_id: int, name=None, **kwargs) -> Employee:
        n = next(_seq)
        kwargs.setdefault("is_active", True)
        return _persist(Employee(company_id=int(company_id), name=name or f"Worker {n}", **kwargs))

    return _make


@pytest.fixture
def mapping_factory():
    def _make(company_id: int, employee_id: int, qb_list_id=None, **kwargs) -> EmployeeMapping:
        n = next(_seq)
        kwargs.setdefault("qb_name", f"Worker {employee_id}")
        kwargs.setdefault("edit_sequence", "1700000000")
        kwargs.setdefault("is_active", True)
        kwargs.setdefault("is_synced", True)
        return _persist(
            EmployeeMapping(
                company_id=int(company_id),
                employee_id=int(employee_id),
                qb_list_id=qb_list_id or f"8000{n:04d}-1700000000",
                **kwargs,
            )
        )

    return _make


@pytest.fixture
def connection_factory():
    def _make(company_id: int, wc_username=None, wc_secret="agent-secret-123", **kwargs):
        db = database.SessionLocal()
        try:
            connection = connection_service.save_connection(
                db,
                company_id=int(company_id),
                company_name=kwargs.pop("company_name", f"Company {company_id}"),
                wc_username=wc_username or f"agent-{company_id}",
                wc_secret=wc_secret,
                **kwargs,
            )
            db.commit()
            db.refresh(connection)
            return connection
        finally:
            db.close()

    return _make


@pytest.fixture
def time_entry_factory():
    def _make(
        company_id: int,
        employee_id: int,
        work_date: date,
        hours=8,
        start_hour: int = 8,
        break_minutes: int = 0,
        open_shift: bool = False,
    ) -> TimeEntry:
        started_at = datetime.combine(work_date, time(start_hour), tzinfo=timezone.utc)
        ended_at = None
        if not open_shift:
            ended_at = started_at + timedelta(hours=float(hours), minutes=int(break_minutes))
        return _persist(
            TimeEntry(
                time_entry_id=str(uuid4()),
                company_id=int(company_id),
                employee_id=int(employee_id),
                work_date=work_date,
                started_at=started_at,
                ended_at=ended_at,
                break_minutes=int(break_minutes),
                status="active" if open_shift else "completed",
            )
        )

    return _make


@pytest.fixture
def auth_headers():
    from fastapi.testclient import TestClient

    from app.main import app

    client = TestClient(app)

    def _make(company_id: int, role: str = "MANAGER", user_id: str = "manager-1") -> dict:
        token = _get_access_token(client, company_id, user_id=user_id, role=role)
        return {"Authorization": f"Bearer {token}", "X-Company-Id": str(company_id)}

    return _make
