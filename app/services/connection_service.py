import hashlib
import hmac
import logging
import re
import secrets
import uuid
import xml.etree.ElementTree as ET
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from app.core.errors import NotFoundError, ValidationError
from app.core.timeutil import utcnow
from app.models.qb_connection import (
    STATUS_CONNECTED,
    STATUS_DISCONNECTED,
    STATUS_ERROR,
    STATUS_PENDING,
    QBConnection,
)

logger = logging.getLogger(__name__)

VALID_STATUSES = {STATUS_PENDING, STATUS_CONNECTED, STATUS_DISCONNECTED, STATUS_ERROR}

_TOGGLES = ("sync_time_entries", "sync_pay_stubs", "sync_employees", "auto_sync_enabled")

# Stable namespace so a re-downloaded registration file keeps the agent's ids.
_QWC_NAMESPACE = uuid.UUID("6f1d7c52-3a8e-4c1b-9d0f-5b2e8a4c7e10")


def _hash_secret(secret: str, salt: str) -> str:
    return hashlib.sha256(f"{salt}:{secret}".encode("utf-8")).hexdigest()


def verify_secret(connection: QBConnection, secret: str) -> bool:
    expected = connection.wc_secret_hash or ""
    actual = _hash_secret(secret or "", connection.wc_secret_salt or "")
    return hmac.compare_digest(expected, actual)


def get_connection(db: Session, company_id: int) -> QBConnection:
    connection = db.query(QBConnection).filter(QBConnection.company_id == int(company_id)).one_or_none()
    if connection is None:
        raise NotFoundError(f"No integration connection configured for company {company_id}")
    return connection


def find_by_username(db: Session, username: str) -> Optional[QBConnection]:
    return (
        db.query(QBConnection)
        .filter(QBConnection.wc_username == str(username), QBConnection.is_active.is_(True))
        .one_or_none()
    )


def save_connection(
    db: Session,
    *,
    company_id: int,
    company_name: str,
    wc_username: str,
    wc_secret: Optional[str] = None,
    sync_interval_minutes: Optional[int] = None,
    created_by: Optional[str] = None,
    now: Optional[datetime] = None,
    **toggles,
) -> QBConnection:
    """Create or update the company's connection record.

    The secret is required on create and optional on update; it is stored
    only as a salted digest.
    """
    unknown = set(toggles) - set(_TOGGLES)
    if unknown:
        raise ValidationError(f"Unknown connection settings: {', '.join(sorted(unknown))}")

    username = (wc_username or "").strip()
    if not username:
        raise ValidationError("wc_username is required")
    if sync_interval_minutes is not None and int(sync_interval_minutes) < 1:
        raise ValidationError("sync_interval_minutes must be >= 1")

    now = now or utcnow()
    connection = (
        db.query(QBConnection).filter(QBConnection.company_id == int(company_id)).one_or_none()
    )

    clash = find_by_username(db, username)
    if clash is not None and clash.company_id != int(company_id):
        raise ValidationError("wc_username is already used by another company")

    if connection is None:
        if not wc_secret:
            raise ValidationError("wc_secret is required when creating a connection")
        connection = QBConnection(
            company_id=int(company_id),
            company_name=company_name,
            wc_username=username,
            connection_status=STATUS_PENDING,
            created_by=created_by,
            created_at=now,
        )
        db.add(connection)
        created = True
    else:
        connection.company_name = company_name
        connection.wc_username = username
        created = False

    if wc_secret:
        salt = secrets.token_hex(16)
        connection.wc_secret_salt = salt
        connection.wc_secret_hash = _hash_secret(wc_secret, salt)

    for name, value in toggles.items():
        if value is not None:
            setattr(connection, name, bool(value))
    if sync_interval_minutes is not None:
        connection.sync_interval_minutes = int(sync_interval_minutes)
    connection.is_active = True
    connection.updated_at = now
    db.flush()

    logger.info(
        "Integration connection saved",
        extra={"company_id": int(company_id), "created": created, "wc_username": username},
    )
    return connection


def update_connection_status(
    db: Session,
    connection: QBConnection,
    status: str,
    *,
    error: Optional[str] = None,
    company_file: Optional[str] = None,
    qb_version: Optional[str] = None,
    now: Optional[datetime] = None,
) -> QBConnection:
    if status not in VALID_STATUSES:
        raise ValidationError(f"Unknown connection status: {status}")

    now = now or utcnow()
    connection.connection_status = status
    connection.updated_at = now
    if status == STATUS_CONNECTED:
        connection.last_connected_at = now
    if error:
        connection.last_error = error
        connection.last_error_at = now
    if company_file:
        connection.company_file = company_file
    if qb_version:
        connection.qb_version = qb_version
    db.flush()

    if status == STATUS_ERROR:
        logger.warning(
            "Integration connection error",
            extra={"company_id": connection.company_id, "error": error},
        )
    return connection


def mark_synced(db: Session, connection: QBConnection, *, now: Optional[datetime] = None) -> QBConnection:
    now = now or utcnow()
    connection.connection_status = STATUS_DISCONNECTED
    connection.last_sync_at = now
    connection.updated_at = now
    db.flush()
    return connection


def _braced(name: str, connection: QBConnection) -> str:
    value = uuid.uuid5(_QWC_NAMESPACE, f"{name}:{connection.company_id}:{connection.wc_username}")
    return "{" + str(value).upper() + "}"


def generate_qwc_file(connection: QBConnection, *, app_url: str, app_name: str) -> dict:
    """Registration document the operator loads into the polling agent."""
    base_url = app_url.rstrip("/")

    root = ET.Element("QBWCXML")
    for tag, text in (
        ("AppName", app_name),
        ("AppID", ""),
        ("AppURL", f"{base_url}/qbwc"),
        ("AppDescription", f"{connection.company_name} time and payroll sync"),
        ("AppSupport", f"{base_url}/support"),
        ("UserName", connection.wc_username),
        ("OwnerID", _braced("owner", connection)),
        ("FileID", _braced("file", connection)),
        ("QBType", "QBFS"),
    ):
        ET.SubElement(root, tag).text = text
    scheduler = ET.SubElement(root, "Scheduler")
    ET.SubElement(scheduler, "RunEveryNMinutes").text = str(int(connection.sync_interval_minutes or 60))
    ET.SubElement(root, "IsReadOnly").text = "false"

    content = '<?xml version="1.0"?>\n' + ET.tostring(root, encoding="unicode")
    return {
        "content": content,
        "file_name": re.sub(r"\s+", "_", app_name.strip()) + ".qwc",
        "username": connection.wc_username,
    }
