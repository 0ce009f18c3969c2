"""Pull-based exchange with the accounting system's polling agent.

The agent drives every step: it authenticates, asks for the next request
document, posts back the response, and closes the session. Nothing here
holds a connection open between calls, so every exchange is treated as
possibly duplicated or lost; the queue's claim/resolve contract and the
correlation id embedded as ``requestID`` keep the outcome exactly-once on
our side.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from app.core.errors import AuthError, SyncError, TerminalSyncError, TransientSyncError
from app.core.timeutil import as_utc, utcnow
from app.models.pay_period import PayPeriodLine
from app.models.qb_connection import STATUS_CONNECTED, STATUS_ERROR, QBConnection
from app.models.sync_log import SyncSession
from app.models.sync_queue_item import ITEM_PROCESSING, SyncQueueItem
from app.services import connection_service, employee_mapping_service, pay_period_ledger, qbxml, sync_ledger, sync_queue
from app.services.sync_payloads import (
    ACTION_ADD,
    ACTION_MODIFY,
    ACTION_QUERY,
    TYPE_EMPLOYEE,
    TYPE_PAYCHECK_QUERY,
    TYPE_TIME_ENTRY,
    load_payload,
)

logger = logging.getLogger(__name__)

AUTH_INVALID_USER = "nvu"
AUTH_NO_WORK = "none"

# Render failures that are terminal in a row before a single call gives up.
MAX_RENDER_SKIPS = 25


@dataclass
class AuthResult:
    ticket: str
    company_file: str


@dataclass
class OutboundRequest:
    item_id: int
    correlation_id: str
    request_xml: str


def enabled_types(connection: QBConnection) -> List[str]:
    types = []
    if connection.sync_time_entries:
        types.append(TYPE_TIME_ENTRY)
    if connection.sync_employees:
        types.append(TYPE_EMPLOYEE)
    if connection.sync_pay_stubs:
        types.append(TYPE_PAYCHECK_QUERY)
    return types


def _connection_for(db: Session, session: SyncSession) -> QBConnection:
    connection = db.get(QBConnection, session.connection_id)
    if connection is None or not connection.is_active:
        raise AuthError("Connection for this session is no longer active")
    return connection


def begin_session(db: Session, username: str, password: str, *, now: Optional[datetime] = None) -> AuthResult:
    """Check the agent's credentials and open a session.

    Raises AuthError on any credential mismatch; the SOAP layer turns that
    into the agent's "not a valid user" answer.
    """
    now = now or utcnow()
    connection = connection_service.find_by_username(db, username)
    if connection is None or not connection_service.verify_secret(connection, password):
        logger.warning("Polling agent authentication failed", extra={"wc_username": username})
        if connection is not None:
            sync_ledger.record(
                db,
                company_id=connection.company_id,
                operation="connect",
                direction=sync_ledger.DIRECTION_IMPORT,
                status="failed",
                message=f"Authentication failed for user: {username}",
            )
        raise AuthError("Invalid polling agent credentials")

    session = sync_ledger.open_session(
        db,
        company_id=connection.company_id,
        connection_id=connection.id,
        agent_username=username,
        now=now,
    )
    connection_service.update_connection_status(db, connection, STATUS_CONNECTED, now=now)
    sync_ledger.record(
        db,
        company_id=connection.company_id,
        session_id=session.session_id,
        operation="connect",
        direction=sync_ledger.DIRECTION_IMPORT,
        status="completed",
        message=f"Authenticated user: {username}",
    )

    pending = sync_queue.count_claimable(db, company_id=connection.company_id, types=enabled_types(connection))
    logger.info(
        "Polling agent session opened",
        extra={"session_id": session.session_id, "company_id": connection.company_id, "pending": pending},
    )
    # Empty company file means "use whichever file is open".
    return AuthResult(ticket=session.session_id, company_file="" if pending else AUTH_NO_WORK)


def _line_for(db: Session, line_id: int) -> PayPeriodLine:
    line = db.get(PayPeriodLine, int(line_id))
    if line is None:
        raise TerminalSyncError(f"Pay period line {line_id} no longer exists")
    return line


def _mapped_list_id(db: Session, company_id: int, employee_id: int) -> str:
    mapping = employee_mapping_service.get_active_mapping(db, company_id, employee_id)
    if mapping is None or not mapping.qb_list_id:
        raise TerminalSyncError(f"Unmapped employee {employee_id}")
    return mapping.qb_list_id


def render_request(db: Session, item: SyncQueueItem) -> str:
    """Build the request document for a claimed item.

    Raises TerminalSyncError when local data needed to build the document is
    missing; retrying cannot fix that without an operator.
    """
    payload = load_payload(item.type, item.action, item.payload)
    request_id = item.correlation_id

    if item.type == TYPE_TIME_ENTRY:
        list_id = _mapped_list_id(db, item.company_id, payload.employee_id)
        line = _line_for(db, payload.line_id)
        notes = (
            f"Pay period {payload.period_start.isoformat()} to {payload.period_end.isoformat()}: "
            f"{payload.regular_hours} regular, {payload.overtime_hours} overtime "
            f"(ref {line.id}/{payload.export_batch})"
        )
        if item.action == ACTION_MODIFY and line.qb_txn_id and line.qb_edit_sequence:
            return qbxml.build_time_tracking_mod(
                request_id,
                txn_id=line.qb_txn_id,
                edit_sequence=line.qb_edit_sequence,
                txn_date=payload.period_end,
                list_id=list_id,
                hours=payload.total_hours,
                notes=notes,
            )
        return qbxml.build_time_tracking_add(
            request_id,
            txn_date=payload.period_end,
            list_id=list_id,
            hours=payload.total_hours,
            notes=notes,
        )

    if item.type == TYPE_EMPLOYEE and item.action == ACTION_QUERY:
        return qbxml.build_employee_query(request_id, active_only=payload.active_only)

    if item.type == TYPE_EMPLOYEE:
        mapping = employee_mapping_service.get_active_mapping(db, item.company_id, payload.employee_id)
        if item.action == ACTION_MODIFY:
            if mapping is None or not mapping.qb_list_id or not mapping.edit_sequence:
                raise TerminalSyncError(f"Employee {payload.employee_id} has no external record to modify")
            return qbxml.build_employee_mod(
                request_id,
                list_id=mapping.qb_list_id,
                edit_sequence=mapping.edit_sequence,
                name=payload.name,
                first_name=payload.first_name,
                last_name=payload.last_name,
            )
        return qbxml.build_employee_add(
            request_id,
            name=payload.name,
            first_name=payload.first_name,
            last_name=payload.last_name,
        )

    if item.type == TYPE_PAYCHECK_QUERY:
        list_id = None
        if payload.employee_id is not None:
            list_id = _mapped_list_id(db, item.company_id, payload.employee_id)
        return qbxml.build_paycheck_query(
            request_id,
            from_date=payload.from_date,
            to_date=payload.to_date,
            list_id=list_id,
        )

    raise TerminalSyncError(f"No request builder for {item.type}/{item.action}")


def next_request(
    db: Session,
    ticket: str,
    *,
    company_file: Optional[str] = None,
    qb_version: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Optional[OutboundRequest]:
    """Claim the next item for this session and render its request document.

    Returns None when there is nothing left to send.
    """
    now = now or utcnow()
    session = sync_ledger.get_open_session(db, ticket)
    connection = _connection_for(db, session)
    sync_ledger.touch_session(session, now)

    if company_file and not session.company_file:
        session.company_file = company_file
        session.qb_version = qb_version
        connection_service.update_connection_status(
            db, connection, STATUS_CONNECTED, company_file=company_file, qb_version=qb_version, now=now
        )

    types = enabled_types(connection)
    if not types:
        return None

    for _ in range(MAX_RENDER_SKIPS):
        claimed = sync_queue.claim_batch(
            db,
            1,
            company_id=session.company_id,
            types=types,
            session_id=session.session_id,
            now=now,
        )
        if not claimed:
            return None
        item = claimed[0]

        try:
            request_xml = render_request(db, item)
        except SyncError as exc:
            _record_failure(db, session, item, exc, now=now, operation="render")
            if exc.retryable:
                return None
            continue

        item.request_xml = request_xml
        session.request_count = int(session.request_count or 0) + 1
        db.flush()

        sync_ledger.record(
            db,
            company_id=session.company_id,
            session_id=session.session_id,
            operation=f"{item.type}_{item.action}",
            direction=sync_ledger.DIRECTION_EXPORT,
            status="sent",
            record_type=item.type,
            record_id=item.reference_id,
            message=f"Request {item.correlation_id} sent",
        )
        return OutboundRequest(item_id=item.id, correlation_id=item.correlation_id, request_xml=request_xml)

    logger.warning(
        "Too many unrenderable sync items in one request; deferring",
        extra={"session_id": session.session_id, "company_id": session.company_id},
    )
    return None


def _record_failure(
    db: Session,
    session: SyncSession,
    item: SyncQueueItem,
    error: SyncError,
    *,
    now: datetime,
    operation: str,
    response_xml: Optional[str] = None,
) -> sync_queue.ResolveResult:
    result = sync_queue.resolve(
        db,
        item.id,
        sync_queue.OUTCOME_FAILED,
        response_payload=response_xml,
        error=error,
        correlation_id=item.correlation_id,
        now=now,
    )
    if not result.applied:
        return result

    session.error = str(error)
    if result.terminal:
        session.failed_count = int(session.failed_count or 0) + 1
    db.flush()

    if item.type == TYPE_EMPLOYEE and item.action != ACTION_QUERY:
        employee_mapping_service.record_sync_error(
            db,
            company_id=item.company_id,
            employee_id=int(item.payload.get("employee_id")),
            error=str(error),
        )

    logger.warning(
        "Sync item attempt failed",
        extra={
            "session_id": session.session_id,
            "sync_item_id": item.id,
            "attempts": item.attempts,
            "terminal": result.terminal,
            "error": str(error),
        },
    )
    sync_ledger.record(
        db,
        company_id=session.company_id,
        session_id=session.session_id,
        operation=f"{item.type}_{item.action}_{operation}",
        direction=sync_ledger.DIRECTION_EXPORT,
        status="failed" if result.terminal else "retry",
        record_type=item.type,
        record_id=item.reference_id,
        message=f"Attempt {item.attempts} of {item.max_attempts} failed",
        error_details=str(error),
    )
    return result


def _apply_success(db: Session, session: SyncSession, item: SyncQueueItem, response: qbxml.QBResponse, now: datetime) -> int:
    """Write the accounting system's identifiers back; returns the number of records seen."""
    payload = load_payload(item.type, item.action, item.payload)

    if item.type == TYPE_TIME_ENTRY:
        ret = response.rets[0] if response.rets else None
        pay_period_ledger.record_line_export(
            db,
            line_id=payload.line_id,
            txn_id=None if ret is None else qbxml.ret_text(ret, "TxnID"),
            edit_sequence=None if ret is None else qbxml.ret_text(ret, "EditSequence"),
            export_batch=payload.export_batch,
            now=now,
        )
        return 1

    if item.type == TYPE_EMPLOYEE and item.action in (ACTION_ADD, ACTION_MODIFY):
        ret = response.rets[0] if response.rets else None
        if ret is None:
            return 0
        employee_mapping_service.record_external_identity(
            db,
            company_id=item.company_id,
            employee_id=payload.employee_id,
            qb_list_id=qbxml.ret_text(ret, "ListID"),
            edit_sequence=qbxml.ret_text(ret, "EditSequence"),
            qb_name=qbxml.ret_text(ret, "Name"),
            now=now,
        )
        return 1

    if item.type == TYPE_EMPLOYEE:
        records = [
            {
                "list_id": qbxml.ret_text(ret, "ListID"),
                "name": qbxml.ret_text(ret, "Name"),
                "edit_sequence": qbxml.ret_text(ret, "EditSequence"),
            }
            for ret in response.rets
        ]
        touched = employee_mapping_service.refresh_from_roster(db, company_id=item.company_id, records=records, now=now)
        sync_ledger.record(
            db,
            company_id=session.company_id,
            session_id=session.session_id,
            operation="sync_employees",
            direction=sync_ledger.DIRECTION_IMPORT,
            status="completed",
            record_type="employee",
            record_count=len(records),
            message=f"Received {len(records)} employees; refreshed {touched} mappings",
        )
        return len(records)

    sync_ledger.record(
        db,
        company_id=session.company_id,
        session_id=session.session_id,
        operation="sync_paychecks",
        direction=sync_ledger.DIRECTION_IMPORT,
        status="completed",
        record_type="paycheck",
        record_count=len(response.rets),
        message=f"Received {len(response.rets)} paychecks",
    )
    return len(response.rets)


def _discard(db: Session, session: SyncSession, reason: str, correlation_id: Optional[str]) -> None:
    session.discarded_count = int(session.discarded_count or 0) + 1
    db.flush()
    logger.info(
        "Response discarded",
        extra={"session_id": session.session_id, "correlation_id": correlation_id, "reason": reason},
    )
    sync_ledger.record(
        db,
        company_id=session.company_id,
        session_id=session.session_id,
        operation="response",
        direction=sync_ledger.DIRECTION_IMPORT,
        status="discarded",
        record_id=correlation_id,
        message=reason,
    )


def progress(db: Session, session: SyncSession, connection: QBConnection) -> int:
    remaining = sync_queue.count_claimable(db, company_id=session.company_id, types=enabled_types(connection))
    if remaining == 0:
        return 100
    handled = int(session.completed_count or 0) + int(session.failed_count or 0)
    percent = int(100 * handled / (handled + remaining))
    return max(1, min(99, percent))


def receive_response(
    db: Session,
    ticket: str,
    response_xml: Optional[str],
    *,
    hresult: Optional[str] = None,
    message: Optional[str] = None,
    now: Optional[datetime] = None,
) -> int:
    """Resolve the item a response belongs to and report progress (100 = done).

    Responses that match no in-flight attempt (duplicates, answers to an
    attempt that was since reclaimed) are logged and discarded.
    """
    now = now or utcnow()
    session = sync_ledger.get_open_session(db, ticket)
    connection = _connection_for(db, session)
    sync_ledger.touch_session(session, now)

    response = None
    error: Optional[SyncError] = None
    if hresult and hresult not in ("0", ""):
        error = TransientSyncError(f"Agent error {hresult}: {message or 'no detail'}")
    else:
        try:
            response = qbxml.parse_response(response_xml or "")
        except TransientSyncError as exc:
            error = exc

    if response is not None and response.request_id:
        correlation_id = response.request_id
        item = sync_queue.find_by_correlation(db, correlation_id, company_id=session.company_id)
    else:
        # No usable requestID; fall back to this session's outstanding request.
        item = sync_queue.latest_in_flight(db, session_id=session.session_id)
        correlation_id = None if item is None else item.correlation_id

    if item is None or item.status != ITEM_PROCESSING or item.correlation_id != correlation_id:
        _discard(db, session, "No in-flight request matches this response", correlation_id)
        return progress(db, session, connection)

    started = item.last_attempt_at
    if error is None:
        try:
            qbxml.raise_for_status(response)
        except SyncError as exc:
            error = exc

    if error is not None:
        _record_failure(db, session, item, error, now=now, operation="response", response_xml=response_xml)
        return progress(db, session, connection)

    result = sync_queue.resolve(
        db,
        item.id,
        sync_queue.OUTCOME_COMPLETED,
        response_payload=response_xml,
        correlation_id=correlation_id,
        now=now,
    )
    if not result.applied:
        _discard(db, session, "Request was already resolved", correlation_id)
        return progress(db, session, connection)

    count = _apply_success(db, session, item, response, now)
    session.completed_count = int(session.completed_count or 0) + 1
    db.flush()

    duration_ms = None
    if started is not None:
        duration_ms = int((as_utc(now) - as_utc(started)).total_seconds() * 1000)
    sync_ledger.record(
        db,
        company_id=session.company_id,
        session_id=session.session_id,
        operation=f"{item.type}_{item.action}",
        direction=sync_ledger.DIRECTION_IMPORT,
        status="completed",
        record_type=item.type,
        record_id=item.reference_id,
        record_count=count,
        message=response.status_message or "Response received",
        duration_ms=duration_ms,
    )
    return progress(db, session, connection)


def connection_error(
    db: Session,
    ticket: str,
    hresult: Optional[str],
    message: Optional[str],
    *,
    now: Optional[datetime] = None,
) -> str:
    """The agent could not open the company file; close the session with the error."""
    now = now or utcnow()
    detail = f"{hresult or ''}: {message or ''}".strip()
    session = sync_ledger.get_open_session(db, ticket)
    connection = _connection_for(db, session)

    # Whatever this session had in flight gets another attempt later.
    item = sync_queue.latest_in_flight(db, session_id=session.session_id)
    if item is not None:
        _record_failure(db, session, item, TransientSyncError(detail), now=now, operation="connection")

    connection_service.update_connection_status(db, connection, STATUS_ERROR, error=detail, now=now)
    sync_ledger.record(
        db,
        company_id=session.company_id,
        session_id=session.session_id,
        operation="error",
        direction=sync_ledger.DIRECTION_IMPORT,
        status="failed",
        error_details=detail,
    )
    sync_ledger.close_session(db, session, now=now, error=detail)
    return "done"


def get_last_error(db: Session, ticket: str) -> str:
    session = sync_ledger.get_open_session(db, ticket)
    return session.error or ""


def end_session(db: Session, ticket: str, *, now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    session = sync_ledger.get_open_session(db, ticket)
    connection = _connection_for(db, session)

    sync_ledger.close_session(db, session, now=now)
    connection_service.mark_synced(db, connection, now=now)
    sync_ledger.record(
        db,
        company_id=session.company_id,
        session_id=session.session_id,
        operation="disconnect",
        direction=sync_ledger.DIRECTION_EXPORT,
        status="completed",
        record_count=session.request_count,
        message=(
            f"Session closed after {session.request_count} requests: "
            f"{session.completed_count} completed, {session.failed_count} failed, "
            f"{session.discarded_count} discarded"
        ),
        duration_ms=session.duration_ms,
    )
    return "OK"
