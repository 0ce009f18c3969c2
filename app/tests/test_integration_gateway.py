import xml.etree.ElementTree as ET
from datetime import date

import pytest

from app.core.errors import AuthError
from app.database import SessionLocal
from app.models.employee_mapping import EmployeeMapping
from app.models.pay_period import PayPeriod, PayPeriodLine
from app.models.qb_connection import QBConnection
from app.models.sync_log import SyncLog, SyncSession
from app.models.sync_queue_item import SyncQueueItem
from app.services import employee_mapping_service, integration_gateway, pay_period_ledger

COMPANY = 21
START = date(2024, 1, 1)
END = date(2024, 1, 14)
SECRET = "agent-secret-123"


def _call(fn, *args, **kwargs):
    """One agent call, one committed transaction, as the SOAP endpoint does it."""
    db = SessionLocal()
    try:
        result = fn(db, *args, **kwargs)
        db.commit()
        return result
    finally:
        db.close()


def _reply(request_xml: str, *, status_code=0, message="Status OK", rets="") -> str:
    root = ET.fromstring(request_xml.split("\n", 2)[2])
    rq = root.find("QBXMLMsgsRq")[0]
    rs_tag = rq.tag[: -len("Rq")] + "Rs"
    return (
        '<?xml version="1.0" ?><QBXML><QBXMLMsgsRs>'
        f'<{rs_tag} requestID="{rq.get("requestID")}" statusCode="{status_code}" '
        f'statusSeverity="Info" statusMessage="{message}">{rets}</{rs_tag}>'
        "</QBXMLMsgsRs></QBXML>"
    )


def _time_reply(outbound, txn_id: str) -> str:
    return _reply(
        outbound.request_xml,
        rets=f"<TimeTrackingRet><TxnID>{txn_id}</TxnID><EditSequence>1700000100</EditSequence></TimeTrackingRet>",
    )


def _locked_period(employee_factory, time_entry_factory, mapping_factory, *, mapped=3, unmapped=0):
    employees = []
    for i in range(mapped + unmapped):
        emp = employee_factory(company_id=COMPANY)
        time_entry_factory(COMPANY, emp.id, date(2024, 1, 2), hours=8)
        time_entry_factory(COMPANY, emp.id, date(2024, 1, 9), hours=9)
        if i >= unmapped:
            mapping_factory(COMPANY, emp.id)
        employees.append(emp)

    pay_period_ledger.approve(COMPANY, START, END, "manager-1")
    locked = pay_period_ledger.lock(COMPANY, START, END, "manager-1")
    return employees, locked.summary.pay_period_id


def test_locked_period_exports_end_to_end(
    employee_factory, time_entry_factory, mapping_factory, connection_factory
):
    connection = connection_factory(COMPANY)
    _, pay_period_id = _locked_period(employee_factory, time_entry_factory, mapping_factory, mapped=10)

    auth = _call(integration_gateway.begin_session, connection.wc_username, SECRET)
    assert auth.company_file == ""

    progress_values = []
    request_ids = set()
    for n in range(10):
        outbound = _call(integration_gateway.next_request, auth.ticket, company_file="C:\\co.qbw", qb_version="13.0")
        assert outbound is not None
        assert f'requestID="{outbound.correlation_id}"' in outbound.request_xml
        assert "<TimeTrackingAddRq" in outbound.request_xml
        assert "<Duration>PT17H0M</Duration>" in outbound.request_xml
        request_ids.add(outbound.correlation_id)
        progress_values.append(
            _call(integration_gateway.receive_response, auth.ticket, _time_reply(outbound, f"TXN-{n}"))
        )

    assert len(request_ids) == 10
    assert progress_values[-1] == 100
    assert all(0 < p < 100 for p in progress_values[:-1])
    assert _call(integration_gateway.next_request, auth.ticket) is None
    assert _call(integration_gateway.end_session, auth.ticket) == "OK"

    db = SessionLocal()
    try:
        period = db.get(PayPeriod, pay_period_id)
        assert period.exported is True
        assert period.exported_at is not None

        lines = db.query(PayPeriodLine).filter(PayPeriodLine.pay_period_id == pay_period_id).all()
        assert sorted(line.qb_txn_id for line in lines) == sorted(f"TXN-{n}" for n in range(10))
        assert {line.qb_edit_sequence for line in lines} == {"1700000100"}
        assert {line.exported_batch for line in lines} == {1}

        assert {i.status for i in db.query(SyncQueueItem).all()} == {"completed"}

        session = db.get(SyncSession, auth.ticket)
        assert session.status == "closed"
        assert session.request_count == 10
        assert session.completed_count == 10
        assert session.discarded_count == 0

        conn = db.get(QBConnection, connection.id)
        assert conn.connection_status == "disconnected"
        assert conn.company_file == "C:\\co.qbw"
        assert conn.last_sync_at is not None

        operations = [row.operation for row in db.query(SyncLog).order_by(SyncLog.id).all()]
        assert operations[0] == "connect"
        assert operations[-1] == "disconnect"
    finally:
        db.close()

    progress = pay_period_ledger.get_period_summary(COMPANY, START, END)
    assert progress.exported is True
    assert progress.export_items == {"completed": 10}


def test_in_flight_export_completing_after_unlock_is_flagged(
    employee_factory, time_entry_factory, mapping_factory, connection_factory
):
    connection = connection_factory(COMPANY)
    _, pay_period_id = _locked_period(employee_factory, time_entry_factory, mapping_factory, mapped=1)

    auth = _call(integration_gateway.begin_session, connection.wc_username, SECRET)
    outbound = _call(integration_gateway.next_request, auth.ticket)
    assert outbound is not None

    pay_period_ledger.unlock(COMPANY, START, END, "admin-1")
    assert _call(integration_gateway.receive_response, auth.ticket, _time_reply(outbound, "TXN-LATE")) == 100

    db = SessionLocal()
    try:
        period = db.get(PayPeriod, pay_period_id)
        assert period.status == "approved"
        assert period.exported is False
        assert period.divergence_warning == pay_period_ledger.EXPORTED_WHILE_UNLOCKED_WARNING

        line = db.query(PayPeriodLine).filter(PayPeriodLine.pay_period_id == pay_period_id).one()
        assert line.qb_txn_id == "TXN-LATE"
        assert db.query(SyncLog).filter(SyncLog.operation == "export_while_unlocked").count() == 1
    finally:
        db.close()


def test_authenticate_with_nothing_to_do_reports_none(connection_factory):
    connection = connection_factory(COMPANY)
    auth = _call(integration_gateway.begin_session, connection.wc_username, SECRET)
    assert auth.ticket
    assert auth.company_file == integration_gateway.AUTH_NO_WORK


def test_bad_credentials_are_rejected_and_logged(connection_factory):
    connection = connection_factory(COMPANY)

    db = SessionLocal()
    try:
        with pytest.raises(AuthError):
            integration_gateway.begin_session(db, connection.wc_username, "wrong-secret")
        with pytest.raises(AuthError):
            integration_gateway.begin_session(db, "nobody", SECRET)
        db.commit()

        failed = db.query(SyncLog).filter(SyncLog.operation == "connect", SyncLog.status == "failed").all()
        assert len(failed) == 1
        assert db.query(SyncSession).count() == 0
    finally:
        db.close()


def test_unknown_ticket_is_an_auth_error():
    db = SessionLocal()
    try:
        with pytest.raises(AuthError):
            integration_gateway.next_request(db, "QBWC-missing")
        with pytest.raises(AuthError):
            integration_gateway.receive_response(db, "QBWC-missing", "<QBXML/>")
    finally:
        db.close()


def test_unmapped_employee_fails_terminally_and_surfaces_as_issue(
    employee_factory, time_entry_factory, mapping_factory, connection_factory
):
    connection = connection_factory(COMPANY)
    employees, pay_period_id = _locked_period(
        employee_factory, time_entry_factory, mapping_factory, mapped=1, unmapped=1
    )
    unmapped = employees[0]

    auth = _call(integration_gateway.begin_session, connection.wc_username, SECRET)
    outbound = _call(integration_gateway.next_request, auth.ticket)
    assert outbound is not None
    assert _call(integration_gateway.receive_response, auth.ticket, _time_reply(outbound, "TXN-ok")) == 100
    assert _call(integration_gateway.next_request, auth.ticket) is None

    summary = pay_period_ledger.get_period_summary(COMPANY, START, END)
    assert summary.exported is False
    assert summary.issue_count == 1
    assert summary.issues[0].employee_id == unmapped.id
    assert f"Unmapped employee {unmapped.id}" in summary.issues[0].message

    db = SessionLocal()
    try:
        failed = db.query(SyncQueueItem).filter(SyncQueueItem.status == "failed").one()
        assert failed.attempts == 1
        assert failed.error_kind == "terminal"
        assert failed.pay_period_id == pay_period_id
        session = db.get(SyncSession, auth.ticket)
        assert session.failed_count == 1
    finally:
        db.close()

    assert "Unmapped employee" in _call(integration_gateway.get_last_error, auth.ticket)


def test_requeue_after_mapping_fixes_export(
    employee_factory, time_entry_factory, mapping_factory, connection_factory
):
    from app.services import sync_queue

    connection = connection_factory(COMPANY)
    employees, pay_period_id = _locked_period(
        employee_factory, time_entry_factory, mapping_factory, mapped=0, unmapped=1
    )

    auth = _call(integration_gateway.begin_session, connection.wc_username, SECRET)
    assert _call(integration_gateway.next_request, auth.ticket) is None

    db = SessionLocal()
    try:
        item = db.query(SyncQueueItem).one()
        employee_mapping_service.create_mapping(
            db, company_id=COMPANY, employee_id=employees[0].id, qb_name="Fixed", qb_list_id="LIST-1"
        )
        sync_queue.requeue(db, item.id, company_id=COMPANY)
        db.commit()
    finally:
        db.close()

    outbound = _call(integration_gateway.next_request, auth.ticket)
    assert "<ListID>LIST-1</ListID>" in outbound.request_xml
    assert outbound.correlation_id == f"{outbound.item_id}-2"
    _call(integration_gateway.receive_response, auth.ticket, _time_reply(outbound, "TXN-late"))

    db = SessionLocal()
    try:
        assert db.get(PayPeriod, pay_period_id).exported is True
    finally:
        db.close()
    assert pay_period_ledger.get_period_summary(COMPANY, START, END).issue_count == 0


def test_duplicate_response_is_discarded(
    employee_factory, time_entry_factory, mapping_factory, connection_factory
):
    connection = connection_factory(COMPANY)
    _locked_period(employee_factory, time_entry_factory, mapping_factory, mapped=2)

    auth = _call(integration_gateway.begin_session, connection.wc_username, SECRET)
    outbound = _call(integration_gateway.next_request, auth.ticket)
    reply = _time_reply(outbound, "TXN-1")

    _call(integration_gateway.receive_response, auth.ticket, reply)
    _call(integration_gateway.receive_response, auth.ticket, reply)

    db = SessionLocal()
    try:
        session = db.get(SyncSession, auth.ticket)
        assert session.completed_count == 1
        assert session.discarded_count == 1
        item = db.get(SyncQueueItem, outbound.item_id)
        assert item.status == "completed"
        assert db.query(PayPeriodLine).filter(PayPeriodLine.qb_txn_id == "TXN-1").count() == 1
        assert db.query(SyncLog).filter(SyncLog.status == "discarded").count() == 1
    finally:
        db.close()


def test_agent_error_is_retried_on_next_poll(
    employee_factory, time_entry_factory, mapping_factory, connection_factory
):
    connection = connection_factory(COMPANY)
    _locked_period(employee_factory, time_entry_factory, mapping_factory, mapped=1)

    auth = _call(integration_gateway.begin_session, connection.wc_username, SECRET)
    first = _call(integration_gateway.next_request, auth.ticket)

    percent = _call(
        integration_gateway.receive_response,
        auth.ticket,
        "",
        hresult="0x80040400",
        message="QuickBooks found an error when parsing the provided XML text stream.",
    )
    assert percent < 100

    db = SessionLocal()
    try:
        item = db.get(SyncQueueItem, first.item_id)
        assert item.status == "pending"
        assert item.attempts == 1
        assert item.error_kind == "transient"
    finally:
        db.close()

    assert "0x80040400" in _call(integration_gateway.get_last_error, auth.ticket)

    second = _call(integration_gateway.next_request, auth.ticket)
    assert second.item_id == first.item_id
    assert second.correlation_id == f"{first.item_id}-2"


def test_rejected_status_code_fails_item(
    employee_factory, time_entry_factory, mapping_factory, connection_factory
):
    connection = connection_factory(COMPANY)
    _locked_period(employee_factory, time_entry_factory, mapping_factory, mapped=1)

    auth = _call(integration_gateway.begin_session, connection.wc_username, SECRET)
    outbound = _call(integration_gateway.next_request, auth.ticket)
    reply = _reply(outbound.request_xml, status_code=3120, message="Object not found")

    assert _call(integration_gateway.receive_response, auth.ticket, reply) == 100

    db = SessionLocal()
    try:
        item = db.get(SyncQueueItem, outbound.item_id)
        assert item.status == "failed"
        assert item.error_kind == "terminal"
        assert item.response_xml == reply
    finally:
        db.close()


def test_employee_add_records_external_identity(employee_factory, connection_factory):
    connection_factory(COMPANY)
    emp = employee_factory(company_id=COMPANY, name="Grace Hopper")

    db = SessionLocal()
    try:
        item = employee_mapping_service.enqueue_employee_sync(db, company_id=COMPANY, employee_id=emp.id)
        assert item.action == "add"
        db.commit()
    finally:
        db.close()

    auth = _call(integration_gateway.begin_session, f"agent-{COMPANY}", SECRET)
    outbound = _call(integration_gateway.next_request, auth.ticket)
    assert "<FirstName>Grace</FirstName>" in outbound.request_xml
    reply = _reply(
        outbound.request_xml,
        rets="<EmployeeRet><ListID>80000099-1</ListID><EditSequence>42</EditSequence>"
        "<Name>Grace Hopper</Name></EmployeeRet>",
    )
    _call(integration_gateway.receive_response, auth.ticket, reply)

    db = SessionLocal()
    try:
        mapping = employee_mapping_service.get_active_mapping(db, COMPANY, emp.id)
        assert mapping.qb_list_id == "80000099-1"
        assert mapping.edit_sequence == "42"
        assert mapping.is_synced is True

        again = employee_mapping_service.enqueue_employee_sync(db, company_id=COMPANY, employee_id=emp.id)
        assert again.action == "modify"
    finally:
        db.close()


def test_roster_query_refreshes_known_mappings(employee_factory, mapping_factory, connection_factory):
    connection_factory(COMPANY)
    emp = employee_factory(company_id=COMPANY)
    mapping_factory(COMPANY, emp.id, qb_list_id="LIST-7", qb_name="Old Name")

    db = SessionLocal()
    try:
        employee_mapping_service.enqueue_roster_import(db, company_id=COMPANY)
        db.commit()
    finally:
        db.close()

    auth = _call(integration_gateway.begin_session, f"agent-{COMPANY}", SECRET)
    outbound = _call(integration_gateway.next_request, auth.ticket)
    assert "<EmployeeQueryRq" in outbound.request_xml
    reply = _reply(
        outbound.request_xml,
        rets=(
            "<EmployeeRet><ListID>LIST-7</ListID><EditSequence>99</EditSequence><Name>New Name</Name></EmployeeRet>"
            "<EmployeeRet><ListID>LIST-UNKNOWN</ListID><Name>Stranger</Name></EmployeeRet>"
        ),
    )
    _call(integration_gateway.receive_response, auth.ticket, reply)

    db = SessionLocal()
    try:
        mapping = db.query(EmployeeMapping).filter(EmployeeMapping.qb_list_id == "LIST-7").one()
        assert mapping.qb_name == "New Name"
        assert mapping.edit_sequence == "99"
        log = db.query(SyncLog).filter(SyncLog.operation == "sync_employees").one()
        assert log.record_count == 2
    finally:
        db.close()


def test_connection_error_returns_in_flight_item_and_closes_session(
    employee_factory, time_entry_factory, mapping_factory, connection_factory
):
    connection = connection_factory(COMPANY)
    _locked_period(employee_factory, time_entry_factory, mapping_factory, mapped=1)

    auth = _call(integration_gateway.begin_session, connection.wc_username, SECRET)
    outbound = _call(integration_gateway.next_request, auth.ticket)

    answer = _call(integration_gateway.connection_error, auth.ticket, "0x80040408", "Could not start QuickBooks.")
    assert answer == "done"

    db = SessionLocal()
    try:
        item = db.get(SyncQueueItem, outbound.item_id)
        assert item.status == "pending"
        session = db.get(SyncSession, auth.ticket)
        assert session.status == "error"
        conn = db.get(QBConnection, connection.id)
        assert conn.connection_status == "error"
        assert "Could not start QuickBooks" in conn.last_error
    finally:
        db.close()

    with pytest.raises(AuthError):
        _call(integration_gateway.next_request, auth.ticket)


def test_disabled_sync_types_are_not_sent(
    employee_factory, time_entry_factory, mapping_factory, connection_factory
):
    connection = connection_factory(COMPANY, sync_time_entries=False)
    _locked_period(employee_factory, time_entry_factory, mapping_factory, mapped=1)

    auth = _call(integration_gateway.begin_session, connection.wc_username, SECRET)
    assert auth.company_file == integration_gateway.AUTH_NO_WORK
    assert _call(integration_gateway.next_request, auth.ticket) is None
