"""QBXML request builders and response parsing.

Every request element carries a ``requestID`` attribute; the accounting
system echoes it on the matching response element, which is how a response
finds its way back to the queue item that produced it.
"""

from __future__ import annotations

import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional

from app.core.config import qbxml_version
from app.core.errors import TerminalSyncError, TransientSyncError

STATUS_OK = 0
STATUS_NO_MATCH = 1

# Record in use, could not be saved, edit sequence out of date.
TRANSIENT_STATUS_CODES = frozenset({3170, 3175, 3176, 3180, 3200})


@dataclass
class QBResponse:
    request_id: Optional[str]
    status_code: int
    status_severity: str
    status_message: str
    element: Optional[ET.Element] = None
    rets: List[ET.Element] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status_code in (STATUS_OK, STATUS_NO_MATCH)


def format_duration(hours) -> str:
    """Render decimal hours as an ISO-8601 duration, e.g. 8.5 -> PT8H30M."""
    total_minutes = int(
        (Decimal(str(hours)) * 60).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    )
    if total_minutes < 0:
        raise ValueError("duration must be non-negative")
    h, m = divmod(total_minutes, 60)
    return f"PT{h}H{m}M"


def _sub(parent: ET.Element, tag: str, text=None) -> ET.Element:
    el = ET.SubElement(parent, tag)
    if text is not None:
        el.text = str(text)
    return el


def _document(rq_tag: str, request_id: str, on_error: str = "stopOnError") -> tuple[ET.Element, ET.Element]:
    root = ET.Element("QBXML")
    msgs = _sub(root, "QBXMLMsgsRq")
    msgs.set("onError", on_error)
    rq = _sub(msgs, rq_tag)
    rq.set("requestID", str(request_id))
    return root, rq


def _serialize(root: ET.Element) -> str:
    body = ET.tostring(root, encoding="unicode")
    return (
        '<?xml version="1.0" encoding="utf-8"?>\n'
        f'<?qbxml version="{qbxml_version()}"?>\n'
        f"{body}"
    )


def build_time_tracking_add(
    request_id: str,
    *,
    txn_date: date,
    list_id: str,
    hours,
    notes: str,
) -> str:
    root, rq = _document("TimeTrackingAddRq", request_id)
    add = _sub(rq, "TimeTrackingAdd")
    _sub(add, "TxnDate", txn_date.isoformat())
    entity = _sub(add, "EntityRef")
    _sub(entity, "ListID", list_id)
    _sub(add, "Duration", format_duration(hours))
    _sub(add, "Notes", notes)
    return _serialize(root)


def build_time_tracking_mod(
    request_id: str,
    *,
    txn_id: str,
    edit_sequence: str,
    txn_date: date,
    list_id: str,
    hours,
    notes: str,
) -> str:
    root, rq = _document("TimeTrackingModRq", request_id)
    mod = _sub(rq, "TimeTrackingMod")
    _sub(mod, "TxnID", txn_id)
    _sub(mod, "EditSequence", edit_sequence)
    _sub(mod, "TxnDate", txn_date.isoformat())
    entity = _sub(mod, "EntityRef")
    _sub(entity, "ListID", list_id)
    _sub(mod, "Duration", format_duration(hours))
    _sub(mod, "Notes", notes)
    return _serialize(root)


def _name_parts(name: str, first_name: Optional[str], last_name: Optional[str]) -> tuple[str, str]:
    if first_name or last_name:
        return first_name or "", last_name or ""
    parts = name.strip().split(" ", 1)
    if len(parts) == 1:
        return parts[0], ""
    return parts[0], parts[1]


def build_employee_add(
    request_id: str,
    *,
    name: str,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
) -> str:
    first, last = _name_parts(name, first_name, last_name)
    root, rq = _document("EmployeeAddRq", request_id)
    add = _sub(rq, "EmployeeAdd")
    _sub(add, "FirstName", first)
    if last:
        _sub(add, "LastName", last)
    return _serialize(root)


def build_employee_mod(
    request_id: str,
    *,
    list_id: str,
    edit_sequence: str,
    name: str,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
) -> str:
    first, last = _name_parts(name, first_name, last_name)
    root, rq = _document("EmployeeModRq", request_id)
    mod = _sub(rq, "EmployeeMod")
    _sub(mod, "ListID", list_id)
    _sub(mod, "EditSequence", edit_sequence)
    _sub(mod, "FirstName", first)
    if last:
        _sub(mod, "LastName", last)
    return _serialize(root)


def build_employee_query(request_id: str, *, active_only: bool = True) -> str:
    root, rq = _document("EmployeeQueryRq", request_id, on_error="continueOnError")
    _sub(rq, "ActiveStatus", "ActiveOnly" if active_only else "All")
    return _serialize(root)


def build_paycheck_query(
    request_id: str,
    *,
    from_date: date,
    to_date: date,
    list_id: Optional[str] = None,
) -> str:
    root, rq = _document("PaycheckQueryRq", request_id, on_error="continueOnError")
    if list_id:
        entity = _sub(rq, "EntityFilter")
        _sub(entity, "ListID", list_id)
    date_filter = _sub(rq, "TxnDateRangeFilter")
    _sub(date_filter, "FromTxnDate", from_date.isoformat())
    _sub(date_filter, "ToTxnDate", to_date.isoformat())
    _sub(rq, "IncludeLineItems", "true")
    return _serialize(root)


def parse_response(raw_xml: str) -> QBResponse:
    """Parse a QBXML response document.

    Raises TransientSyncError when the document is unreadable; an agent that
    mangled one response may well deliver the next one intact.
    """
    if not raw_xml or not raw_xml.strip():
        raise TransientSyncError("Empty response document")

    try:
        root = ET.fromstring(raw_xml.strip())
    except ET.ParseError as exc:
        raise TransientSyncError(f"Malformed response document: {exc}") from exc

    rs = root.find(".//*[@statusCode]")
    if rs is None:
        raise TransientSyncError("Response missing status information")

    try:
        status_code = int(rs.get("statusCode", "0"))
    except ValueError as exc:
        raise TransientSyncError(f"Invalid statusCode: {rs.get('statusCode')}") from exc

    return QBResponse(
        request_id=rs.get("requestID"),
        status_code=status_code,
        status_severity=rs.get("statusSeverity", ""),
        status_message=rs.get("statusMessage", ""),
        element=rs,
        rets=[child for child in rs if child.tag.endswith("Ret")],
    )


def raise_for_status(response: QBResponse) -> None:
    if response.ok:
        return
    message = response.status_message or "Request rejected by accounting system"
    if response.status_code in TRANSIENT_STATUS_CODES:
        raise TransientSyncError(message, status_code=response.status_code)
    raise TerminalSyncError(message, status_code=response.status_code)


def ret_text(ret: ET.Element, path: str) -> Optional[str]:
    value = ret.findtext(path)
    if value is None:
        return None
    value = value.strip()
    return value or None
