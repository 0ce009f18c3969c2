"""SOAP endpoint for the QuickBooks Web Connector.

The agent speaks a fixed set of SOAP operations; each maps onto one
integration-gateway call. Protocol conditions (bad credentials, unknown
ticket, nothing to do) are answered in-band the way the agent expects and
never as HTTP errors.
"""

import logging
import re
import xml.etree.ElementTree as ET
from typing import Dict, List, Tuple, Union

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import Response
from starlette.concurrency import run_in_threadpool

from app.core.config import qbwc_min_client_version, qbwc_server_version
from app.core.errors import AuthError, PayrollSyncError
from app.database import SessionLocal
from app.services import integration_gateway

logger = logging.getLogger(__name__)

router = APIRouter(tags=["QBWC"])

SOAP_NS = "http://schemas.xmlsoap.org/soap/envelope/"
QBWC_NS = "http://developer.intuit.com/"

Result = Union[str, List[str]]


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def parse_soap_request(body: bytes) -> Tuple[str, Dict[str, str]]:
    try:
        root = ET.fromstring(body)
    except ET.ParseError as exc:
        raise ValueError(f"Malformed SOAP envelope: {exc}") from exc

    soap_body = root.find(f"{{{SOAP_NS}}}Body")
    if soap_body is None:
        soap_body = next((el for el in root if _local(el.tag) == "Body"), None)
    if soap_body is None or len(soap_body) == 0:
        raise ValueError("SOAP envelope has no body")

    call = soap_body[0]
    params = {_local(child.tag): child.text or "" for child in call}
    return _local(call.tag), params


def build_soap_response(method: str, result: Result) -> str:
    ET.register_namespace("soap", SOAP_NS)
    envelope = ET.Element(f"{{{SOAP_NS}}}Envelope")
    body = ET.SubElement(envelope, f"{{{SOAP_NS}}}Body")
    response = ET.SubElement(body, f"{{{QBWC_NS}}}{method}Response")
    result_el = ET.SubElement(response, f"{{{QBWC_NS}}}{method}Result")

    if isinstance(result, list):
        for value in result:
            ET.SubElement(result_el, f"{{{QBWC_NS}}}string").text = value
    else:
        result_el.text = result

    return '<?xml version="1.0" encoding="utf-8"?>\n' + ET.tostring(envelope, encoding="unicode")


def _version_tuple(value: str) -> Tuple[int, ...]:
    return tuple(int(part) for part in re.findall(r"\d+", value or "")[:4])


def client_version(version: str) -> str:
    minimum = qbwc_min_client_version()
    if _version_tuple(version) < _version_tuple(minimum):
        return f"E:This application requires Web Connector version {minimum} or higher"
    return ""


def _authenticate(db, params: Dict[str, str]) -> Result:
    try:
        auth = integration_gateway.begin_session(db, params.get("strUserName", ""), params.get("strPassword", ""))
    except AuthError:
        return ["", integration_gateway.AUTH_INVALID_USER]
    return [auth.ticket, auth.company_file]


def _send_request(db, params: Dict[str, str]) -> Result:
    major = params.get("qbXMLMajorVers")
    minor = params.get("qbXMLMinorVers")
    outbound = integration_gateway.next_request(
        db,
        params.get("ticket", ""),
        company_file=params.get("strCompanyFileName") or None,
        qb_version=f"{major}.{minor}" if major else None,
    )
    return "" if outbound is None else outbound.request_xml


def _receive_response(db, params: Dict[str, str]) -> Result:
    percent = integration_gateway.receive_response(
        db,
        params.get("ticket", ""),
        params.get("response"),
        hresult=params.get("hresult") or None,
        message=params.get("message") or None,
    )
    return str(percent)


_HANDLERS = {
    "authenticate": _authenticate,
    "sendRequestXML": _send_request,
    "receiveResponseXML": _receive_response,
    "connectionError": lambda db, p: integration_gateway.connection_error(
        db, p.get("ticket", ""), p.get("hresult"), p.get("message")
    ),
    "getLastError": lambda db, p: integration_gateway.get_last_error(db, p.get("ticket", "")),
    "closeConnection": lambda db, p: integration_gateway.end_session(db, p.get("ticket", "")),
}

# In-band answers when the ticket is unknown or already closed.
_INVALID_TICKET = {
    "sendRequestXML": "",
    "receiveResponseXML": "-1",
    "connectionError": "done",
    "getLastError": "Invalid ticket",
    "closeConnection": "Invalid ticket",
}


def dispatch(method: str, params: Dict[str, str]) -> Result:
    if method == "serverVersion":
        return qbwc_server_version()
    if method == "clientVersion":
        return client_version(params.get("strVersion", ""))

    handler = _HANDLERS.get(method)
    if handler is None:
        raise HTTPException(status_code=400, detail=f"Unsupported QBWC method: {method}")

    db = SessionLocal()
    try:
        result = handler(db, params)
        db.commit()
        return result
    except AuthError as exc:
        db.rollback()
        logger.warning("QBWC call with invalid ticket", extra={"method": method, "error": str(exc)})
        return _INVALID_TICKET[method]
    except PayrollSyncError as exc:
        db.rollback()
        logger.warning("QBWC call rejected", extra={"method": method, "error": str(exc)})
        return _INVALID_TICKET.get(method, "")
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@router.post("/qbwc")
async def qbwc_endpoint(request: Request):
    body = await request.body()
    try:
        method, params = parse_soap_request(body)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    logger.info("QBWC request", extra={"method": method})
    result = await run_in_threadpool(dispatch, method, params)
    return Response(content=build_soap_response(method, result), media_type="text/xml; charset=utf-8")
