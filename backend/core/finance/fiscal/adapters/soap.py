from __future__ import annotations

import logging
import time
import xml.etree.ElementTree as ET

import httpx

from finance.fiscal.archive import archive_name
from finance.fiscal.credentials import SolCredentials, mask_username

from .base import (
    FiscalAdapterBase,
    FiscalAdapterInvalidResponse,
    FiscalAdapterProtocolFault,
    FiscalAdapterTechnicalError,
    FiscalAdapterTimeoutError,
    SendBillResult,
    SendSummaryResult,
    TicketStatusResult,
)

logger = logging.getLogger(__name__)

SOAP_ENV_NS = "http://schemas.xmlsoap.org/soap/envelope/"
SERVICE_NS = "http://service.sunat.gob.pe"
WSSE_NS = "http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-wssecurity-secext-1.0.xsd"
PASSWORD_TEXT_TYPE = (
    "http://docs.oasis-open.org/wss/2004/01/"
    "oasis-200401-wss-username-token-profile-1.0#PasswordText"
)

ET.register_namespace("soapenv", SOAP_ENV_NS)
ET.register_namespace("ser", SERVICE_NS)
ET.register_namespace("wsse", WSSE_NS)


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _find_text(root: ET.Element, name: str) -> str:
    for element in root.iter():
        if _local_name(element.tag) == name:
            return (element.text or "").strip()
    return ""


def build_envelope(credentials: SolCredentials, operation: str, params: dict[str, str]) -> bytes:
    """SOAP 1.1 envelope with a WS-Security UsernameToken header."""

    envelope = ET.Element(f"{{{SOAP_ENV_NS}}}Envelope")
    header = ET.SubElement(envelope, f"{{{SOAP_ENV_NS}}}Header")
    security = ET.SubElement(header, f"{{{WSSE_NS}}}Security")
    token = ET.SubElement(security, f"{{{WSSE_NS}}}UsernameToken")
    ET.SubElement(token, f"{{{WSSE_NS}}}Username").text = credentials.username
    password = ET.SubElement(token, f"{{{WSSE_NS}}}Password", {"Type": PASSWORD_TEXT_TYPE})
    password.text = credentials.password

    body = ET.SubElement(envelope, f"{{{SOAP_ENV_NS}}}Body")
    call = ET.SubElement(body, f"{{{SERVICE_NS}}}{operation}")
    for key, value in params.items():
        ET.SubElement(call, key).text = value

    return ET.tostring(envelope, encoding="utf-8", xml_declaration=True)


class SoapBillServiceAdapter(FiscalAdapterBase):
    """Bill service client (sendBill / sendSummary / getStatus) over httpx.

    The `httpx.AsyncClient` is injected and owned by the caller, so one
    connection pool is shared by every job a worker processes.
    """

    def __init__(
        self,
        *,
        endpoint: str,
        http_client: httpx.AsyncClient,
        timeout: httpx.Timeout | float | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.http_client = http_client
        self.timeout = timeout

    async def send_bill(self, credentials: SolCredentials, filename: str, archive: str) -> SendBillResult:
        root = await self._call(
            credentials,
            "sendBill",
            {"fileName": archive_name(filename), "contentFile": archive},
        )
        cdr_archive = _find_text(root, "applicationResponse")
        if not cdr_archive:
            raise FiscalAdapterInvalidResponse("Authority response has no acknowledgment (applicationResponse).")
        return SendBillResult(cdr_archive=cdr_archive)

    async def send_summary(
        self, credentials: SolCredentials, filename: str, archive: str
    ) -> SendSummaryResult:
        root = await self._call(
            credentials,
            "sendSummary",
            {"fileName": archive_name(filename), "contentFile": archive},
        )
        ticket = _find_text(root, "ticket")
        if not ticket:
            raise FiscalAdapterInvalidResponse("Authority response has no ticket.")
        return SendSummaryResult(ticket=ticket)

    async def get_status(self, credentials: SolCredentials, ticket: str) -> TicketStatusResult:
        root = await self._call(credentials, "getStatus", {"ticket": ticket})
        status_code = _find_text(root, "statusCode")
        if not status_code:
            raise FiscalAdapterInvalidResponse(f"Authority response has no statusCode for ticket {ticket}.")
        return TicketStatusResult(status_code=status_code, cdr_archive=_find_text(root, "content"))

    async def _call(self, credentials: SolCredentials, operation: str, params: dict[str, str]) -> ET.Element:
        payload = build_envelope(credentials, operation, params)
        headers = {
            "Content-Type": "text/xml; charset=utf-8",
            "Accept": "text/xml, */*",
            "SOAPAction": f"urn:{operation}",
        }

        started = time.monotonic()
        try:
            response = await self.http_client.post(
                self.endpoint,
                content=payload,
                headers=headers,
                timeout=self.timeout if self.timeout is not None else httpx.USE_CLIENT_DEFAULT,
            )
        except httpx.TimeoutException as exc:
            logger.warning(
                "fiscal.soap.timeout operation=%s username=%s",
                operation,
                mask_username(credentials.username),
            )
            raise FiscalAdapterTimeoutError(f"{operation} timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "fiscal.soap.transport_error operation=%s error=%s",
                operation,
                exc.__class__.__name__,
            )
            raise FiscalAdapterTechnicalError(f"{operation} transport failure: {exc}") from exc

        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "fiscal.soap.response operation=%s http_status=%s elapsed_ms=%s",
            operation,
            response.status_code,
            elapsed_ms,
        )
        return self._parse_response(operation, response)

    def _parse_response(self, operation: str, response: httpx.Response) -> ET.Element:
        try:
            root = ET.fromstring(response.content)
        except ET.ParseError as exc:
            if response.status_code >= 400:
                raise FiscalAdapterTechnicalError(
                    f"{operation} failed with HTTP {response.status_code}."
                ) from exc
            raise FiscalAdapterInvalidResponse(f"{operation} returned a non-XML body.") from exc

        fault = next((el for el in root.iter() if _local_name(el.tag) == "Fault"), None)
        if fault is not None:
            fault_code = _find_text(fault, "faultcode") or "SOAP_FAULT"
            fault_string = _find_text(fault, "faultstring") or "Unknown SOAP fault"
            logger.warning(
                "fiscal.soap.fault operation=%s fault_code=%s fault_string=%s",
                operation,
                fault_code,
                fault_string,
            )
            raise FiscalAdapterProtocolFault(fault_string, code=fault_code)

        if response.status_code >= 400:
            raise FiscalAdapterTechnicalError(f"{operation} failed with HTTP {response.status_code}.")
        return root
