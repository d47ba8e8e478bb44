"""Parser for the authority acknowledgment (CDR, "constancia de recepcion").

The CDR is a UBL `ApplicationResponse` document shipped inside a single-entry
ZIP. Only the response code, its description and the observation notes are
relevant for the submission pipeline.
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field

from finance.fiscal.archive import ArchiveError, extract_from_zip

logger = logging.getLogger(__name__)


class CdrParseError(RuntimeError):
    """Raised when an acknowledgment archive cannot be interpreted."""

    code = "CDR_PARSE_ERROR"
    retryable = False


RESPONSE_CODE_MESSAGES = {
    "0000": "Accepted",
    "0001": "Accepted with observations",
    "0002": "Accepted with observations",
    "0100": "Invoice accepted",
    "0200": "Sales receipt accepted",
    "2000": "Rejected: issuer tax id is invalid",
    "2001": "Rejected: issuer document type is invalid",
    "2002": "Rejected: customer document number is invalid",
    "2003": "Rejected: file data is invalid",
    "2010": "Rejected: issuer tax id does not exist",
    "2011": "Rejected: issuer tax id is not active",
    "2012": "Rejected: issuer is not enabled for electronic invoicing",
    "2100": "Rejected: ZIP file is damaged",
    "2101": "Rejected: XML file is damaged",
    "2102": "Rejected: ZIP file does not contain an XML file",
    "2103": "Rejected: ZIP file name is invalid",
    "2104": "Rejected: XML file name is invalid",
    "2200": "Rejected: digital signature is invalid",
    "2300": "Rejected: document was already submitted",
    "2301": "Rejected: document number exists with a different issue date",
    "2302": "Rejected: document number was already used",
    "2310": "Rejected: issue date is invalid",
    "2311": "Rejected: issue date is in the future",
    "2312": "Rejected: issue date is older than 7 days",
    "4000": "Rejected: total amount format is invalid",
    "4001": "Rejected: IGV total does not match",
    "4002": "Rejected: ISC total does not match",
    "4003": "Rejected: sum of sale values does not match the total",
}


def is_accepted(response_code: str) -> bool:
    """Codes starting with "0" are accepted, with or without observations."""

    return (response_code or "").strip().startswith("0")


def describe_response_code(response_code: str) -> str:
    code = (response_code or "").strip()
    return RESPONSE_CODE_MESSAGES.get(code, f"Code {code}")


@dataclass(frozen=True)
class CdrResponse:
    response_code: str
    description: str
    notes: list[str] = field(default_factory=list)

    @property
    def accepted(self) -> bool:
        return is_accepted(self.response_code)

    @property
    def has_observations(self) -> bool:
        return self.accepted and (bool(self.notes) or self.response_code != "0000")


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _first_text(root: ET.Element, name: str) -> str:
    for element in root.iter():
        if _local_name(element.tag) == name and (element.text or "").strip():
            return element.text.strip()
    return ""


def parse_cdr_xml(xml_text: str) -> CdrResponse:
    try:
        root = ET.fromstring(xml_text.encode("utf-8"))
    except ET.ParseError as exc:
        raise CdrParseError("Acknowledgment XML is malformed.") from exc

    response_code = _first_text(root, "ResponseCode")
    if not response_code:
        raise CdrParseError("Acknowledgment has no ResponseCode.")

    description = _first_text(root, "Description") or describe_response_code(response_code)
    notes = [
        element.text.strip()
        for element in root.iter()
        if _local_name(element.tag) == "Note" and (element.text or "").strip()
    ]
    return CdrResponse(response_code=response_code, description=description, notes=notes)


def parse_cdr(archive_b64: str) -> CdrResponse:
    try:
        xml_text = extract_from_zip(archive_b64)
    except ArchiveError as exc:
        raise CdrParseError(f"Acknowledgment archive is unreadable: {exc}") from exc

    result = parse_cdr_xml(xml_text)
    logger.debug(
        "fiscal.cdr.parsed response_code=%s notes=%s",
        result.response_code,
        len(result.notes),
    )
    return result
