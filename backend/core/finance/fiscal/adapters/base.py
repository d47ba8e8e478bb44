from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from finance.fiscal.credentials import SolCredentials


class FiscalAdapterError(RuntimeError):
    """Base exception for failures talking to the tax authority."""

    code = "ADAPTER_ERROR"
    retryable: bool = True


class FiscalAdapterTechnicalError(FiscalAdapterError):
    """Transport failure (DNS, connection reset, HTTP errors without a SOAP fault)."""

    code = "TRANSPORT_ERROR"
    retryable = True


class FiscalAdapterTimeoutError(FiscalAdapterTechnicalError):
    """Request to the authority timed out."""

    code = "TIMEOUT"
    retryable = True


class FiscalAdapterProtocolFault(FiscalAdapterError):
    """Structured SOAP fault returned by the authority.

    Terminal unless the fault code reports a transient server-side condition.
    """

    def __init__(self, message: str, *, code: str = "SOAP_FAULT") -> None:
        super().__init__(message)
        self.code = code
        self.retryable = is_transient_fault(code)


class FiscalAdapterInvalidResponse(FiscalAdapterError):
    """The authority answered without the acknowledgment or ticket we asked for."""

    code = "INVALID_RESPONSE"
    retryable = False


class FiscalAdapterNotSupported(FiscalAdapterError):
    """No adapter is available for the requested backend or environment."""

    code = "NOT_SUPPORTED"
    retryable = False


# "El sistema no puede responder su solicitud" family of authority faults.
TRANSIENT_FAULT_CODES = frozenset(
    {"0100", "0109", "0110"} | {f"{value:04d}" for value in range(130, 139)}
)
_FAULT_DIGITS_RE = re.compile(r"(\d{3,4})\s*$")


def is_transient_fault(fault_code: str) -> bool:
    code = (fault_code or "").strip()
    local = code.rsplit(":", 1)[-1]
    if local == "Server":
        return True

    match = _FAULT_DIGITS_RE.search(local)
    if match is None:
        return False
    return match.group(1).zfill(4) in TRANSIENT_FAULT_CODES


_SOL_USER_RE = re.compile(r"^\d{11}[A-Z0-9]+$")


def validate_sol_user(username: str) -> bool:
    """SOL users are the 11-digit RUC followed by the uppercase user name."""

    return bool(_SOL_USER_RE.match(username or ""))


@dataclass(frozen=True)
class SendBillResult:
    cdr_archive: str


@dataclass(frozen=True)
class SendSummaryResult:
    ticket: str


ACCEPTED_TICKET_CODES = frozenset({"0", "00", "0000"})
PENDING_TICKET_CODE = "98"


@dataclass(frozen=True)
class TicketStatusResult:
    status_code: str
    cdr_archive: str = ""

    @property
    def is_accepted(self) -> bool:
        return self.status_code in ACCEPTED_TICKET_CODES

    @property
    def is_pending(self) -> bool:
        return self.status_code == PENDING_TICKET_CODE

    @property
    def is_rejected(self) -> bool:
        return not (self.is_accepted or self.is_pending)


class FiscalAdapterBase(ABC):
    """Protocol client for the authority bill service.

    Adapters only talk to the authority. Persistence, retries and tenant-aware
    orchestration belong to `finance.fiscal.processor`.
    """

    @abstractmethod
    async def send_bill(
        self, credentials: "SolCredentials", filename: str, archive: str
    ) -> SendBillResult:
        """Submit a single document; the acknowledgment comes back synchronously."""

    @abstractmethod
    async def send_summary(
        self, credentials: "SolCredentials", filename: str, archive: str
    ) -> SendSummaryResult:
        """Submit a daily summary or voiding communication; returns a ticket."""

    @abstractmethod
    async def get_status(self, credentials: "SolCredentials", ticket: str) -> TicketStatusResult:
        """Poll the processing status of a ticket."""

    async def aclose(self) -> None:
        return None
