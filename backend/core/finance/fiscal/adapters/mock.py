from __future__ import annotations

from uuid import uuid4

from finance.fiscal.archive import build_zip, entry_name

from .base import (
    FiscalAdapterBase,
    FiscalAdapterInvalidResponse,
    SendBillResult,
    SendSummaryResult,
    TicketStatusResult,
)


def build_cdr_xml(response_code: str, description: str = "", notes: list[str] | None = None) -> str:
    """Minimal UBL ApplicationResponse, shaped like the authority acknowledgment."""

    note_xml = "".join(f"<cbc:Note>{note}</cbc:Note>" for note in notes or [])
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<ar:ApplicationResponse'
        ' xmlns:ar="urn:oasis:names:specification:ubl:schema:xsd:ApplicationResponse-2"'
        ' xmlns:cac="urn:oasis:names:specification:ubl:schema:xsd:CommonAggregateComponents-2"'
        ' xmlns:cbc="urn:oasis:names:specification:ubl:schema:xsd:CommonBasicComponents-2">'
        f"{note_xml}"
        "<cac:DocumentResponse><cac:Response>"
        f'<cbc:ResponseCode listAgencyName="PE:SUNAT">{response_code}</cbc:ResponseCode>'
        f"<cbc:Description>{description}</cbc:Description>"
        "</cac:Response></cac:DocumentResponse>"
        "</ar:ApplicationResponse>"
    )


def build_cdr_archive(filename: str, response_code: str, description: str = "", notes: list[str] | None = None) -> str:
    return build_zip(f"R-{entry_name(filename)}", build_cdr_xml(response_code, description, notes))


class MockFiscalAdapter(FiscalAdapterBase):
    """In-memory adapter for local development and tests.

    Behavior:
    - `send_bill(...)` answers immediately with an acknowledgment carrying
      `response_code`.
    - `send_summary(...)` hands out a ticket; the first `pending_polls` calls to
      `get_status(...)` for it report "98", then `ticket_status_code`. The
      ticket is forgotten after its final answer.
    """

    def __init__(
        self,
        *,
        response_code: str = "0000",
        ticket_status_code: str = "0",
        pending_polls: int = 0,
    ) -> None:
        self.response_code = response_code
        self.ticket_status_code = ticket_status_code
        self.pending_polls = pending_polls
        self._tickets: dict[str, dict[str, object]] = {}

    async def send_bill(self, credentials, filename, archive) -> SendBillResult:
        return SendBillResult(
            cdr_archive=build_cdr_archive(filename, self.response_code, f"Document {filename} processed")
        )

    async def send_summary(self, credentials, filename, archive) -> SendSummaryResult:
        ticket = f"mock-{uuid4().hex[:15]}"
        self._tickets[ticket] = {"filename": filename, "polls": 0}
        return SendSummaryResult(ticket=ticket)

    async def get_status(self, credentials, ticket) -> TicketStatusResult:
        state = self._tickets.get(ticket)
        if state is None:
            raise FiscalAdapterInvalidResponse(f"Mock ticket not found: {ticket}")

        state["polls"] = int(state["polls"]) + 1
        if int(state["polls"]) <= self.pending_polls:
            return TicketStatusResult(status_code="98")

        # A ticket answers with its final status once.
        del self._tickets[ticket]
        code = "0000" if self.ticket_status_code in {"0", "00", "0000"} else "2000"
        return TicketStatusResult(
            status_code=self.ticket_status_code,
            cdr_archive=build_cdr_archive(str(state["filename"]), code),
        )
