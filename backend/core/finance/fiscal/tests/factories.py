from __future__ import annotations

from datetime import date, datetime, timedelta

from django.utils import timezone

from customers.models import Company
from finance.fiscal.adapters import (
    FiscalAdapterBase,
    SendBillResult,
    SendSummaryResult,
    TicketStatusResult,
)
from finance.fiscal.models import FiscalDocument, TenantFiscalConfig

SIGNED_XML = (
    '<?xml version="1.0" encoding="UTF-8"?>'
    "<Invoice><cbc:ID>F001-1</cbc:ID><ds:Signature>firma</ds:Signature></Invoice>"
)


def create_company(tenant_code: str = "acme", name: str = "Ferreteria Acme SAC") -> Company:
    return Company.objects.create(name=name, tenant_code=tenant_code)


def create_fiscal_config(
    company: Company,
    *,
    tax_id: str = "20123456789",
    sol_user: str = "MODDATOS",
    sol_password: str = "moddatos",
    enabled: bool = True,
) -> TenantFiscalConfig:
    config = TenantFiscalConfig(
        company=company,
        tax_id=tax_id,
        environment=TenantFiscalConfig.Environment.SANDBOX,
        sol_user=sol_user,
        enabled=enabled,
    )
    config.set_sol_password(sol_password)
    config.save()
    return config


def create_document(
    company: Company,
    *,
    kind: str = FiscalDocument.Kind.INVOICE,
    series: str = "F001",
    number: int = 1,
    status: str = FiscalDocument.Status.SIGNED,
    signed_xml: str = SIGNED_XML,
    issue_date: date | None = None,
    **extra,
) -> FiscalDocument:
    return FiscalDocument.all_objects.create(
        company=company,
        kind=kind,
        series=series,
        number=number,
        status=status,
        signed_xml=signed_xml,
        issue_date=issue_date or date(2026, 3, 14),
        **extra,
    )


class FakeClock:
    """Controllable `timezone.now` replacement."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or timezone.now()

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


class ScriptedAdapter(FiscalAdapterBase):
    """Adapter returning queued results; the last entry repeats. Exceptions are raised."""

    def __init__(self, *, bill=None, summary=None, status=None) -> None:
        self.scripts = {
            "send_bill": list(bill or []),
            "send_summary": list(summary or []),
            "get_status": list(status or []),
        }
        self.calls: list[tuple[str, tuple]] = []

    def _next(self, operation: str, *args):
        self.calls.append((operation, args))
        script = self.scripts[operation]
        if not script:
            raise AssertionError(f"No scripted response for {operation}.")
        item = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(item, type) and issubclass(item, BaseException):
            raise item(f"scripted {operation} failure")
        if isinstance(item, BaseException):
            raise item
        return item

    async def send_bill(self, credentials, filename, archive) -> SendBillResult:
        return self._next("send_bill", credentials, filename, archive)

    async def send_summary(self, credentials, filename, archive) -> SendSummaryResult:
        return self._next("send_summary", credentials, filename, archive)

    async def get_status(self, credentials, ticket) -> TicketStatusResult:
        return self._next("get_status", credentials, ticket)
