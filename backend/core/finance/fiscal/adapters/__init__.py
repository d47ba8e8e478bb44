"""Tax authority protocol clients (provider-agnostic interface + implementations).

Adapters only talk to the authority bill service. They receive ready-made
archives and credentials and return typed results or raise a classified
`FiscalAdapterError`.
"""

from .base import (
    FiscalAdapterBase,
    FiscalAdapterError,
    FiscalAdapterInvalidResponse,
    FiscalAdapterNotSupported,
    FiscalAdapterProtocolFault,
    FiscalAdapterTechnicalError,
    FiscalAdapterTimeoutError,
    SendBillResult,
    SendSummaryResult,
    TicketStatusResult,
    is_transient_fault,
    validate_sol_user,
)
from .factory import FiscalAdapterPool, build_fiscal_adapter, build_http_client
from .mock import MockFiscalAdapter
from .soap import SoapBillServiceAdapter

__all__ = [
    "FiscalAdapterBase",
    "FiscalAdapterError",
    "FiscalAdapterInvalidResponse",
    "FiscalAdapterNotSupported",
    "FiscalAdapterPool",
    "FiscalAdapterProtocolFault",
    "FiscalAdapterTechnicalError",
    "FiscalAdapterTimeoutError",
    "MockFiscalAdapter",
    "SendBillResult",
    "SendSummaryResult",
    "SoapBillServiceAdapter",
    "TicketStatusResult",
    "build_fiscal_adapter",
    "build_http_client",
    "is_transient_fault",
    "validate_sol_user",
]
