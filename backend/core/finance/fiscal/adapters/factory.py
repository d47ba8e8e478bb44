from __future__ import annotations

import logging

import httpx
from django.conf import settings

from .base import FiscalAdapterBase, FiscalAdapterNotSupported
from .mock import MockFiscalAdapter
from .soap import SoapBillServiceAdapter

logger = logging.getLogger(__name__)


def build_http_client() -> httpx.AsyncClient:
    timeout = httpx.Timeout(
        float(getattr(settings, "FISCAL_SOAP_TIMEOUT_SECONDS", 60.0)),
        connect=float(getattr(settings, "FISCAL_SOAP_CONNECT_TIMEOUT_SECONDS", 30.0)),
    )
    return httpx.AsyncClient(timeout=timeout)


def build_fiscal_adapter(environment: str, *, http_client: httpx.AsyncClient | None = None) -> FiscalAdapterBase:
    """Return the adapter configured by FISCAL_ADAPTER_BACKEND for an environment.

    Args:
        environment: `TenantFiscalConfig.Environment` value (SANDBOX/PRODUCTION).
        http_client: shared client for the SOAP backend.
    """

    backend = (getattr(settings, "FISCAL_ADAPTER_BACKEND", "soap") or "soap").strip().lower()

    # Local-only adapter (for dev/tests).
    if backend in {"mock", "dummy", "local"}:
        return MockFiscalAdapter()

    if backend != "soap":
        raise FiscalAdapterNotSupported(f"Unsupported FISCAL_ADAPTER_BACKEND={backend!r}.")

    endpoints = getattr(settings, "FISCAL_ENDPOINTS", {}) or {}
    endpoint = (endpoints.get(environment) or "").strip()
    if not endpoint:
        raise FiscalAdapterNotSupported(f"No bill service endpoint configured for environment={environment!r}.")
    if http_client is None:
        raise FiscalAdapterNotSupported("The SOAP backend requires an http_client.")

    return SoapBillServiceAdapter(endpoint=endpoint, http_client=http_client)


class FiscalAdapterPool:
    """One adapter per environment, sharing a single HTTP client.

    Owns the client it creates; a client passed in is left open on `aclose()`.
    """

    def __init__(self, *, http_client: httpx.AsyncClient | None = None) -> None:
        self._owns_client = http_client is None
        self._http_client = http_client
        self._adapters: dict[str, FiscalAdapterBase] = {}

    def get(self, environment: str) -> FiscalAdapterBase:
        adapter = self._adapters.get(environment)
        if adapter is None:
            if self._http_client is None:
                self._http_client = build_http_client()
            adapter = build_fiscal_adapter(environment, http_client=self._http_client)
            self._adapters[environment] = adapter
            logger.info(
                "fiscal.adapter.created environment=%s adapter=%s",
                environment,
                adapter.__class__.__name__,
            )
        return adapter

    __call__ = get

    async def aclose(self) -> None:
        for adapter in self._adapters.values():
            await adapter.aclose()
        self._adapters.clear()
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
