from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from asgiref.sync import sync_to_async
from django.conf import settings

from finance.fiscal.crypto import TokenCipher
from finance.fiscal.models import TenantFiscalConfig

logger = logging.getLogger(__name__)


class CredentialsNotConfigured(RuntimeError):
    """Raised when neither the environment nor the tenant config hold SOL credentials."""

    code = "SOL_NOT_CONFIGURED"
    retryable = False


SOURCE_ENV = "ENV"
SOURCE_DB = "DB"


def mask_username(username: str) -> str:
    if len(username or "") > 4:
        return f"{username[:4]}***"
    return "***"


def build_sol_user(ruc: str, user: str) -> str:
    """The authority expects `{RUC}{USER}`; users already prefixed are kept as is."""

    user = (user or "").strip()
    if user.startswith(ruc):
        return user
    return f"{ruc}{user}"


@dataclass(frozen=True)
class SolCredentials:
    username: str
    password: str
    source: str

    def __repr__(self) -> str:
        return f"SolCredentials(username={mask_username(self.username)!r}, source={self.source!r})"

    def for_log(self) -> dict[str, str]:
        return {"username": mask_username(self.username), "source": self.source}


def _env_pair() -> tuple[str, str]:
    user = (getattr(settings, "FISCAL_SOL_USER", "") or "").strip()
    password = getattr(settings, "FISCAL_SOL_PASSWORD", "") or ""
    return user, password


class CredentialsProvider:
    """Resolves SOL credentials per tenant with an explicit TTL cache.

    The environment pair (FISCAL_SOL_USER / FISCAL_SOL_PASSWORD) takes
    precedence over the tenant config. Call `invalidate()` after editing a
    tenant's credentials.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float | None = None,
        cipher: TokenCipher | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds is None:
            ttl_seconds = float(getattr(settings, "FISCAL_CREDENTIALS_CACHE_TTL_SECONDS", 300))
        self.ttl_seconds = ttl_seconds
        self._cipher = cipher
        self._clock = clock
        self._cache: dict[int, tuple[float, SolCredentials]] = {}

    @property
    def cipher(self) -> TokenCipher:
        if self._cipher is None:
            self._cipher = TokenCipher.from_settings()
        return self._cipher

    def invalidate(self, company_id: int | None = None) -> None:
        if company_id is None:
            self._cache.clear()
        else:
            self._cache.pop(company_id, None)

    def resolve_sync(self, company_id: int) -> SolCredentials:
        now = self._clock()
        cached = self._cache.get(company_id)
        if cached is not None and cached[0] > now:
            return cached[1]

        credentials = self._load(company_id)
        self._cache[company_id] = (now + self.ttl_seconds, credentials)
        logger.info(
            "fiscal.credentials.resolved company_id=%s username=%s source=%s",
            company_id,
            mask_username(credentials.username),
            credentials.source,
        )
        return credentials

    async def resolve(self, company_id: int) -> SolCredentials:
        return await sync_to_async(self.resolve_sync)(company_id)

    def has_credentials(self, company_id: int) -> bool:
        user, password = _env_pair()
        if user and password:
            return True
        config = (
            TenantFiscalConfig.all_objects.filter(company_id=company_id)
            .only("sol_user", "sol_password")
            .first()
        )
        return bool(config and config.sol_user and config.sol_password)

    def _load(self, company_id: int) -> SolCredentials:
        user, password = _env_pair()
        if user and password:
            return SolCredentials(username=user, password=password, source=SOURCE_ENV)

        config = (
            TenantFiscalConfig.all_objects.filter(company_id=company_id)
            .only("tax_id", "sol_user", "sol_password")
            .first()
        )
        if config is None or not config.sol_user or not config.sol_password:
            raise CredentialsNotConfigured(
                f"SOL credentials are not configured for company {company_id}. "
                "Set FISCAL_SOL_USER/FISCAL_SOL_PASSWORD or the tenant fiscal config."
            )

        return SolCredentials(
            username=build_sol_user(config.tax_id, config.sol_user),
            password=self.cipher.decrypt(config.sol_password),
            source=SOURCE_DB,
        )
