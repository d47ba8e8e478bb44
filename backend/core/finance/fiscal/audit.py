"""Audit port for submission state transitions.

The processor reports each transition through `emit_audit_event`; sink
failures are logged and never reach the job.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from asgiref.sync import sync_to_async
from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone
from django.utils.module_loading import import_string

from finance.fiscal.models import FiscalAuditEntry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditEvent:
    event_type: str
    company_id: int
    document_id: int | None = None
    job_id: int | None = None
    data: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=timezone.now)


class AuditSink(Protocol):
    def record(self, event: AuditEvent) -> None: ...


def _canonical_json(value) -> str:
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=True,
        default=str,
    )


def _entry_payload(*, chain_id, company_id, document_id, job_id, event_type, occurred_at, data) -> dict:
    return {
        "chain_id": chain_id,
        "company_id": company_id,
        "document_id": document_id,
        "job_id": job_id,
        "event_type": event_type,
        "occurred_at": occurred_at.isoformat(),
        "data": data,
    }


def _build_entry_hash(payload: dict, prev_hash: str) -> str:
    material = f"{prev_hash}{_canonical_json(payload)}".encode("utf-8")
    return hashlib.sha256(material).hexdigest()


class LedgerAuditSink:
    """Appends hash-chained `FiscalAuditEntry` rows, one chain per tenant.

    Concurrent writers race on the (chain_id, prev_hash) constraint; the
    loser re-reads the chain head and retries.
    """

    max_attempts = 5

    def record(self, event: AuditEvent) -> FiscalAuditEntry:
        chain_id = f"tenant:{event.company_id}"

        for _attempt in range(self.max_attempts):
            prev_hash = (
                FiscalAuditEntry.all_objects.filter(chain_id=chain_id)
                .order_by("-id")
                .values_list("entry_hash", flat=True)
                .first()
                or ""
            )
            payload = _entry_payload(
                chain_id=chain_id,
                company_id=event.company_id,
                document_id=event.document_id,
                job_id=event.job_id,
                event_type=event.event_type,
                occurred_at=event.occurred_at,
                data=event.data,
            )
            entry = FiscalAuditEntry(
                company_id=event.company_id,
                document_id=event.document_id,
                job_id=event.job_id,
                event_type=event.event_type,
                occurred_at=event.occurred_at,
                data=event.data,
                chain_id=chain_id,
                prev_hash=prev_hash,
                entry_hash=_build_entry_hash(payload, prev_hash),
            )
            try:
                with transaction.atomic():
                    entry.save(force_insert=True)
                return entry
            except IntegrityError as exc:
                if "prev_hash" in str(exc) or "uq_fiscal_audit_prev_hash_per_chain" in str(exc):
                    continue
                raise

        raise RuntimeError("Failed to append audit entry (concurrency retries exhausted).")


class LoggingAuditSink:
    def record(self, event: AuditEvent) -> None:
        logger.info(
            "fiscal.audit.%s company_id=%s document_id=%s job_id=%s data=%s",
            event.event_type,
            event.company_id,
            event.document_id,
            event.job_id,
            _canonical_json(event.data),
        )


def load_audit_sink(path: str | None = None) -> AuditSink:
    path = path or getattr(settings, "FISCAL_AUDIT_SINK", "") or "finance.fiscal.audit.LedgerAuditSink"
    return import_string(path)()


def verify_chain(company_id: int) -> bool:
    """Recompute the tenant chain; False if any entry was altered or removed."""

    prev_hash = ""
    entries = FiscalAuditEntry.all_objects.filter(chain_id=f"tenant:{company_id}").order_by("id")
    for entry in entries:
        payload = _entry_payload(
            chain_id=entry.chain_id,
            company_id=entry.company_id,
            document_id=entry.document_id,
            job_id=entry.job_id,
            event_type=entry.event_type,
            occurred_at=entry.occurred_at,
            data=entry.data,
        )
        if entry.prev_hash != prev_hash or entry.entry_hash != _build_entry_hash(payload, prev_hash):
            return False
        prev_hash = entry.entry_hash
    return True


async def emit_audit_event(sink: AuditSink | None, event: AuditEvent) -> None:
    if sink is None:
        return
    try:
        await sync_to_async(sink.record)(event)
    except Exception:
        logger.exception(
            "fiscal.audit.failed event_type=%s company_id=%s document_id=%s job_id=%s",
            event.event_type,
            event.company_id,
            event.document_id,
            event.job_id,
        )
