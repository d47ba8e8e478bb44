from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable

from django.conf import settings
from django.utils import timezone

from tenancy.context import tenant_context
from tenancy.logging import mask_tax_ids

from finance.fiscal.adapters import FiscalAdapterBase
from finance.fiscal.archive import (
    build_batch_filename,
    build_filename,
    build_zip,
    document_kind_code,
)
from finance.fiscal.audit import AuditEvent, AuditSink, emit_audit_event
from finance.fiscal.cdr import describe_response_code, parse_cdr
from finance.fiscal.credentials import CredentialsProvider
from finance.fiscal.models import FiscalDocument, FiscalJob, TenantFiscalConfig
from finance.fiscal.retry import BackoffPolicy, is_retryable
from finance.fiscal.store import FiscalJobStore, LeaseLost

logger = logging.getLogger(__name__)


class FiscalJobError(RuntimeError):
    """Precondition failure; the job ends without contacting the authority."""

    code = "PRECONDITION_FAILED"
    retryable = False


class DocumentNotFound(FiscalJobError):
    code = "DOCUMENT_NOT_FOUND"


class DocumentNotSigned(FiscalJobError):
    code = "DOCUMENT_NOT_SIGNED"


class DocumentAlreadyFinal(FiscalJobError):
    code = "DOCUMENT_ALREADY_FINAL"


class TicketMissing(FiscalJobError):
    code = "TICKET_MISSING"


class JobKindMismatch(FiscalJobError):
    code = "JOB_KIND_MISMATCH"


class SubmissionDisabled(FiscalJobError):
    code = "SUBMISSION_DISABLED"


class FiscalConfigMissing(FiscalJobError):
    code = "FISCAL_CONFIG_MISSING"


class Outcome(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    SENT = "sent"
    PENDING = "pending"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    LEASE_LOST = "lease_lost"


@dataclass(frozen=True)
class ProcessResult:
    job_id: int
    kind: str
    outcome: Outcome
    job_status: str
    document_status: str
    attempts: int
    next_run_at: datetime | None = None
    error: str = ""


def _error_message(exc: BaseException) -> str:
    code = getattr(exc, "code", "") or exc.__class__.__name__
    return mask_tax_ids(f"{code}: {exc}")


class FiscalJobProcessor:
    """Runs one claimed job: package, submit, parse, then persist the outcome.

    Every outcome becomes a job/document update plus a `ProcessResult`;
    `process()` never raises.
    """

    def __init__(
        self,
        *,
        store: FiscalJobStore,
        credentials: CredentialsProvider,
        adapter_for: Callable[[str], FiscalAdapterBase],
        policy: BackoffPolicy | None = None,
        audit_sink: AuditSink | None = None,
        clock: Callable[[], datetime] = timezone.now,
        first_poll_delay: timedelta | None = None,
        pending_delay: timedelta | None = None,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.adapter_for = adapter_for
        self.policy = policy or BackoffPolicy.from_settings()
        self.audit_sink = audit_sink
        self.clock = clock
        self.first_poll_delay = first_poll_delay or timedelta(
            seconds=getattr(settings, "FISCAL_TICKET_FIRST_POLL_DELAY_SECONDS", 60)
        )
        self.pending_delay = pending_delay or timedelta(
            seconds=getattr(settings, "FISCAL_TICKET_PENDING_DELAY_SECONDS", 120)
        )
        self._audit_tasks: set[asyncio.Task] = set()

    async def process(self, job_id: int, worker_id: str) -> ProcessResult:
        try:
            job = await self.store.load(job_id)
        except FiscalJob.DoesNotExist:
            logger.error("fiscal.job.process.missing job_id=%s", job_id)
            return ProcessResult(
                job_id=job_id,
                kind="",
                outcome=Outcome.FAILED,
                job_status="",
                document_status="",
                attempts=0,
                error=f"{DocumentNotFound.code}: job {job_id} does not exist",
            )

        logger.info(
            "fiscal.job.process.started company_id=%s fiscal_job_id=%s fiscal_document_id=%s kind=%s attempts=%s worker_id=%s",
            job.company_id,
            job.id,
            job.document_id,
            job.kind,
            job.attempts,
            worker_id,
        )

        with tenant_context(job.company):
            try:
                result = await self._dispatch(job, worker_id)
            except LeaseLost as exc:
                return self._lease_lost(job, exc)
            except Exception as exc:
                try:
                    result = await self._handle_failure(job, worker_id, exc)
                except LeaseLost as lease_exc:
                    return self._lease_lost(job, lease_exc)
                except Exception:
                    logger.exception("fiscal.job.process.failed.persist_error fiscal_job_id=%s", job.id)
                    return ProcessResult(
                        job_id=job.id,
                        kind=job.kind,
                        outcome=Outcome.FAILED,
                        job_status=job.status,
                        document_status=job.document.status,
                        attempts=job.attempts,
                        error=_error_message(exc),
                    )

        logger.info(
            "fiscal.job.process.completed company_id=%s fiscal_job_id=%s fiscal_document_id=%s outcome=%s job_status=%s doc_status=%s attempts=%s",
            job.company_id,
            job.id,
            job.document_id,
            result.outcome.value,
            result.job_status,
            result.document_status,
            result.attempts,
        )
        return result

    def _lease_lost(self, job: FiscalJob, exc: LeaseLost) -> ProcessResult:
        return ProcessResult(
            job_id=job.id,
            kind=job.kind,
            outcome=Outcome.LEASE_LOST,
            job_status=job.status,
            document_status=job.document.status,
            attempts=job.attempts,
            error=str(exc),
        )

    async def _dispatch(self, job: FiscalJob, worker_id: str) -> ProcessResult:
        if not getattr(settings, "FISCAL_SUBMISSION_ENABLED", True):
            raise SubmissionDisabled("Fiscal submission is globally disabled.")

        config = await self.store.load_config(job.company_id)
        if config is None:
            raise FiscalConfigMissing(f"Company {job.company_id} has no fiscal configuration.")
        if not config.enabled:
            raise SubmissionDisabled(f"Fiscal submission is disabled for company {job.company_id}.")

        try:
            kind = FiscalJob.Kind(job.kind)
        except ValueError as exc:
            raise JobKindMismatch(f"Unknown job kind {job.kind!r}.") from exc

        match kind:
            case FiscalJob.Kind.SEND_SINGLE:
                return await self._send_single(job, worker_id, config)
            case FiscalJob.Kind.SEND_BATCH:
                return await self._send_batch(job, worker_id, config)
            case FiscalJob.Kind.POLL_TICKET:
                return await self._poll_ticket(job, worker_id, config)

    # Preconditions

    def _check_sendable(self, job: FiscalJob, *, batch: bool) -> FiscalDocument:
        document = job.document
        if document.is_final:
            raise DocumentAlreadyFinal(f"Document {document.pk} is already {document.status}.")
        if document.is_batch != batch:
            raise JobKindMismatch(f"Job kind {job.kind} cannot submit a {document.kind} document.")
        if document.status != FiscalDocument.Status.SIGNED:
            raise DocumentNotSigned(f"Document {document.pk} is {document.status}, expected SIGNED.")
        if not (document.signed_xml or "").strip():
            raise DocumentNotSigned(f"Document {document.pk} has no signed XML.")
        return document

    def _check_pollable(self, job: FiscalJob) -> FiscalDocument:
        document = job.document
        if document.is_final:
            raise DocumentAlreadyFinal(f"Document {document.pk} is already {document.status}.")
        if not document.is_batch:
            raise JobKindMismatch(f"Job kind {job.kind} cannot poll a {document.kind} document.")
        if document.status != FiscalDocument.Status.SENT or not document.ticket:
            raise TicketMissing(f"Document {document.pk} has no pending ticket (status {document.status}).")
        return document

    # Handlers

    async def _send_single(self, job: FiscalJob, worker_id: str, config: TenantFiscalConfig) -> ProcessResult:
        document = self._check_sendable(job, batch=False)
        credentials = await self.credentials.resolve(job.company_id)
        filename = build_filename(
            config.tax_id,
            document_kind_code(document.kind),
            document.series,
            document.number,
        )
        archive = build_zip(filename, document.signed_xml)

        result = await self.adapter_for(config.environment).send_bill(credentials, filename, archive)
        cdr = parse_cdr(result.cdr_archive)

        target = FiscalDocument.Status.ACCEPTED if cdr.accepted else FiscalDocument.Status.REJECTED
        document = await self.store.complete_with_acknowledgment(
            job.id,
            worker_id,
            document_status=target,
            response_code=cdr.response_code,
            description=cdr.description,
            notes=cdr.notes,
            archive=result.cdr_archive,
            now=self.clock(),
        )
        self._audit(
            "document.accepted" if cdr.accepted else "document.rejected",
            job,
            {"response_code": cdr.response_code, "filename": filename, "notes": len(cdr.notes)},
        )
        return ProcessResult(
            job_id=job.id,
            kind=job.kind,
            outcome=Outcome.ACCEPTED if cdr.accepted else Outcome.REJECTED,
            job_status=FiscalJob.Status.DONE,
            document_status=document.status,
            attempts=job.attempts,
        )

    async def _send_batch(self, job: FiscalJob, worker_id: str, config: TenantFiscalConfig) -> ProcessResult:
        document = self._check_sendable(job, batch=True)
        credentials = await self.credentials.resolve(job.company_id)
        issue_date = document.issue_date or timezone.localdate(document.created_at)
        filename = build_batch_filename(
            config.tax_id,
            (document.series or "").strip() or document_kind_code(document.kind),
            issue_date,
            document.number,
        )
        archive = build_zip(filename, document.signed_xml)

        result = await self.adapter_for(config.environment).send_summary(credentials, filename, archive)
        poll_job = await self.store.complete_with_ticket(
            job.id,
            worker_id,
            ticket=result.ticket,
            first_poll_delay=self.first_poll_delay,
            now=self.clock(),
        )
        self._audit(
            "document.sent",
            job,
            {"ticket": result.ticket, "filename": filename, "poll_job_id": poll_job.id},
        )
        return ProcessResult(
            job_id=job.id,
            kind=job.kind,
            outcome=Outcome.SENT,
            job_status=FiscalJob.Status.DONE,
            document_status=FiscalDocument.Status.SENT,
            attempts=job.attempts,
            next_run_at=poll_job.next_run_at,
        )

    async def _poll_ticket(self, job: FiscalJob, worker_id: str, config: TenantFiscalConfig) -> ProcessResult:
        document = self._check_pollable(job)
        credentials = await self.credentials.resolve(job.company_id)

        result = await self.adapter_for(config.environment).get_status(credentials, document.ticket)
        now = self.clock()

        if result.is_pending:
            # Not a failure: the attempt budget is left untouched.
            next_run_at = now + self.pending_delay
            await self.store.reschedule(job.id, worker_id, attempts=job.attempts, next_run_at=next_run_at)
            self._audit("ticket.pending", job, {"ticket": document.ticket})
            return ProcessResult(
                job_id=job.id,
                kind=job.kind,
                outcome=Outcome.PENDING,
                job_status=FiscalJob.Status.QUEUED,
                document_status=document.status,
                attempts=job.attempts,
                next_run_at=next_run_at,
            )

        if result.cdr_archive:
            cdr = parse_cdr(result.cdr_archive)
            response_code, description, notes = cdr.response_code, cdr.description, cdr.notes
        else:
            response_code = result.status_code
            description = describe_response_code(result.status_code)
            notes = []

        target = FiscalDocument.Status.ACCEPTED if result.is_accepted else FiscalDocument.Status.REJECTED
        document = await self.store.complete_with_acknowledgment(
            job.id,
            worker_id,
            document_status=target,
            response_code=response_code,
            description=description,
            notes=notes,
            archive=result.cdr_archive,
            now=now,
        )
        self._audit(
            "document.accepted" if result.is_accepted else "document.rejected",
            job,
            {"ticket": document.ticket, "status_code": result.status_code, "response_code": response_code},
        )
        return ProcessResult(
            job_id=job.id,
            kind=job.kind,
            outcome=Outcome.ACCEPTED if result.is_accepted else Outcome.REJECTED,
            job_status=FiscalJob.Status.DONE,
            document_status=document.status,
            attempts=job.attempts,
        )

    # Failures

    async def _handle_failure(self, job: FiscalJob, worker_id: str, exc: Exception) -> ProcessResult:
        retryable = is_retryable(exc)
        error = _error_message(exc)
        decision = self.policy.decide(job.attempts, retryable, self.clock())

        if getattr(exc, "code", None) is None:
            logger.exception(
                "fiscal.job.process.unexpected_error fiscal_job_id=%s error=%s",
                job.id,
                error,
            )

        if decision.status == FiscalJob.Status.QUEUED:
            await self.store.reschedule(
                job.id,
                worker_id,
                attempts=decision.attempts,
                next_run_at=decision.next_run_at,
                error=error,
            )
            logger.warning(
                "fiscal.job.process.retry_scheduled fiscal_job_id=%s attempts=%s next_run_at=%s error=%s",
                job.id,
                decision.attempts,
                decision.next_run_at.isoformat(),
                error,
            )
            self._audit("job.retry_scheduled", job, {"attempts": decision.attempts, "error": error})
            return ProcessResult(
                job_id=job.id,
                kind=job.kind,
                outcome=Outcome.RETRY_SCHEDULED,
                job_status=FiscalJob.Status.QUEUED,
                document_status=job.document.status,
                attempts=decision.attempts,
                next_run_at=decision.next_run_at,
                error=error,
            )

        document = await self.store.fail(
            job.id,
            worker_id,
            attempts=decision.attempts,
            error=error,
            mark_document_error=not isinstance(exc, DocumentAlreadyFinal),
            now=self.clock(),
        )
        logger.warning(
            "fiscal.job.process.failed fiscal_job_id=%s attempts=%s retryable=%s doc_status=%s error=%s",
            job.id,
            decision.attempts,
            retryable,
            document.status,
            error,
        )
        self._audit(
            "job.failed",
            job,
            {"attempts": decision.attempts, "retryable": retryable, "error": error},
        )
        return ProcessResult(
            job_id=job.id,
            kind=job.kind,
            outcome=Outcome.FAILED,
            job_status=FiscalJob.Status.FAILED,
            document_status=document.status,
            attempts=decision.attempts,
            error=error,
        )

    @property
    def pending_audits(self) -> int:
        return len(self._audit_tasks)

    async def drain_audit(self, timeout: float | None = None) -> int:
        """Wait for handed-off audit events. Returns how many are still pending."""
        if not self._audit_tasks:
            return 0
        _done, pending = await asyncio.wait(set(self._audit_tasks), timeout=timeout)
        if pending:
            logger.warning("fiscal.audit.drain.timeout pending=%s", len(pending))
        return len(pending)

    def _audit(self, event_type: str, job: FiscalJob, data: dict) -> None:
        # Delivery runs beside the job; emit_audit_event logs and absorbs sink errors.
        task = asyncio.create_task(
            emit_audit_event(
                self.audit_sink,
                AuditEvent(
                    event_type=event_type,
                    company_id=job.company_id,
                    document_id=job.document_id,
                    job_id=job.id,
                    data={"kind": job.kind, **data},
                ),
            ),
            name=f"fiscal-audit-{job.id}-{event_type}",
        )
        self._audit_tasks.add(task)
        task.add_done_callback(self._audit_tasks.discard)
