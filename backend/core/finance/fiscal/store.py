from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from asgiref.sync import sync_to_async
from django.conf import settings
from django.db import transaction
from django.db.models import Count, Q
from django.utils import timezone

from finance.fiscal.models import FiscalDocument, FiscalJob, TenantFiscalConfig

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 2000


class LeaseLost(RuntimeError):
    """The job lock is no longer held by this worker; the update was discarded."""

    code = "LEASE_LOST"


@dataclass(frozen=True)
class JobStats:
    queued: int
    ready: int
    locked: int
    done: int
    failed: int

    def as_log_fields(self) -> str:
        return (
            f"queued={self.queued} ready={self.ready} locked={self.locked} "
            f"done={self.done} failed={self.failed}"
        )


def _truncate(error: str) -> str:
    return (error or "")[:MAX_ERROR_LENGTH]


class FiscalJobStore:
    """Repository for fiscal jobs and the document updates tied to them.

    Every `*_sync` method is a short transaction; the async variants run it
    through `sync_to_async` so the worker loop never blocks on the database.
    Mutations of a claimed job are filtered on `locked_by` and raise
    `LeaseLost` when another worker took the job over.
    """

    def __init__(
        self,
        *,
        lease_seconds: float | None = None,
        clock: Callable[[], datetime] = timezone.now,
    ) -> None:
        if lease_seconds is None:
            lease_seconds = float(getattr(settings, "FISCAL_JOB_LEASE_SECONDS", 300))
        self.lease = timedelta(seconds=lease_seconds)
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    def _unlocked(self, now: datetime, lease: timedelta | None = None) -> Q:
        expired_before = now - (lease or self.lease)
        return Q(locked_at__isnull=True) | Q(locked_at__lt=expired_before)

    # Claiming

    def try_claim_sync(
        self,
        job_id: int,
        worker_id: str,
        lease: timedelta | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Atomic conditional claim. False means another worker won the race."""

        now = now or self.now()
        updated = (
            FiscalJob.all_objects.filter(
                pk=job_id,
                status=FiscalJob.Status.QUEUED,
                next_run_at__lte=now,
            )
            .filter(self._unlocked(now, lease))
            .update(locked_at=now, locked_by=worker_id, updated_at=now)
        )
        return updated == 1

    def find_ready_sync(self, limit: int, now: datetime | None = None) -> list[FiscalJob]:
        if limit <= 0:
            return []
        now = now or self.now()
        queryset = (
            FiscalJob.all_objects.filter(status=FiscalJob.Status.QUEUED, next_run_at__lte=now)
            .filter(self._unlocked(now))
            .order_by("next_run_at", "id")
        )
        return list(queryset[:limit])

    def load_sync(self, job_id: int) -> FiscalJob:
        return FiscalJob.all_objects.select_related("document", "company").get(pk=job_id)

    def load_config_sync(self, company_id: int) -> TenantFiscalConfig | None:
        return TenantFiscalConfig.all_objects.filter(company_id=company_id).first()

    # Guarded mutations

    def _held_job(self, job_id: int, worker_id: str) -> FiscalJob:
        job = (
            FiscalJob.all_objects.select_for_update()
            .filter(pk=job_id, status=FiscalJob.Status.QUEUED, locked_by=worker_id)
            .first()
        )
        if job is None:
            logger.warning("fiscal.job.lease_lost job_id=%s worker_id=%s", job_id, worker_id)
            raise LeaseLost(f"Job {job_id} is no longer held by {worker_id}.")
        return job

    def _locked_document(self, job: FiscalJob) -> FiscalDocument:
        return FiscalDocument.all_objects.select_for_update().get(pk=job.document_id)

    def _release(self, job: FiscalJob) -> None:
        job.locked_at = None
        job.locked_by = ""

    def complete_with_acknowledgment_sync(
        self,
        job_id: int,
        worker_id: str,
        *,
        document_status: str,
        response_code: str,
        description: str,
        notes: list[str] | None = None,
        archive: str = "",
        now: datetime | None = None,
    ) -> FiscalDocument:
        """Record the authority answer on the document and close the job as DONE."""

        now = now or self.now()
        with transaction.atomic():
            job = self._held_job(job_id, worker_id)
            document = self._locked_document(job)

            document.transition_to(document_status)
            document.ack_archive = archive or document.ack_archive
            document.response_code = response_code
            document.response_description = description
            document.response_notes = list(notes or [])
            document.responded_at = now
            document.save(
                update_fields=[
                    "status",
                    "ack_archive",
                    "response_code",
                    "response_description",
                    "response_notes",
                    "responded_at",
                    "updated_at",
                ]
            )

            job.status = FiscalJob.Status.DONE
            job.completed_at = now
            job.last_error = ""
            self._release(job)
            job.save(update_fields=["status", "completed_at", "last_error", "locked_at", "locked_by", "updated_at"])
        return document

    def complete_with_ticket_sync(
        self,
        job_id: int,
        worker_id: str,
        *,
        ticket: str,
        first_poll_delay: timedelta,
        now: datetime | None = None,
    ) -> FiscalJob:
        """Mark the batch SENT, close the send job and spawn its POLL_TICKET job."""

        now = now or self.now()
        # The poll job must run strictly after its parent completes.
        first_poll_delay = max(first_poll_delay, timedelta(seconds=1))
        with transaction.atomic():
            job = self._held_job(job_id, worker_id)
            document = self._locked_document(job)

            document.transition_to(FiscalDocument.Status.SENT)
            document.ticket = ticket
            document.save(update_fields=["status", "ticket", "updated_at"])

            job.status = FiscalJob.Status.DONE
            job.completed_at = now
            job.last_error = ""
            self._release(job)
            job.save(update_fields=["status", "completed_at", "last_error", "locked_at", "locked_by", "updated_at"])

            poll_job = FiscalJob.all_objects.create(
                company_id=job.company_id,
                document_id=document.pk,
                parent=job,
                kind=FiscalJob.Kind.POLL_TICKET,
                next_run_at=now + first_poll_delay,
            )
        return poll_job

    def reschedule_sync(
        self,
        job_id: int,
        worker_id: str,
        *,
        attempts: int,
        next_run_at: datetime,
        error: str = "",
    ) -> FiscalJob:
        with transaction.atomic():
            job = self._held_job(job_id, worker_id)
            job.attempts = attempts
            job.next_run_at = next_run_at
            job.last_error = _truncate(error)
            self._release(job)
            job.save(update_fields=["attempts", "next_run_at", "last_error", "locked_at", "locked_by", "updated_at"])
        return job

    def fail_sync(
        self,
        job_id: int,
        worker_id: str,
        *,
        attempts: int,
        error: str,
        mark_document_error: bool = True,
        now: datetime | None = None,
    ) -> FiscalDocument:
        """Close the job as FAILED and move the document to ERROR where allowed."""

        now = now or self.now()
        with transaction.atomic():
            job = self._held_job(job_id, worker_id)
            document = self._locked_document(job)

            if mark_document_error and document.can_transition(FiscalDocument.Status.ERROR):
                document.transition_to(FiscalDocument.Status.ERROR)
                document.save(update_fields=["status", "updated_at"])

            job.status = FiscalJob.Status.FAILED
            job.attempts = attempts
            job.last_error = _truncate(error)
            job.completed_at = now
            self._release(job)
            job.save(
                update_fields=[
                    "status",
                    "attempts",
                    "last_error",
                    "completed_at",
                    "locked_at",
                    "locked_by",
                    "updated_at",
                ]
            )
        return document

    def stats_sync(self, now: datetime | None = None) -> JobStats:
        now = now or self.now()
        queued = Q(status=FiscalJob.Status.QUEUED)
        counts = FiscalJob.all_objects.aggregate(
            queued=Count("id", filter=queued),
            ready=Count("id", filter=queued & Q(next_run_at__lte=now) & self._unlocked(now)),
            locked=Count("id", filter=queued & Q(locked_at__gte=now - self.lease)),
            done=Count("id", filter=Q(status=FiscalJob.Status.DONE)),
            failed=Count("id", filter=Q(status=FiscalJob.Status.FAILED)),
        )
        return JobStats(**counts)

    # Async facade for the worker loop.

    async def try_claim(self, job_id: int, worker_id: str, lease: timedelta | None = None) -> bool:
        return await sync_to_async(self.try_claim_sync)(job_id, worker_id, lease)

    async def find_ready(self, limit: int) -> list[FiscalJob]:
        return await sync_to_async(self.find_ready_sync)(limit)

    async def load(self, job_id: int) -> FiscalJob:
        return await sync_to_async(self.load_sync)(job_id)

    async def load_config(self, company_id: int) -> TenantFiscalConfig | None:
        return await sync_to_async(self.load_config_sync)(company_id)

    async def complete_with_acknowledgment(self, job_id: int, worker_id: str, **kwargs) -> FiscalDocument:
        return await sync_to_async(self.complete_with_acknowledgment_sync)(job_id, worker_id, **kwargs)

    async def complete_with_ticket(self, job_id: int, worker_id: str, **kwargs) -> FiscalJob:
        return await sync_to_async(self.complete_with_ticket_sync)(job_id, worker_id, **kwargs)

    async def reschedule(self, job_id: int, worker_id: str, **kwargs) -> FiscalJob:
        return await sync_to_async(self.reschedule_sync)(job_id, worker_id, **kwargs)

    async def fail(self, job_id: int, worker_id: str, **kwargs) -> FiscalDocument:
        return await sync_to_async(self.fail_sync)(job_id, worker_id, **kwargs)

    async def stats(self) -> JobStats:
        return await sync_to_async(self.stats_sync)()
