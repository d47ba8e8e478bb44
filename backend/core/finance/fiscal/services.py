from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from django.db import IntegrityError, transaction
from django.utils import timezone

from finance.fiscal.models import FiscalDocument, FiscalJob

logger = logging.getLogger(__name__)


class FiscalEnqueueError(RuntimeError):
    """Raised when a document cannot be (re)queued for submission."""

    def __init__(self, message: str, *, code: str = "ENQUEUE_ERROR") -> None:
        super().__init__(message)
        self.code = code


REQUEUE_STATUSES = (
    FiscalDocument.Status.SIGNED,
    FiscalDocument.Status.ERROR,
    FiscalDocument.Status.SENT,
)
DEFAULT_REQUEUE_LIMIT = 50


def _job_kind_for(document: FiscalDocument) -> str:
    if document.status == FiscalDocument.Status.SIGNED:
        return FiscalJob.Kind.SEND_BATCH if document.is_batch else FiscalJob.Kind.SEND_SINGLE
    if document.status == FiscalDocument.Status.SENT and document.is_batch and document.ticket:
        return FiscalJob.Kind.POLL_TICKET
    raise FiscalEnqueueError(
        f"Document {document.pk} in status {document.status} cannot be submitted.",
        code="DOCUMENT_NOT_ENQUEUEABLE",
    )


def enqueue_fiscal_job(document_id: int, *, run_at: datetime | None = None) -> FiscalJob:
    """Create the next submission job for a document.

    Idempotent: a document that already has a QUEUED job gets that job back.
    """

    with transaction.atomic():
        try:
            document = FiscalDocument.all_objects.select_for_update().get(pk=document_id)
        except FiscalDocument.DoesNotExist as exc:
            raise FiscalEnqueueError(
                f"Fiscal document {document_id} does not exist.",
                code="DOCUMENT_NOT_FOUND",
            ) from exc

        existing = FiscalJob.all_objects.filter(document=document, status=FiscalJob.Status.QUEUED).first()
        if existing is not None:
            logger.info(
                "fiscal.job.enqueue.skipped company_id=%s fiscal_document_id=%s fiscal_job_id=%s reason=already_queued",
                document.company_id,
                document.pk,
                existing.pk,
            )
            return existing

        kind = _job_kind_for(document)
        try:
            with transaction.atomic():
                job = FiscalJob.all_objects.create(
                    company_id=document.company_id,
                    document=document,
                    kind=kind,
                    next_run_at=run_at or timezone.now(),
                )
        except IntegrityError:
            # A concurrent caller queued the same document first.
            return FiscalJob.all_objects.get(document=document, status=FiscalJob.Status.QUEUED)

    logger.info(
        "fiscal.job.enqueue.completed company_id=%s fiscal_document_id=%s fiscal_job_id=%s kind=%s next_run_at=%s",
        document.company_id,
        document.pk,
        job.pk,
        job.kind,
        job.next_run_at.isoformat(),
    )
    return job


@dataclass
class RequeueResult:
    scanned: int = 0
    requeued: int = 0
    skipped: int = 0
    job_ids: list[int] = field(default_factory=list)


def requeue_documents(
    *,
    document_id: int | None = None,
    status: str | None = None,
    company_id: int | None = None,
    limit: int = DEFAULT_REQUEUE_LIMIT,
) -> RequeueResult:
    """Operator requeue of stuck or failed documents.

    ERROR documents go back to SIGNED, or to SENT when a ticket is pending,
    before a new job is queued. Documents with a QUEUED job are left alone.
    """

    if status is not None and status not in REQUEUE_STATUSES:
        raise FiscalEnqueueError(
            f"Status {status} cannot be requeued; allowed: {', '.join(REQUEUE_STATUSES)}.",
            code="INVALID_REQUEUE_STATUS",
        )

    queryset = FiscalDocument.all_objects.filter(status__in=[status] if status else REQUEUE_STATUSES)
    if document_id is not None:
        queryset = queryset.filter(pk=document_id)
    if company_id is not None:
        queryset = queryset.filter(company_id=company_id)
    queryset = queryset.exclude(jobs__status=FiscalJob.Status.QUEUED).order_by("created_at", "id")

    result = RequeueResult()
    for document_pk in list(queryset.values_list("pk", flat=True)[: max(limit, 0)]):
        result.scanned += 1
        try:
            with transaction.atomic():
                document = FiscalDocument.all_objects.select_for_update().get(pk=document_pk)
                if document.status == FiscalDocument.Status.ERROR:
                    if document.is_batch and document.ticket:
                        document.transition_to(FiscalDocument.Status.SENT)
                    else:
                        document.transition_to(FiscalDocument.Status.SIGNED)
                    document.save(update_fields=["status", "updated_at"])
                job = enqueue_fiscal_job(document.pk)
        except FiscalEnqueueError as exc:
            result.skipped += 1
            logger.warning(
                "fiscal.requeue.skipped fiscal_document_id=%s error=%s",
                document_pk,
                exc,
            )
            continue

        result.requeued += 1
        result.job_ids.append(job.pk)

    logger.info(
        "fiscal.requeue.completed scanned=%s requeued=%s skipped=%s",
        result.scanned,
        result.requeued,
        result.skipped,
    )
    return result


@dataclass(frozen=True)
class JobView:
    id: int
    kind: str
    status: str
    attempts: int
    last_error: str
    next_run_at: datetime | None
    completed_at: datetime | None


@dataclass(frozen=True)
class DocumentStatusView:
    document_id: int
    full_number: str
    kind: str
    status: str
    response_code: str
    response_description: str
    response_notes: list[str]
    ticket: str
    responded_at: datetime | None
    last_error: str
    jobs: list[JobView]


def get_document_status(document_id: int) -> DocumentStatusView:
    """Current status, authority answer and job history of a document."""

    try:
        document = FiscalDocument.all_objects.get(pk=document_id)
    except FiscalDocument.DoesNotExist as exc:
        raise FiscalEnqueueError(
            f"Fiscal document {document_id} does not exist.",
            code="DOCUMENT_NOT_FOUND",
        ) from exc

    jobs = [
        JobView(
            id=job.pk,
            kind=job.kind,
            status=job.status,
            attempts=job.attempts,
            last_error=job.last_error,
            next_run_at=job.next_run_at,
            completed_at=job.completed_at,
        )
        for job in FiscalJob.all_objects.filter(document=document).order_by("-id")
    ]
    last_error = next((job.last_error for job in jobs if job.last_error), "")

    return DocumentStatusView(
        document_id=document.pk,
        full_number=document.full_number,
        kind=document.kind,
        status=document.status,
        response_code=document.response_code,
        response_description=document.response_description,
        response_notes=list(document.response_notes or []),
        ticket=document.ticket,
        responded_at=document.responded_at,
        last_error=last_error,
        jobs=jobs,
    )
