from __future__ import annotations

from django.core.exceptions import ValidationError
from django.core.serializers.json import DjangoJSONEncoder
from django.db import models
from django.utils import timezone

from tenancy.context import get_current_company
from tenancy.managers import TenantManager
from tenancy.models import BaseTenantModel


class TenantFiscalConfig(BaseTenantModel):
    """Per-tenant settings used to talk to the tax authority.

    `sol_password` holds a Fernet token (see `finance.fiscal.crypto`), never the
    raw secret. Use `set_sol_password()` to write it.
    """

    class Environment(models.TextChoices):
        SANDBOX = "SANDBOX", "Sandbox"
        PRODUCTION = "PRODUCTION", "Production"

    tax_id = models.CharField(max_length=11, help_text="Issuer RUC (11 digits).")
    environment = models.CharField(
        max_length=20,
        choices=Environment.choices,
        default=Environment.SANDBOX,
        db_index=True,
    )
    sol_user = models.CharField(
        max_length=60,
        blank=True,
        help_text="Secondary SOL user, with or without the RUC prefix.",
    )
    sol_password = models.TextField(blank=True)
    enabled = models.BooleanField(default=True, db_index=True)

    class Meta:
        ordering = ("company_id",)
        verbose_name = "Tenant Fiscal Config"
        verbose_name_plural = "Tenant Fiscal Configs"
        constraints = [
            models.UniqueConstraint(
                fields=("company",),
                name="uq_tenant_fiscal_config_per_tenant",
            ),
        ]

    def __str__(self) -> str:  # pragma: no cover
        status = "enabled" if self.enabled else "disabled"
        return f"{self.company_id} - {self.environment} ({status})"

    def set_sol_password(self, raw_password: str) -> None:
        from finance.fiscal.crypto import TokenCipher

        self.sol_password = TokenCipher.from_settings().encrypt(raw_password)


class FiscalDocument(BaseTenantModel):
    """Fiscal document (or daily batch) submitted to the tax authority.

    Content generation and signing happen elsewhere; this pipeline only reads
    `signed_xml` and records the authority's answer.
    """

    class Kind(models.TextChoices):
        INVOICE = "INVOICE", "Invoice"
        RECEIPT = "RECEIPT", "Sales receipt"
        CREDIT_NOTE = "CREDIT_NOTE", "Credit note"
        DEBIT_NOTE = "DEBIT_NOTE", "Debit note"
        SUMMARY = "SUMMARY", "Daily summary"
        VOIDED = "VOIDED", "Voiding communication"

    class Status(models.TextChoices):
        DRAFT = "DRAFT", "Draft"
        SIGNED = "SIGNED", "Signed"
        SENT = "SENT", "Sent"
        ACCEPTED = "ACCEPTED", "Accepted"
        REJECTED = "REJECTED", "Rejected"
        OBSERVED = "OBSERVED", "Observed"
        ERROR = "ERROR", "Error"
        CANCELED = "CANCELED", "Canceled"

    BATCH_KINDS = frozenset({Kind.SUMMARY, Kind.VOIDED})
    FINAL_STATUSES = frozenset(
        {Status.ACCEPTED, Status.REJECTED, Status.OBSERVED, Status.CANCELED}
    )
    TERMINAL_STATUSES = FINAL_STATUSES | {Status.ERROR}

    # ERROR -> SIGNED/SENT only through the operator requeue.
    ALLOWED_TRANSITIONS = {
        Status.DRAFT: frozenset({Status.SIGNED, Status.CANCELED}),
        Status.SIGNED: frozenset(
            {
                Status.SENT,
                Status.ACCEPTED,
                Status.REJECTED,
                Status.OBSERVED,
                Status.ERROR,
                Status.CANCELED,
            }
        ),
        Status.SENT: frozenset(
            {Status.ACCEPTED, Status.REJECTED, Status.OBSERVED, Status.ERROR}
        ),
        Status.ACCEPTED: frozenset({Status.CANCELED}),
        Status.OBSERVED: frozenset({Status.CANCELED}),
        Status.REJECTED: frozenset(),
        Status.CANCELED: frozenset(),
        Status.ERROR: frozenset({Status.SIGNED, Status.SENT, Status.CANCELED}),
    }

    kind = models.CharField(max_length=20, choices=Kind.choices, db_index=True)
    series = models.CharField(max_length=4)
    number = models.PositiveIntegerField()
    full_number = models.CharField(max_length=20, blank=True)
    issue_date = models.DateField(null=True, blank=True)
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.DRAFT,
        db_index=True,
    )
    signed_xml = models.TextField(blank=True)
    ack_archive = models.TextField(
        blank=True,
        help_text="Base64 ZIP with the authority acknowledgment (CDR).",
    )
    ticket = models.CharField(max_length=64, blank=True)
    response_code = models.CharField(max_length=10, blank=True)
    response_description = models.TextField(blank=True)
    response_notes = models.JSONField(default=list, blank=True)
    responded_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ("-created_at", "-id")
        verbose_name = "Fiscal Document"
        verbose_name_plural = "Fiscal Documents"
        indexes = [
            models.Index(fields=("company", "status"), name="idx_fiscal_doc_status"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=("company", "kind", "series", "number"),
                name="uq_fiscal_doc_number_per_tenant",
            ),
        ]

    def __str__(self) -> str:  # pragma: no cover
        return f"FiscalDocument {self.full_number or self.pk} [{self.status}]"

    def save(self, *args, **kwargs):
        if not self.full_number and self.series and self.number is not None:
            self.full_number = f"{self.series}-{self.number}"
        return super().save(*args, **kwargs)

    @property
    def is_batch(self) -> bool:
        return self.kind in self.BATCH_KINDS

    @property
    def is_final(self) -> bool:
        return self.status in self.FINAL_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES

    def can_transition(self, target: str) -> bool:
        return target in self.ALLOWED_TRANSITIONS.get(self.status, frozenset())

    def transition_to(self, target: str) -> None:
        """Move to `target` in memory; callers persist the change."""

        if not self.can_transition(target):
            raise ValidationError(
                f"Invalid fiscal document transition {self.status} -> {target}."
            )
        self.status = target


class FiscalJob(BaseTenantModel):
    """Unit of work for the submission worker. Rows are never deleted."""

    class Kind(models.TextChoices):
        SEND_SINGLE = "SEND_SINGLE", "Send single document"
        SEND_BATCH = "SEND_BATCH", "Send batch"
        POLL_TICKET = "POLL_TICKET", "Poll ticket"

    class Status(models.TextChoices):
        QUEUED = "QUEUED", "Queued"
        DONE = "DONE", "Done"
        FAILED = "FAILED", "Failed"

    document = models.ForeignKey(
        FiscalDocument,
        on_delete=models.PROTECT,
        related_name="jobs",
    )
    parent = models.ForeignKey(
        "self",
        on_delete=models.PROTECT,
        related_name="children",
        null=True,
        blank=True,
    )
    kind = models.CharField(max_length=20, choices=Kind.choices)
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.QUEUED,
        db_index=True,
    )
    attempts = models.PositiveIntegerField(default=0)
    last_error = models.TextField(blank=True)
    next_run_at = models.DateTimeField(default=timezone.now)
    locked_at = models.DateTimeField(null=True, blank=True)
    locked_by = models.CharField(max_length=120, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ("next_run_at", "id")
        verbose_name = "Fiscal Job"
        verbose_name_plural = "Fiscal Jobs"
        indexes = [
            models.Index(fields=("status", "next_run_at"), name="idx_fiscal_job_ready"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=("document",),
                condition=models.Q(status="QUEUED"),
                name="uq_fiscal_job_single_queued_per_document",
            ),
        ]

    def __str__(self) -> str:  # pragma: no cover
        return f"FiscalJob {self.pk} {self.kind} [{self.status}] attempts={self.attempts}"


class FiscalAuditEntry(models.Model):
    """Append-only audit trail of submission state transitions.

    Entries form a hash chain per tenant (`chain_id`), so edits or deletions
    are detectable. Write through `finance.fiscal.audit.LedgerAuditSink`.
    """

    company = models.ForeignKey(
        "customers.Company",
        on_delete=models.PROTECT,
        related_name="fiscal_audit_entries",
    )
    document = models.ForeignKey(
        FiscalDocument,
        on_delete=models.PROTECT,
        related_name="audit_entries",
        null=True,
        blank=True,
    )
    job = models.ForeignKey(
        FiscalJob,
        on_delete=models.PROTECT,
        related_name="audit_entries",
        null=True,
        blank=True,
    )
    event_type = models.CharField(max_length=80, db_index=True)
    occurred_at = models.DateTimeField(default=timezone.now)
    data = models.JSONField(default=dict, blank=True, encoder=DjangoJSONEncoder)

    chain_id = models.CharField(max_length=80, db_index=True)
    prev_hash = models.CharField(max_length=64, blank=True, default="")
    entry_hash = models.CharField(max_length=64, unique=True)

    objects = TenantManager()
    all_objects = models.Manager()

    class Meta:
        ordering = ("-occurred_at", "-id")
        verbose_name = "Fiscal Audit Entry"
        verbose_name_plural = "Fiscal Audit Entries"
        constraints = [
            models.UniqueConstraint(
                fields=("chain_id", "prev_hash"),
                name="uq_fiscal_audit_prev_hash_per_chain",
            ),
        ]

    def __str__(self) -> str:  # pragma: no cover
        return f"{self.occurred_at:%Y-%m-%d %H:%M:%S} [{self.chain_id}] {self.event_type}"

    def save(self, *args, **kwargs):
        if self.pk is not None:
            raise ValidationError("Audit entries are immutable; updates are not allowed.")

        current_company = get_current_company()
        if current_company is not None and self.company_id != current_company.id:
            raise ValidationError(
                "Cross-tenant audit write blocked: entry company does not match the active tenant."
            )
        if not self.chain_id:
            self.chain_id = f"tenant:{self.company_id}"
        if not self.entry_hash:
            raise ValidationError(
                "entry_hash is required. Use finance.fiscal.audit.LedgerAuditSink."
            )
        return super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):  # pragma: no cover
        raise ValidationError("Audit entries are immutable; deletes are not allowed.")
