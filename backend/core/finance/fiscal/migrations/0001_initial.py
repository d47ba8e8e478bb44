# Generated manually. Keep in sync with finance/fiscal/models.py.

import django.core.serializers.json
import django.db.models.deletion
import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("customers", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="TenantFiscalConfig",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("tax_id", models.CharField(help_text="Issuer RUC (11 digits).", max_length=11)),
                (
                    "environment",
                    models.CharField(
                        choices=[("SANDBOX", "Sandbox"), ("PRODUCTION", "Production")],
                        db_index=True,
                        default="SANDBOX",
                        max_length=20,
                    ),
                ),
                ("sol_user", models.CharField(blank=True, help_text="Secondary SOL user, with or without the RUC prefix.", max_length=60)),
                ("sol_password", models.TextField(blank=True)),
                ("enabled", models.BooleanField(db_index=True, default=True)),
                (
                    "company",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="%(app_label)s_%(class)s_set",
                        to="customers.company",
                    ),
                ),
            ],
            options={
                "verbose_name": "Tenant Fiscal Config",
                "verbose_name_plural": "Tenant Fiscal Configs",
                "ordering": ("company_id",),
                "constraints": [
                    models.UniqueConstraint(fields=("company",), name="uq_tenant_fiscal_config_per_tenant"),
                ],
            },
        ),
        migrations.CreateModel(
            name="FiscalDocument",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "kind",
                    models.CharField(
                        choices=[
                            ("INVOICE", "Invoice"),
                            ("RECEIPT", "Sales receipt"),
                            ("CREDIT_NOTE", "Credit note"),
                            ("DEBIT_NOTE", "Debit note"),
                            ("SUMMARY", "Daily summary"),
                            ("VOIDED", "Voiding communication"),
                        ],
                        db_index=True,
                        max_length=20,
                    ),
                ),
                ("series", models.CharField(max_length=4)),
                ("number", models.PositiveIntegerField()),
                ("full_number", models.CharField(blank=True, max_length=20)),
                ("issue_date", models.DateField(blank=True, null=True)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("DRAFT", "Draft"),
                            ("SIGNED", "Signed"),
                            ("SENT", "Sent"),
                            ("ACCEPTED", "Accepted"),
                            ("REJECTED", "Rejected"),
                            ("OBSERVED", "Observed"),
                            ("ERROR", "Error"),
                            ("CANCELED", "Canceled"),
                        ],
                        db_index=True,
                        default="DRAFT",
                        max_length=20,
                    ),
                ),
                ("signed_xml", models.TextField(blank=True)),
                ("ack_archive", models.TextField(blank=True, help_text="Base64 ZIP with the authority acknowledgment (CDR).")),
                ("ticket", models.CharField(blank=True, max_length=64)),
                ("response_code", models.CharField(blank=True, max_length=10)),
                ("response_description", models.TextField(blank=True)),
                ("response_notes", models.JSONField(blank=True, default=list)),
                ("responded_at", models.DateTimeField(blank=True, null=True)),
                (
                    "company",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="%(app_label)s_%(class)s_set",
                        to="customers.company",
                    ),
                ),
            ],
            options={
                "verbose_name": "Fiscal Document",
                "verbose_name_plural": "Fiscal Documents",
                "ordering": ("-created_at", "-id"),
                "indexes": [
                    models.Index(fields=["company", "status"], name="idx_fiscal_doc_status"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("company", "kind", "series", "number"),
                        name="uq_fiscal_doc_number_per_tenant",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="FiscalJob",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "kind",
                    models.CharField(
                        choices=[
                            ("SEND_SINGLE", "Send single document"),
                            ("SEND_BATCH", "Send batch"),
                            ("POLL_TICKET", "Poll ticket"),
                        ],
                        max_length=20,
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[("QUEUED", "Queued"), ("DONE", "Done"), ("FAILED", "Failed")],
                        db_index=True,
                        default="QUEUED",
                        max_length=20,
                    ),
                ),
                ("attempts", models.PositiveIntegerField(default=0)),
                ("last_error", models.TextField(blank=True)),
                ("next_run_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("locked_at", models.DateTimeField(blank=True, null=True)),
                ("locked_by", models.CharField(blank=True, max_length=120)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                (
                    "company",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="%(app_label)s_%(class)s_set",
                        to="customers.company",
                    ),
                ),
                (
                    "document",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="jobs",
                        to="finance_fiscal.fiscaldocument",
                    ),
                ),
                (
                    "parent",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="children",
                        to="finance_fiscal.fiscaljob",
                    ),
                ),
            ],
            options={
                "verbose_name": "Fiscal Job",
                "verbose_name_plural": "Fiscal Jobs",
                "ordering": ("next_run_at", "id"),
                "indexes": [
                    models.Index(fields=["status", "next_run_at"], name="idx_fiscal_job_ready"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(status="QUEUED"),
                        fields=("document",),
                        name="uq_fiscal_job_single_queued_per_document",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="FiscalAuditEntry",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("event_type", models.CharField(db_index=True, max_length=80)),
                ("occurred_at", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "data",
                    models.JSONField(
                        blank=True,
                        default=dict,
                        encoder=django.core.serializers.json.DjangoJSONEncoder,
                    ),
                ),
                ("chain_id", models.CharField(db_index=True, max_length=80)),
                ("prev_hash", models.CharField(blank=True, default="", max_length=64)),
                ("entry_hash", models.CharField(max_length=64, unique=True)),
                (
                    "company",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="fiscal_audit_entries",
                        to="customers.company",
                    ),
                ),
                (
                    "document",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="audit_entries",
                        to="finance_fiscal.fiscaldocument",
                    ),
                ),
                (
                    "job",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="audit_entries",
                        to="finance_fiscal.fiscaljob",
                    ),
                ),
            ],
            options={
                "verbose_name": "Fiscal Audit Entry",
                "verbose_name_plural": "Fiscal Audit Entries",
                "ordering": ("-occurred_at", "-id"),
                "constraints": [
                    models.UniqueConstraint(
                        fields=("chain_id", "prev_hash"),
                        name="uq_fiscal_audit_prev_hash_per_chain",
                    ),
                ],
            },
        ),
    ]
