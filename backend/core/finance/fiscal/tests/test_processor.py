from datetime import timedelta

from asgiref.sync import sync_to_async
from django.test import TestCase, override_settings

from finance.fiscal.adapters import (
    FiscalAdapterProtocolFault,
    FiscalAdapterTimeoutError,
    SendBillResult,
    SendSummaryResult,
    TicketStatusResult,
)
from finance.fiscal.adapters.mock import build_cdr_archive
from finance.fiscal.audit import LedgerAuditSink, verify_chain
from finance.fiscal.credentials import CredentialsProvider
from finance.fiscal.models import FiscalAuditEntry, FiscalDocument, FiscalJob, TenantFiscalConfig
from finance.fiscal.processor import FiscalJobProcessor, Outcome
from finance.fiscal.retry import BackoffPolicy
from finance.fiscal.store import FiscalJobStore
from finance.fiscal.tests.factories import (
    FakeClock,
    ScriptedAdapter,
    create_company,
    create_document,
    create_fiscal_config,
)

INVOICE_FILENAME = "20123456789-01-F001-00000001.xml"


def _accepted(code="0000", notes=None):
    return SendBillResult(cdr_archive=build_cdr_archive(INVOICE_FILENAME, code, "ok", notes=notes))


class _BrokenSink:
    def record(self, event):
        raise RuntimeError("audit store down")


@sync_to_async
def _reload(model, pk):
    return model.all_objects.get(pk=pk)


@sync_to_async
def _audit_events(company_id):
    return list(
        FiscalAuditEntry.all_objects.filter(company_id=company_id).order_by("id").values_list("event_type", flat=True)
    )


@override_settings(FISCAL_SOL_USER="", FISCAL_SOL_PASSWORD="", FISCAL_SUBMISSION_ENABLED=True)
class FiscalJobProcessorTests(TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.company = create_company()
        self.config = create_fiscal_config(self.company)
        self.store = FiscalJobStore(lease_seconds=300, clock=self.clock)

    def _processor(self, adapter, *, audit_sink=None):
        return FiscalJobProcessor(
            store=self.store,
            credentials=CredentialsProvider(ttl_seconds=0),
            adapter_for=lambda environment: adapter,
            policy=BackoffPolicy(),
            audit_sink=audit_sink if audit_sink is not None else LedgerAuditSink(),
            clock=self.clock,
        )

    def _queue(self, document=None, kind=FiscalJob.Kind.SEND_SINGLE):
        document = document or create_document(self.company)
        return FiscalJob.all_objects.create(
            company=self.company,
            document=document,
            kind=kind,
            next_run_at=self.clock(),
        )

    async def _run(self, processor, job_id, worker_id="worker-a"):
        claimed = await self.store.try_claim(job_id, worker_id)
        self.assertTrue(claimed)
        result = await processor.process(job_id, worker_id)
        await processor.drain_audit()
        return result

    # Single documents

    async def test_accepted_acknowledgment_closes_job(self):
        job = await sync_to_async(self._queue)()
        adapter = ScriptedAdapter(bill=[_accepted()])

        result = await self._run(self._processor(adapter), job.id)

        self.assertEqual(result.outcome, Outcome.ACCEPTED)
        document = await _reload(FiscalDocument, job.document_id)
        job = await _reload(FiscalJob, job.id)
        self.assertEqual(document.status, FiscalDocument.Status.ACCEPTED)
        self.assertEqual(document.response_code, "0000")
        self.assertTrue(document.ack_archive)
        self.assertEqual(job.status, FiscalJob.Status.DONE)
        self.assertEqual(job.attempts, 0)

        operation, (credentials, filename, archive) = adapter.calls[0]
        self.assertEqual(operation, "send_bill")
        self.assertEqual(credentials.username, "20123456789MODDATOS")
        self.assertEqual(filename, INVOICE_FILENAME)
        self.assertTrue(archive)

        self.assertEqual(await _audit_events(self.company.id), ["document.accepted"])
        self.assertTrue(await sync_to_async(verify_chain)(self.company.id))

    async def test_acceptance_with_observations_keeps_notes(self):
        job = await sync_to_async(self._queue)()
        adapter = ScriptedAdapter(bill=[_accepted(code="0", notes=["4252 - dato no corresponde"])])

        result = await self._run(self._processor(adapter), job.id)

        self.assertEqual(result.document_status, FiscalDocument.Status.ACCEPTED)
        document = await _reload(FiscalDocument, job.document_id)
        self.assertEqual(document.response_notes, ["4252 - dato no corresponde"])

    async def test_rejection_code_rejects_document(self):
        job = await sync_to_async(self._queue)()
        adapter = ScriptedAdapter(bill=[_accepted(code="2000")])

        result = await self._run(self._processor(adapter), job.id)

        self.assertEqual(result.outcome, Outcome.REJECTED)
        self.assertEqual(result.job_status, FiscalJob.Status.DONE)
        document = await _reload(FiscalDocument, job.document_id)
        self.assertEqual(document.status, FiscalDocument.Status.REJECTED)
        self.assertEqual(await _audit_events(self.company.id), ["document.rejected"])

    async def test_repeated_timeouts_exhaust_the_ladder(self):
        job = await sync_to_async(self._queue)()
        adapter = ScriptedAdapter(bill=[FiscalAdapterTimeoutError])
        processor = self._processor(adapter)

        result = await self._run(processor, job.id)
        self.assertEqual(result.outcome, Outcome.RETRY_SCHEDULED)
        self.assertEqual(result.attempts, 1)
        self.assertEqual(result.next_run_at, self.clock() + timedelta(seconds=60))
        reloaded = await _reload(FiscalJob, job.id)
        self.assertIn("TIMEOUT", reloaded.last_error)
        self.assertEqual(reloaded.locked_by, "")

        for _ in range(4):
            self.clock.advance(hours=3)
            result = await self._run(processor, job.id)

        self.assertEqual(result.outcome, Outcome.FAILED)
        self.assertEqual(result.attempts, 5)
        self.assertEqual(len(adapter.calls), 5)
        job = await _reload(FiscalJob, job.id)
        document = await _reload(FiscalDocument, job.document_id)
        self.assertEqual(job.status, FiscalJob.Status.FAILED)
        self.assertEqual(document.status, FiscalDocument.Status.ERROR)
        self.assertEqual((await _audit_events(self.company.id))[-1], "job.failed")

    async def test_transient_fault_is_retried(self):
        job = await sync_to_async(self._queue)()
        adapter = ScriptedAdapter(bill=[FiscalAdapterProtocolFault("busy", code="soap-env:Client.0130")])

        result = await self._run(self._processor(adapter), job.id)

        self.assertEqual(result.outcome, Outcome.RETRY_SCHEDULED)
        self.assertEqual(result.document_status, FiscalDocument.Status.SIGNED)

    async def test_non_transient_fault_fails_immediately(self):
        job = await sync_to_async(self._queue)()
        adapter = ScriptedAdapter(bill=[FiscalAdapterProtocolFault("bad file", code="soap-env:Client.0306")])

        result = await self._run(self._processor(adapter), job.id)

        self.assertEqual(result.outcome, Outcome.FAILED)
        self.assertEqual(result.attempts, 0)
        self.assertEqual(result.document_status, FiscalDocument.Status.ERROR)
        self.assertIn("Client.0306", result.error)

    async def test_unreadable_acknowledgment_is_terminal(self):
        job = await sync_to_async(self._queue)()
        adapter = ScriptedAdapter(bill=[SendBillResult(cdr_archive="bm90LWEtemlw")])

        result = await self._run(self._processor(adapter), job.id)

        self.assertEqual(result.outcome, Outcome.FAILED)
        self.assertIn("CDR_PARSE_ERROR", result.error)

    # Preconditions

    async def test_final_document_is_not_resubmitted(self):
        document = await sync_to_async(create_document)(self.company, status=FiscalDocument.Status.ACCEPTED)
        job = await sync_to_async(self._queue)(document)
        adapter = ScriptedAdapter(bill=[_accepted()])

        result = await self._run(self._processor(adapter), job.id)

        self.assertEqual(result.outcome, Outcome.FAILED)
        self.assertIn("DOCUMENT_ALREADY_FINAL", result.error)
        self.assertEqual(adapter.calls, [])
        document = await _reload(FiscalDocument, document.id)
        self.assertEqual(document.status, FiscalDocument.Status.ACCEPTED)

    async def test_unsigned_document_fails_without_calling_authority(self):
        document = await sync_to_async(create_document)(self.company, signed_xml="")
        job = await sync_to_async(self._queue)(document)
        adapter = ScriptedAdapter(bill=[_accepted()])

        result = await self._run(self._processor(adapter), job.id)

        self.assertIn("DOCUMENT_NOT_SIGNED", result.error)
        self.assertEqual(adapter.calls, [])

    async def test_global_kill_switch(self):
        job = await sync_to_async(self._queue)()
        adapter = ScriptedAdapter(bill=[_accepted()])

        with self.settings(FISCAL_SUBMISSION_ENABLED=False):
            result = await self._run(self._processor(adapter), job.id)

        self.assertEqual(result.outcome, Outcome.FAILED)
        self.assertIn("SUBMISSION_DISABLED", result.error)
        self.assertEqual(adapter.calls, [])

    async def test_disabled_tenant_config(self):
        await sync_to_async(TenantFiscalConfig.all_objects.filter(pk=self.config.pk).update)(enabled=False)
        job = await sync_to_async(self._queue)()
        adapter = ScriptedAdapter(bill=[_accepted()])

        result = await self._run(self._processor(adapter), job.id)

        self.assertIn("SUBMISSION_DISABLED", result.error)
        self.assertEqual(adapter.calls, [])

    async def test_missing_credentials_fail_the_job(self):
        await sync_to_async(TenantFiscalConfig.all_objects.filter(pk=self.config.pk).update)(sol_password="")
        job = await sync_to_async(self._queue)()
        adapter = ScriptedAdapter(bill=[_accepted()])

        result = await self._run(self._processor(adapter), job.id)

        self.assertEqual(result.outcome, Outcome.FAILED)
        self.assertIn("SOL_NOT_CONFIGURED", result.error)

    async def test_unknown_job(self):
        result = await self._processor(ScriptedAdapter()).process(999999, "worker-a")
        self.assertEqual(result.outcome, Outcome.FAILED)

    # Concurrency and audit

    async def test_lost_lease_discards_the_result(self):
        job = await sync_to_async(self._queue)()
        self.assertTrue(await self.store.try_claim(job.id, "worker-a"))
        await sync_to_async(FiscalJob.all_objects.filter(pk=job.id).update)(locked_by="worker-b")
        adapter = ScriptedAdapter(bill=[_accepted()])

        result = await self._processor(adapter).process(job.id, "worker-a")

        self.assertEqual(result.outcome, Outcome.LEASE_LOST)
        document = await _reload(FiscalDocument, job.document_id)
        job = await _reload(FiscalJob, job.id)
        self.assertEqual(document.status, FiscalDocument.Status.SIGNED)
        self.assertEqual(job.status, FiscalJob.Status.QUEUED)
        self.assertEqual(job.locked_by, "worker-b")

    async def test_audit_failure_does_not_affect_outcome(self):
        job = await sync_to_async(self._queue)()
        adapter = ScriptedAdapter(bill=[_accepted()])

        with self.assertLogs("finance.fiscal.audit", level="ERROR"):
            result = await self._run(self._processor(adapter, audit_sink=_BrokenSink()), job.id)

        self.assertEqual(result.outcome, Outcome.ACCEPTED)

    async def test_audit_delivery_runs_beside_the_job(self):
        job = await sync_to_async(self._queue)()
        processor = self._processor(ScriptedAdapter(bill=[_accepted()]))
        self.assertTrue(await self.store.try_claim(job.id, "worker-a"))

        result = await processor.process(job.id, "worker-a")

        self.assertEqual(result.outcome, Outcome.ACCEPTED)
        self.assertEqual(processor.pending_audits, 1)

        self.assertEqual(await processor.drain_audit(), 0)
        self.assertEqual(processor.pending_audits, 0)
        self.assertEqual(await _audit_events(self.company.id), ["document.accepted"])

    # Batches

    async def test_batch_filename_uses_document_series(self):
        document = await sync_to_async(create_document)(
            self.company, kind=FiscalDocument.Kind.SUMMARY, series="RC01", number=7
        )
        job = await sync_to_async(self._queue)(document, FiscalJob.Kind.SEND_BATCH)
        adapter = ScriptedAdapter(summary=[SendSummaryResult(ticket="1711234567891")])

        result = await self._run(self._processor(adapter), job.id)

        self.assertEqual(result.outcome, Outcome.SENT)
        operation, (_credentials, filename, _archive) = adapter.calls[0]
        self.assertEqual(operation, "send_summary")
        self.assertEqual(filename, "20123456789-RC01-20260314-00007")

    async def test_poll_timeouts_climb_the_ladder_and_pending_keeps_attempts(self):
        document = await sync_to_async(create_document)(
            self.company,
            kind=FiscalDocument.Kind.SUMMARY,
            series="RC",
            number=4,
            status=FiscalDocument.Status.SENT,
            ticket="1711234567892",
        )
        job = await sync_to_async(self._queue)(document, FiscalJob.Kind.POLL_TICKET)
        adapter = ScriptedAdapter(
            status=[FiscalAdapterTimeoutError, TicketStatusResult(status_code="98"), FiscalAdapterTimeoutError]
        )
        processor = self._processor(adapter)

        timed_out = await self._run(processor, job.id)

        self.assertEqual(timed_out.outcome, Outcome.RETRY_SCHEDULED)
        self.assertEqual(timed_out.attempts, 1)
        self.assertEqual(timed_out.next_run_at, self.clock() + timedelta(seconds=60))
        self.assertEqual(timed_out.document_status, FiscalDocument.Status.SENT)

        self.clock.advance(seconds=60)
        pending = await self._run(processor, job.id)

        self.assertEqual(pending.outcome, Outcome.PENDING)
        self.assertEqual(pending.attempts, 1)
        self.assertEqual(pending.next_run_at, self.clock() + timedelta(seconds=120))

        attempts = []
        for _ in range(4):
            self.clock.advance(hours=3)
            result = await self._run(processor, job.id)
            attempts.append(result.attempts)

        self.assertEqual(attempts, [2, 3, 4, 5])
        self.assertEqual(result.outcome, Outcome.FAILED)
        self.assertEqual(len(adapter.calls), 6)
        job = await _reload(FiscalJob, job.id)
        document = await _reload(FiscalDocument, document.id)
        self.assertEqual(job.status, FiscalJob.Status.FAILED)
        self.assertEqual(job.attempts, 5)
        self.assertEqual(document.status, FiscalDocument.Status.ERROR)
        self.assertEqual((await _audit_events(self.company.id))[-1], "job.failed")

    async def test_batch_submission_and_ticket_polling(self):
        document = await sync_to_async(create_document)(
            self.company, kind=FiscalDocument.Kind.SUMMARY, series="RC", number=1
        )
        job = await sync_to_async(self._queue)(document, FiscalJob.Kind.SEND_BATCH)
        cdr = build_cdr_archive("20123456789-RC-20260314-00001", "0", "Resumen aceptado")
        adapter = ScriptedAdapter(
            summary=[SendSummaryResult(ticket="1711234567890")],
            status=[TicketStatusResult(status_code="98"), TicketStatusResult(status_code="0", cdr_archive=cdr)],
        )
        processor = self._processor(adapter)

        sent = await self._run(processor, job.id)

        self.assertEqual(sent.outcome, Outcome.SENT)
        self.assertEqual(adapter.calls[0][1][1], "20123456789-RC-20260314-00001")
        document = await _reload(FiscalDocument, document.id)
        self.assertEqual(document.status, FiscalDocument.Status.SENT)
        self.assertEqual(document.ticket, "1711234567890")
        poll = await sync_to_async(FiscalJob.all_objects.get)(parent_id=job.id)
        self.assertEqual(poll.kind, FiscalJob.Kind.POLL_TICKET)
        self.assertEqual(poll.next_run_at, self.clock() + timedelta(seconds=60))

        self.clock.advance(seconds=60)
        pending = await self._run(processor, poll.id)

        self.assertEqual(pending.outcome, Outcome.PENDING)
        self.assertEqual(pending.attempts, 0)
        self.assertEqual(pending.next_run_at, self.clock() + timedelta(seconds=120))

        self.clock.advance(seconds=120)
        accepted = await self._run(processor, poll.id)

        self.assertEqual(accepted.outcome, Outcome.ACCEPTED)
        document = await _reload(FiscalDocument, document.id)
        self.assertEqual(document.status, FiscalDocument.Status.ACCEPTED)
        self.assertEqual(document.response_description, "Resumen aceptado")
        self.assertEqual(
            await _audit_events(self.company.id),
            ["document.sent", "ticket.pending", "document.accepted"],
        )
        self.assertTrue(await sync_to_async(verify_chain)(self.company.id))

    async def test_rejected_ticket_without_acknowledgment(self):
        document = await sync_to_async(create_document)(
            self.company,
            kind=FiscalDocument.Kind.VOIDED,
            series="RA",
            number=3,
            status=FiscalDocument.Status.SENT,
            ticket="555",
        )
        job = await sync_to_async(self._queue)(document, FiscalJob.Kind.POLL_TICKET)
        adapter = ScriptedAdapter(status=[TicketStatusResult(status_code="99")])

        result = await self._run(self._processor(adapter), job.id)

        self.assertEqual(result.outcome, Outcome.REJECTED)
        document = await _reload(FiscalDocument, document.id)
        self.assertEqual(document.status, FiscalDocument.Status.REJECTED)
        self.assertEqual(document.response_code, "99")

    async def test_poll_without_ticket_fails(self):
        document = await sync_to_async(create_document)(
            self.company, kind=FiscalDocument.Kind.SUMMARY, series="RC", number=2, status=FiscalDocument.Status.SIGNED
        )
        job = await sync_to_async(self._queue)(document, FiscalJob.Kind.POLL_TICKET)

        result = await self._run(self._processor(ScriptedAdapter()), job.id)

        self.assertIn("TICKET_MISSING", result.error)
        self.assertEqual(result.document_status, FiscalDocument.Status.ERROR)
