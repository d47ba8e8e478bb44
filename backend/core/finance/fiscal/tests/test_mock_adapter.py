from django.test import SimpleTestCase

from finance.fiscal.adapters import FiscalAdapterInvalidResponse
from finance.fiscal.adapters.mock import MockFiscalAdapter
from finance.fiscal.cdr import parse_cdr
from finance.fiscal.credentials import SolCredentials

CREDENTIALS = SolCredentials(username="20123456789MODDATOS", password="moddatos", source="DB")


class MockFiscalAdapterTests(SimpleTestCase):
    async def test_ticket_is_forgotten_after_final_status(self):
        adapter = MockFiscalAdapter(pending_polls=1)
        sent = await adapter.send_summary(CREDENTIALS, "20123456789-RC-20260314-00001", "")

        pending = await adapter.get_status(CREDENTIALS, sent.ticket)
        final = await adapter.get_status(CREDENTIALS, sent.ticket)

        self.assertEqual(pending.status_code, "98")
        self.assertEqual(final.status_code, "0")
        self.assertEqual(parse_cdr(final.cdr_archive).response_code, "0000")
        self.assertEqual(adapter._tickets, {})
        with self.assertRaises(FiscalAdapterInvalidResponse):
            await adapter.get_status(CREDENTIALS, sent.ticket)

    async def test_rejected_ticket_is_forgotten_too(self):
        adapter = MockFiscalAdapter(ticket_status_code="99")
        first = await adapter.send_summary(CREDENTIALS, "20123456789-RA-20260314-00001", "")
        second = await adapter.send_summary(CREDENTIALS, "20123456789-RA-20260314-00002", "")

        result = await adapter.get_status(CREDENTIALS, first.ticket)

        self.assertEqual(result.status_code, "99")
        self.assertEqual(list(adapter._tickets), [second.ticket])
