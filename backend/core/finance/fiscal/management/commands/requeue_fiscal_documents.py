from django.core.management.base import BaseCommand, CommandError

from finance.fiscal.services import (
    DEFAULT_REQUEUE_LIMIT,
    REQUEUE_STATUSES,
    FiscalEnqueueError,
    requeue_documents,
)


class Command(BaseCommand):
    help = (
        "Queue fiscal documents again for submission. ERROR documents are reset "
        "first; documents that already have a queued job are skipped."
    )

    def add_arguments(self, parser):
        parser.add_argument("--document", type=int, default=None, help="Requeue a single document id.")
        parser.add_argument("--company", type=int, default=None, help="Restrict to one company id.")
        parser.add_argument(
            "--status",
            choices=[str(status) for status in REQUEUE_STATUSES],
            default=None,
            help="Only documents in this status (default: SIGNED, ERROR and SENT).",
        )
        parser.add_argument(
            "--limit",
            type=int,
            default=DEFAULT_REQUEUE_LIMIT,
            help="Max documents to requeue.",
        )

    def handle(self, *args, **options):
        try:
            result = requeue_documents(
                document_id=options.get("document"),
                status=options.get("status"),
                company_id=options.get("company"),
                limit=options.get("limit"),
            )
        except FiscalEnqueueError as exc:
            raise CommandError(str(exc)) from exc

        self.stdout.write(
            self.style.SUCCESS(
                f"scanned={result.scanned} requeued={result.requeued} skipped={result.skipped}"
            )
        )
