import asyncio
import signal

from django.core.management.base import BaseCommand

from finance.fiscal.worker import build_fiscal_worker


class Command(BaseCommand):
    help = (
        "Run the fiscal submission worker. Claims queued jobs, submits them to the "
        "tax authority and stops gracefully on SIGTERM/SIGINT."
    )

    def add_arguments(self, parser):
        parser.add_argument(
            "--once",
            action="store_true",
            help="Run a single poll cycle, wait for the claimed jobs and exit.",
        )
        parser.add_argument(
            "--concurrency",
            type=int,
            default=None,
            help="Max jobs processed at once (default: FISCAL_WORKER_MAX_CONCURRENCY).",
        )
        parser.add_argument(
            "--poll-interval",
            type=float,
            default=None,
            help="Seconds between polls (default: FISCAL_WORKER_POLL_INTERVAL_SECONDS).",
        )
        parser.add_argument(
            "--worker-id",
            default=None,
            help="Lock owner name (default: fiscal-worker-<host>-<pid>).",
        )

    def handle(self, *args, **options):
        worker = build_fiscal_worker(
            worker_id=options.get("worker_id"),
            max_concurrency=options.get("concurrency"),
            poll_interval=options.get("poll_interval"),
        )
        if options.get("once"):
            results = asyncio.run(self._run_once(worker))
            self.stdout.write(
                self.style.SUCCESS(f"[ONCE] worker={worker.worker_id} processed={len(results)}")
            )
            return

        asyncio.run(self._run_forever(worker))
        self.stdout.write(self.style.SUCCESS(f"worker={worker.worker_id} stopped"))

    async def _run_once(self, worker):
        try:
            return await worker.run_once()
        finally:
            await worker.shutdown()

    async def _run_forever(self, worker):
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(signum, worker.request_stop, signal.Signals(signum).name)
        await worker.run()
