from __future__ import annotations

import asyncio
import logging
import os
import socket
import time
from typing import Callable

from django.conf import settings

from finance.fiscal.adapters import FiscalAdapterPool
from finance.fiscal.audit import load_audit_sink
from finance.fiscal.credentials import CredentialsProvider
from finance.fiscal.processor import FiscalJobProcessor, ProcessResult
from finance.fiscal.retry import BackoffPolicy
from finance.fiscal.store import FiscalJobStore

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    return f"fiscal-worker-{socket.gethostname()}-{os.getpid()}"


class FiscalWorker:
    """Polling loop that claims ready jobs and runs them concurrently.

    Dispatch is fire-and-track: claimed jobs run as tasks while the loop keeps
    polling, and `in_flight` bounds how many run at once. On stop, no new jobs
    are claimed and in-flight ones get `shutdown_grace` seconds to finish;
    the rest are abandoned and their lease expires.
    """

    def __init__(
        self,
        *,
        store: FiscalJobStore,
        processor: FiscalJobProcessor,
        worker_id: str | None = None,
        max_concurrency: int | None = None,
        poll_interval: float | None = None,
        shutdown_grace: float | None = None,
        health_interval: float | None = None,
        adapter_pool: FiscalAdapterPool | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.processor = processor
        self.worker_id = worker_id or default_worker_id()
        self.max_concurrency = max_concurrency or int(getattr(settings, "FISCAL_WORKER_MAX_CONCURRENCY", 3))
        self.poll_interval = (
            poll_interval
            if poll_interval is not None
            else float(getattr(settings, "FISCAL_WORKER_POLL_INTERVAL_SECONDS", 10.0))
        )
        self.shutdown_grace = (
            shutdown_grace
            if shutdown_grace is not None
            else float(getattr(settings, "FISCAL_WORKER_SHUTDOWN_GRACE_SECONDS", 30.0))
        )
        self.health_interval = (
            health_interval
            if health_interval is not None
            else float(getattr(settings, "FISCAL_WORKER_HEALTH_INTERVAL_SECONDS", 60.0))
        )
        self.adapter_pool = adapter_pool
        self._clock = clock
        self._tasks: set[asyncio.Task] = set()
        self._running_ids: set[int] = set()
        self._stop = asyncio.Event()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def request_stop(self, reason: str = "") -> None:
        if not self._stop.is_set():
            logger.info(
                "fiscal.worker.stop_requested worker_id=%s reason=%s in_flight=%s",
                self.worker_id,
                reason or "-",
                self.in_flight,
            )
        self._stop.set()

    async def poll_once(self) -> list[asyncio.Task]:
        """Claim up to the free slots and start them; does not wait for completion."""

        free_slots = self.max_concurrency - self.in_flight
        if free_slots <= 0 or self.stopping:
            return []

        jobs = await self.store.find_ready(free_slots)
        started: list[asyncio.Task] = []
        for job in jobs:
            if self.stopping:
                break
            if job.id in self._running_ids:
                # Our lease expired while the task still runs.
                logger.warning(
                    "fiscal.worker.skip_in_flight worker_id=%s fiscal_job_id=%s",
                    self.worker_id,
                    job.id,
                )
                continue
            if not await self.store.try_claim(job.id, self.worker_id):
                # Another worker won the race.
                continue

            task = asyncio.create_task(self._run_job(job.id), name=f"fiscal-job-{job.id}")
            self._tasks.add(task)
            self._running_ids.add(job.id)
            task.add_done_callback(self._tasks.discard)
            task.add_done_callback(lambda _task, job_id=job.id: self._running_ids.discard(job_id))
            started.append(task)

        if started:
            logger.info(
                "fiscal.worker.dispatched worker_id=%s jobs=%s in_flight=%s/%s",
                self.worker_id,
                len(started),
                self.in_flight,
                self.max_concurrency,
            )
        return started

    async def run_once(self) -> list[ProcessResult]:
        """Single poll cycle that waits for the jobs it started (cron/tests)."""

        tasks = await self.poll_once()
        if not tasks:
            return []
        results = await asyncio.gather(*tasks)
        return [result for result in results if result is not None]

    async def run(self) -> None:
        logger.info(
            "fiscal.worker.started worker_id=%s poll_interval=%s max_concurrency=%s",
            self.worker_id,
            self.poll_interval,
            self.max_concurrency,
        )
        next_health_at = self._clock()
        try:
            while not self.stopping:
                try:
                    await self.poll_once()
                except Exception:
                    logger.exception("fiscal.worker.poll.failed worker_id=%s", self.worker_id)

                if self._clock() >= next_health_at:
                    await self.log_health()
                    next_health_at = self._clock() + self.health_interval

                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.shutdown()

    async def shutdown(self) -> int:
        """Wait up to the grace period for in-flight jobs; returns how many were abandoned."""

        self._stop.set()
        abandoned = 0
        if self._tasks:
            logger.info(
                "fiscal.worker.draining worker_id=%s in_flight=%s grace_seconds=%s",
                self.worker_id,
                self.in_flight,
                self.shutdown_grace,
            )
            _done, pending = await asyncio.wait(set(self._tasks), timeout=self.shutdown_grace)
            abandoned = len(pending)
            if abandoned:
                logger.warning(
                    "fiscal.worker.abandoned worker_id=%s jobs=%s",
                    self.worker_id,
                    abandoned,
                )

        await self.processor.drain_audit(self.shutdown_grace)
        if self.adapter_pool is not None:
            await self.adapter_pool.aclose()
        logger.info("fiscal.worker.stopped worker_id=%s", self.worker_id)
        return abandoned

    async def log_health(self) -> None:
        try:
            stats = await self.store.stats()
        except Exception:
            logger.exception("fiscal.worker.health.failed worker_id=%s", self.worker_id)
            return
        logger.info(
            "fiscal.worker.health worker_id=%s in_flight=%s/%s %s",
            self.worker_id,
            self.in_flight,
            self.max_concurrency,
            stats.as_log_fields(),
        )

    async def _run_job(self, job_id: int) -> ProcessResult | None:
        started = time.monotonic()
        try:
            result = await self.processor.process(job_id, self.worker_id)
        except Exception:
            logger.exception("fiscal.worker.job.crashed worker_id=%s fiscal_job_id=%s", self.worker_id, job_id)
            return None

        logger.info(
            "fiscal.worker.job.finished worker_id=%s fiscal_job_id=%s outcome=%s duration_ms=%s",
            self.worker_id,
            job_id,
            result.outcome.value,
            int((time.monotonic() - started) * 1000),
        )
        return result


def build_fiscal_worker(
    *,
    worker_id: str | None = None,
    max_concurrency: int | None = None,
    poll_interval: float | None = None,
) -> FiscalWorker:
    """Wire the worker from settings: store, credentials, adapters, policy and audit sink."""

    store = FiscalJobStore()
    adapter_pool = FiscalAdapterPool()
    processor = FiscalJobProcessor(
        store=store,
        credentials=CredentialsProvider(),
        adapter_for=adapter_pool.get,
        policy=BackoffPolicy.from_settings(),
        audit_sink=load_audit_sink(),
    )
    return FiscalWorker(
        store=store,
        processor=processor,
        worker_id=worker_id,
        max_concurrency=max_concurrency,
        poll_interval=poll_interval,
        adapter_pool=adapter_pool,
    )
