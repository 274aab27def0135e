"""
VulnScan - Job Queue & Workers
In-process job queue, the worker slots that run scans off it, and the
reconciler that cleans up after crashed or interrupted runs.
"""

import asyncio
import contextlib
import logging
import os
from typing import Callable, List, Optional

from vulnscan.config import WorkerConfig
from vulnscan.events import CANCELLED_MESSAGE, EventBus
from vulnscan.models import (
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_QUEUED,
    STATUS_RUNNING,
    ScanEvent,
    ScanJob,
    parse_iso,
    utc_now,
    utc_now_iso,
)
from vulnscan.orchestrator import Emitter, ScanOrchestrator
from vulnscan.store import ScanStore


logger = logging.getLogger(__name__)

OrchestratorFactory = Callable[[ScanJob, Emitter], ScanOrchestrator]


class JobQueue:
    """FIFO of ScanJobs. One job is one run attempt."""

    def __init__(self, max_attempts: int = 2):
        self.max_attempts = max_attempts
        self._queue: asyncio.Queue = asyncio.Queue()

    async def enqueue(self, job: ScanJob):
        await self._queue.put(job)

    async def requeue(self, job: ScanJob) -> Optional[ScanJob]:
        """Enqueue the next attempt, or None when attempts are exhausted."""
        if job.attempt >= self.max_attempts:
            return None
        retry = job.requeued()
        await self.enqueue(retry)
        return retry

    async def get(self) -> ScanJob:
        return await self._queue.get()

    def task_done(self):
        self._queue.task_done()

    def qsize(self) -> int:
        return self._queue.qsize()


def make_emitter(store: ScanStore, bus: EventBus, scan_id: str) -> Emitter:
    """Publish live, then append to the persisted history."""

    async def emit(event: ScanEvent):
        bus.publish(event)
        async with store.lock(scan_id):
            scan = await store.get(scan_id)
            if scan is not None:
                scan.events.append(event)
                await store.save(scan)

    return emit


async def finalize_scan(store: ScanStore, scan_id: str, status: str):
    async with store.lock(scan_id):
        scan = await store.get(scan_id)
        if scan is None:
            return
        scan.status = status
        scan.end_time = utc_now_iso()
        elapsed = parse_iso(scan.end_time) - parse_iso(scan.start_time)
        scan.stats.duration_ms = max(0, int(elapsed.total_seconds() * 1000))
        await store.save(scan)


class ScanWorker:
    """Runs one job at a time."""

    def __init__(self, slot: int, queue: JobQueue, store: ScanStore, bus: EventBus,
                 orchestrator_factory: OrchestratorFactory, config: Optional[WorkerConfig] = None):
        self.slot = slot
        self.queue = queue
        self.store = store
        self.bus = bus
        self.orchestrator_factory = orchestrator_factory
        self.config = config or WorkerConfig()
        self.worker_id = f"{os.getpid()}-{slot}"
        self.current_scan: Optional[str] = None

    async def _heartbeat(self, scan_id: str):
        while True:
            await asyncio.sleep(self.config.heartbeat_interval_s)
            await self.store.touch_heartbeat(scan_id)

    async def run_forever(self):
        while True:
            job = await self.queue.get()
            try:
                await self.process(job)
            except Exception:
                logger.exception("Worker %s crashed on job %s", self.worker_id, job.id)
            finally:
                self.queue.task_done()

    async def process(self, job: ScanJob):
        scan = await self.store.get(job.scan_id)
        if scan is None:
            logger.error("Scan %s not found, dropping job %s", job.scan_id, job.id)
            return
        if scan.is_terminal:
            logger.info("Scan %s already %s, skipping", scan.id, scan.status)
            return

        emit = make_emitter(self.store, self.bus, scan.id)
        if await self.store.is_cancelled(scan.id):
            await finalize_scan(self.store, scan.id, STATUS_CANCELLED)
            await emit(ScanEvent(scan.id, "system", "error", 100, CANCELLED_MESSAGE))
            return

        async with self.store.lock(scan.id):
            scan = await self.store.get(scan.id)
            if scan is None or scan.is_terminal:
                return
            scan.status = STATUS_RUNNING
            scan.worker_id = self.worker_id
            scan.heartbeat_at = utc_now_iso()
            await self.store.save(scan)

        logger.info("Worker %s processing scan %s (attempt %d)", self.worker_id, scan.id, job.attempt)
        self.current_scan = scan.id
        heartbeat = asyncio.create_task(self._heartbeat(scan.id))
        try:
            await emit(ScanEvent(scan.id, "system", "started", 0, "Worker picked up scan job."))
            orchestrator = self.orchestrator_factory(job, emit)
            status = await orchestrator.run()

            # Record first, then the terminal event, so a subscriber that
            # finds the record non-terminal is guaranteed to see the event.
            if status == STATUS_COMPLETED:
                await finalize_scan(self.store, scan.id, STATUS_COMPLETED)
                await emit(ScanEvent(scan.id, "system", "completed", 100, "Scan completed successfully."))
            elif status == STATUS_CANCELLED:
                await finalize_scan(self.store, scan.id, STATUS_CANCELLED)
                await emit(ScanEvent(scan.id, "system", "error", 100, CANCELLED_MESSAGE))
            else:
                await finalize_scan(self.store, scan.id, STATUS_FAILED)
                await emit(ScanEvent(scan.id, "system", "error", 100,
                                     orchestrator.failure_message or "Scan failed."))

        except Exception as e:
            logger.exception("Scan %s crashed in worker %s", scan.id, self.worker_id)
            await self._handle_crash(job, emit, e)

        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat
            self.current_scan = None

    async def _handle_crash(self, job: ScanJob, emit: Emitter, error: Exception):
        if self.config.retry_on_crash:
            retry = await self.queue.requeue(job)
            if retry is not None:
                async with self.store.lock(job.scan_id):
                    scan = await self.store.get(job.scan_id)
                    if scan is not None:
                        scan.status = STATUS_QUEUED
                        scan.worker_id = None
                        await self.store.save(scan)
                await emit(ScanEvent(job.scan_id, "system", "warning", 0,
                                     f"Worker error, retrying (attempt {retry.attempt}): {error}"))
                return

        await finalize_scan(self.store, job.scan_id, STATUS_FAILED)
        await emit(ScanEvent(job.scan_id, "system", "error", 100, f"Fatal worker error: {error}"))


class WorkerPool:
    def __init__(self, slots: int, queue: JobQueue, store: ScanStore, bus: EventBus,
                 orchestrator_factory: OrchestratorFactory, config: Optional[WorkerConfig] = None):
        self.workers = [
            ScanWorker(slot, queue, store, bus, orchestrator_factory, config)
            for slot in range(max(1, slots))
        ]
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def start(self):
        if self._tasks:
            return
        self._tasks = [asyncio.create_task(w.run_forever()) for w in self.workers]
        logger.info("Started %d worker slot(s)", len(self._tasks))

    async def stop(self):
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []


class Reconciler:
    """Fails runs whose worker stopped heart-beating; re-enqueues queued scans on startup."""

    def __init__(self, store: ScanStore, queue: JobQueue, bus: EventBus,
                 config: Optional[WorkerConfig] = None):
        self.store = store
        self.queue = queue
        self.bus = bus
        self.config = config or WorkerConfig()
        self._task: Optional[asyncio.Task] = None

    def _is_stale(self, heartbeat_at: Optional[str]) -> bool:
        if not heartbeat_at:
            return True
        age = (utc_now() - parse_iso(heartbeat_at)).total_seconds()
        return age > self.config.stale_after_s

    async def reconcile(self, startup: bool = False) -> dict:
        failed = 0
        for scan in await self.store.list_by_status(STATUS_RUNNING):
            if not self._is_stale(scan.heartbeat_at):
                continue
            logger.warning("Scan %s lost its worker (%s), marking failed", scan.id, scan.worker_id)
            await finalize_scan(self.store, scan.id, STATUS_FAILED)
            await make_emitter(self.store, self.bus, scan.id)(ScanEvent(
                scan.id, "system", "error", 100, "Scan interrupted: worker heartbeat lost.",
            ))
            failed += 1

        requeued = 0
        if startup:
            for scan in await self.store.list_by_status(STATUS_QUEUED):
                await self.queue.enqueue(scan.to_job())
                requeued += 1

        if failed or requeued:
            logger.info("Reconciled: %d stale run(s) failed, %d queued scan(s) re-enqueued", failed, requeued)
        return {"failed": failed, "requeued": requeued}

    async def _loop(self):
        while True:
            await asyncio.sleep(self.config.reconcile_interval_s)
            try:
                await self.reconcile()
            except Exception:
                logger.exception("Reconcile pass failed")

    async def start(self):
        await self.reconcile(startup=True)
        if self._task is None:
            self._task = asyncio.create_task(self._loop())

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
