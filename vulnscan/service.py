"""
VulnScan - Scan Service
Facade the API talks to: submit, inspect, cancel and stream scans.
Owns the shared engine pieces (store, bus, queue, fetcher, workers).
"""

import logging
from typing import AsyncIterator, Dict, List, Optional, Sequence
from urllib.parse import urlparse

from vulnscan.analyzers import AnalyzerSet, default_analyzers
from vulnscan.benchmarking import module_performance
from vulnscan.config import AppConfig, get_config
from vulnscan.events import CANCELLED_MESSAGE, EventBus, terminal_event_for
from vulnscan.fallback import FallbackFetcher
from vulnscan.header_grade import HeaderGradeLookup
from vulnscan.models import STATUS_QUEUED, ScanEvent, ScanJob, ScanOptions, ScanResult, new_id
from vulnscan.orchestrator import BrowserFactory, Emitter, ScanOrchestrator
from vulnscan.proxy import ProxyRotator
from vulnscan.store import ScanStore
from vulnscan.worker import JobQueue, Reconciler, WorkerPool, make_emitter


logger = logging.getLogger(__name__)


class InvalidTarget(ValueError):
    """Target is not an absolute http(s) URL with a host."""


def validate_target(url: str) -> str:
    url = (url or "").strip()
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise InvalidTarget(f"Invalid target URL: {url!r}")
    return url


class ScanService:
    def __init__(
        self,
        config: Optional[AppConfig] = None,
        store: Optional[ScanStore] = None,
        bus: Optional[EventBus] = None,
        fetcher: Optional[FallbackFetcher] = None,
        analyzers: Optional[AnalyzerSet] = None,
        browser_factory: Optional[BrowserFactory] = None,
        **orchestrator_overrides,
    ):
        self.config = config or get_config()
        self.store = store or ScanStore(self.config.store.db_path, durable=self.config.store.durable)
        self.bus = bus or EventBus()
        self.fetcher = fetcher or FallbackFetcher(self.config.fetcher)
        self.analyzers = analyzers or default_analyzers()
        self.browser_factory = browser_factory
        self.proxies = ProxyRotator(self.config.browser.proxies)
        self.header_lookup = HeaderGradeLookup(self.fetcher)
        self.orchestrator_overrides = orchestrator_overrides

        self.queue = JobQueue(max_attempts=self.config.worker.max_attempts)
        self.pool = WorkerPool(
            self.config.worker.slots, self.queue, self.store, self.bus,
            self.build_orchestrator, self.config.worker,
        )
        self.reconciler = Reconciler(self.store, self.queue, self.bus, self.config.worker)

    def build_orchestrator(self, job: ScanJob, emit: Emitter) -> ScanOrchestrator:
        kwargs = dict(
            scan_id=job.scan_id,
            target=job.target,
            emit=emit,
            store=self.store,
            options=job.options,
            active_detector_ids=job.active_detector_ids,
            fetcher=self.fetcher,
            analyzers=self.analyzers,
            browser_factory=self.browser_factory,
            proxies=self.proxies,
            header_lookup=self.header_lookup,
            scan_config=self.config.scan,
            browser_config=self.config.browser,
            fetcher_config=self.config.fetcher,
        )
        kwargs.update(self.orchestrator_overrides)
        return ScanOrchestrator(**kwargs)

    # ── Lifecycle ───────────────────────────────────────────────

    async def start(self, workers: bool = True):
        await self.store.connect()
        await self.reconciler.start()
        if workers:
            self.pool.start()

    async def stop(self):
        await self.pool.stop()
        await self.reconciler.stop()
        await self.fetcher.aclose()
        await self.store.close()

    # ── Operations ──────────────────────────────────────────────

    def _clamp_options(self, options: Optional[ScanOptions]) -> ScanOptions:
        scan_cfg = self.config.scan
        options = options or ScanOptions(
            depth=scan_cfg.max_depth,
            max_pages=scan_cfg.max_pages,
            rate_limit_rps=scan_cfg.rate_limit_rps,
        )
        return ScanOptions(
            depth=max(0, min(options.depth, scan_cfg.depth_ceiling)),
            max_pages=max(1, min(options.max_pages, scan_cfg.pages_ceiling)),
            rate_limit_rps=options.rate_limit_rps if options.rate_limit_rps > 0 else scan_cfg.rate_limit_rps,
            subdomains=options.subdomains,
        )

    async def submit_scan(
        self,
        url: str,
        framework: str = "auto",
        options: Optional[ScanOptions] = None,
        active_detector_ids: Optional[Sequence[str]] = None,
    ) -> str:
        target = validate_target(url)
        scan = ScanResult(
            id=new_id("scan"),
            target=target,
            status=STATUS_QUEUED,
            options=self._clamp_options(options),
            active_detector_ids=list(active_detector_ids or []),
            framework=framework or "auto",
        )
        await self.store.save(scan)
        await self.queue.enqueue(scan.to_job())
        logger.info("Queued scan %s for %s", scan.id, target)
        return scan.id

    async def get_scan(self, scan_id: str) -> Optional[ScanResult]:
        return await self.store.get(scan_id)

    async def list_scans(self) -> List[ScanResult]:
        return await self.store.list_all()

    async def cancel_scan(self, scan_id: str) -> bool:
        """Request cancellation. Idempotent; True when the scan exists."""
        seen = await self.store.cancel(scan_id)
        if seen is None:
            return False
        if seen == STATUS_QUEUED:
            # Never reached a worker, so nobody else will close the stream.
            await make_emitter(self.store, self.bus, scan_id)(
                ScanEvent(scan_id, "system", "error", 100, CANCELLED_MESSAGE)
            )
        logger.info("Cancellation requested for %s", scan_id)
        return True

    async def stream_events(self, scan_id: str) -> AsyncIterator[ScanEvent]:
        """Live events for a scan, ending with its terminal event."""
        async with self.bus.subscribe(scan_id) as subscription:
            scan = await self.store.get(scan_id)
            if scan is None:
                return
            if scan.is_terminal:
                yield terminal_event_for(scan)
                return

            yield ScanEvent(scan_id, "system", "started", 0, "connected")
            async for event in subscription:
                yield event

    # ── Benchmarks ──────────────────────────────────────────────

    def benchmark_metrics(self, since: Optional[str] = None, until: Optional[str] = None) -> List[Dict]:
        return [m.to_dict() for m in self.fetcher.metrics(since, until)]

    async def module_stats(self) -> List[Dict]:
        return module_performance(await self.store.list_all())
