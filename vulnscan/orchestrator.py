"""
VulnScan - Scan Orchestrator
Drives one scan run: TLS probe, browser crawl with passive analysis and form
fuzzing per page, then benchmarking. Progress goes out through the emitter;
findings go through the aggregator.
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional, Sequence
from urllib.parse import urlparse

from vulnscan.aggregator import FindingAggregator
from vulnscan.analyzers import AnalyzerSet, default_analyzers
from vulnscan.benchmarking import TELEMETRY_ENDPOINTS, calculate_scan_metrics, measure_baseline_latency
from vulnscan.browser import BrowserSession
from vulnscan.config import BrowserConfig, FetcherConfig, ScanConfig
from vulnscan.crawler import Crawler
from vulnscan.fallback import FallbackFetcher
from vulnscan.fuzzer import Fuzzer
from vulnscan.header_grade import HeaderGradeLookup
from vulnscan.models import (
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_FAILED,
    PageContext,
    ScanEvent,
    ScanOptions,
    utc_now_iso,
)
from vulnscan.proxy import ProxyRotator
from vulnscan.store import ScanStore
from vulnscan.tls_probe import TlsProbe


logger = logging.getLogger(__name__)

Emitter = Callable[[ScanEvent], Awaitable[None]]
BrowserFactory = Callable[[Optional[str]], BrowserSession]


class ScanPhase(str, Enum):
    INITIALIZING = "initializing"
    PROBING_TLS = "probing_tls"
    CRAWLING = "crawling"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ScanOrchestrator:
    """One instance per scan run attempt."""

    def __init__(
        self,
        scan_id: str,
        target: str,
        emit: Emitter,
        store: ScanStore,
        options: Optional[ScanOptions] = None,
        active_detector_ids: Sequence[str] = (),
        aggregator: Optional[FindingAggregator] = None,
        fetcher: Optional[FallbackFetcher] = None,
        analyzers: Optional[AnalyzerSet] = None,
        browser_factory: Optional[BrowserFactory] = None,
        tls_probe: Optional[TlsProbe] = None,
        proxies: Optional[ProxyRotator] = None,
        header_lookup: Optional[HeaderGradeLookup] = None,
        scan_config: Optional[ScanConfig] = None,
        browser_config: Optional[BrowserConfig] = None,
        fetcher_config: Optional[FetcherConfig] = None,
        telemetry_endpoints: Sequence[str] = TELEMETRY_ENDPOINTS,
    ):
        self.scan_id = scan_id
        self.target = target
        self.emit = emit
        self.store = store
        self.options = options or ScanOptions()
        self.scan_config = scan_config or ScanConfig()
        self.browser_config = browser_config or BrowserConfig()
        self.fetcher_config = fetcher_config or FetcherConfig()
        self.aggregator = aggregator or FindingAggregator(store)
        self.fetcher = fetcher or FallbackFetcher(self.fetcher_config)
        self.analyzers = (analyzers or default_analyzers()).select(active_detector_ids)
        self.browser_factory = browser_factory or (lambda proxy: BrowserSession(self.browser_config, proxy))
        self.tls_probe = tls_probe or TlsProbe(timeout=self.scan_config.tls_timeout_s)
        self.proxies = proxies or ProxyRotator(self.browser_config.proxies)
        self.header_lookup = header_lookup
        self.telemetry_endpoints = list(telemetry_endpoints)

        self.phase = ScanPhase.INITIALIZING
        self.pages_scanned = 0
        self.progress = 0
        self.failure_message: Optional[str] = None

    @property
    def max_depth(self) -> int:
        return max(0, min(self.options.depth, self.scan_config.depth_ceiling))

    @property
    def max_pages(self) -> int:
        return max(1, min(self.options.max_pages, self.scan_config.pages_ceiling))

    async def _emit(self, module: str, status: str, progress: int, message: str):
        self.progress = progress
        await self.emit(ScanEvent(
            scan_id=self.scan_id,
            module=module,
            status=status,
            progress_pct=progress,
            message=message,
        ))

    async def is_cancelled(self) -> bool:
        return await self.store.is_cancelled(self.scan_id)

    async def _add_findings(self, findings) -> int:
        added = 0
        for finding in findings:
            if await self.aggregator.add_finding(self.scan_id, finding):
                added += 1
        return added

    # ── Run ─────────────────────────────────────────────────────

    async def run(self) -> str:
        """Execute the scan. Returns the terminal status."""
        self.phase = ScanPhase.INITIALIZING
        if await self.is_cancelled():
            self.phase = ScanPhase.CANCELLED
            return STATUS_CANCELLED

        baseline_task = asyncio.create_task(measure_baseline_latency(
            self.fetcher,
            self.telemetry_endpoints,
            timeout=self.fetcher_config.baseline_timeout_s,
        ))
        await self._emit("system", "started", 5, "Launching headless engine (Playwright)...")

        browser = None
        try:
            self.phase = ScanPhase.PROBING_TLS
            await self._probe_tls()

            self.phase = ScanPhase.CRAWLING
            proxy = self.proxies.pick()
            if proxy:
                await self._emit("system", "started", 12,
                                 f"Routing traffic via proxy {ProxyRotator.redact(proxy)}")

            browser = self.browser_factory(proxy)
            await browser.start()
            await self._crawl(browser)

            if await self.is_cancelled():
                logger.info("[%s] Cancelled after %d pages", self.scan_id, self.pages_scanned)
                self.phase = ScanPhase.CANCELLED
                return STATUS_CANCELLED

            if self.header_lookup and self.scan_config.header_grade_lookup:
                await self._grade_headers()

            self.phase = ScanPhase.FINALIZING
            await self._finalize_benchmark(baseline_task)

            self.phase = ScanPhase.COMPLETED
            return STATUS_COMPLETED

        except Exception as e:
            # The worker publishes this as the terminal error once the record is failed.
            logger.exception("[%s] Engine failure", self.scan_id)
            self.phase = ScanPhase.FAILED
            self.failure_message = f"Engine failure: {e}"
            return STATUS_FAILED

        finally:
            if not baseline_task.done():
                baseline_task.cancel()
            if browser is not None:
                await browser.close()

    async def _probe_tls(self):
        if urlparse(self.target).scheme != "https":
            return
        await self._emit("tls", "started", 10, "Analyzing SSL/TLS configuration...")
        findings = await self.tls_probe.analyze(self.target, self.scan_id)
        added = await self._add_findings(findings)
        await self._emit("tls", "completed", 12, f"TLS analysis complete ({added} findings)")

    async def _crawl(self, browser: BrowserSession):
        crawler = Crawler(
            browser,
            self.target,
            max_depth=self.max_depth,
            max_pages=self.max_pages,
            subdomains=self.options.subdomains,
            rate_limit_rps=self.options.rate_limit_rps,
            navigation_timeout_ms=self.scan_config.navigation_timeout_ms,
            blocked_resources=self.browser_config.blocked_resources,
            capture_screenshots=self.scan_config.capture_screenshots,
            should_stop=self.is_cancelled,
        )
        fuzzer = Fuzzer(
            browser,
            self.scan_id,
            settle_ms=self.scan_config.settle_ms,
            navigation_timeout_ms=self.scan_config.navigation_timeout_ms,
        )

        async def on_page(page_ctx: PageContext):
            if await self.is_cancelled():
                return
            await self._process_page(page_ctx, fuzzer)

        await crawler.crawl(on_page)
        await self._emit("crawler", "completed", max(self.progress, 85),
                         f"Crawl finished: {self.pages_scanned} pages analyzed")

    async def _process_page(self, page_ctx: PageContext, fuzzer: Fuzzer):
        self.pages_scanned += 1
        pct = min(15 + self.pages_scanned * 5, 85)
        await self._emit("crawler", "started", pct, f"Analyzing {page_ctx.url}...")

        findings = self.analyzers.run(self.scan_id, page_ctx)
        for finding in findings:
            if page_ctx.screenshot and "screenshot" not in finding.evidence:
                finding.evidence["screenshot"] = page_ctx.screenshot
        await self._add_findings(findings)

        if page_ctx.forms:
            await self._emit("fuzzer", "started", pct,
                             f"Fuzzing {len(page_ctx.forms)} forms on {page_ctx.url}")
            fuzz_findings = await fuzzer.fuzz_page(page_ctx)
            await self._add_findings(fuzz_findings)
            await self._emit("fuzzer", "completed", pct,
                             f"Fuzzing done on {page_ctx.url} ({len(fuzz_findings)} findings)")

    async def _grade_headers(self):
        grade = await self.header_lookup.lookup(self.target)
        if grade is None:
            return
        finding = self.header_lookup.to_finding(self.scan_id, grade)
        if finding:
            await self.aggregator.add_finding(self.scan_id, finding)

    async def _finalize_benchmark(self, baseline_task: asyncio.Task):
        baseline_ms, source = await baseline_task
        async with self.store.lock(self.scan_id):
            scan = await self.store.get(self.scan_id)
            if scan is None:
                return
            scan.benchmark = calculate_scan_metrics(
                self.fetcher.metrics(),
                scan.start_time,
                utc_now_iso(),
                baseline_ms,
                source,
            )
            await self.store.save(scan)
