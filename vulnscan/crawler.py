"""
VulnScan - Browser Crawler
Breadth-first crawl of same-origin pages through a headless browser.
Each page is handed to the caller (analyzers, fuzzer) before the crawl moves on.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Deque, List, Optional, Sequence, Set, Tuple
from urllib.parse import urlparse, urlunparse

from vulnscan.browser import BrowserSession
from vulnscan.models import PageContext


logger = logging.getLogger(__name__)

PageCallback = Callable[[PageContext], Awaitable[None]]


def normalize_url(url: str) -> str:
    """Drop the fragment; everything else is significant."""
    parsed = urlparse(url)
    return urlunparse(parsed._replace(fragment=""))


def registrable_suffix(host: str) -> str:
    """Last two labels of a hostname (example.com for a.b.example.com)."""
    labels = [l for l in (host or "").lower().split(".") if l]
    if len(labels) <= 2:
        return ".".join(labels)
    return ".".join(labels[-2:])


class Crawler:
    """Bounded BFS crawler. One instance per scan run."""

    def __init__(
        self,
        browser: BrowserSession,
        start_url: str,
        max_depth: int = 2,
        max_pages: int = 15,
        subdomains: bool = False,
        rate_limit_rps: float = 0.0,
        navigation_timeout_ms: int = 15000,
        blocked_resources: Sequence[str] = (),
        capture_screenshots: bool = True,
        should_stop: Optional[Callable[[], Awaitable[bool]]] = None,
    ):
        self.browser = browser
        self.start_url = normalize_url(start_url)
        self.max_depth = max(0, int(max_depth))
        self.max_pages = max(1, int(max_pages))
        self.subdomains = subdomains
        self.rate_limit_rps = rate_limit_rps
        self.navigation_timeout_ms = navigation_timeout_ms
        self.blocked_resources = list(blocked_resources)
        self.capture_screenshots = capture_screenshots
        self.should_stop = should_stop

        seed = urlparse(self.start_url)
        self.origin = (seed.scheme, seed.netloc.lower())
        self.seed_suffix = registrable_suffix(seed.hostname or "")

        self.visited: Set[str] = set()
        self.queue: Deque[Tuple[str, int]] = deque([(self.start_url, 0)])
        self.pages_found = 0
        self._last_nav = 0.0

    def in_scope(self, url: str) -> bool:
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https"):
            return False
        if (parsed.scheme, parsed.netloc.lower()) == self.origin:
            return True
        if self.subdomains and parsed.hostname:
            host = parsed.hostname.lower()
            return host == self.seed_suffix or host.endswith("." + self.seed_suffix)
        return False

    async def _throttle(self):
        if not self.rate_limit_rps or self.rate_limit_rps <= 0:
            return
        interval = 1.0 / self.rate_limit_rps
        wait = self._last_nav + interval - time.monotonic()
        if wait > 0:
            await asyncio.sleep(wait)
        self._last_nav = time.monotonic()

    async def crawl(self, on_page_found: PageCallback) -> int:
        """Run until the queue drains, the page budget is hit, or should_stop fires.

        Returns the number of pages handed to on_page_found.
        """
        while self.queue and len(self.visited) < self.max_pages:
            if self.should_stop and await self.should_stop():
                logger.info("Crawl stopped early after %d pages", self.pages_found)
                break

            url, depth = self.queue.popleft()
            if url in self.visited:
                continue
            self.visited.add(url)

            try:
                page_ctx, links = await self._visit(url)
            except Exception as e:
                logger.warning("Failed to crawl %s: %s", url, e)
                continue
            if page_ctx is None:
                continue

            self.pages_found += 1
            await on_page_found(page_ctx)

            if depth < self.max_depth:
                for link in links:
                    link = normalize_url(link)
                    if link not in self.visited and self.in_scope(link):
                        self.queue.append((link, depth + 1))

        return self.pages_found

    async def _visit(self, url: str) -> Tuple[Optional[PageContext], List[str]]:
        await self._throttle()
        async with self.browser.page() as page:
            if self.blocked_resources:
                await page.block_resources(self.blocked_resources)

            nav = await page.navigate(url, self.navigation_timeout_ms)
            if nav is None:
                logger.debug("No response for %s", url)
                return None, []

            html = await page.content()
            forms = await page.extract_forms()
            screenshot = await page.screenshot() if self.capture_screenshots else None
            links = await page.extract_links()

        return PageContext(
            url=url,
            html=html,
            headers=dict(nav.headers),
            forms=forms,
            screenshot=screenshot,
        ), links
