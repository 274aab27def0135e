"""
VulnScan - Headless Browser Abstraction
The crawler and fuzzer only talk to PageSession; BrowserSession is the
Playwright-backed implementation that owns one Chromium process per scan run.
"""

import base64
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Dict, List, Optional

from vulnscan.config import BrowserConfig
from vulnscan.models import FormDefinition, FormInput


logger = logging.getLogger(__name__)


class BrowserUnavailable(Exception):
    """Chromium could not be launched."""


@dataclass
class NavigationResult:
    status: int
    headers: Dict[str, str] = field(default_factory=dict)


# Runs in the page; collects every <form> with its fields.
_FORMS_JS = """
() => Array.from(document.forms).map(f => ({
    action: f.action,
    method: (f.getAttribute('method') || 'get'),
    inputs: Array.from(f.querySelectorAll('input, textarea, select')).map(i => ({
        name: i.name || i.id || '',
        type: (i.tagName.toLowerCase() === 'input' ? (i.type || 'text') : i.tagName.toLowerCase())
    })).filter(i => i.name),
    html: f.outerHTML
}))
"""

_LINKS_JS = """
() => Array.from(document.querySelectorAll('a[href]')).map(a => a.href)
"""


def _selector_for(name: str) -> str:
    safe = name.replace("\\", "\\\\").replace('"', '\\"')
    return f'[name="{safe}"], [id="{safe}"]'


class PageSession(ABC):
    """One isolated browser tab."""

    @abstractmethod
    async def block_resources(self, patterns: List[str]) -> None: ...

    @abstractmethod
    async def navigate(self, url: str, timeout_ms: int) -> Optional[NavigationResult]: ...

    @abstractmethod
    async def content(self) -> str: ...

    @abstractmethod
    async def extract_forms(self) -> List[FormDefinition]: ...

    @abstractmethod
    async def extract_links(self) -> List[str]: ...

    @abstractmethod
    async def fill_input(self, name: str, value: str) -> bool: ...

    @abstractmethod
    async def submit(self) -> None: ...

    @abstractmethod
    async def wait(self, ms: int) -> None: ...

    @abstractmethod
    def on_console(self, callback: Callable[[str], None]) -> None: ...

    @abstractmethod
    async def screenshot(self) -> Optional[str]: ...

    @abstractmethod
    async def close(self) -> None: ...


class PlaywrightPageSession(PageSession):
    """PageSession over a Playwright Page."""

    def __init__(self, page):
        self._page = page
        self._last_filled = None

    async def block_resources(self, patterns: List[str]) -> None:
        async def _abort(route):
            await route.abort()

        for pattern in patterns:
            await self._page.route(pattern, _abort)

    async def navigate(self, url: str, timeout_ms: int) -> Optional[NavigationResult]:
        resp = await self._page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)
        if resp is None:
            return None
        return NavigationResult(status=resp.status, headers=dict(resp.headers))

    async def content(self) -> str:
        return await self._page.content()

    async def extract_forms(self) -> List[FormDefinition]:
        raw = await self._page.evaluate(_FORMS_JS)
        return [
            FormDefinition(
                action=f.get("action") or "",
                method=str(f.get("method") or "get").upper(),
                inputs=tuple(FormInput(name=i["name"], type=str(i.get("type") or "text").lower())
                             for i in f.get("inputs") or []),
                raw_html=f.get("html") or "",
            )
            for f in raw or []
        ]

    async def extract_links(self) -> List[str]:
        return list(await self._page.evaluate(_LINKS_JS) or [])

    async def fill_input(self, name: str, value: str) -> bool:
        locator = self._page.locator(_selector_for(name)).first
        if not await locator.is_visible():
            return False
        await locator.fill(value)
        self._last_filled = locator
        return True

    async def submit(self) -> None:
        # Enter on the last filled field; falls back to the focused element.
        if self._last_filled is not None:
            await self._last_filled.press("Enter")
        else:
            await self._page.keyboard.press("Enter")

    async def wait(self, ms: int) -> None:
        await self._page.wait_for_timeout(ms)

    def on_console(self, callback: Callable[[str], None]) -> None:
        self._page.on("console", lambda msg: callback(msg.text))

    async def screenshot(self) -> Optional[str]:
        try:
            buf = await self._page.screenshot(type="jpeg", quality=50)
        except Exception as e:
            logger.debug("Screenshot failed: %s", e)
            return None
        return base64.b64encode(buf).decode("ascii")

    async def close(self) -> None:
        try:
            await self._page.close()
        except Exception as e:
            logger.debug("Page close failed: %s", e)


class BrowserSession:
    """One headless Chromium process for a scan run."""

    def __init__(self, config: Optional[BrowserConfig] = None, proxy: Optional[str] = None):
        self.config = config or BrowserConfig()
        self.proxy = proxy
        self._playwright = None
        self._browser = None
        self._context = None

    async def start(self) -> "BrowserSession":
        from playwright.async_api import Error as PlaywrightError, async_playwright

        launch_kwargs = {
            "headless": self.config.headless,
            "args": list(self.config.launch_args),
        }
        if self.proxy:
            launch_kwargs["proxy"] = {"server": self.proxy}
        if self.config.executable_path:
            launch_kwargs["executable_path"] = str(self.config.executable_path)

        try:
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(**launch_kwargs)
            self._context = await self._browser.new_context(
                user_agent=self.config.user_agent,
                ignore_https_errors=True,
            )
        except PlaywrightError as e:
            await self.close()
            raise BrowserUnavailable(f"Chromium launch failed: {e}") from e
        return self

    async def new_page(self) -> PageSession:
        if self._context is None:
            raise BrowserUnavailable("Browser session not started")
        return PlaywrightPageSession(await self._context.new_page())

    @asynccontextmanager
    async def page(self) -> AsyncIterator[PageSession]:
        """Scoped tab: closed on every exit path."""
        session = await self.new_page()
        try:
            yield session
        finally:
            await session.close()

    async def close(self) -> None:
        for name in ("_context", "_browser"):
            obj = getattr(self, name)
            if obj is not None:
                try:
                    await obj.close()
                except Exception as e:
                    logger.debug("Error closing %s: %s", name.strip("_"), e)
                setattr(self, name, None)
        if self._playwright is not None:
            try:
                await self._playwright.stop()
            except Exception as e:
                logger.debug("Error stopping playwright: %s", e)
            self._playwright = None

    async def __aenter__(self) -> "BrowserSession":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
