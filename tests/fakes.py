"""In-memory stand-ins for the browser, used by crawler/fuzzer/orchestrator tests."""

import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from vulnscan.browser import BrowserSession, NavigationResult, PageSession
from vulnscan.models import FormDefinition, FormInput

_CONSOLE_LOG_RE = re.compile(r'console\.log\("([^"]+)"\)')


@dataclass
class FakePage:
    html: str = "<html><body>ok</body></html>"
    status: int = 200
    headers: Dict[str, str] = field(default_factory=lambda: {"content-type": "text/html"})
    links: List[str] = field(default_factory=list)
    forms: List[FormDefinition] = field(default_factory=list)
    reflects_xss: bool = False
    sql_error: str = ""
    fail: bool = False


def text_form(action: str, *fields, raw_html: str = "<form></form>") -> FormDefinition:
    return FormDefinition(
        action=action,
        method="GET",
        inputs=tuple(FormInput(name=n, type=t) for n, t in fields),
        raw_html=raw_html,
    )


class FakeSite:
    def __init__(self, pages: Optional[Dict[str, FakePage]] = None):
        self.pages: Dict[str, FakePage] = dict(pages or {})
        self.navigations: List[str] = []

    def add(self, url: str, **kwargs) -> FakePage:
        page = FakePage(**kwargs)
        self.pages[url] = page
        return page


class FakePageSession(PageSession):
    def __init__(self, site: FakeSite, browser: "FakeBrowser"):
        self.site = site
        self.browser = browser
        self.url: Optional[str] = None
        self.filled: Dict[str, str] = {}
        self.submitted = False
        self.closed = False
        self.blocked: List[str] = []
        self._console: List[Callable[[str], None]] = []

    @property
    def page(self) -> Optional[FakePage]:
        return self.site.pages.get(self.url) if self.url else None

    async def block_resources(self, patterns):
        self.blocked.extend(patterns)

    async def navigate(self, url, timeout_ms):
        self.site.navigations.append(url)
        page = self.site.pages.get(url)
        if page is None or page.fail:
            raise TimeoutError(f"Navigation timeout of {timeout_ms} ms exceeded: {url}")
        self.url = url
        return NavigationResult(status=page.status, headers=dict(page.headers))

    async def content(self):
        page = self.page
        html = page.html if page else ""
        if page and self.submitted and page.sql_error and any("'" in v for v in self.filled.values()):
            html += f"<pre>{page.sql_error}</pre>"
        return html

    async def extract_forms(self):
        return list(self.page.forms) if self.page else []

    async def extract_links(self):
        return list(self.page.links) if self.page else []

    async def fill_input(self, name, value):
        page = self.page
        if page is None:
            return False
        known = {i.name for f in page.forms for i in f.inputs}
        if name not in known:
            return False
        self.filled[name] = value
        return True

    async def submit(self):
        self.submitted = True
        page = self.page
        if page and page.reflects_xss:
            for value in self.filled.values():
                for marker in _CONSOLE_LOG_RE.findall(value):
                    for callback in self._console:
                        callback(marker)

    async def wait(self, ms):
        return None

    def on_console(self, callback):
        self._console.append(callback)

    async def screenshot(self):
        return "ZmFrZQ==" if self.page else None

    async def close(self):
        self.closed = True
        self.browser.open_pages -= 1


class FakeBrowser(BrowserSession):
    """BrowserSession over a FakeSite; page() comes from the real base class."""

    def __init__(self, site: FakeSite, proxy: Optional[str] = None, fail_start: bool = False):
        super().__init__(proxy=proxy)
        self.site = site
        self.fail_start = fail_start
        self.started = False
        self.closed = False
        self.open_pages = 0
        self.sessions: List[FakePageSession] = []

    async def start(self):
        if self.fail_start:
            raise RuntimeError("browser launch failed")
        self.started = True
        return self

    async def new_page(self):
        session = FakePageSession(self.site, self)
        self.sessions.append(session)
        self.open_pages += 1
        return session

    async def close(self):
        self.closed = True


def chain_site(n: int, base: str = "http://site.test") -> FakeSite:
    """/p0 -> /p1 -> ... -> /p{n-1}, a linear chain of pages."""
    site = FakeSite()
    for i in range(n):
        links = [f"{base}/p{i + 1}"] if i + 1 < n else []
        site.add(f"{base}/p{i}", links=links)
    return site


class FakeTlsProbe:
    """Returns canned findings instead of opening a socket."""

    def __init__(self, findings=()):
        self.findings = list(findings)
        self.targets: List[str] = []

    async def analyze(self, target, scan_id):
        self.targets.append(target)
        return list(self.findings)
