"""
VulnScan - Passive Analyzers
Pure checks over a crawled page (no extra requests). Detectors register by id;
a scan runs the subset the caller selected.
"""

import logging
import re
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional

from vulnscan.models import Finding, FindingSource, PageContext


logger = logging.getLogger(__name__)


class Analyzer(ABC):
    """Base class for passive detectors."""

    id: str = ""
    name: str = ""

    @abstractmethod
    def analyze(self, scan_id: str, url: str, html: str, headers: Dict[str, str]) -> List[Finding]: ...


# (header, title, severity, remediation)
SECURITY_HEADERS_EXPECTED = [
    ("strict-transport-security", "Missing HSTS header", "medium",
     "Send Strict-Transport-Security with a max-age of at least one year."),
    ("content-security-policy", "Missing CSP header", "medium",
     "Define a Content-Security-Policy that restricts script sources."),
    ("x-frame-options", "Missing X-Frame-Options header", "low",
     "Send X-Frame-Options: DENY or a frame-ancestors CSP directive."),
    ("x-content-type-options", "Missing X-Content-Type-Options header", "low",
     "Send X-Content-Type-Options: nosniff."),
    ("referrer-policy", "Missing Referrer-Policy header", "low",
     "Send Referrer-Policy: strict-origin-when-cross-origin or stricter."),
]

_VERSION_RE = re.compile(r"\d+\.\d+")


def _cookie_lines(headers: Dict[str, str]) -> List[str]:
    # Browsers fold repeated Set-Cookie headers into one newline separated value.
    raw = headers.get("set-cookie") or ""
    return [line.strip() for line in raw.split("\n") if line.strip()]


class SecurityHeadersAnalyzer(Analyzer):
    id = "security-headers"
    name = "Security Headers"

    def analyze(self, scan_id: str, url: str, html: str, headers: Dict[str, str]) -> List[Finding]:
        headers = {k.lower(): v for k, v in (headers or {}).items()}
        source = FindingSource(api="Passive Analyzer")
        findings = []

        for header_name, title, severity, remediation in SECURITY_HEADERS_EXPECTED:
            if url.startswith("http://") and header_name == "strict-transport-security":
                continue
            if header_name not in headers:
                findings.append(Finding(
                    scan_id=scan_id,
                    module=self.id,
                    title=title,
                    severity=severity,
                    description=f"The response from {url} does not set {header_name}.",
                    evidence={"header": header_name},
                    remediation=remediation,
                    refs=["https://owasp.org/www-project-secure-headers/"],
                    source=source,
                ))

        for cookie in _cookie_lines(headers):
            lower = cookie.lower()
            name = cookie.split("=", 1)[0].strip() if "=" in cookie else "unknown"
            issues = []
            if "httponly" not in lower:
                issues.append("HttpOnly")
            if "secure" not in lower:
                issues.append("Secure")
            if "samesite" not in lower:
                issues.append("SameSite")
            if issues:
                findings.append(Finding(
                    scan_id=scan_id,
                    module=self.id,
                    title="Insecure Cookie Flags",
                    severity="low",
                    description=f"Cookie '{name}' is missing: {', '.join(issues)}.",
                    evidence={"cookie": name, "missing": issues},
                    remediation="Set HttpOnly, Secure and SameSite on session cookies.",
                    refs=["https://owasp.org/www-community/controls/SecureCookieAttribute"],
                    source=source,
                ))

        server = headers.get("server", "")
        if server and _VERSION_RE.search(server):
            findings.append(Finding(
                scan_id=scan_id,
                module=self.id,
                title="Server Version Disclosure",
                severity="low",
                description=f"The Server header exposes a version: {server}",
                evidence={"server": server},
                remediation="Strip version numbers from the Server header.",
                source=source,
            ))

        return findings


class AnalyzerSet:
    """Registry of passive detectors keyed by id."""

    def __init__(self, analyzers: Optional[Iterable[Analyzer]] = None):
        self._analyzers: Dict[str, Analyzer] = {}
        for analyzer in analyzers or ():
            self.register(analyzer)

    def register(self, analyzer: Analyzer):
        if not analyzer.id:
            raise ValueError("Analyzer must define an id")
        self._analyzers[analyzer.id] = analyzer

    @property
    def ids(self) -> List[str]:
        return list(self._analyzers)

    def get(self, analyzer_id: str) -> Optional[Analyzer]:
        return self._analyzers.get(analyzer_id)

    def select(self, ids: Optional[Iterable[str]] = None) -> "AnalyzerSet":
        """Active subset; empty or None selects everything registered."""
        ids = list(ids or [])
        if not ids:
            return AnalyzerSet(self._analyzers.values())
        unknown = [i for i in ids if i not in self._analyzers]
        if unknown:
            logger.warning("Unknown detector ids ignored: %s", ", ".join(unknown))
        return AnalyzerSet(self._analyzers[i] for i in ids if i in self._analyzers)

    def run(self, scan_id: str, page: PageContext) -> List[Finding]:
        findings: List[Finding] = []
        for analyzer in self._analyzers.values():
            try:
                findings.extend(analyzer.analyze(scan_id, page.url, page.html, page.headers) or [])
            except Exception as e:
                logger.warning("Analyzer %s failed on %s: %s", analyzer.id, page.url, e)
        return findings

    def __len__(self):
        return len(self._analyzers)


def default_analyzers() -> AnalyzerSet:
    return AnalyzerSet([SecurityHeadersAnalyzer()])
