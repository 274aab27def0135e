"""
VulnScan - External Header Grade
Asks public header-grading services for a grade of the target host, through
the cascading fallback fetcher.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, List, Optional
from urllib.parse import quote, urlparse

from vulnscan.fallback import FallbackFetcher, NoFallbackAvailable
from vulnscan.models import Finding, FindingSource


logger = logging.getLogger(__name__)

GRADED_HEADERS = [
    "content-security-policy",
    "strict-transport-security",
    "x-frame-options",
    "x-content-type-options",
    "referrer-policy",
    "permissions-policy",
]

_GRADE_RE = re.compile(r"Grade:\s*([A-F][+-]?)", re.IGNORECASE)


def grade_endpoints(host: str) -> List[str]:
    h = quote(host, safe="")
    return [
        f"https://http-observatory.security.mozilla.org/api/v1/analyze?host={h}",
        f"https://observatory-api.mdn.mozilla.net/api/v2/scan?host={h}",
        f"https://api.hackertarget.com/httpheaders/?q={h}",
        f"https://securityheaders.com/?q={h}&followRedirects=on",
    ]


def looks_like_grade_response(data: Any) -> bool:
    if not data:
        return False
    if isinstance(data, dict):
        return bool(data.get("grade") or data.get("scan_id") or data.get("headers") or data.get("results"))
    if isinstance(data, str):
        lower = data.lower()
        return "security report" in lower or "headers" in lower or "content-type" in lower
    return False


@dataclass
class HeaderGrade:
    grade: str
    source: str
    latency_ms: int = 0
    fallback_used: bool = False
    headers_missing: List[str] = field(default_factory=list)

    @property
    def is_poor(self) -> bool:
        return self.grade[:1] in ("D", "F")


def grade_from_missing(missing: List[str]) -> str:
    if not missing:
        return "A+"
    if len(missing) < 2:
        return "A"
    if len(missing) < 4:
        return "C"
    return "F"


def normalize_grade(data: Any, source: str) -> HeaderGrade:
    """Reduce any of the supported response shapes to a letter grade."""
    if isinstance(data, dict) and data.get("grade"):
        failed = json.dumps(data.get("tests_failed") or "").lower()
        missing = [h for h in GRADED_HEADERS if h in failed]
        return HeaderGrade(grade=str(data["grade"]).upper(), source=source, headers_missing=missing)

    text = json.dumps(data).lower() if isinstance(data, (dict, list)) else str(data or "")
    missing = [h for h in GRADED_HEADERS if h not in text.lower()]
    match = _GRADE_RE.search(text)
    grade = match.group(1).upper() if match else grade_from_missing(missing)
    return HeaderGrade(grade=grade, source=source, headers_missing=missing)


class HeaderGradeLookup:
    def __init__(self, fetcher: FallbackFetcher):
        self.fetcher = fetcher

    async def lookup(self, target: str) -> Optional[HeaderGrade]:
        host = urlparse(target).hostname
        if not host:
            return None
        try:
            result = await self.fetcher.fetch_with_fallback(grade_endpoints(host), looks_like_grade_response)
        except NoFallbackAvailable as e:
            logger.info("Header grade unavailable for %s: %s", host, e)
            return None

        grade = normalize_grade(result.data, result.source)
        grade.latency_ms = result.latency_ms
        grade.fallback_used = result.is_fallback
        return grade

    def to_finding(self, scan_id: str, grade: HeaderGrade) -> Optional[Finding]:
        if not grade.is_poor:
            return None
        recommendations = [f"Implement the {h} header." for h in grade.headers_missing]
        return Finding(
            scan_id=scan_id,
            module="headers",
            title=f"Low Security Grade: {grade.grade}",
            severity="medium",
            confidence=0.9,
            description=f"External analysis assigned a grade of {grade.grade}.",
            evidence={"grade": grade.grade, "missing": list(grade.headers_missing)},
            remediation="\n".join(recommendations) or "Review the site's security headers.",
            refs=["https://developer.mozilla.org/en-US/observatory"],
            source=FindingSource(
                api=grade.source,
                fallback_used=grade.source if grade.fallback_used else None,
                latency_ms=grade.latency_ms,
            ),
        )
