"""
VulnScan - Form Fuzzer
Active, non-destructive probes against discovered forms:
reflected XSS confirmed by real script execution, and error-based SQLi.
"""

import logging
import uuid
from typing import List, Optional

from vulnscan.browser import BrowserSession
from vulnscan.models import Finding, FindingSource, FormDefinition, PageContext


logger = logging.getLogger(__name__)

XSS_PAYLOAD_TEMPLATE = '<img src=x onerror=console.log("{marker}")>'
XSS_INPUT_TYPES = ("text", "search", "textarea", "email", "url")

SQLI_PAYLOAD = "' OR '1'='1"
SQLI_INPUT_TYPES = ("text", "password", "search", "textarea")

SQL_ERROR_SIGNATURES = [
    "SQL syntax",
    "mysql_fetch",
    "ORA-01756",
    "SQLite/JDBCDriver",
    "System.Data.SqlClient",
    "SQLSTATE[",
    "Unclosed quotation mark",
    "PostgreSQL query failed",
]

FUZZER_SOURCE = "Playwright Fuzzer"


def match_sql_error(html: str) -> Optional[str]:
    """First known database error signature present in the page, if any."""
    for signature in SQL_ERROR_SIGNATURES:
        if signature in (html or ""):
            return signature
    return None


class Fuzzer:
    """Runs each probe on its own page so one failure never taints another."""

    def __init__(self, browser: BrowserSession, scan_id: str,
                 settle_ms: int = 2000, navigation_timeout_ms: int = 15000):
        self.browser = browser
        self.scan_id = scan_id
        self.settle_ms = settle_ms
        self.navigation_timeout_ms = navigation_timeout_ms

    async def fuzz_page(self, page_ctx: PageContext) -> List[Finding]:
        findings: List[Finding] = []
        for form in page_ctx.forms:
            if not form.inputs:
                continue

            try:
                finding = await self.test_xss(page_ctx.url, form)
                if finding:
                    findings.append(finding)
            except Exception as e:
                logger.warning("XSS probe failed on %s: %s", page_ctx.url, e)

            try:
                finding = await self.test_sqli(page_ctx.url, form)
                if finding:
                    findings.append(finding)
            except Exception as e:
                logger.warning("SQLi probe failed on %s: %s", page_ctx.url, e)

        return findings

    async def _fill(self, page, form: FormDefinition, types: tuple, value: str) -> int:
        filled = 0
        for field in form.inputs:
            if field.type in types and await page.fill_input(field.name, value):
                filled += 1
        return filled

    async def test_xss(self, url: str, form: FormDefinition) -> Optional[Finding]:
        marker = f"VULN_XSS_{uuid.uuid4().hex[:12]}"
        payload = XSS_PAYLOAD_TEMPLATE.format(marker=marker)
        fired = []

        def on_console(text: str):
            if marker in (text or ""):
                fired.append(text)

        async with self.browser.page() as page:
            page.on_console(on_console)
            await page.navigate(url, self.navigation_timeout_ms)
            if not await self._fill(page, form, XSS_INPUT_TYPES, payload):
                return None
            await page.submit()
            await page.wait(self.settle_ms)

        if not fired:
            return None

        return Finding(
            scan_id=self.scan_id,
            module="dast-xss",
            title="Reflected XSS Detected",
            severity="high",
            confidence=1.0,
            description=f"The application executed an injected JavaScript payload via a form on {url} "
                        f"(marker {marker}).",
            evidence={
                "form_html": form.raw_html,
                "form_action": form.action,
                "payload": XSS_PAYLOAD_TEMPLATE,
            },
            remediation="Implement context-aware output encoding (e.g., HTML entity encoding) "
                        "for all user-supplied data reflected in the response.",
            refs=["https://owasp.org/www-community/attacks/xss/"],
            source=FindingSource(api=FUZZER_SOURCE),
        )

    async def test_sqli(self, url: str, form: FormDefinition) -> Optional[Finding]:
        async with self.browser.page() as page:
            await page.navigate(url, self.navigation_timeout_ms)
            if not await self._fill(page, form, SQLI_INPUT_TYPES, SQLI_PAYLOAD):
                return None
            await page.submit()
            await page.wait(self.settle_ms)
            content = await page.content()

        signature = match_sql_error(content)
        if not signature:
            return None

        return Finding(
            scan_id=self.scan_id,
            module="dast-sqli",
            title="Possible SQL Injection",
            severity="critical",
            confidence=0.9,
            description=f'Database error message detected after injecting SQL payload: "{signature}".',
            evidence={
                "error_match": signature,
                "payload": SQLI_PAYLOAD,
                "form_action": form.action,
            },
            remediation="Use parameterized queries (prepared statements) for all database access. "
                        "Never concatenate user input into SQL strings.",
            refs=["https://owasp.org/www-community/attacks/SQL_Injection"],
            source=FindingSource(api=FUZZER_SOURCE),
        )
