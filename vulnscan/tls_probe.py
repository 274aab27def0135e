"""
VulnScan - TLS Probe
Reads the server certificate and negotiated parameters over a raw,
unverified TLS connection and classifies what it sees.
"""

import asyncio
import logging
import socket
import ssl
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional
from urllib.parse import urlparse

from cryptography import x509

from vulnscan.models import Finding, FindingSource, utc_now


logger = logging.getLogger(__name__)

DEPRECATED_PROTOCOLS = ("SSLv3", "TLSv1", "TLSv1.1")
WEAK_CIPHER_MARKERS = ("RC4", "MD5", "DES")

TLS_MODULE = "tls"


@dataclass
class TlsInfo:
    host: str
    not_before: datetime
    not_after: datetime
    issuer: str
    subject: str
    protocol: str = ""
    cipher: str = ""


def classify_tls(scan_id: str, info: TlsInfo, now: Optional[datetime] = None) -> List[Finding]:
    """Pure classification of a certificate/handshake snapshot."""
    now = now or utc_now()
    source = FindingSource(api="TLS Probe")
    findings = []

    def add(title, severity, description, evidence, remediation):
        findings.append(Finding(
            scan_id=scan_id,
            module=TLS_MODULE,
            title=title,
            severity=severity,
            description=description,
            evidence=dict(evidence, host=info.host),
            remediation=remediation,
            refs=["https://owasp.org/www-project-web-security-testing-guide/"],
            source=source,
        ))

    if info.not_after < now:
        add("Expired TLS Certificate", "critical",
            f"The certificate for {info.host} expired on {info.not_after.isoformat()}.",
            {"expiry": info.not_after.isoformat(), "issuer": info.issuer},
            "Renew the certificate and automate renewal.")
    elif info.not_before > now:
        add("TLS Certificate Not Yet Valid", "high",
            f"The certificate for {info.host} is not valid before {info.not_before.isoformat()}.",
            {"not_before": info.not_before.isoformat(), "issuer": info.issuer},
            "Check the server clock and the certificate validity window.")

    if info.issuer and info.issuer == info.subject:
        add("Self-Signed TLS Certificate", "medium",
            f"The certificate for {info.host} is issued by its own subject.",
            {"issuer": info.issuer, "subject": info.subject},
            "Use a certificate issued by a publicly trusted CA.")

    if info.protocol in DEPRECATED_PROTOCOLS:
        add("Deprecated TLS Protocol", "high",
            f"The server negotiated {info.protocol}.",
            {"protocol": info.protocol},
            "Disable SSLv3, TLS 1.0 and TLS 1.1; require TLS 1.2 or newer.")

    weak = [m for m in WEAK_CIPHER_MARKERS if m in (info.cipher or "").upper()]
    if weak:
        add("Weak TLS Cipher", "high",
            f"The server negotiated the weak cipher {info.cipher}.",
            {"cipher": info.cipher, "weak_markers": weak},
            "Restrict cipher suites to AEAD ciphers (AES-GCM, ChaCha20-Poly1305).")

    return findings


def _probe_context() -> ssl.SSLContext:
    """Unverified client context that also negotiates TLS 1.0/1.1 and legacy ciphers."""
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    try:
        context.minimum_version = ssl.TLSVersion.MINIMUM_SUPPORTED
        context.set_ciphers("ALL:@SECLEVEL=0")
    except (ssl.SSLError, ValueError) as e:
        logger.debug("Legacy TLS not available in this OpenSSL build: %s", e)
    return context


def _fetch_tls_info(host: str, port: int, timeout: float) -> TlsInfo:
    context = _probe_context()
    with socket.create_connection((host, port), timeout=timeout) as sock:
        with context.wrap_socket(sock, server_hostname=host) as ssock:
            der = ssock.getpeercert(binary_form=True)
            if not der:
                raise ssl.SSLError("Could not retrieve peer certificate")
            protocol = ssock.version() or ""
            cipher = (ssock.cipher() or ("",))[0]

    cert = x509.load_der_x509_certificate(der)
    return TlsInfo(
        host=host,
        not_before=cert.not_valid_before_utc,
        not_after=cert.not_valid_after_utc,
        issuer=cert.issuer.rfc4514_string(),
        subject=cert.subject.rfc4514_string(),
        protocol=protocol,
        cipher=cipher,
    )


class TlsProbe:
    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout

    async def analyze(self, target: str, scan_id: str) -> List[Finding]:
        parsed = urlparse(target)
        if parsed.scheme != "https" or not parsed.hostname:
            return []

        host = parsed.hostname
        port = parsed.port or 443
        try:
            info = await asyncio.to_thread(_fetch_tls_info, host, port, self.timeout)
        except (OSError, ValueError) as e:
            # ssl.SSLError and socket timeouts are OSErrors
            logger.warning("TLS probe failed for %s:%d: %s", host, port, e)
            return []

        return classify_tls(scan_id, info)
