"""
VulnScan - Outbound Proxy Rotation
Picks an upstream proxy for the scan browser from the configured pool.
"""

import random
from typing import List, Optional, Sequence
from urllib.parse import urlparse, urlunparse


class ProxyRotator:
    """Random choice over a static proxy pool."""

    def __init__(self, proxies: Optional[Sequence[str]] = None, rng: Optional[random.Random] = None):
        self.proxies: List[str] = [p for p in (proxies or []) if p]
        self._rng = rng or random.Random()

    def __bool__(self):
        return bool(self.proxies)

    def pick(self) -> Optional[str]:
        if not self.proxies:
            return None
        return self._rng.choice(self.proxies)

    @staticmethod
    def redact(url: str) -> str:
        """Mask credentials (user:pass@) so the proxy can be logged or emitted."""
        parsed = urlparse(url)
        if not parsed.username and not parsed.password:
            return url
        host = parsed.hostname or ""
        if parsed.port:
            host = f"{host}:{parsed.port}"
        return urlunparse(parsed._replace(netloc=f"***:***@{host}"))
