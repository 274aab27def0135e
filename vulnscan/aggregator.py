"""
VulnScan - Finding Aggregator
Single entry point for attaching findings to a scan record.
"""

import logging

from vulnscan.models import Finding
from vulnscan.store import ScanStore


logger = logging.getLogger(__name__)


class FindingAggregator:
    """Deduplicates by (title, evidence) and keeps stats in step with findings."""

    def __init__(self, store: ScanStore):
        self.store = store

    async def add_finding(self, scan_id: str, finding: Finding) -> bool:
        """Returns True when the finding was new and persisted."""
        async with self.store.lock(scan_id):
            scan = await self.store.get(scan_id)
            if scan is None:
                logger.warning("Dropping finding for unknown scan %s", scan_id)
                return False

            key = finding.dedup_key()
            if any(f.dedup_key() == key for f in scan.findings):
                return False

            finding.scan_id = scan_id
            scan.findings.append(finding)
            scan.stats.bump(finding.severity)
            await self.store.save(scan)

        logger.debug("[%s] %s finding: %s", scan_id, finding.severity, finding.title)
        return True
