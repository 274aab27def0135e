"""
VulnScan - Scan Store
SQLite-backed persistence for scan records, with an in-memory mirror that
keeps the service usable when the database cannot be opened.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, List, Optional, Set

import aiosqlite

from vulnscan.config import DEFAULT_DB_PATH
from vulnscan.models import STATUS_CANCELLED, STATUS_QUEUED, ScanResult, utc_now_iso


logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS scans (
    id TEXT PRIMARY KEY,
    target TEXT NOT NULL,
    status TEXT NOT NULL,
    start_time TEXT NOT NULL,
    heartbeat_at TEXT,
    cancel_requested INTEGER DEFAULT 0,
    document TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_scans_status ON scans(status);
CREATE INDEX IF NOT EXISTS idx_scans_start ON scans(start_time);
"""


class ScanStore:
    """Async scan record store. Durable when possible, memory always."""

    def __init__(self, db_path: Optional[Path] = None, durable: bool = True):
        self.db_path = Path(db_path or DEFAULT_DB_PATH)
        self.durable = durable
        self._db: Optional[aiosqlite.Connection] = None
        # Serialized documents so every read hands out a fresh object graph.
        self._memory: Dict[str, str] = {}
        self._cancelled: Set[str] = set()
        # scan id -> [lock, holders + waiters]
        self._locks: Dict[str, list] = {}

    @property
    def is_durable(self) -> bool:
        return self._db is not None

    async def connect(self):
        """Open the database; on failure fall back to memory-only mode."""
        if not self.durable:
            logger.info("Scan store running in memory-only mode")
            return
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._db = await aiosqlite.connect(str(self.db_path))
            self._db.row_factory = aiosqlite.Row
            await self._db.execute("PRAGMA journal_mode=WAL")
            await self._db.executescript(SCHEMA)
            await self._db.commit()
            logger.info("Scan store connected: %s", self.db_path)
        except (aiosqlite.Error, OSError) as e:
            logger.warning("Scan store unavailable (%s), using memory only", e)
            await self._close_db()

    async def _close_db(self):
        if self._db is not None:
            try:
                await self._db.close()
            except aiosqlite.Error as e:
                logger.debug("Error closing scan store: %s", e)
            self._db = None

    async def close(self):
        """Close the database connection."""
        await self._close_db()

    @asynccontextmanager
    async def lock(self, scan_id: str):
        """Per-scan lock for read-modify-write sequences.

        Entries are reference counted and dropped when the last holder or
        waiter leaves.
        """
        entry = self._locks.get(scan_id)
        if entry is None:
            entry = self._locks[scan_id] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[scan_id]

    def lock_count(self) -> int:
        return len(self._locks)

    # ── Records ─────────────────────────────────────────────────

    async def save(self, scan: ScanResult):
        """Full-document upsert. Last writer wins."""
        document = json.dumps(scan.to_dict())
        self._memory[scan.id] = document
        if scan.is_terminal:
            self._cancelled.discard(scan.id)
        if self._db is None:
            return
        try:
            await self._db.execute(
                """INSERT INTO scans (id, target, status, start_time, heartbeat_at, document)
                   VALUES (?, ?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                       target = excluded.target,
                       status = excluded.status,
                       start_time = excluded.start_time,
                       heartbeat_at = excluded.heartbeat_at,
                       document = excluded.document""",
                (scan.id, scan.target, scan.status, scan.start_time, scan.heartbeat_at, document),
            )
            await self._db.commit()
        except aiosqlite.Error as e:
            logger.error("Durable save failed for %s: %s", scan.id, e)

    async def get(self, scan_id: str) -> Optional[ScanResult]:
        """Fresh copy of the record, or None."""
        if self._db is not None:
            try:
                async with self._db.execute(
                    "SELECT document FROM scans WHERE id = ?", (scan_id,)
                ) as cursor:
                    row = await cursor.fetchone()
                if row:
                    return ScanResult.from_dict(json.loads(row["document"]))
            except (aiosqlite.Error, ValueError) as e:
                logger.warning("Durable read failed for %s: %s", scan_id, e)

        document = self._memory.get(scan_id)
        if document is None:
            return None
        return ScanResult.from_dict(json.loads(document))

    async def _load_many(self, query: str, params: tuple, status: Optional[str] = None) -> List[ScanResult]:
        if self._db is not None:
            try:
                async with self._db.execute(query, params) as cursor:
                    rows = await cursor.fetchall()
                return [ScanResult.from_dict(json.loads(r["document"])) for r in rows]
            except (aiosqlite.Error, ValueError) as e:
                logger.warning("Durable listing failed: %s", e)

        scans = [ScanResult.from_dict(json.loads(d)) for d in self._memory.values()]
        if status is not None:
            scans = [s for s in scans if s.status == status]
        return sorted(scans, key=lambda s: s.start_time, reverse=True)

    async def list_all(self) -> List[ScanResult]:
        """All records, newest first."""
        return await self._load_many(
            "SELECT document FROM scans ORDER BY start_time DESC", ()
        )

    async def list_by_status(self, status: str) -> List[ScanResult]:
        return await self._load_many(
            "SELECT document FROM scans WHERE status = ? ORDER BY start_time DESC",
            (status,),
            status=status,
        )

    # ── Cancellation / liveness ─────────────────────────────────

    async def cancel(self, scan_id: str) -> Optional[str]:
        """Flag a scan for cancellation. Terminal records are left untouched.

        A queued record is moved straight to cancelled; a running one is
        finalized by its worker once the orchestrator notices the flag.
        Returns the status seen under the lock, or None for an unknown scan.
        """
        async with self.lock(scan_id):
            scan = await self.get(scan_id)
            if scan is None:
                return None
            if scan.is_terminal:
                return scan.status

            self._cancelled.add(scan_id)
            if self._db is not None:
                try:
                    await self._db.execute(
                        "UPDATE scans SET cancel_requested = 1 WHERE id = ?", (scan_id,)
                    )
                    await self._db.commit()
                except aiosqlite.Error as e:
                    logger.error("Durable cancel flag failed for %s: %s", scan_id, e)

            seen = scan.status
            if seen == STATUS_QUEUED:
                scan.status = STATUS_CANCELLED
                scan.end_time = utc_now_iso()
                await self.save(scan)
            return seen

    async def is_cancelled(self, scan_id: str) -> bool:
        if scan_id in self._cancelled:
            return True
        if self._db is not None:
            try:
                async with self._db.execute(
                    "SELECT cancel_requested, status FROM scans WHERE id = ?", (scan_id,)
                ) as cursor:
                    row = await cursor.fetchone()
                if row:
                    return bool(row["cancel_requested"]) or row["status"] == STATUS_CANCELLED
            except aiosqlite.Error as e:
                logger.warning("Durable cancel check failed for %s: %s", scan_id, e)
        document = self._memory.get(scan_id)
        return bool(document) and json.loads(document).get("status") == STATUS_CANCELLED

    async def touch_heartbeat(self, scan_id: str) -> Optional[str]:
        """Refresh the liveness timestamp without rewriting the rest of the record."""
        now = utc_now_iso()
        document = self._memory.get(scan_id)
        if document is not None:
            data = json.loads(document)
            data["heartbeat_at"] = now
            self._memory[scan_id] = json.dumps(data)
        if self._db is not None:
            try:
                await self._db.execute(
                    """UPDATE scans SET heartbeat_at = ?,
                           document = json_set(document, '$.heartbeat_at', ?)
                       WHERE id = ?""",
                    (now, now, scan_id),
                )
                await self._db.commit()
            except aiosqlite.Error as e:
                logger.warning("Heartbeat update failed for %s: %s", scan_id, e)
        return now
