import os
import sys

import pytest

# Insert project root to sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from vulnscan.config import AppConfig
from vulnscan.events import EventBus
from vulnscan.store import ScanStore


@pytest.fixture
def app_config(tmp_path):
    """Fast, isolated configuration: memory store, no settle delay, no rate limit."""
    cfg = AppConfig()
    cfg.store.durable = False
    cfg.store.db_path = tmp_path / "vulnscan.db"
    cfg.scan.settle_ms = 0
    cfg.scan.capture_screenshots = False
    cfg.scan.header_grade_lookup = False
    cfg.browser.executable_path = None
    cfg.browser.proxies = []
    cfg.worker.heartbeat_interval_s = 0.05
    return cfg


@pytest.fixture
async def memory_store():
    store = ScanStore(durable=False)
    await store.connect()
    yield store
    await store.close()


@pytest.fixture
async def sqlite_store(tmp_path):
    store = ScanStore(tmp_path / "scans.db")
    await store.connect()
    yield store
    await store.close()


@pytest.fixture
def bus():
    return EventBus()
