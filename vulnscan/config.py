"""
VulnScan - Configuration Management
Centralized configuration for the API, scan engine, worker pool and store.
"""

import os
import json
import logging
from pathlib import Path
from dataclasses import dataclass, field
from typing import List, Optional


logger = logging.getLogger(__name__)

# Base paths
PROJECT_ROOT = Path(__file__).parent.parent.resolve()
DATA_DIR = PROJECT_ROOT / "data"
LOGS_DIR = PROJECT_ROOT / "logs"

# Persistence files
CONFIG_FILE = DATA_DIR / "config.json"
DEFAULT_DB_PATH = DATA_DIR / "vulnscan.db"

USER_AGENT = "VulnScanPro/2.0 (DAST; +https://vulnscan.pro)"


def resolve_chromium_bin() -> Optional[Path]:
    """Optional Chromium override; None lets Playwright use its bundled browser."""
    env_path = os.environ.get("VULNSCAN_CHROME_BIN", "").strip()
    if env_path:
        return Path(env_path).expanduser().resolve()
    return None


def parse_proxy_list(raw: str) -> List[str]:
    """Split a comma separated PROXY_LIST value."""
    return [p.strip() for p in (raw or "").split(",") if p.strip()]


@dataclass
class APIConfig:
    """Backend API configuration."""
    host: str = "127.0.0.1"
    port: int = 8443
    cors_origins: List[str] = field(default_factory=lambda: [
        "http://localhost:3000",
        "http://localhost:5173",
    ])


@dataclass
class ScanConfig:
    """Defaults applied to every scan unless the request overrides them."""
    max_depth: int = 2
    max_pages: int = 15
    rate_limit_rps: float = 5.0
    # Hard ceilings, requests are clamped to these
    depth_ceiling: int = 6
    pages_ceiling: int = 200
    navigation_timeout_ms: int = 15000
    settle_ms: int = 2000
    capture_screenshots: bool = True
    tls_timeout_s: float = 5.0
    header_grade_lookup: bool = True


@dataclass
class FetcherConfig:
    """Cascading fallback fetch policy."""
    timeout_s: float = 8.0
    retries: int = 0
    max_metrics: int = 1000
    baseline_timeout_s: float = 3.0


@dataclass
class WorkerConfig:
    """Job queue / worker pool configuration."""
    slots: int = 1
    max_attempts: int = 2
    retry_on_crash: bool = False
    heartbeat_interval_s: float = 5.0
    stale_after_s: float = 60.0
    reconcile_interval_s: float = 30.0


@dataclass
class StoreConfig:
    """Scan store configuration."""
    db_path: Path = DEFAULT_DB_PATH
    durable: bool = True


@dataclass
class BrowserConfig:
    """Headless browser configuration."""
    headless: bool = True
    executable_path: Optional[Path] = field(default_factory=resolve_chromium_bin)
    user_agent: str = USER_AGENT
    proxies: List[str] = field(default_factory=list)
    launch_args: List[str] = field(default_factory=lambda: [
        "--no-sandbox",
        "--disable-setuid-sandbox",
        "--disable-background-networking",
        "--disable-sync",
        "--no-first-run",
    ])
    blocked_resources: List[str] = field(default_factory=lambda: [
        "**/*.{png,jpg,jpeg,gif,svg,ico,webp}",
        "**/*.{css,woff,woff2,ttf,otf}",
    ])


@dataclass
class AppConfig:
    """Overall application configuration."""
    api: APIConfig = field(default_factory=APIConfig)
    scan: ScanConfig = field(default_factory=ScanConfig)
    fetcher: FetcherConfig = field(default_factory=FetcherConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    browser: BrowserConfig = field(default_factory=BrowserConfig)


def ensure_dirs():
    """Create all required directories."""
    for d in [DATA_DIR, LOGS_DIR]:
        d.mkdir(parents=True, exist_ok=True)


# ── User Config Persistence ───────────────────────────────────────

def load_user_config() -> dict:
    """Load user config overrides (api port, worker slots, etc)."""
    if not CONFIG_FILE.exists():
        return {}
    try:
        with open(CONFIG_FILE, 'r') as f:
            data = json.load(f)
        return data if isinstance(data, dict) else {}
    except (OSError, ValueError) as e:
        logger.warning("Could not read %s: %s", CONFIG_FILE, e)
        return {}


def save_user_config(config: dict):
    """Save user config overrides."""
    ensure_dirs()
    # Merge with existing
    existing = load_user_config()
    existing.update(config)
    try:
        with open(CONFIG_FILE, 'w') as f:
            json.dump(existing, f, indent=2)
    except OSError as e:
        logger.error("Error saving config: %s", e)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def get_config() -> AppConfig:
    """Get the current configuration: defaults, then persisted overrides, then env."""
    cfg = AppConfig()

    user_cfg = load_user_config()
    if 'api_port' in user_cfg:
        cfg.api.port = int(user_cfg['api_port'])
    if 'worker_slots' in user_cfg:
        cfg.worker.slots = max(1, int(user_cfg['worker_slots']))
    if 'max_pages' in user_cfg:
        cfg.scan.max_pages = int(user_cfg['max_pages'])
    if 'max_depth' in user_cfg:
        cfg.scan.max_depth = int(user_cfg['max_depth'])
    if isinstance(user_cfg.get('proxies'), list):
        cfg.browser.proxies = [str(p) for p in user_cfg['proxies'] if p]

    env = os.environ
    if env.get("VULNSCAN_API_HOST"):
        cfg.api.host = env["VULNSCAN_API_HOST"]
    if env.get("VULNSCAN_API_PORT"):
        cfg.api.port = int(env["VULNSCAN_API_PORT"])
    if env.get("VULNSCAN_WORKER_SLOTS"):
        cfg.worker.slots = max(1, int(env["VULNSCAN_WORKER_SLOTS"]))
    if env.get("VULNSCAN_DB_PATH"):
        cfg.store.db_path = Path(env["VULNSCAN_DB_PATH"]).expanduser()
    cfg.store.durable = _env_bool("VULNSCAN_DURABLE_STORE", cfg.store.durable)
    if env.get("PROXY_LIST"):
        cfg.browser.proxies = parse_proxy_list(env["PROXY_LIST"])

    return cfg
