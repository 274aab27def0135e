#!/usr/bin/env python3
"""
VulnScan - Main Launcher
Entry point: preflight checks, logging setup, then the FastAPI backend
(which owns the worker pool and reconciler).
"""

import asyncio
import importlib.util
import logging
import os
import signal
import sys
from pathlib import Path

# Make `vulnscan` importable when run from a checkout
ROOT = Path(__file__).parent.resolve()
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from vulnscan import __version__
from vulnscan.config import DATA_DIR, LOGS_DIR, AppConfig, ensure_dirs, get_config

console = Console()


BANNER = rf"""
  __     __     _       ____
  \ \   / /   _| |_ __ / ___|  ___ __ _ _ __
   \ \ / / | | | | '_ \\___ \ / __/ _` | '_ \
    \ V /| |_| | | | | |___) | (_| (_| | | | |
     \_/  \__,_|_|_| |_|____/ \___\__,_|_| |_|

            VulnScan v{__version__}
            Non-destructive DAST Engine
"""


def setup_logging(level: str = "INFO"):
    """Console logging through rich, plus a plain file log."""
    ensure_dirs()
    file_handler = logging.FileHandler(LOGS_DIR / "vulnscan.log", encoding="utf-8")
    file_handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False), file_handler],
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def check_playwright(config: AppConfig) -> bool:
    """Playwright must be importable; a Chromium override, if set, must exist."""
    if importlib.util.find_spec("playwright") is None:
        console.print("[red]✗ Playwright is not installed[/red]")
        console.print("[yellow]  pip install playwright && playwright install chromium[/yellow]")
        return False

    exe = config.browser.executable_path
    if exe is None:
        console.print("[green]✓ Playwright found (bundled Chromium)[/green]")
        return True
    if not exe.exists():
        console.print(f"[red]✗ VULNSCAN_CHROME_BIN points to a missing file: {exe}[/red]")
        return False
    if not os.access(exe, os.X_OK):
        os.chmod(exe, 0o755)
    console.print(f"[green]✓ Chromium override: {exe}[/green]")
    return True


def config_table(config: AppConfig) -> Table:
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_row("API", f"http://{config.api.host}:{config.api.port}")
    table.add_row("Store", str(config.store.db_path) if config.store.durable else "memory only")
    table.add_row("Worker slots", str(config.worker.slots))
    table.add_row("Upstream proxies", str(len(config.browser.proxies)))
    table.add_row("Page budget", f"{config.scan.max_pages} (ceiling {config.scan.pages_ceiling})")
    table.add_row("Data dir", str(DATA_DIR))
    return table


def build_server(config: AppConfig):
    """uvicorn server for the FastAPI app; the app's lifespan starts the workers."""
    import uvicorn

    return uvicorn.Server(uvicorn.Config(
        "vulnscan.api:app",
        host=config.api.host,
        port=config.api.port,
        log_level="warning",
        reload=False,
    ))


async def main():
    console.print(BANNER, style="bold cyan")
    config = get_config()
    setup_logging(os.environ.get("VULNSCAN_LOG_LEVEL", "INFO"))

    console.rule("[bold]Preflight")
    if not check_playwright(config):
        sys.exit(1)
    console.print(f"[green]✓ Logs in {LOGS_DIR}[/green]")

    console.rule("[bold]Configuration")
    console.print(config_table(config))

    server = build_server(config)
    console.rule("[bold green]VulnScan is ready")
    console.print("[dim]Ctrl+C to stop[/dim]\n")
    try:
        await server.serve()
    except asyncio.CancelledError:
        server.should_exit = True


def run():
    """Console-script entry point; SIGINT/SIGTERM cancel the running tasks."""
    loop = asyncio.new_event_loop()

    def on_signal(signum, frame):
        console.print(f"\n[yellow]Signal {signum} received, shutting down...[/yellow]")
        for task in asyncio.all_tasks(loop):
            task.cancel()

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, on_signal)

    try:
        loop.run_until_complete(main())
    except (KeyboardInterrupt, SystemExit):
        console.print("\n[yellow]Stopped.[/yellow]")
    finally:
        loop.close()


if __name__ == "__main__":
    run()
