"""
VulnScan - FastAPI Backend
REST API + WebSocket progress stream for scan clients.
"""

import json
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from vulnscan import __version__
from vulnscan.config import AppConfig, get_config
from vulnscan.models import ScanOptions
from vulnscan.service import InvalidTarget, ScanService


logger = logging.getLogger(__name__)


# ── Globals ─────────────────────────────────────────────────────

config: AppConfig = get_config()
service = ScanService(config)

# Canonical module ids -> display names. The engine only emits ids.
MODULE_DISPLAY_NAMES = {
    "system": "System",
    "tls": "TLS/SSL",
    "crawler": "Crawler",
    "fuzzer": "Fuzzer",
    "dast-xss": "Reflected XSS",
    "dast-sqli": "SQL Injection",
    "headers": "External Header Grade",
}


# ── Lifespan ────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown."""
    await service.start()
    logger.info("Backend running on %s:%s", config.api.host, config.api.port)
    yield
    await service.stop()


# ── FastAPI App ─────────────────────────────────────────────────

app = FastAPI(
    title="VulnScan API",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.api.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Pydantic Models ────────────────────────────────────────────

class ScanOptionsIn(BaseModel):
    depth: int = 2
    max_pages: int = 15
    rate_limit_rps: float = 5.0
    subdomains: bool = False

class ScanCreate(BaseModel):
    url: str
    framework: str = "auto"
    options: ScanOptionsIn = Field(default_factory=ScanOptionsIn)
    active_detector_ids: List[str] = Field(default_factory=list)


# ── Scans ───────────────────────────────────────────────────────

@app.post("/api/scans")
async def create_scan(req: ScanCreate):
    """Queue a new scan."""
    try:
        scan_id = await service.submit_scan(
            req.url,
            framework=req.framework,
            options=ScanOptions(
                depth=req.options.depth,
                max_pages=req.options.max_pages,
                rate_limit_rps=req.options.rate_limit_rps,
                subdomains=req.options.subdomains,
            ),
            active_detector_ids=req.active_detector_ids,
        )
    except InvalidTarget as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"scan_id": scan_id, "status": "queued"}


@app.get("/api/scans")
async def list_scans():
    """List scans, newest first (without event history)."""
    out = []
    for scan in await service.list_scans():
        data = scan.to_dict()
        data.pop("events", None)
        out.append(data)
    return out


@app.get("/api/scans/{scan_id}")
async def get_scan(scan_id: str):
    scan = await service.get_scan(scan_id)
    if scan is None:
        raise HTTPException(status_code=404, detail="Scan not found")
    return scan.to_dict()


@app.post("/api/scans/{scan_id}/cancel")
async def cancel_scan(scan_id: str):
    if not await service.cancel_scan(scan_id):
        raise HTTPException(status_code=404, detail="Scan not found")
    return {"status": "cancel_requested"}


# ── WebSocket ───────────────────────────────────────────────────

@app.websocket("/ws/scans/{scan_id}")
async def scan_events(ws: WebSocket, scan_id: str):
    """Stream one scan's events until its terminal event."""
    await ws.accept()
    if await service.get_scan(scan_id) is None:
        await ws.send_text(json.dumps({"error": "Scan not found"}))
        await ws.close(code=4404)
        return

    try:
        async for event in service.stream_events(scan_id):
            await ws.send_text(json.dumps(event.to_dict()))
        await ws.close()
    except WebSocketDisconnect:
        logger.debug("Client left stream for %s", scan_id)


# ── Benchmarks ──────────────────────────────────────────────────

@app.get("/api/benchmark/metrics")
async def benchmark_metrics(since: Optional[str] = Query(None), until: Optional[str] = Query(None)):
    """Raw fallback-fetch attempts recorded by this process."""
    try:
        return service.benchmark_metrics(since, until)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Bad timestamp: {e}")


@app.get("/api/benchmark/modules")
async def benchmark_modules():
    """Average duration per engine module across stored scans."""
    return await service.module_stats()


@app.get("/api/modules")
async def modules():
    names = dict(MODULE_DISPLAY_NAMES)
    for analyzer_id in service.analyzers.ids:
        names.setdefault(analyzer_id, service.analyzers.get(analyzer_id).name or analyzer_id)
    return names


# ── Health ──────────────────────────────────────────────────────

@app.get("/api/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "ok",
        "version": __version__,
        "store": "durable" if service.store.is_durable else "memory",
        "workers": len(service.pool.workers),
        "workers_running": service.pool.running,
        "queue_size": service.queue.qsize(),
    }
