"""
VulnScan - Data Model
Scan records, findings, events and the page/form snapshots the engine passes around.
"""

import copy
import json
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


SEVERITIES = ("low", "medium", "high", "critical")
UNSIGNED_EVIDENCE_KEYS = ("screenshot",)

STATUS_QUEUED = "queued"
STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"
TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_FAILED, STATUS_CANCELLED)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def parse_iso(value: str) -> datetime:
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True)
class ScanOptions:
    depth: int = 2
    max_pages: int = 15
    rate_limit_rps: float = 5.0
    subdomains: bool = False

    def to_dict(self) -> dict:
        return {
            "depth": self.depth,
            "max_pages": self.max_pages,
            "rate_limit_rps": self.rate_limit_rps,
            "subdomains": self.subdomains,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "ScanOptions":
        data = data or {}
        return cls(
            depth=int(data.get("depth", cls.depth)),
            max_pages=int(data.get("max_pages", cls.max_pages)),
            rate_limit_rps=float(data.get("rate_limit_rps", cls.rate_limit_rps)),
            subdomains=bool(data.get("subdomains", cls.subdomains)),
        )


@dataclass(frozen=True)
class ScanJob:
    """One queued unit of work. One job = one scan run attempt."""

    scan_id: str
    target: str
    options: ScanOptions = field(default_factory=ScanOptions)
    active_detector_ids: tuple = ()
    framework: str = "auto"
    attempt: int = 1
    id: str = field(default_factory=lambda: new_id("job"))

    def requeued(self) -> "ScanJob":
        return replace(self, attempt=self.attempt + 1, id=new_id("job"))


@dataclass(frozen=True)
class FormInput:
    name: str
    type: str = "text"


@dataclass(frozen=True)
class FormDefinition:
    action: str
    method: str
    inputs: tuple = ()
    raw_html: str = ""


@dataclass
class PageContext:
    """Snapshot of one crawled page, handed to analyzers and the fuzzer."""

    url: str
    html: str
    headers: Dict[str, str]
    forms: List[FormDefinition] = field(default_factory=list)
    screenshot: Optional[str] = None


@dataclass
class FindingSource:
    api: str
    fallback_used: Optional[str] = None
    latency_ms: Optional[int] = None

    def to_dict(self) -> dict:
        out: Dict[str, Any] = {"api": self.api}
        if self.fallback_used is not None:
            out["fallback_used"] = self.fallback_used
        if self.latency_ms is not None:
            out["latency_ms"] = self.latency_ms
        return out


@dataclass
class Finding:
    """A single reported issue."""

    scan_id: str
    module: str
    title: str
    severity: str  # low, medium, high, critical
    description: str
    evidence: Dict[str, Any] = field(default_factory=dict)
    remediation: str = ""
    refs: List[str] = field(default_factory=list)
    confidence: float = 1.0
    source: FindingSource = field(default_factory=lambda: FindingSource(api="engine"))
    id: str = field(default_factory=lambda: new_id("f"))
    created_at: str = field(default_factory=utc_now_iso)

    def __post_init__(self):
        if self.severity not in SEVERITIES:
            raise ValueError(f"Unknown severity: {self.severity}")
        self.confidence = max(0.0, min(1.0, float(self.confidence)))

    def evidence_signature(self) -> str:
        # Screenshots are attached per page and stay out of the dedup key.
        evidence = {k: v for k, v in self.evidence.items() if k not in UNSIGNED_EVIDENCE_KEYS}
        return json.dumps(evidence, sort_keys=True, default=str)

    def dedup_key(self) -> tuple:
        return (self.title, self.evidence_signature())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "scan_id": self.scan_id,
            "module": self.module,
            "title": self.title,
            "severity": self.severity,
            "confidence": self.confidence,
            "description": self.description,
            "evidence": copy.deepcopy(self.evidence),
            "remediation": self.remediation,
            "refs": list(self.refs),
            "source": self.source.to_dict(),
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Finding":
        src = data.get("source") or {}
        return cls(
            id=data["id"],
            scan_id=data["scan_id"],
            module=data["module"],
            title=data["title"],
            severity=data["severity"],
            confidence=data.get("confidence", 1.0),
            description=data.get("description", ""),
            evidence=dict(data.get("evidence") or {}),
            remediation=data.get("remediation", ""),
            refs=list(data.get("refs") or []),
            source=FindingSource(
                api=src.get("api", "engine"),
                fallback_used=src.get("fallback_used"),
                latency_ms=src.get("latency_ms"),
            ),
            created_at=data.get("created_at") or utc_now_iso(),
        )


@dataclass(frozen=True)
class ScanEvent:
    scan_id: str
    module: str
    status: str  # started, completed, warning, error
    progress_pct: int
    message: str
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict:
        return {
            "scan_id": self.scan_id,
            "module": self.module,
            "status": self.status,
            "progress_pct": self.progress_pct,
            "message": self.message,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ScanEvent":
        return cls(
            scan_id=data["scan_id"],
            module=data["module"],
            status=data["status"],
            progress_pct=int(data.get("progress_pct", 0)),
            message=data.get("message", ""),
            timestamp=data.get("timestamp") or utc_now_iso(),
        )


@dataclass(frozen=True)
class BenchmarkMetric:
    """One fallback-fetch attempt. Never mutated after creation."""

    endpoint_url: str
    source: str
    latency_ms: int
    http_status: int
    is_fallback: bool
    method: str = "GET"
    timestamp: str = field(default_factory=utc_now_iso)
    id: str = field(default_factory=lambda: new_id("m"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "endpoint_url": self.endpoint_url,
            "source": self.source,
            "latency_ms": self.latency_ms,
            "http_status": self.http_status,
            "is_fallback": self.is_fallback,
            "method": self.method,
            "timestamp": self.timestamp,
        }


@dataclass
class ScanBenchmark:
    baseline_latency_ms: int = 0
    avg_request_latency_ms: int = 0
    requests_per_second: float = 0.0
    total_requests: int = 0
    fallback_usage_percent: float = 0.0
    telemetry_source: str = ""

    def to_dict(self) -> dict:
        return {
            "baseline_latency_ms": self.baseline_latency_ms,
            "avg_request_latency_ms": self.avg_request_latency_ms,
            "requests_per_second": self.requests_per_second,
            "total_requests": self.total_requests,
            "fallback_usage_percent": self.fallback_usage_percent,
            "telemetry_source": self.telemetry_source,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ScanBenchmark":
        return cls(**{k: data[k] for k in cls().to_dict() if k in data})


@dataclass
class ScanStats:
    total: int = 0
    critical: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0
    duration_ms: int = 0

    def bump(self, severity: str):
        self.total += 1
        setattr(self, severity, getattr(self, severity) + 1)

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "critical": self.critical,
            "high": self.high,
            "medium": self.medium,
            "low": self.low,
            "duration_ms": self.duration_ms,
        }


@dataclass
class ScanResult:
    """The scan record: one run's full state and history."""

    id: str
    target: str
    status: str = STATUS_QUEUED
    start_time: str = field(default_factory=utc_now_iso)
    end_time: Optional[str] = None
    findings: List[Finding] = field(default_factory=list)
    events: List[ScanEvent] = field(default_factory=list)
    stats: ScanStats = field(default_factory=ScanStats)
    options: ScanOptions = field(default_factory=ScanOptions)
    active_detector_ids: List[str] = field(default_factory=list)
    framework: str = "auto"
    benchmark: Optional[ScanBenchmark] = None
    heartbeat_at: Optional[str] = None
    worker_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_job(self, attempt: int = 1) -> ScanJob:
        return ScanJob(
            scan_id=self.id,
            target=self.target,
            options=self.options,
            active_detector_ids=tuple(self.active_detector_ids),
            framework=self.framework,
            attempt=attempt,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "target": self.target,
            "status": self.status,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "findings": [f.to_dict() for f in self.findings],
            "events": [e.to_dict() for e in self.events],
            "stats": self.stats.to_dict(),
            "options": self.options.to_dict(),
            "active_detector_ids": list(self.active_detector_ids),
            "framework": self.framework,
            "benchmark": self.benchmark.to_dict() if self.benchmark else None,
            "heartbeat_at": self.heartbeat_at,
            "worker_id": self.worker_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ScanResult":
        stats = data.get("stats") or {}
        bench = data.get("benchmark")
        return cls(
            id=data["id"],
            target=data["target"],
            status=data.get("status", STATUS_QUEUED),
            start_time=data.get("start_time") or utc_now_iso(),
            end_time=data.get("end_time"),
            findings=[Finding.from_dict(f) for f in data.get("findings") or []],
            events=[ScanEvent.from_dict(e) for e in data.get("events") or []],
            stats=ScanStats(**{k: int(stats.get(k, 0)) for k in ScanStats().to_dict()}),
            options=ScanOptions.from_dict(data.get("options")),
            active_detector_ids=list(data.get("active_detector_ids") or []),
            framework=data.get("framework") or "auto",
            benchmark=ScanBenchmark.from_dict(bench) if bench else None,
            heartbeat_at=data.get("heartbeat_at"),
            worker_id=data.get("worker_id"),
        )
