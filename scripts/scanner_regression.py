#!/usr/bin/env python3
"""
Scanner regression harness.

Submits each baseline profile to a running VulnScan backend, waits for the
scan to finish and scores the findings against the expected list
(TP/FP/FN, precision, recall, F1) so releases can be compared.
"""

from __future__ import annotations

import argparse
import json
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import httpx

TERMINAL_STATUSES = ("completed", "failed", "cancelled")
POLL_INTERVAL_S = 1.0


def load_baseline(path: Path) -> Dict[str, Any]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict) or not isinstance(data.get("profiles"), dict) or not data["profiles"]:
        raise ValueError(f"{path}: expected an object with a non-empty 'profiles' map")
    return data


class BackendClient:
    """Thin wrapper over the scan API."""

    def __init__(self, base_url: str, timeout: float = 30.0):
        self._http = httpx.Client(base_url=base_url, timeout=timeout, verify=False)

    def close(self):
        self._http.close()

    def _call(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            resp = self._http.request(method, path, json=body)
        except httpx.HTTPError as exc:
            raise RuntimeError(f"{method} {path} failed: {exc}") from exc
        if resp.is_error:
            raise RuntimeError(f"{method} {path} -> HTTP {resp.status_code}: {resp.text[:300]}")
        return resp.json() if resp.content else {}

    def submit(self, profile: Dict[str, Any]) -> str:
        body = {
            "url": profile["target_url"],
            "framework": profile.get("framework", "auto"),
            "options": {
                "depth": int(profile.get("depth", 2)),
                "max_pages": int(profile.get("max_pages", 15)),
                "rate_limit_rps": float(profile.get("rate_limit_rps", 5)),
                "subdomains": bool(profile.get("subdomains", False)),
            },
            "active_detector_ids": list(profile.get("active_detector_ids", [])),
        }
        return self._call("POST", "/api/scans", body)["scan_id"]

    def wait(self, scan_id: str, timeout_s: int) -> Dict[str, Any]:
        deadline = time.monotonic() + timeout_s
        while True:
            scan = self._call("GET", f"/api/scans/{scan_id}")
            if scan.get("status") in TERMINAL_STATUSES:
                return scan
            if time.monotonic() > deadline:
                try:
                    self._call("POST", f"/api/scans/{scan_id}/cancel")
                except RuntimeError as exc:
                    print(f"[regression] could not cancel {scan_id}: {exc}")
                raise TimeoutError(f"Scan {scan_id} did not finish within {timeout_s}s")
            time.sleep(POLL_INTERVAL_S)


def _lower(value: Any) -> str:
    return str(value or "").strip().lower()


def match_expected(finding: Dict[str, Any], expected: Dict[str, Any]) -> bool:
    """Module must match; title substring and severity only when given."""
    if _lower(finding.get("module")) != _lower(expected.get("module")):
        return False
    needle = _lower(expected.get("title_contains"))
    if needle and needle not in _lower(finding.get("title")):
        return False
    severity = _lower(expected.get("severity"))
    return not severity or severity == _lower(finding.get("severity"))


def _ratios(tp: int, fp: int, fn: int) -> Dict[str, float]:
    precision = tp / (tp + fp) if tp + fp else 0.0
    recall = tp / (tp + fn) if tp + fn else 0.0
    f1 = 2 * precision * recall / (precision + recall) if precision + recall else 0.0
    return {"precision": round(precision, 4), "recall": round(recall, 4), "f1": round(f1, 4)}


def score_findings(findings: Iterable[Dict[str, Any]], expected: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Each expectation can be satisfied by at most one finding."""
    open_slots = list(range(len(expected)))
    unexpected = []
    for finding in findings:
        slot = next((i for i in open_slots if match_expected(finding, expected[i])), None)
        if slot is None:
            unexpected.append({k: finding.get(k) for k in ("module", "title", "severity")})
        else:
            open_slots.remove(slot)

    tp = len(expected) - len(open_slots)
    fp = len(unexpected)
    fn = len(open_slots)
    return {"tp": tp, "fp": fp, "fn": fn, **_ratios(tp, fp, fn), "false_positives": unexpected[:100]}


def aggregate(results: List[Dict[str, Any]]) -> Dict[str, Any]:
    totals = {key: sum(int(r["metrics"][key]) for r in results) for key in ("tp", "fp", "fn")}
    return {**totals, **_ratios(totals["tp"], totals["fp"], totals["fn"])}


def run_profile(backend: BackendClient, name: str, profile: Dict[str, Any], timeout_s: int) -> Dict[str, Any]:
    if not str(profile.get("target_url", "")).strip():
        raise ValueError(f"Profile '{name}' has no target_url")

    scan = backend.wait(backend.submit(profile), timeout_s)
    expected = list(profile.get("expected") or [])
    return {
        "profile": name,
        "target_url": profile["target_url"],
        "scan_id": scan["id"],
        "status": scan.get("status"),
        "stats": scan.get("stats", {}),
        "benchmark": scan.get("benchmark"),
        "metrics": score_findings(scan.get("findings") or [], expected),
        "expected": expected,
    }


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Score VulnScan findings against baseline profiles.")
    parser.add_argument("--api-base", default="http://127.0.0.1:8443", help="VulnScan API base URL")
    parser.add_argument("--baseline", default="regression/baseline.example.json",
                        help="Baseline JSON with profiles and their expected findings")
    parser.add_argument("--profiles", default="", help="Comma separated subset of profiles to run")
    parser.add_argument("--timeout", type=int, default=900, help="Seconds to wait for each scan")
    parser.add_argument("--release", default="", help="Release label stored in the report")
    parser.add_argument("--output", default="regression/reports/latest.json", help="Report path")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    baseline_path = Path(args.baseline)
    profiles = load_baseline(baseline_path)["profiles"]

    names = [n.strip() for n in args.profiles.split(",") if n.strip()] or sorted(profiles)
    unknown = sorted(set(names) - set(profiles))
    if unknown:
        raise ValueError(f"Unknown profile(s): {', '.join(unknown)}")

    backend = BackendClient(args.api_base)
    results = []
    try:
        for name in names:
            print(f"[regression] {name}: scanning {profiles[name].get('target_url')}")
            result = run_profile(backend, name, profiles[name], args.timeout)
            m = result["metrics"]
            print(f"[regression] {name}: {result['status']} tp={m['tp']} fp={m['fp']} fn={m['fn']} f1={m['f1']:.4f}")
            results.append(result)
    finally:
        backend.close()

    summary = aggregate(results)
    report = {
        "created_at": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "release": args.release,
        "api_base": args.api_base,
        "baseline": str(baseline_path),
        "profiles": names,
        "summary": summary,
        "results": results,
    }
    output = Path(args.output)
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(json.dumps(report, indent=2), encoding="utf-8")

    print(f"[regression] total tp={summary['tp']} fp={summary['fp']} fn={summary['fn']} "
          f"precision={summary['precision']:.4f} recall={summary['recall']:.4f} f1={summary['f1']:.4f}")
    print(f"[regression] wrote {output}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
