"""Tests for the regression harness scoring."""

import importlib.util
from pathlib import Path

import pytest

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "scanner_regression.py"
BASELINE = SCRIPT.parent.parent / "regression" / "baseline.example.json"


@pytest.fixture(scope="module")
def regression():
    spec = importlib.util.spec_from_file_location("scanner_regression", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class TestScoring:
    """Greedy matching and ratios."""

    def test_score(self, regression):
        findings = [
            {"module": "dast-xss", "title": "Reflected XSS Detected", "severity": "high"},
            {"module": "security-headers", "title": "Missing CSP header", "severity": "medium"},
        ]
        expected = [
            {"module": "dast-xss", "title_contains": "xss", "severity": "high"},
            {"module": "dast-sqli"},
        ]
        scored = regression.score_findings(findings, expected)
        assert (scored["tp"], scored["fp"], scored["fn"]) == (1, 1, 1)
        assert scored["precision"] == 0.5
        assert scored["recall"] == 0.5
        assert scored["false_positives"][0]["module"] == "security-headers"

    def test_one_expectation_matches_once(self, regression):
        finding = {"module": "tls", "title": "Expired TLS Certificate", "severity": "critical"}
        scored = regression.score_findings([finding, finding], [{"module": "tls"}])
        assert (scored["tp"], scored["fp"]) == (1, 1)

    def test_aggregate(self, regression):
        results = [{"metrics": {"tp": 2, "fp": 0, "fn": 2}}, {"metrics": {"tp": 0, "fp": 2, "fn": 0}}]
        assert regression.aggregate(results) == {"tp": 2, "fp": 2, "fn": 2, "precision": 0.5,
                                                 "recall": 0.5, "f1": 0.5}

    def test_example_baseline_loads(self, regression):
        data = regression.load_baseline(BASELINE)
        assert data["profiles"]
