import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), "scripts"))

from turn_telemetry_report import _parse_payload, build_report


def test_report_counts_tools_errors_and_latency():
    lines = [
        'INFO carematch.services.orchestrator: turn_telemetry={"email": "a@example.com", "latency_ms": 120, "status": "ok", "tool": "store_provider"}',
        'INFO carematch.services.orchestrator: turn_telemetry={"email": "a@example.com", "latency_ms": 9000, "status": "error", "tool": "store_provider"}',
        'INFO carematch.services.orchestrator: turn_telemetry={"email": "b@example.com", "latency_ms": 80, "status": "ok", "tool": ""}',
        "INFO something unrelated",
        "turn_telemetry={broken",
    ]
    rows = [payload for payload in map(_parse_payload, lines) if payload]
    report = build_report(rows, slow_ms=5000)

    assert report["total_turns"] == 3
    assert report["participants"] == 2
    assert report["tool_counts"] == {"store_provider": 2, "text_reply": 1}
    assert report["tool_error_counts"] == {"store_provider": 1}
    assert report["error_rate"] == round(1 / 3, 4)
    assert report["slow_turns"] == 1
    assert report["latency_ms"]["max"] == 9000


def test_empty_report():
    report = build_report([])
    assert report["total_turns"] == 0
    assert report["error_rate"] == 0.0
    assert report["latency_ms"] == {"p50": 0, "p95": 0, "max": 0}
