#!/usr/bin/env python3
import argparse
import json
import re
import sys
from collections import Counter
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

TELEMETRY_PATTERN = re.compile(r"turn_telemetry=(\{.*\})")


def _iter_lines(paths: List[str]) -> Iterable[str]:
    if not paths:
        for line in sys.stdin:
            yield line.rstrip("\n")
        return
    for path in paths:
        with open(path, "r", encoding="utf-8", errors="replace") as handle:
            for line in handle:
                yield line.rstrip("\n")


def _parse_payload(line: str) -> Optional[Dict[str, Any]]:
    match = TELEMETRY_PATTERN.search(line)
    if not match:
        return None
    try:
        value = json.loads(match.group(1))
    except json.JSONDecodeError:
        return None
    if not isinstance(value, dict):
        return None
    return value


def _safe_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _percentile(sorted_values: List[int], fraction: float) -> int:
    if not sorted_values:
        return 0
    index = min(len(sorted_values) - 1, int(round(fraction * (len(sorted_values) - 1))))
    return sorted_values[index]


def build_report(rows: List[Dict[str, Any]], slow_ms: int = 5000) -> Dict[str, Any]:
    status_counts: Counter[str] = Counter()
    tool_counts: Counter[str] = Counter()
    tool_errors: Counter[str] = Counter()
    participants = set()
    latencies: List[int] = []
    slow_turns = 0

    for row in rows:
        status = str(row.get("status", "unknown"))
        tool = str(row.get("tool") or "text_reply")
        status_counts[status] += 1
        tool_counts[tool] += 1
        if status == "error":
            tool_errors[tool] += 1
        if row.get("email"):
            participants.add(str(row["email"]))
        latency = _safe_int(row.get("latency_ms", 0))
        if latency >= slow_ms:
            slow_turns += 1
        latencies.append(latency)

    latencies.sort()
    error_rate = (status_counts.get("error", 0) / len(rows)) if rows else 0.0
    return {
        "total_turns": len(rows),
        "participants": len(participants),
        "status_counts": dict(status_counts),
        "tool_counts": dict(tool_counts.most_common()),
        "tool_error_counts": dict(tool_errors.most_common()),
        "error_rate": round(error_rate, 4),
        "slow_turns": slow_turns,
        "latency_ms": {
            "p50": _percentile(latencies, 0.5),
            "p95": _percentile(latencies, 0.95),
            "max": latencies[-1] if latencies else 0,
        },
    }


def print_human(report: Dict[str, Any]) -> None:
    print(f"Total turns: {report['total_turns']} across {report['participants']} participants")
    print(f"Error rate: {report['error_rate']:.2%}")
    print("Tool calls:")
    errors = report["tool_error_counts"]
    for tool, count in report["tool_counts"].items():
        suffix = f" ({errors[tool]} failed)" if tool in errors else ""
        print(f"  - {tool}: {count}{suffix}")
    latency = report["latency_ms"]
    print(f"Latency: p50={latency['p50']}ms p95={latency['p95']}ms max={latency['max']}ms")
    print(f"Slow turns: {report['slow_turns']}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Summarize CareMatch turn_telemetry logs.")
    parser.add_argument("log_files", nargs="*", help="Log files to read; stdin when omitted.")
    parser.add_argument("--slow-ms", type=int, default=5000, help="Latency at or above which a turn counts as slow.")
    parser.add_argument("--json-out", default="", help="Write the report as JSON to this path.")
    args = parser.parse_args()

    rows = [payload for payload in map(_parse_payload, _iter_lines(args.log_files)) if payload]
    report = build_report(rows, slow_ms=args.slow_ms)
    print_human(report)

    if args.json_out:
        path = Path(args.json_out)
        path.write_text(json.dumps(report, indent=2) + "\n", encoding="utf-8")
        print(f"Wrote report: {path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
