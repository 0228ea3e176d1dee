#!/usr/bin/env python3
import argparse
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path

REPO_BACKEND = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_BACKEND))

from carematch.services.entity_store import EntityStore  # noqa: E402
from carematch.services.orchestrator import CareMatchOrchestrator  # noqa: E402
from carematch.services.transcript_replay import replay_transcript  # noqa: E402


def main() -> int:
    parser = argparse.ArgumentParser(description="Replay an `email: message` transcript through CareMatch.")
    parser.add_argument(
        "transcript",
        nargs="?",
        default=str(Path(__file__).with_name("sample_transcript.txt")),
        help="Transcript file, one `email: message` per line.",
    )
    parser.add_argument("--db", default="", help="SQLite path; defaults to CAREMATCH_DB_PATH or backend/data.")
    parser.add_argument("--json-out", default="", help="Optional path to write the replay summary.")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    store = EntityStore(db_path=args.db) if args.db else None
    orchestrator = CareMatchOrchestrator(store=store)
    if not orchestrator.llm_available:
        print("OPENAI_API_KEY is not set; every turn will fail.", file=sys.stderr)

    with open(args.transcript, "r", encoding="utf-8") as handle:
        summary = replay_transcript(orchestrator, handle)

    print(f"Processed {summary.processed} messages ({summary.failed} failed, {summary.skipped} skipped)")
    print("Seeker -> provider matches:")
    for seeker_email, providers in summary.provider_matches.items():
        print(f"  {seeker_email}: {', '.join(providers) or '(none)'}")
    print("Provider -> seeker matches:")
    for provider_email, seekers in summary.seeker_matches.items():
        print(f"  {provider_email}: {', '.join(seekers) or '(none)'}")

    if args.json_out:
        path = Path(args.json_out)
        path.write_text(json.dumps(asdict(summary), indent=2) + "\n", encoding="utf-8")
        print(f"Wrote summary: {path}")
    return 0 if summary.failed == 0 else 1


if __name__ == "__main__":
    raise SystemExit(main())
