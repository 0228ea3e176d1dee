import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from carematch.services.errors import CareMatchError
from carematch.services.matching import find_matching_providers, find_matching_seekers
from carematch.services.orchestrator import CareMatchOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class ReplaySummary:
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    provider_matches: Dict[str, List[str]] = field(default_factory=dict)
    seeker_matches: Dict[str, List[str]] = field(default_factory=dict)


def parse_transcript_line(line: str) -> Optional[Tuple[str, str]]:
    """Split an ``email: message`` line; blank or malformed lines yield None."""
    text = line.strip()
    if not text:
        return None
    email, sep, message = text.partition(": ")
    if not sep or "@" not in email or not message.strip():
        return None
    return email.strip().lower(), message.strip()


def replay_transcript(orchestrator: CareMatchOrchestrator, lines: Iterable[str]) -> ReplaySummary:
    summary = ReplaySummary()
    for line in lines:
        parsed = parse_transcript_line(line)
        if parsed is None:
            if line.strip():
                logger.info("Skipping invalid line format: %s", line.strip())
                summary.skipped += 1
            continue
        email, message = parsed
        logger.info("Processing message from %s", email)
        response = orchestrator.handle_message(message=message, email=email)
        if response.status == "ok":
            summary.processed += 1
        else:
            summary.failed += 1

    store = orchestrator.store
    for seeker in store.list_seekers():
        try:
            summary.provider_matches[seeker.email] = [p.email for p in find_matching_providers(store, seeker.email)]
        except CareMatchError:
            logger.exception("Could not match providers for %s", seeker.email)
    for provider in store.list_providers():
        try:
            summary.seeker_matches[provider.email] = [s.email for s in find_matching_seekers(store, provider.email)]
        except CareMatchError:
            logger.exception("Could not match seekers for %s", provider.email)
    return summary
