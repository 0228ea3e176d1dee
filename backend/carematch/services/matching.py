import logging
from typing import List

from carematch.models import ProviderProfile, SeekerProfile
from carematch.services.entity_store import EntityStore

logger = logging.getLogger(__name__)


def _location_contains(haystack: str, needle: str) -> bool:
    # Plain substring containment on city strings; there is no geocoding.
    return needle.lower() in haystack.lower()


def find_matching_providers(store: EntityStore, seeker_email: str) -> List[ProviderProfile]:
    """Providers whose location contains the seeker's and whose rate fits the budget, cheapest first."""
    seeker = store.get_seeker(seeker_email)
    logger.info(
        "finding providers for seeker=%s location=%r budget=%.2f",
        seeker.email,
        seeker.location,
        seeker.budget,
    )
    matches = [
        provider
        for provider in store.list_providers()
        if _location_contains(provider.location, seeker.location)
        and provider.rate_expectations <= seeker.budget
    ]
    matches.sort(key=lambda provider: (provider.rate_expectations, provider.email))
    return matches


def find_matching_seekers(store: EntityStore, provider_email: str) -> List[SeekerProfile]:
    """Seekers whose location contains the provider's and whose budget covers the rate, highest budget first."""
    provider = store.get_provider(provider_email)
    logger.info(
        "finding seekers for provider=%s location=%r rate=%.2f",
        provider.email,
        provider.location,
        provider.rate_expectations,
    )
    matches = [
        seeker
        for seeker in store.list_seekers()
        if _location_contains(seeker.location, provider.location)
        and seeker.budget >= provider.rate_expectations
    ]
    matches.sort(key=lambda seeker: (-seeker.budget, seeker.email))
    return matches


def provider_missing_fields(profile: ProviderProfile) -> List[str]:
    missing = []
    if not profile.location.strip():
        missing.append("location")
    if profile.rate_expectations <= 0:
        missing.append("rate_expectations")
    return missing


def seeker_missing_fields(profile: SeekerProfile) -> List[str]:
    missing = []
    if not profile.location.strip():
        missing.append("location")
    if not profile.care_needs.strip():
        missing.append("care_needs")
    if not profile.schedule_requirements.strip():
        missing.append("schedule_requirements")
    if profile.budget <= 0:
        missing.append("budget")
    return missing


def is_provider_complete(profile: ProviderProfile) -> bool:
    return not provider_missing_fields(profile)


def is_seeker_complete(profile: SeekerProfile) -> bool:
    return not seeker_missing_fields(profile)
