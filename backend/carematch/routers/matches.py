from fastapi import APIRouter, HTTPException, Query

from carematch.models import ProviderMatch, SeekerMatch
from carematch.routers.chat import orchestrator
from carematch.services.errors import CareMatchError, NotFoundError
from carematch.services.matching import find_matching_providers, find_matching_seekers

router = APIRouter(prefix="/matches", tags=["matches"])


def _raise_match_http_error(exc: CareMatchError) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=404, detail=str(exc))
    raise HTTPException(status_code=500, detail=str(exc))


@router.get("/providers", response_model=list[ProviderMatch])
def matching_providers(seeker_email: str = Query(...)):
    store = orchestrator.store
    try:
        providers = find_matching_providers(store, seeker_email.strip().lower())
        return [ProviderMatch(provider=p, skills=store.get_skills(p.email)) for p in providers]
    except CareMatchError as exc:
        _raise_match_http_error(exc)


@router.get("/seekers", response_model=list[SeekerMatch])
def matching_seekers(provider_email: str = Query(...)):
    store = orchestrator.store
    try:
        seekers = find_matching_seekers(store, provider_email.strip().lower())
        return [SeekerMatch(seeker=s, skills=store.get_skills(s.email)) for s in seekers]
    except CareMatchError as exc:
        _raise_match_http_error(exc)
