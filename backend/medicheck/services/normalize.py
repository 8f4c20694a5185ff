# backend/medicheck/services/normalize.py
import asyncio
import logging
from typing import List, NamedTuple, Optional, Sequence

import requests

from medicheck.config import HTTP_TIMEOUT_SECONDS, RXNAV_BASE
from medicheck.schemas import DrugReference, DrugSearchResult

log = logging.getLogger("normalize")

MIN_TERM_LENGTH = 2


class TermMatch(NamedTuple):
    rxcui: str
    synonym: Optional[str]


def approximate_term(term: str, max_entries: int = 1) -> List[dict]:
    """
    Query the RxNorm approximate-match endpoint.
    Returns the raw candidate list (possibly empty). Raises on transport errors.
    """
    params = {"term": term, "maxEntries": max_entries}
    r = requests.get(f"{RXNAV_BASE}/approximateTerm.json", params=params, timeout=HTTP_TIMEOUT_SECONDS)
    r.raise_for_status()
    j = r.json()
    group = j.get("approximateGroup") if isinstance(j, dict) else None
    candidates = group.get("candidate") if isinstance(group, dict) else None
    if not isinstance(candidates, list):
        return []
    return [c for c in candidates if isinstance(c, dict)]


def resolve_term(name: str) -> Optional[TermMatch]:
    """
    Lookup the best RxCUI for a free-text drug name.
    Returns None when the name is too short, nothing matches or the service is unreachable.
    """
    name = (name or "").strip()
    if len(name) < MIN_TERM_LENGTH:
        return None
    try:
        candidates = approximate_term(name, max_entries=1)
    except (requests.RequestException, ValueError) as e:
        log.warning("RxNorm lookup failed for %r: %s", name, e)
        return None
    for c in candidates:
        rxcui = c.get("rxcui")
        if rxcui:
            return TermMatch(rxcui=str(rxcui), synonym=c.get("name") or c.get("synonym"))
    return None


def resolve_reference(ref: DrugReference) -> DrugReference:
    match = resolve_term(ref.display_name)
    if match is None:
        # keep an id the caller picked from the catalog
        return ref
    return ref.model_copy(update={"resolved_id": match.rxcui, "synonym": match.synonym})


async def resolve_all(refs: Sequence[DrugReference]) -> List[DrugReference]:
    """Resolve every reference concurrently; output order follows input order."""
    return list(await asyncio.gather(*(asyncio.to_thread(resolve_reference, r) for r in refs)))


def search_catalog(query: str, limit: int = 10) -> List[DrugSearchResult]:
    """Candidate drugs for a partial name, one entry per RxCUI."""
    query = (query or "").strip()
    if len(query) < MIN_TERM_LENGTH:
        return []
    try:
        candidates = approximate_term(query, max_entries=limit)
    except (requests.RequestException, ValueError) as e:
        log.warning("Drug search failed for %r: %s", query, e)
        return []
    results = []
    seen = set()
    for c in candidates:
        rxcui = c.get("rxcui")
        if not rxcui or rxcui in seen:
            continue
        seen.add(rxcui)
        synonym = c.get("name") or c.get("synonym")
        results.append(DrugSearchResult(name=synonym or query, rxcui=str(rxcui), synonym=synonym))
    return results
