# backend/medicheck/services/registry.py
import logging
from typing import Any, Dict, List, Optional, Sequence

import requests
from pydantic import BaseModel, ValidationError, field_validator
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from medicheck.config import HTTP_TIMEOUT_SECONDS, RETRY_ATTEMPTS, RXNAV_BASE
from medicheck.schemas import (
    Citation,
    Confidence,
    InteractionRecord,
    RegistryResult,
    RegistryStatus,
    Severity,
)

log = logging.getLogger("registry")

# The registry only distinguishes "high" from everything else ("N/A", "", missing).
REGISTRY_SEVERITY = {
    "high": Severity.major,
}


def map_registry_severity(token: Any) -> Severity:
    if isinstance(token, str):
        return REGISTRY_SEVERITY.get(token.strip().lower(), Severity.moderate)
    return Severity.moderate


def _as_text(v: Any) -> Optional[str]:
    if v is None or isinstance(v, str):
        return v
    if isinstance(v, (int, float)):
        return str(v)
    return None


# Shape of interaction/list.json; unknown keys are ignored and wrong container
# types fail validation. Scalar fields are coerced so one odd pair cannot sink the rest.
class RegistryConcept(BaseModel):
    rxcui: Optional[str] = None
    name: Optional[str] = None

    @field_validator("rxcui", "name", mode="before")
    @classmethod
    def _text(cls, v):
        return _as_text(v)


class RegistryPair(BaseModel):
    # any token; map_registry_severity decides
    severity: Any = None
    description: Optional[str] = None

    @field_validator("description", mode="before")
    @classmethod
    def _text(cls, v):
        return _as_text(v)


class RegistryInteractionType(BaseModel):
    minConcept: List[RegistryConcept] = []
    interactionPair: List[RegistryPair] = []


class RegistryTypeGroup(BaseModel):
    sourceName: Optional[str] = None
    fullInteractionType: List[RegistryInteractionType] = []


class RegistryPayload(BaseModel):
    fullInteractionTypeGroup: List[RegistryTypeGroup] = []


def _label(concept: Optional[RegistryConcept], names_by_id: Dict[str, str], fallback: str) -> str:
    if concept is None:
        return fallback
    if concept.rxcui and concept.rxcui in names_by_id:
        return names_by_id[concept.rxcui]
    return concept.name or fallback


def parse_registry_payload(payload: Any, names_by_id: Optional[Dict[str, str]] = None) -> List[InteractionRecord]:
    """
    Flatten group -> type -> pair into one record per pair.
    Drug labels come from the enclosing type; the registry does not repeat them per pair.
    """
    names_by_id = names_by_id or {}
    data = RegistryPayload.model_validate(payload or {})
    records = []
    for group in data.fullInteractionTypeGroup:
        source = group.sourceName or "NLM RxNav"
        for itype in group.fullInteractionType:
            concepts = itype.minConcept
            drug_a = _label(concepts[0] if len(concepts) > 0 else None, names_by_id, "Drug A")
            drug_b = _label(concepts[1] if len(concepts) > 1 else None, names_by_id, "Drug B")
            for pair in itype.interactionPair:
                records.append(InteractionRecord(
                    drug_a=drug_a,
                    drug_b=drug_b,
                    severity=map_registry_severity(pair.severity),
                    confidence=Confidence.high,
                    description=pair.description or "Interaction listed in the NLM interaction registry.",
                    recommendations="Consult healthcare provider.",
                    citations=[Citation(title=f"{source} interaction record", source=source)],
                ))
    return records


@retry(stop=stop_after_attempt(RETRY_ATTEMPTS), wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
       reraise=True, retry=retry_if_exception_type((requests.ConnectionError, requests.Timeout)))
def _get_interaction_list(rxcuis: Sequence[str]) -> Any:
    # the registry wants a literal '+' separator, so the query string is built by hand
    url = f"{RXNAV_BASE}/interaction/list.json?rxcuis={'+'.join(rxcuis)}"
    r = requests.get(url, timeout=HTTP_TIMEOUT_SECONDS)
    r.raise_for_status()
    return r.json()


def fetch_registry_interactions(rxcuis: Sequence[Optional[str]],
                                names_by_id: Optional[Dict[str, str]] = None) -> RegistryResult:
    ids = list(dict.fromkeys(i for i in rxcuis if i))
    if len(ids) < 2:
        return RegistryResult(status=RegistryStatus.not_attempted)
    try:
        payload = _get_interaction_list(ids)
        records = parse_registry_payload(payload, names_by_id)
    except (requests.RequestException, ValueError, ValidationError) as e:
        log.warning("Interaction registry unavailable for %s: %s", ids, e)
        return RegistryResult(status=RegistryStatus.failed, error=str(e))
    log.info("Registry returned %d interaction pairs for %s", len(records), ids)
    status = RegistryStatus.found if records else RegistryStatus.empty
    return RegistryResult(status=status, records=records)
