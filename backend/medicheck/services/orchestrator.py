# backend/medicheck/services/orchestrator.py
"""
Interaction Orchestrator

collecting-input -> resolving-terms -> querying-registry -> augmenting-narrative -> merging -> done

Only two outcomes end a request early: fewer than two usable drug names
(InputValidationError, raised before any network call) and a failed narrative
analysis (AnalysisFailed). Terminology and registry problems reduce coverage
and are logged.
"""
import asyncio
import logging
import uuid
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

from medicheck.config import ANALYSIS_DEADLINE_SECONDS
from medicheck.schemas import (
    AnalysisResult,
    DrugReference,
    InteractionRecord,
    RegistryResult,
    RegistryStatus,
    SourceReport,
)
from medicheck.services.knowledge_base import LocalKnowledgeBase, default_knowledge_base
from medicheck.services.narrative import NarrativeService, NarrativeUnavailable
from medicheck.services.normalize import resolve_all
from medicheck.services.registry import fetch_registry_interactions

log = logging.getLogger("orchestrator")

ANALYSIS_FAILED_MESSAGE = "Analysis failed, please check your connection and try again."

# Resolution and the registry may each use at most this share of the deadline,
# so at least a third of it is always left for the narrative call.
SOURCE_STAGE_SHARE = 1 / 3


class PipelineStage(str, Enum):
    collecting_input = "collecting-input"
    resolving_terms = "resolving-terms"
    querying_registry = "querying-registry"
    augmenting_narrative = "augmenting-narrative"
    merging = "merging"
    done = "done"


class InputValidationError(ValueError):
    pass


class AnalysisFailed(Exception):
    pass


def collect_references(drugs: Iterable[Union[str, DrugReference]]) -> List[DrugReference]:
    """Strip, drop blanks and de-duplicate (case-insensitive, first spelling wins)."""
    refs = []
    seen = set()
    for d in drugs or []:
        if isinstance(d, DrugReference):
            ref = d
        elif isinstance(d, str):
            ref = DrugReference(display_name=d)
        else:
            continue
        name = ref.display_name.strip()
        if not name or name.casefold() in seen:
            continue
        seen.add(name.casefold())
        refs.append(ref if name == ref.display_name else ref.model_copy(update={"display_name": name}))
    if len(refs) < 2:
        raise InputValidationError("Please provide at least two drugs to analyze")
    return refs


def merge_records(narrative: Sequence[InteractionRecord],
                  local: Sequence[InteractionRecord],
                  registry: Sequence[InteractionRecord]) -> List[InteractionRecord]:
    """
    Narrative records are the primary set. Curated and then registry records
    are added only for pairs the narrative did not cover; at most one registry
    record per pair.
    """
    merged = list(narrative)
    covered = {r.pair for r in narrative}
    added = set()
    for r in local:
        if r.pair not in covered:
            merged.append(r)
            added.add(r.pair)
    covered |= added
    for r in registry:
        if r.pair not in covered:
            merged.append(r)
            covered.add(r.pair)
    return merged


def rank_by_severity(records: Iterable[InteractionRecord]) -> List[InteractionRecord]:
    # sorted() is stable: equal severities keep their merge order
    return sorted(records, key=lambda r: r.severity.rank)


class InteractionOrchestrator:
    def __init__(self,
                 knowledge_base: Optional[LocalKnowledgeBase] = None,
                 resolver: Optional[Callable[[Sequence[DrugReference]], Any]] = None,
                 registry: Optional[Callable[..., RegistryResult]] = None,
                 narrative: Optional[NarrativeService] = None,
                 deadline: float = ANALYSIS_DEADLINE_SECONDS):
        self.knowledge_base = knowledge_base if knowledge_base is not None else default_knowledge_base()
        self.resolver = resolver or resolve_all
        self.registry = registry or fetch_registry_interactions
        self.narrative = narrative or NarrativeService()
        self.deadline = deadline

    async def analyze(self, drugs: Iterable[Union[str, DrugReference]]) -> AnalysisResult:
        run_id = uuid.uuid4().hex[:8]
        loop = asyncio.get_running_loop()
        started = loop.time()

        def remaining() -> float:
            return max(0.0, self.deadline - (loop.time() - started))

        def source_budget() -> float:
            return min(remaining(), self.deadline * SOURCE_STAGE_SHARE)

        def enter(stage: PipelineStage):
            log.info("[%s] %s", run_id, stage.value)

        enter(PipelineStage.collecting_input)
        refs = collect_references(drugs)
        names = [r.display_name for r in refs]

        enter(PipelineStage.resolving_terms)
        try:
            refs = list(await asyncio.wait_for(self.resolver(refs), timeout=source_budget()))
        except asyncio.TimeoutError:
            log.warning("[%s] Term resolution timed out; continuing with names only", run_id)
        except Exception as e:
            log.warning("[%s] Term resolution failed: %s", run_id, e)

        local = self.knowledge_base.scan(names)

        enter(PipelineStage.querying_registry)
        registry = await self._query_registry(run_id, refs, source_budget())

        enter(PipelineStage.augmenting_narrative)
        try:
            narrative = await asyncio.wait_for(self.narrative.augment(names, registry, local), timeout=remaining())
        except asyncio.TimeoutError as e:
            log.error("[%s] Narrative analysis timed out", run_id)
            raise AnalysisFailed(ANALYSIS_FAILED_MESSAGE) from e
        except NarrativeUnavailable as e:
            log.error("[%s] Narrative analysis unavailable: %s", run_id, e)
            raise AnalysisFailed(ANALYSIS_FAILED_MESSAGE) from e

        enter(PipelineStage.merging)
        interactions = rank_by_severity(merge_records(narrative, local, registry.records))
        sources = [
            SourceReport(source="local", status="found" if local else "empty", count=len(local)),
            SourceReport(source="registry", status=registry.status.value,
                         count=len(registry.records), detail=registry.error),
            SourceReport(source="narrative", status="found" if narrative else "empty", count=len(narrative)),
        ]

        enter(PipelineStage.done)
        return AnalysisResult(interactions=interactions, sources=sources)

    async def _query_registry(self, run_id: str, refs: Sequence[DrugReference], timeout: float) -> RegistryResult:
        resolved = [r for r in refs if r.resolved_id]
        ids = list(dict.fromkeys(r.resolved_id for r in resolved))
        if len(ids) < 2:
            log.info("[%s] %d drug(s) resolved; registry not queried", run_id, len(ids))
            return RegistryResult(status=RegistryStatus.not_attempted)
        names_by_id = {r.resolved_id: r.display_name for r in resolved}
        try:
            return await asyncio.wait_for(asyncio.to_thread(self.registry, ids, names_by_id), timeout=timeout)
        except asyncio.TimeoutError:
            log.warning("[%s] Registry query timed out", run_id)
            return RegistryResult(status=RegistryStatus.failed, error="timed out")
        except Exception as e:
            log.warning("[%s] Registry query failed: %s", run_id, e)
            return RegistryResult(status=RegistryStatus.failed, error=str(e))

    async def analyze_payload(self, drugs: Iterable[str]) -> Dict[str, Any]:
        """{"interactions": [...], "sources": [...]} or {"error": "..."}"""
        try:
            result = await self.analyze(drugs)
        except (InputValidationError, AnalysisFailed) as e:
            return {"error": str(e)}
        except Exception:
            log.exception("Unexpected failure during interaction analysis")
            return {"error": ANALYSIS_FAILED_MESSAGE}
        return result.model_dump(by_alias=True, mode="json")
