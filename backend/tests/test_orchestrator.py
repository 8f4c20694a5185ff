import asyncio
import time

import pytest
import requests

from conftest import FakeResponse, StubNarrative, StubRegistry, StubResolver
from medicheck.schemas import (
    Confidence,
    DrugReference,
    InteractionRecord,
    RegistryResult,
    RegistryStatus,
    Severity,
    SourceHint,
)
from medicheck.services.knowledge_base import LocalKnowledgeBase
from medicheck.services.narrative import NarrativeUnavailable
from medicheck.services.orchestrator import (
    ANALYSIS_FAILED_MESSAGE,
    AnalysisFailed,
    InputValidationError,
    InteractionOrchestrator,
    collect_references,
    merge_records,
    rank_by_severity,
)
from medicheck.services.registry import fetch_registry_interactions

IDS = {"Aspirin": "1191", "Warfarin": "11289", "Ibuprofen": "5640"}


def _record(a, b, severity="moderate", description="x"):
    return InteractionRecord(drug_a=a, drug_b=b, severity=severity, description=description)


def _entry(a, b, severity, description="x", confidence="high"):
    return {"drug1": a, "drug2": b, "severity": severity, "confidence": confidence, "description": description}


def _orchestrator(kb, resolver=None, registry=None, narrative=None, deadline=30):
    return InteractionOrchestrator(
        knowledge_base=kb,
        resolver=resolver or StubResolver(IDS),
        registry=registry or StubRegistry(),
        narrative=narrative or StubNarrative(),
        deadline=deadline,
    )


@pytest.mark.asyncio
@pytest.mark.parametrize("drugs", [
    [],
    ["Aspirin"],
    ["Aspirin", " aspirin "],
    ["Aspirin", "", "   "],
    None,
])
async def test_rejects_fewer_than_two_drugs_before_any_call(kb, no_network, drugs):
    resolver, registry, narrative = StubResolver(IDS), StubRegistry(), StubNarrative()
    orch = _orchestrator(kb, resolver, registry, narrative)

    with pytest.raises(InputValidationError):
        await orch.analyze(drugs)

    assert resolver.calls == 0
    assert registry.calls == []
    assert narrative.calls == []
    assert no_network == []


def test_collect_references_dedupes_and_keeps_first_spelling():
    refs = collect_references(["  Aspirin", "WARFARIN", "aspirin", DrugReference(
        display_name="Warfarin ", resolved_id="11289", source_hint=SourceHint.catalog_selected), "Ibuprofen"])
    assert [r.display_name for r in refs] == ["Aspirin", "WARFARIN", "Ibuprofen"]


@pytest.mark.asyncio
async def test_aspirin_warfarin_curated_pair_is_reported_as_major(kb):
    orch = _orchestrator(kb)
    result = await orch.analyze(["Aspirin", "Warfarin"])

    assert result.interactions
    assert any(r.severity is Severity.major for r in result.interactions)
    local = next(s for s in result.sources if s.source == "local")
    assert (local.status, local.count) == ("found", 1)


@pytest.mark.asyncio
async def test_aspirin_coffee_with_no_coverage_is_an_empty_success(kb):
    narrative = StubNarrative('{"interactions": []}')
    registry = StubRegistry(RegistryResult(status=RegistryStatus.empty))
    orch = _orchestrator(kb, StubResolver({"Aspirin": "1191", "Coffee": "C1"}), registry, narrative)

    result = await orch.analyze(["Aspirin", "Coffee"])

    assert result.interactions == []
    assert registry.calls == [["1191", "C1"]]
    assert narrative.calls[0]["registry"].status == RegistryStatus.empty


@pytest.mark.asyncio
async def test_curated_and_registry_findings_are_passed_as_context(kb):
    found = RegistryResult(status=RegistryStatus.found, records=[_record("Aspirin", "Warfarin", "major")])
    narrative = StubNarrative()
    orch = _orchestrator(kb, registry=StubRegistry(found), narrative=narrative)

    await orch.analyze(["Aspirin", "Warfarin"])

    call = narrative.calls[0]
    assert call["names"] == ["Aspirin", "Warfarin"]
    assert call["registry"] is found
    assert [(r.drug_a, r.drug_b) for r in call["curated"]] == [("Aspirin", "Warfarin")]


@pytest.mark.asyncio
async def test_registry_skipped_when_fewer_than_two_resolve(kb):
    registry, narrative = StubRegistry(), StubNarrative()
    orch = _orchestrator(kb, StubResolver({"Aspirin": "1191"}), registry, narrative)

    result = await orch.analyze(["Aspirin", "Mystery Herb"])

    assert registry.calls == []
    assert narrative.calls[0]["registry"].status == RegistryStatus.not_attempted
    reg = next(s for s in result.sources if s.source == "registry")
    assert reg.status == "not_attempted"


@pytest.mark.asyncio
async def test_registry_http_error_degrades_to_narrative_only(kb, monkeypatch):
    monkeypatch.setattr(requests, "get", lambda *a, **k: FakeResponse(None, status_code=500))
    narrative = StubNarrative({"interactions": [_entry("Ibuprofen", "Warfarin", "major")]})
    orch = _orchestrator(kb, registry=fetch_registry_interactions, narrative=narrative)

    result = await orch.analyze(["Ibuprofen", "Warfarin"])

    assert [(r.drug_a, r.drug_b) for r in result.interactions] == [("Ibuprofen", "Warfarin")]
    assert narrative.calls[0]["registry"].status == RegistryStatus.failed
    reg = next(s for s in result.sources if s.source == "registry")
    assert reg.status == "failed"
    assert reg.detail


@pytest.mark.asyncio
async def test_registry_exception_degrades(kb):
    def exploding_registry(ids, names_by_id=None):
        raise RuntimeError("socket closed")

    narrative = StubNarrative()
    orch = _orchestrator(kb, registry=exploding_registry, narrative=narrative)

    result = await orch.analyze(["Aspirin", "Ibuprofen"])

    assert result.interactions == []
    assert narrative.calls[0]["registry"].status == RegistryStatus.failed


@pytest.mark.asyncio
async def test_resolver_failure_degrades_to_name_only_sources(kb):
    async def broken_resolver(refs):
        raise requests.ConnectionError("dns failure")

    registry = StubRegistry()
    orch = _orchestrator(kb, resolver=broken_resolver, registry=registry)

    result = await orch.analyze(["Aspirin", "Warfarin"])

    assert registry.calls == []
    assert result.interactions[0].severity is Severity.major


@pytest.mark.asyncio
async def test_narrative_failure_is_fatal(kb):
    orch = _orchestrator(kb, narrative=StubNarrative(error=NarrativeUnavailable("gateway 503")))

    with pytest.raises(AnalysisFailed) as exc:
        await orch.analyze(["Aspirin", "Warfarin"])

    assert str(exc.value) == ANALYSIS_FAILED_MESSAGE


@pytest.mark.asyncio
async def test_narrative_timeout_is_fatal(kb):
    class SlowNarrative(StubNarrative):
        async def augment(self, drug_names, registry, curated=()):
            await asyncio.sleep(5)
            return []

    orch = _orchestrator(kb, narrative=SlowNarrative(), deadline=0.05)

    with pytest.raises(AnalysisFailed):
        await orch.analyze(["Aspirin", "Warfarin"])


@pytest.mark.asyncio
async def test_slow_registry_times_out_without_starving_the_narrative(kb):
    def hanging_registry(ids, names_by_id=None):
        time.sleep(0.5)
        return RegistryResult(status=RegistryStatus.found, records=[_record("Aspirin", "Warfarin", "minor")])

    narrative = StubNarrative({"interactions": [_entry("Aspirin", "Warfarin", "major", "narrative")]})
    orch = _orchestrator(kb, registry=hanging_registry, narrative=narrative, deadline=0.3)

    result = await orch.analyze(["Aspirin", "Warfarin"])

    assert [r.description for r in result.interactions] == ["narrative"]
    assert narrative.calls[0]["registry"].status == RegistryStatus.failed
    reg = next(s for s in result.sources if s.source == "registry")
    assert reg.status == "failed"


@pytest.mark.asyncio
async def test_slow_resolver_times_out_and_analysis_continues_by_name(kb):
    class HangingResolver(StubResolver):
        async def __call__(self, refs):
            self.calls += 1
            await asyncio.sleep(5)
            return refs

    resolver, registry, narrative = HangingResolver(IDS), StubRegistry(), StubNarrative()
    orch = _orchestrator(kb, resolver=resolver, registry=registry, narrative=narrative, deadline=0.3)

    result = await orch.analyze(["Aspirin", "Warfarin"])

    assert resolver.calls == 1
    assert registry.calls == []
    assert narrative.calls[0]["registry"].status == RegistryStatus.not_attempted
    assert [(r.drug_a, r.drug_b, r.severity) for r in result.interactions] == [
        ("Aspirin", "Warfarin", Severity.major),
    ]


@pytest.mark.asyncio
async def test_unknown_tokens_are_coerced_not_dropped(kb):
    narrative = StubNarrative({"interactions": [
        _entry("Aspirin", "Ibuprofen", "catastrophic", confidence="absolutely"),
    ]})
    orch = _orchestrator(kb, narrative=narrative)

    result = await orch.analyze(["Aspirin", "Ibuprofen"])

    assert len(result.interactions) == 1
    rec = result.interactions[0]
    assert rec.severity is Severity.moderate
    assert rec.confidence is Confidence.medium
    dumped = result.model_dump(by_alias=True, mode="json")["interactions"][0]
    assert (dumped["severity"], dumped["confidence"]) == ("moderate", "medium")


@pytest.mark.asyncio
async def test_result_is_sorted_by_severity_and_stable(kb):
    narrative = StubNarrative({"interactions": [
        _entry("A1", "B1", "minor", "first minor"),
        _entry("A2", "B2", "critical", "first critical"),
        _entry("A3", "B3", "minor", "second minor"),
        _entry("A4", "B4", "major", "major"),
        _entry("A5", "B5", "moderate", "moderate"),
        _entry("A6", "B6", "critical", "second critical"),
    ]})
    orch = _orchestrator(kb, narrative=narrative)

    result = await orch.analyze(["A1", "B1"])

    assert [r.description for r in result.interactions] == [
        "first critical", "second critical", "major", "moderate", "first minor", "second minor",
    ]


@pytest.mark.asyncio
async def test_repeated_runs_are_idempotent(kb):
    found = RegistryResult(status=RegistryStatus.found, records=[_record("Ibuprofen", "Warfarin", "major")])
    narrative = StubNarrative({"interactions": [_entry("Aspirin", "Ibuprofen", "moderate")]})
    orch = _orchestrator(kb, registry=StubRegistry(found), narrative=narrative)

    first = await orch.analyze(["Aspirin", "Warfarin", "Ibuprofen"])
    second = await orch.analyze(["Aspirin", "Warfarin", "Ibuprofen"])

    def as_set(result):
        return {(r.drug_a, r.drug_b, r.severity, r.description) for r in result.interactions}

    assert as_set(first) == as_set(second)
    assert len(first.interactions) == len(second.interactions) == 3


def test_merge_prefers_narrative_and_fills_omitted_pairs():
    narrative = [_record("Aspirin", "Warfarin", "critical", "narrative")]
    local = [_record("warfarin", "ASPIRIN", "major", "curated"), _record("Ibuprofen", "Lisinopril", "moderate", "curated")]
    registry = [
        _record("aspirin", "warfarin", "major", "registry"),
        _record("ibuprofen", "lisinopril", "moderate", "registry"),
        _record("Simvastatin", "Amiodarone", "major", "registry 1"),
        _record("amiodarone", "simvastatin", "moderate", "registry 2"),
    ]

    merged = merge_records(narrative, local, registry)

    assert [r.description for r in merged] == ["narrative", "curated", "registry 1"]


def test_merge_keeps_every_curated_template_for_a_pair():
    local = [_record("A", "B", "major", "one"), _record("A", "B", "minor", "two")]
    assert [r.description for r in merge_records([], local, [])] == ["one", "two"]


def test_rank_by_severity_is_stable():
    records = [_record("A", "B", "minor", "1"), _record("C", "D", "minor", "2"), _record("E", "F", "critical", "3")]
    assert [r.description for r in rank_by_severity(records)] == ["3", "1", "2"]


@pytest.mark.asyncio
async def test_analyze_payload_boundary(kb):
    orch = _orchestrator(kb)
    assert await orch.analyze_payload(["Aspirin"]) == {"error": "Please provide at least two drugs to analyze"}

    ok = await orch.analyze_payload(["Aspirin", "Warfarin"])
    assert ok["interactions"][0]["drugA"] == "Aspirin"
    assert ok["interactions"][0]["severity"] == "major"
    assert {s["source"] for s in ok["sources"]} == {"local", "registry", "narrative"}

    failing = _orchestrator(kb, narrative=StubNarrative(error=NarrativeUnavailable("down")))
    assert await failing.analyze_payload(["Aspirin", "Warfarin"]) == {"error": ANALYSIS_FAILED_MESSAGE}


@pytest.mark.asyncio
async def test_empty_knowledge_base_is_respected():
    orch = _orchestrator(LocalKnowledgeBase({}))
    result = await orch.analyze(["Aspirin", "Warfarin"])
    assert result.interactions == []
