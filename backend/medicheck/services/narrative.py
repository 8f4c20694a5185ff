# backend/medicheck/services/narrative.py
"""
Narrative augmentation: asks a generative model to explain (or, without registry
evidence, reason out from PK/PD first principles) the interactions in a drug list,
and binds its reply to InteractionRecord.
"""
import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from openai import APIConnectionError, OpenAI, OpenAIError
from pydantic import ValidationError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from medicheck.config import LLM_API_KEY, LLM_GATEWAY_URL, LLM_MODEL, RETRY_ATTEMPTS
from medicheck.schemas import (
    DrugInfo,
    InteractionRecord,
    RegistryResult,
    RegistryStatus,
    Severity,
    coerce_severity,
)

log = logging.getLogger("narrative")


def map_narrative_severity(token: Any) -> Severity:
    """
    The model is asked for critical|major|moderate|minor, case-insensitive.
    Anything else ("severe", numbers, null) becomes moderate.
    """
    return coerce_severity(token)


class NarrativeUnavailable(Exception):
    """The model could not be reached or its reply could not be bound to the schema."""


def describe_registry_findings(registry: RegistryResult) -> str:
    if registry.status == RegistryStatus.not_attempted:
        return "Could not resolve enough drugs to RxCUIs to check official database."
    if registry.status == RegistryStatus.failed:
        return "Official database check failed (API Error). Proceeding with theoretical analysis."
    if registry.status == RegistryStatus.empty or not registry.records:
        return "Official NLM database checked: No known interactions found between these specific IDs."
    lines = [f"- {r.drug_a} + {r.drug_b} ({r.severity.value}): {r.description}" for r in registry.records]
    return "OFFICIAL NLM DATABASE MATCHES:\n" + "\n".join(lines)


def _describe_curated(curated: Sequence[InteractionRecord]) -> str:
    if not curated:
        return "No curated reference entries for these medications."
    return "\n".join(f"- {r.drug_a} + {r.drug_b} ({r.severity.value}): {r.description}" for r in curated)


def build_prompts(drug_names: Sequence[str], registry: RegistryResult,
                  curated: Sequence[InteractionRecord] = ()) -> Tuple[str, str]:
    system_prompt = f"""You are a clinical pharmacology expert and medical researcher.
Analyze the potential interactions between the following medications with depth and scientific precision.

CRITICAL INSTRUCTION:
The National Library of Medicine (NLM) interaction database has already been queried. Findings:
--------------------------------------------------
{describe_registry_findings(registry)}
--------------------------------------------------
Curated reference entries:
{_describe_curated(curated)}
--------------------------------------------------

YOUR JOB:
1. If NLM found interactions, explain each confirmed pair with high-level pharmacological detail.
2. If NLM found nothing, perform a rigorous theoretical analysis based on PK/PD profiles
   (CYP450 metabolism, P-gp transport, protein binding, QT prolongation, additive pharmacodynamics).

REQUIRED DEPTH:
- Mechanism: the exact pathway.
- Clinical Effects: the progression of toxicity and markers to watch.
- Management: specific, actionable steps for the clinician.

Return ONLY a JSON object in this format:
{{
  "interactions": [
    {{
      "drug1": "Drug Name",
      "drug2": "Drug Name",
      "severity": "critical" | "major" | "moderate" | "minor",
      "confidence": "high" | "medium" | "low",
      "description": "Executive summary of the interaction.",
      "mechanism": "Detailed pharmacokinetic/pharmacodynamic mechanism.",
      "clinicalEffects": "Detailed symptoms and chemical markers to watch for.",
      "recommendations": "Detailed clinical management strategy.",
      "citations": [{{"source": "string", "title": "string", "url": "string (optional)"}}],
      "alternatives": [{{"name": "string", "reason": "string"}}]
    }}
  ]
}}
If no interactions are found, return: {{"interactions": []}}"""
    user_prompt = f"Analyze interactions between: {', '.join(drug_names)}"
    return system_prompt, user_prompt


def extract_json_object(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """Return the first balanced JSON object embedded in text (prose, code fences...)."""
    if not text:
        return None
    decoder = json.JSONDecoder()
    idx = text.find("{")
    while idx != -1:
        try:
            obj, _ = decoder.raw_decode(text, idx)
        except json.JSONDecodeError:
            obj = None
        if isinstance(obj, dict):
            return obj
        idx = text.find("{", idx + 1)
    return None


def parse_narrative(text: Optional[str]) -> List[InteractionRecord]:
    data = extract_json_object(text)
    if data is None:
        raise NarrativeUnavailable("Model reply contained no JSON object")
    if "interactions" not in data:
        raise NarrativeUnavailable("Model reply is missing the 'interactions' key")
    items = data["interactions"]
    if not isinstance(items, list):
        raise NarrativeUnavailable("'interactions' is not a list")

    records = []
    for item in items:
        if not isinstance(item, dict):
            log.warning("Skipping non-object interaction entry: %r", item)
            continue
        try:
            item = {**item, "severity": map_narrative_severity(item.get("severity"))}
            records.append(InteractionRecord.model_validate(item))
        except ValidationError as e:
            log.warning("Skipping interaction entry without drug names: %s", e)
    return records


class NarrativeService:
    def __init__(self, client: Optional[OpenAI] = None, model: str = LLM_MODEL):
        self._client = client
        self.model = model

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = OpenAI(api_key=LLM_API_KEY, base_url=LLM_GATEWAY_URL)
        return self._client

    @retry(stop=stop_after_attempt(RETRY_ATTEMPTS), wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
           reraise=True, retry=retry_if_exception_type(APIConnectionError))
    def _call_model(self, system: str, user: str) -> str:
        resp = self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "system", "content": system}, {"role": "user", "content": user}],
            temperature=0.2,
        )
        return resp.choices[0].message.content or ""

    async def _complete(self, system: str, user: str) -> str:
        try:
            return await asyncio.to_thread(self._call_model, system, user)
        except (OpenAIError, IndexError) as e:
            log.error("Model gateway call failed: %s", e)
            raise NarrativeUnavailable(str(e)) from e

    async def augment(self, drug_names: Sequence[str], registry: RegistryResult,
                      curated: Sequence[InteractionRecord] = ()) -> List[InteractionRecord]:
        system, user = build_prompts(drug_names, registry, curated)
        content = await self._complete(system, user)
        records = parse_narrative(content)
        log.info("Narrative analysis returned %d interactions", len(records))
        return records

    async def describe_drug(self, name: str) -> DrugInfo:
        system = ("You are a clinical pharmacology expert. Provide comprehensive drug information based on "
                  "FDA-approved data and medical literature. Return ONLY valid JSON with no markdown formatting.")
        user = f"""Provide detailed information about the medication: {name}

Return a JSON object with this exact structure:
{{
  "name": "{name}",
  "overview": "Brief description of the drug, its uses, and mechanism of action",
  "drugClass": "Pharmacological class of the drug",
  "sideEffects": ["Common side effect 1", "..."],
  "contraindications": ["Contraindication 1", "..."],
  "dosingGuidelines": "General dosing guidelines for adults",
  "warnings": ["Warning 1", "..."],
  "interactions": ["Common drug interaction 1", "..."]
}}"""
        data = extract_json_object(await self._complete(system, user))
        if data is None:
            raise NarrativeUnavailable("Model reply contained no JSON object")
        try:
            return DrugInfo.model_validate({**data, "name": data.get("name") or name})
        except ValidationError as e:
            raise NarrativeUnavailable(f"Drug information did not match the expected shape: {e}") from e
