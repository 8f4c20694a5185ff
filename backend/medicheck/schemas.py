# backend/medicheck/schemas.py
from datetime import datetime
from enum import Enum
from typing import Any, List, Optional, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel


class Severity(str, Enum):
    critical = "critical"
    major = "major"
    moderate = "moderate"
    minor = "minor"

    @property
    def rank(self) -> int:
        """0 for critical, growing as the interaction gets less dangerous."""
        return list(Severity).index(self)


class Confidence(str, Enum):
    high = "high"
    medium = "medium"
    low = "low"


class SourceHint(str, Enum):
    user_typed = "user-typed"
    catalog_selected = "catalog-selected"


def coerce_severity(value: Any) -> Severity:
    """Map any token onto Severity; unknown values become moderate."""
    if isinstance(value, Severity):
        return value
    if isinstance(value, str):
        try:
            return Severity(value.strip().lower())
        except ValueError:
            pass
    return Severity.moderate


def coerce_confidence(value: Any) -> Confidence:
    """Map any token onto Confidence; unknown values become medium."""
    if isinstance(value, Confidence):
        return value
    if isinstance(value, str):
        try:
            return Confidence(value.strip().lower())
        except ValueError:
            pass
    return Confidence.medium


def pair_key(a: str, b: str) -> Tuple[str, ...]:
    return tuple(sorted((a.strip().casefold(), b.strip().casefold())))


class DrugReference(BaseModel):
    model_config = ConfigDict(frozen=True)

    display_name: str
    resolved_id: Optional[str] = None
    synonym: Optional[str] = None
    source_hint: SourceHint = SourceHint.user_typed


class Citation(BaseModel):
    title: str = ""
    source: str = ""
    url: Optional[str] = None


class Alternative(BaseModel):
    name: str
    reason: str = ""


def _keep_valid(items: Any, model) -> list:
    # malformed entries are dropped from the list, never from the record
    if not isinstance(items, list):
        return []
    kept = []
    for item in items:
        if isinstance(item, model):
            kept.append(item)
            continue
        if not isinstance(item, dict):
            continue
        try:
            kept.append(model(**item))
        except ValidationError:
            continue
    return kept


class InteractionRecord(BaseModel):
    """One interaction between two drugs, whatever source produced it."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    drug_a: str = Field(validation_alias=AliasChoices("drugA", "drug1", "drug_a"), serialization_alias="drugA")
    drug_b: str = Field(validation_alias=AliasChoices("drugB", "drug2", "drug_b"), serialization_alias="drugB")
    severity: Severity = Severity.moderate
    confidence: Confidence = Confidence.medium
    description: str = "Interaction detected."
    mechanism: str = ""
    clinical_effects: str = ""
    recommendations: str = ""
    citations: List[Citation] = Field(default_factory=list)
    alternatives: Optional[List[Alternative]] = None

    @field_validator("severity", mode="before")
    @classmethod
    def _severity(cls, v):
        return coerce_severity(v)

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence(cls, v):
        return coerce_confidence(v)

    @field_validator("description", "mechanism", "clinical_effects", "recommendations", mode="before")
    @classmethod
    def _text(cls, v, info):
        if v is None:
            return cls.model_fields[info.field_name].default
        if isinstance(v, list):
            return "; ".join(str(x) for x in v)
        return str(v)

    @field_validator("citations", mode="before")
    @classmethod
    def _citations(cls, v):
        return _keep_valid(v, Citation)

    @field_validator("alternatives", mode="before")
    @classmethod
    def _alternatives(cls, v):
        if v is None:
            return None
        return _keep_valid(v, Alternative)

    @property
    def pair(self) -> Tuple[str, ...]:
        return pair_key(self.drug_a, self.drug_b)


class RegistryStatus(str, Enum):
    not_attempted = "not_attempted"
    found = "found"
    empty = "empty"
    failed = "failed"


class RegistryResult(BaseModel):
    status: RegistryStatus
    records: List[InteractionRecord] = []
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status != RegistryStatus.failed


class SourceReport(BaseModel):
    source: str
    status: str
    count: int = 0
    detail: Optional[str] = None


class AnalysisResult(BaseModel):
    interactions: List[InteractionRecord] = []
    sources: List[SourceReport] = []


class AnalyzeRequest(BaseModel):
    drugs: List[str] = Field(..., description="At least two unique drug names")


class ErrorResponse(BaseModel):
    error: str


class DrugSearchResult(BaseModel):
    name: str
    rxcui: str
    synonym: Optional[str] = None


class HistoryEntry(BaseModel):
    id: int
    timestamp: datetime
    drugs: List[str]


class DrugInfo(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    name: str
    overview: str = ""
    drug_class: str = ""
    side_effects: List[str] = []
    contraindications: List[str] = []
    dosing_guidelines: str = ""
    warnings: List[str] = []
    interactions: List[str] = []
