import os

# must be set before medicheck.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LLM_API_KEY", "test-key")

import json
from typing import Dict, List, Optional

import pytest
import requests

from medicheck.schemas import RegistryResult, RegistryStatus
from medicheck.services.knowledge_base import LocalKnowledgeBase
from medicheck.services.narrative import parse_narrative


class FakeResponse:
    def __init__(self, payload=None, status_code: int = 200):
        self.payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Server Error", response=self)

    def json(self):
        return self.payload


class StubResolver:
    """Assigns RxCUIs from a fixed table; counts calls."""

    def __init__(self, ids: Optional[Dict[str, str]] = None):
        self.ids = {k.casefold(): v for k, v in (ids or {}).items()}
        self.calls = 0

    async def __call__(self, refs):
        self.calls += 1
        out = []
        for r in refs:
            rxcui = self.ids.get(r.display_name.casefold())
            out.append(r.model_copy(update={"resolved_id": rxcui}) if rxcui else r)
        return out


class StubRegistry:
    def __init__(self, result: Optional[RegistryResult] = None):
        self.result = result or RegistryResult(status=RegistryStatus.empty)
        self.calls: List[list] = []

    def __call__(self, ids, names_by_id=None):
        self.calls.append(list(ids))
        return self.result


class StubNarrative:
    """Feeds a canned model reply through the real parser."""

    def __init__(self, reply=None, error: Optional[Exception] = None):
        if reply is not None and not isinstance(reply, str):
            reply = json.dumps(reply)
        self.reply = reply if reply is not None else '{"interactions": []}'
        self.error = error
        self.calls = []

    async def augment(self, drug_names, registry, curated=()):
        self.calls.append({"names": list(drug_names), "registry": registry, "curated": list(curated)})
        if self.error is not None:
            raise self.error
        return parse_narrative(self.reply)


@pytest.fixture
def kb():
    return LocalKnowledgeBase({
        "ASPIRIN+WARFARIN": [{
            "severity": "major",
            "confidence": "high",
            "description": "Increases risk of bleeding.",
        }],
    })


@pytest.fixture
def no_network(monkeypatch):
    calls = []

    def fail_get(*args, **kwargs):
        calls.append((args, kwargs))
        raise AssertionError("unexpected network call")

    monkeypatch.setattr(requests, "get", fail_get)
    return calls
