# backend/medicheck/services/knowledge_base.py
import json
import logging
import os
from functools import lru_cache
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from medicheck.schemas import InteractionRecord

log = logging.getLogger("knowledge_base")

HERE = os.path.dirname(__file__)
DATA_PATH = os.path.join(HERE, "..", "data", "known_interactions.json")

Template = Mapping[str, Any]


def _norm(name: str) -> str:
    return name.strip().upper()


class LocalKnowledgeBase:
    """
    Curated, read-only table of well-established interactions keyed "A+B".

    Lookups are order-independent: both "A+B" and "B+A" are probed.
    A miss is an empty result, never an error.
    """

    def __init__(self, table: Mapping[str, Sequence[Dict[str, Any]]]):
        frozen = {}
        for key, templates in table.items():
            left, sep, right = key.partition("+")
            if not sep:
                log.warning("Skipping knowledge base key without '+': %s", key)
                continue
            frozen[f"{_norm(left)}+{_norm(right)}"] = tuple(MappingProxyType(dict(t)) for t in templates)
        self._table = MappingProxyType(frozen)

    def __len__(self) -> int:
        return len(self._table)

    def lookup(self, a: str, b: str) -> Tuple[Template, ...]:
        a, b = _norm(a), _norm(b)
        return self._table.get(f"{a}+{b}") or self._table.get(f"{b}+{a}") or ()

    def scan(self, names: Iterable[str]) -> List[InteractionRecord]:
        names = list(names)
        records = []
        for i in range(len(names)):
            for j in range(i + 1, len(names)):
                for template in self.lookup(names[i], names[j]):
                    records.append(InteractionRecord(drug_a=names[i], drug_b=names[j], **template))
        return records


def load_knowledge_base(path: Optional[str] = None) -> LocalKnowledgeBase:
    with open(path or DATA_PATH, "r", encoding="utf-8") as f:
        table = json.load(f)
    kb = LocalKnowledgeBase(table)
    log.info("Loaded %d curated interaction pairs", len(kb))
    return kb


@lru_cache(maxsize=1)
def default_knowledge_base() -> LocalKnowledgeBase:
    return load_knowledge_base()
