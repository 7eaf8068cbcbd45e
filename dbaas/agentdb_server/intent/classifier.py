"""
Intent classification.

An IntentClassifier turns a phrase into ranked candidate operations. The
real classifier is an external model; the resolver only depends on this
protocol, so the model is replaceable and tests stay deterministic.

KeywordClassifier is a rule-based implementation usable without a model:
each operation kind has a verb lexicon, confidence is the kind's share of
all verb hits, and filters/patch/values come from the phrase's params.

Params convention:
    Explicit keys "filters", "patch", "values", "order", "limit", "event"
    and "target" are used as given. Any other key becomes an insert value,
    an update patch entry, or a filter for query/delete/watch.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from typing import Any, Protocol

from pydantic import BaseModel, Field

from ..model.schema import TableSchema
from .calls import CandidateOperation, Phrase


class SchemaCatalog(Protocol):
    """Read-only view of the instance's tables."""

    def tables(self) -> list[str]: ...

    def schema(self, table: str) -> TableSchema | None: ...


class Candidate(BaseModel):
    """One interpretation of a phrase."""

    operation: CandidateOperation
    confidence: float = Field(..., ge=0.0, le=1.0)


class IntentClassifier(Protocol):
    """Produces candidate operations for a phrase, best first or unordered."""

    def classify(self, phrase: Phrase, catalog: SchemaCatalog) -> Sequence[Candidate]: ...


def _singular(word: str) -> str:
    if word.endswith("ies") and len(word) > 3:
        return word[:-3] + "y"
    if word.endswith("s") and not word.endswith("ss"):
        return word[:-1]
    return word


def infer_table(text: str, tables: Sequence[str]) -> str | None:
    """Find the catalog table named earliest in the phrase.

    A table matches on its name or its singular form as a whole word.
    """
    words = re.findall(r"[a-z0-9_]+", text.lower())
    best: tuple[int, str] | None = None
    for table in tables:
        names = {table.lower(), _singular(table.lower())}
        for index, word in enumerate(words):
            if word in names or _singular(word) in names:
                if best is None or index < best[0]:
                    best = (index, table)
                break
    return best[1] if best else None


VERB_LEXICON: dict[str, tuple[str, ...]] = {
    "query": (
        "show", "list", "find", "get", "fetch", "search", "display", "what",
        "which", "how many", "give me", "look up",
    ),
    "insert": ("add", "create", "insert", "new", "record", "log", "remember", "save"),
    "update": ("update", "set", "change", "mark", "assign", "rename", "edit", "reassign"),
    "delete": ("delete", "remove", "drop", "erase", "forget", "discard"),
    "watch": ("watch", "notify", "subscribe", "alert", "monitor", "tell me when", "let me know"),
}

_EXPLICIT_KEYS = ("filters", "patch", "values", "order", "limit", "event", "target")


class KeywordClassifier:
    """Deterministic lexicon-based IntentClassifier.

    Example:
        >>> classifier = KeywordClassifier()
        >>> [c.operation.op for c in classifier.classify(Phrase(text="list tasks"), catalog)]
        ['query']
    """

    def __init__(self, lexicon: dict[str, tuple[str, ...]] | None = None) -> None:
        self.lexicon = lexicon or VERB_LEXICON
        self._patterns = {
            kind: [re.compile(rf"\b{re.escape(verb)}\b") for verb in verbs]
            for kind, verbs in self.lexicon.items()
        }

    def classify(self, phrase: Phrase, catalog: SchemaCatalog) -> list[Candidate]:
        text = phrase.text.lower()
        hits = {
            kind: sum(1 for p in patterns if p.search(text))
            for kind, patterns in self._patterns.items()
        }
        total = sum(hits.values())
        if total == 0:
            return []

        table = phrase.table or infer_table(phrase.text, catalog.tables())
        candidates = [
            Candidate(
                operation=self._build(kind, table, phrase.params),
                confidence=count / total,
            )
            for kind, count in hits.items()
            if count
        ]
        candidates.sort(key=lambda c: c.confidence, reverse=True)
        return candidates

    @staticmethod
    def _build(kind: str, table: str | None, params: dict[str, Any]) -> CandidateOperation:
        fields: dict[str, Any] = {k: params[k] for k in _EXPLICIT_KEYS if k in params}
        rest = {k: v for k, v in params.items() if k not in _EXPLICIT_KEYS}
        if rest:
            slot = {"insert": "values", "update": "patch"}.get(kind, "filters")
            fields[slot] = {**rest, **(fields.get(slot) or {})}
        return CandidateOperation(table=table, op=kind, **fields)
