"""
Intent resolution for AgentDB.

Natural language is handled in two stages: a replaceable classifier
proposes candidate operations, and the resolver deterministically
validates and normalizes them against the table catalog.
"""

from .calls import CandidateOperation, Phrase, StructuredCall
from .classifier import (
    Candidate,
    IntentClassifier,
    KeywordClassifier,
    SchemaCatalog,
    infer_table,
)
from .resolver import IntentResolver

__all__ = [
    "StructuredCall",
    "Phrase",
    "CandidateOperation",
    "Candidate",
    "IntentClassifier",
    "KeywordClassifier",
    "SchemaCatalog",
    "infer_table",
    "IntentResolver",
]
