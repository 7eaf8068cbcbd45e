"""
Inbound call models.

The inbound call surface accepts either a structured call or a
natural-language phrase. Both are validated with pydantic before the
resolver sees them; plain dicts are accepted and validated into these.

Example structured call:
    {
        "table": "tasks",
        "op": "update",
        "filters": {"assignee": "ralph", "status": "pending"},
        "patch": {"status": "complete"}
    }

Example phrase:
    {"text": "show overdue tasks", "params": {"limit": 5}}
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

OpName = Literal["query", "insert", "update", "delete", "watch"]
EventName = Literal["insert", "update", "delete"]


class StructuredCall(BaseModel):
    """Explicit call; resolves deterministically without inference."""

    table: str | None = Field(None, description="Target table")
    op: OpName = Field("query", description="Operation kind")
    filters: dict[str, Any] | None = Field(
        None, description="Predicate JSON or {column: value} shorthand"
    )
    values: dict[str, Any] | None = Field(None, description="Column values (insert)")
    patch: dict[str, Any] | None = Field(None, description="Column changes (update)")
    order: list[str | dict[str, Any]] | str | None = Field(
        None, description='Sort keys, e.g. "created_at desc"'
    )
    limit: int | None = Field(None, ge=0, description="Maximum rows returned")
    expected_revision: int | None = Field(
        None, ge=1, description="Optimistic-concurrency guard (update/delete)"
    )
    event: EventName | None = Field(None, description="Event kind to watch (watch)")
    target: str | None = Field(None, description="Registered delivery target name (watch)")
    operation_id: str | None = Field(None, description="Caller-chosen operation identifier")


class CandidateOperation(StructuredCall):
    """Structured call proposed by an intent classifier.

    Unlike a caller's StructuredCall it is validated and completed by the
    resolver's heuristics before it becomes an Operation.
    """


class Phrase(BaseModel):
    """Natural-language request plus interpolated parameters."""

    text: str = Field(..., min_length=1, description="The phrase")
    params: dict[str, Any] = Field(default_factory=dict, description="Interpolated parameters")
    table: str | None = Field(None, description="Table, when the caller knows it")
    operation_id: str | None = Field(None, description="Caller-chosen operation identifier")
