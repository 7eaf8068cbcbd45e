"""
Error types for AgentDB.

This module defines every failure the actor can report to a caller:
- AgentDbError: Base exception
- AmbiguousIntent: Phrase matched several operation kinds
- UnknownTable: No table could be inferred
- SchemaViolation: Write or filter typed against the wrong column
- ConcurrentModification: Expected revision no longer current (per row)
- CyclicDependency: Pipeline reference graph has a cycle
- SkippedDueToDependencyFailure: Pipeline step skipped after an upstream failure
- DeliveryFailure: A subscriber could not be reached
- TierUnavailable: Warm/cold storage could not be reached
- InternalError: Unexpected exception while running an operation

Invariants:
    - All errors inherit from AgentDbError
    - Every error carries the offending operation or step identifier when known
    - Error codes are stable; messages may change

How to change safely:
    - Add new error classes with a new code, never reuse a code
    - Keep to_dict() keys stable, callers correlate on them
"""

from __future__ import annotations

from typing import Any


class AgentDbError(Exception):
    """Base exception for all AgentDB errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
        operation_id: Operation or pipeline step the error belongs to
    """

    code_default = "AGENTDB_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        operation_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.code_default
        self.details = details or {}
        self.operation_id = operation_id

    def with_operation(self, operation_id: str | None) -> AgentDbError:
        """Attach an operation identifier if none is set yet."""
        if self.operation_id is None:
            self.operation_id = operation_id
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert to a transport-friendly dictionary."""
        return {
            "code": self.code,
            "message": self.message,
            "operation_id": self.operation_id,
            "details": self.details,
        }


class AmbiguousIntent(AgentDbError):
    """A phrase matched more than one operation kind with comparable confidence.

    Raised when:
    - The classifier's two best candidates disagree on the kind and their
      confidences are within the configured margin
    - The classifier produced no candidate at all
    """

    code_default = "AMBIGUOUS_INTENT"

    def __init__(
        self,
        message: str,
        candidates: list[str] | None = None,
        operation_id: str | None = None,
    ) -> None:
        super().__init__(
            message,
            details={"candidates": candidates or []},
            operation_id=operation_id,
        )
        self.candidates = candidates or []


class UnknownTable(AgentDbError):
    """No table name could be inferred and none was supplied."""

    code_default = "UNKNOWN_TABLE"

    def __init__(self, message: str, phrase: str | None = None, operation_id: str | None = None):
        super().__init__(message, details={"phrase": phrase}, operation_id=operation_id)
        self.phrase = phrase


class SchemaViolation(AgentDbError):
    """A value or filter does not fit the table's frozen schema.

    Raised when:
    - A write puts a value of the wrong kind into a column
    - A write introduces a column the schema does not have
    - A filter or order references a column that does not exist
    - A literal cannot be coerced to the column's kind
    """

    code_default = "SCHEMA_VIOLATION"

    def __init__(
        self,
        message: str,
        table: str | None = None,
        column: str | None = None,
        operation_id: str | None = None,
    ) -> None:
        super().__init__(
            message,
            details={"table": table, "column": column},
            operation_id=operation_id,
        )
        self.table = table
        self.column = column


class ConcurrentModification(AgentDbError):
    """An update's expected revision no longer matches the row.

    Reported per row; other rows of the same operation still apply.
    """

    code_default = "CONCURRENT_MODIFICATION"

    def __init__(
        self,
        table: str,
        key: int,
        expected_revision: int,
        actual_revision: int,
        operation_id: str | None = None,
    ) -> None:
        super().__init__(
            f"Row {table}/{key} is at revision {actual_revision}, expected {expected_revision}",
            details={
                "table": table,
                "key": key,
                "expected_revision": expected_revision,
                "actual_revision": actual_revision,
            },
            operation_id=operation_id,
        )
        self.table = table
        self.key = key
        self.expected_revision = expected_revision
        self.actual_revision = actual_revision


class CyclicDependency(AgentDbError):
    """A pipeline's step references form a cycle."""

    code_default = "CYCLIC_DEPENDENCY"

    def __init__(self, steps: list[str]) -> None:
        super().__init__(
            f"Pipeline steps form a cycle: {', '.join(steps)}",
            details={"steps": steps},
        )
        self.steps = steps


class InvalidPipeline(AgentDbError):
    """A pipeline references an undeclared step or repeats a step id."""

    code_default = "INVALID_PIPELINE"


class SkippedDueToDependencyFailure(AgentDbError):
    """A pipeline step did not run because a step it depends on failed."""

    code_default = "SKIPPED_DEPENDENCY_FAILURE"

    def __init__(self, step_id: str, failed_dependency: str) -> None:
        super().__init__(
            f"Step '{step_id}' skipped: dependency '{failed_dependency}' failed",
            details={"failed_dependency": failed_dependency},
            operation_id=step_id,
        )
        self.failed_dependency = failed_dependency


class DeliveryFailure(AgentDbError):
    """A notification could not be delivered to its subscriber.

    The underlying mutation is never rolled back because of this.
    """

    code_default = "DELIVERY_FAILURE"

    def __init__(self, subscription_id: str, seq: int, reason: str) -> None:
        super().__init__(
            f"Delivery to subscription {subscription_id} failed: {reason}",
            details={"subscription_id": subscription_id, "seq": seq, "reason": reason},
        )
        self.subscription_id = subscription_id
        self.seq = seq
        self.reason = reason


class TierUnavailable(AgentDbError):
    """A promotion read or migration could not reach warm/cold storage."""

    code_default = "TIER_UNAVAILABLE"

    def __init__(
        self,
        message: str,
        table: str | None = None,
        tier: str | None = None,
        operation_id: str | None = None,
    ) -> None:
        super().__init__(
            message,
            details={"table": table, "tier": tier},
            operation_id=operation_id,
        )
        self.table = table
        self.tier = tier


class OperationCancelled(AgentDbError):
    """The caller cancelled the operation while it was still queued."""

    code_default = "OPERATION_CANCELLED"


class ActorStopped(AgentDbError):
    """The actor is not running and cannot accept work."""

    code_default = "ACTOR_STOPPED"


class InternalError(AgentDbError):
    """An operation failed with an unexpected exception.

    The original exception is chained as __cause__.
    """

    code_default = "INTERNAL_ERROR"

    def __init__(self, message: str, operation_id: str | None = None) -> None:
        super().__init__(message, operation_id=operation_id)
