"""
Pipeline coordinator for AgentDB.

A pipeline is a dependency graph of steps submitted as one unit. Later
steps reference earlier outputs through placeholders, substituted with
concrete values just before the step is resolved and executed:

    "$A.keys"          primary keys of step A's rows (list)
    "$A.<col>"         column values of step A's rows (list)
    "$A.first.<col>"   column value of step A's first row (or None)
    "$A.count"         number of rows step A returned

Example:
    [
        {"step_id": "A", "call": {"table": "tasks", "op": "query",
                                  "filters": {"assignee": None, "priority": "high"}}},
        {"step_id": "B", "call": {"table": "tasks", "op": "update",
                                  "filters": {"id": "$A.keys"},
                                  "patch": {"assignee": "ralph"}}}
    ]

Invariants:
    - The whole graph is validated before any step runs (cycles, unknown
      references, duplicate ids)
    - Steps run one at a time in topological order, ties in submission order
    - A failed step skips its transitive dependents; independent branches run
    - An unexpected exception fails only its own step (InternalError)
    - Results come back in submission order, one per step

How to change safely:
    - New placeholder forms need _lookup() support and a test
    - Keep validation ahead of execution; a cycle must never leave side effects
"""

from __future__ import annotations

import heapq
import logging
import re
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field, replace
from typing import Any, Union

from ..errors import (
    AgentDbError,
    CyclicDependency,
    InternalError,
    InvalidPipeline,
    SkippedDueToDependencyFailure,
)
from ..intent.calls import Phrase, StructuredCall
from ..intent.resolver import IntentResolver
from ..model.operation import Operation
from ..model.types import ResultSet

logger = logging.getLogger(__name__)

StepCall = Union[StructuredCall, Phrase, Operation, Mapping[str, Any]]

PLACEHOLDER_RE = re.compile(r"^\$([A-Za-z_][\w-]*)\.(.+)$")


@dataclass
class PipelineStep:
    """One node of a pipeline graph.

    Attributes:
        step_id: Identifier, unique within the pipeline
        call: Unresolved call (may contain placeholders) or an Operation
        depends_on: Extra dependencies not expressed through placeholders
    """

    step_id: str
    call: StepCall
    depends_on: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> PipelineStep:
        if "step_id" not in data or "call" not in data:
            raise InvalidPipeline("Pipeline steps need 'step_id' and 'call'")
        return cls(
            step_id=str(data["step_id"]),
            call=data["call"],
            depends_on=tuple(data.get("depends_on", ())),
        )

    def references(self) -> set[str]:
        refs = set(self.depends_on)
        _collect_refs(_template(self.call), refs)
        return refs


@dataclass
class StepResult:
    """Outcome of one pipeline step.

    Attributes:
        step_id: Step identifier
        result: The step's ResultSet (error set when failed or skipped)
        skipped: Whether the step was skipped after a dependency failure
    """

    step_id: str
    result: ResultSet = field(default_factory=ResultSet)
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.result.ok

    @property
    def error(self) -> AgentDbError | None:
        return self.result.error

    def to_dict(self) -> dict[str, Any]:
        return {"step_id": self.step_id, "skipped": self.skipped, **self.result.to_dict()}


def _template(call: StepCall) -> Any:
    """JSON-like view of a call, scanned for placeholders."""
    if isinstance(call, Operation):
        return {
            "predicate": call.predicate.to_dict() if call.predicate else None,
            "values": dict(call.values) if call.values is not None else None,
            "patch": dict(call.patch) if call.patch is not None else None,
        }
    if isinstance(call, (StructuredCall, Phrase)):
        return call.model_dump(exclude_none=True)
    return dict(call)


def _collect_refs(value: Any, refs: set[str]) -> None:
    if isinstance(value, str):
        match = PLACEHOLDER_RE.match(value)
        if match:
            refs.add(match.group(1))
    elif isinstance(value, Mapping):
        for item in value.values():
            _collect_refs(item, refs)
    elif isinstance(value, (list, tuple)):
        for item in value:
            _collect_refs(item, refs)


def _lookup(step_id: str, path: str, outputs: Mapping[str, ResultSet]) -> Any:
    rows = outputs[step_id].rows
    if path == "count":
        return len(rows)
    if path == "keys":
        return [r.key for r in rows]
    if path.startswith("first."):
        column = path[len("first."):]
        return rows[0].get(column) if rows else None
    return [r.get(path) for r in rows]


def substitute(value: Any, outputs: Mapping[str, ResultSet]) -> Any:
    """Replace every placeholder in a nested value with its concrete value."""
    if isinstance(value, str):
        match = PLACEHOLDER_RE.match(value)
        if match and match.group(1) in outputs:
            return _lookup(match.group(1), match.group(2), outputs)
        return value
    if isinstance(value, Mapping):
        return {k: substitute(v, outputs) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [substitute(v, outputs) for v in value]
    return value


def _bind(step: PipelineStep, outputs: Mapping[str, ResultSet]) -> StepCall:
    call = step.call
    if isinstance(call, Operation):
        return replace(
            call,
            predicate=(
                call.predicate.map_values(lambda _column, v: substitute(v, outputs))
                if call.predicate
                else None
            ),
            values=substitute(call.values, outputs) if call.values is not None else None,
            patch=substitute(call.patch, outputs) if call.patch is not None else None,
        )

    data = substitute(_template(call), outputs)
    data.setdefault("operation_id", step.step_id)
    if isinstance(call, Phrase):
        return Phrase.model_validate(data)
    return StructuredCall.model_validate(data) if isinstance(call, StructuredCall) else data


class PipelineCoordinator:
    """Runs a dependency graph of steps in one pass.

    Example:
        >>> coordinator = PipelineCoordinator(resolver, actor.dispatch)
        >>> results = await coordinator.run([step_a, step_b])
        >>> [r.step_id for r in results]
        ['A', 'B']
    """

    def __init__(
        self,
        resolver: IntentResolver,
        execute: Callable[[Operation], Awaitable[ResultSet]],
    ) -> None:
        """Initialize the coordinator.

        Args:
            resolver: Resolves each bound step into an Operation
            execute: Runs an Operation (executor, or the actor's dispatch for watches)
        """
        self.resolver = resolver
        self.execute = execute

    @staticmethod
    def plan(steps: list[PipelineStep]) -> list[PipelineStep]:
        """Validate the graph and return the steps in execution order.

        Raises:
            InvalidPipeline: On duplicate step ids or unknown references
            CyclicDependency: If the references form a cycle
        """
        index: dict[str, int] = {}
        for i, step in enumerate(steps):
            if step.step_id in index:
                raise InvalidPipeline(f"Duplicate step id '{step.step_id}'")
            index[step.step_id] = i

        deps = {step.step_id: step.references() for step in steps}
        for step_id, refs in deps.items():
            unknown = sorted(refs - set(index))
            if unknown:
                raise InvalidPipeline(
                    f"Step '{step_id}' references unknown steps: {', '.join(unknown)}",
                    operation_id=step_id,
                )

        dependents: dict[str, list[str]] = {s.step_id: [] for s in steps}
        indegree = {step_id: len(refs) for step_id, refs in deps.items()}
        for step_id, refs in deps.items():
            for ref in refs:
                dependents[ref].append(step_id)

        ready = [index[s] for s, n in indegree.items() if n == 0]
        heapq.heapify(ready)
        ordered: list[PipelineStep] = []
        while ready:
            step = steps[heapq.heappop(ready)]
            ordered.append(step)
            for dependent in dependents[step.step_id]:
                indegree[dependent] -= 1
                if indegree[dependent] == 0:
                    heapq.heappush(ready, index[dependent])

        if len(ordered) < len(steps):
            placed = {s.step_id for s in ordered}
            raise CyclicDependency([s.step_id for s in steps if s.step_id not in placed])
        return ordered

    async def run(self, steps: list[PipelineStep]) -> list[StepResult]:
        """Run a pipeline.

        Returns:
            One StepResult per step, in submission order

        Raises:
            InvalidPipeline: On duplicate step ids or unknown references
            CyclicDependency: If the references form a cycle (nothing runs)
        """
        ordered = self.plan(steps)
        outputs: dict[str, ResultSet] = {}
        failed: set[str] = set()
        results: dict[str, StepResult] = {}

        for step in ordered:
            refs = step.references()
            blocker = next((s.step_id for s in ordered if s.step_id in refs and s.step_id in failed), None)
            if blocker is not None:
                failed.add(step.step_id)
                error = SkippedDueToDependencyFailure(step.step_id, blocker)
                results[step.step_id] = StepResult(
                    step.step_id, ResultSet.failed(error, step.step_id), skipped=True
                )
                continue

            try:
                operation = self.resolver.resolve(_bind(step, outputs))
                result = await self.execute(operation)
            except AgentDbError as e:
                result = ResultSet.failed(e, step.step_id)
            except Exception as e:
                logger.error(
                    "Pipeline step raised",
                    extra={"step_id": step.step_id},
                    exc_info=True,
                )
                error = InternalError(f"{type(e).__name__}: {e}", operation_id=step.step_id)
                error.__cause__ = e
                result = ResultSet.failed(error, step.step_id)

            results[step.step_id] = StepResult(step.step_id, result)
            if result.error is not None:
                failed.add(step.step_id)
                logger.info(
                    "Pipeline step failed",
                    extra={"step_id": step.step_id, "code": result.error.code},
                )
            else:
                outputs[step.step_id] = result

        logger.debug(
            "Pipeline finished",
            extra={"steps": len(steps), "failed": len(failed)},
        )
        return [results[s.step_id] for s in steps]
