"""Workflow graph — load-time validation of the job dependency DAG.

Jobs live in an index-based arena: ``job_ids[i]`` names the job at index ``i``
and every adjacency list holds integer indices, never job objects.

Key exports:
    validate — WorkflowDefinition (or raw mapping) → WorkflowGraph, raising
        ValidationError naming the offending job or edge.
    WorkflowGraph — Validated DAG with dependency / ordering queries.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import pydantic

from gantry.pipeline.errors import ValidationError
from gantry.pipeline.models import JobSpec, WorkflowDefinition

logger = logging.getLogger("gantry.pipeline.graph")


@dataclass(frozen=True)
class WorkflowGraph:
    """A validated workflow: jobs plus their acyclic ``needs`` relation."""

    definition: WorkflowDefinition
    job_ids: tuple[str, ...]
    upstream: tuple[tuple[int, ...], ...]  # upstream[i] = indices job i needs
    downstream: tuple[tuple[int, ...], ...]  # downstream[i] = indices needing job i
    order: tuple[int, ...]  # a topological order of all indices
    _index: dict[str, int] = field(repr=False, compare=False, default_factory=dict)

    @property
    def name(self) -> str:
        return self.definition.name

    def index_of(self, job_id: str) -> int:
        return self._index[job_id]

    def job(self, job_id: str) -> JobSpec:
        return self.definition.jobs[job_id]

    def needs(self, job_id: str) -> list[str]:
        return [self.job_ids[i] for i in self.upstream[self._index[job_id]]]

    def dependents(self, job_id: str) -> list[str]:
        return [self.job_ids[i] for i in self.downstream[self._index[job_id]]]

    def topological_order(self) -> list[str]:
        return [self.job_ids[i] for i in self.order]

    def roots(self) -> list[str]:
        return [self.job_ids[i] for i in self.order if not self.upstream[i]]

    def descendants(self, job_id: str) -> set[str]:
        """All jobs that transitively need ``job_id``."""
        seen: set[int] = set()
        queue = deque(self.downstream[self._index[job_id]])
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            queue.extend(self.downstream[current])
        return {self.job_ids[i] for i in seen}

    def levels(self) -> list[list[str]]:
        """Group jobs into stages; jobs in one stage have no mutual dependency."""
        depth: dict[int, int] = {}
        for i in self.order:
            depth[i] = 1 + max((depth[u] for u in self.upstream[i]), default=-1)
        grouped: dict[int, list[str]] = {}
        for i in self.order:
            grouped.setdefault(depth[i], []).append(self.job_ids[i])
        return [grouped[d] for d in sorted(grouped)]


def validate(
    definition: WorkflowDefinition | Mapping[str, Any],
    *,
    name: str | None = None,
) -> WorkflowGraph:
    """Validate a workflow definition and build its dependency graph.

    Checks that job IDs are unique and well formed, that every step has
    exactly one action form, that every ``needs`` reference resolves, and that
    the ``needs`` relation is acyclic.

    Raises:
        ValidationError: naming the offending job and/or edge.
    """
    if not isinstance(definition, WorkflowDefinition):
        raw = dict(definition)
        if name and not raw.get("name"):
            raw["name"] = name
        try:
            definition = WorkflowDefinition.model_validate(raw)
        except pydantic.ValidationError as exc:
            raise _from_pydantic(exc, workflow=raw.get("name") or name) from exc

    workflow = definition.name
    job_ids = tuple(definition.jobs)
    index = {job_id: i for i, job_id in enumerate(job_ids)}

    for job_id, job in definition.jobs.items():
        for i, step in enumerate(job.steps):
            if (step.run is None) == (step.uses is None):
                raise ValidationError(
                    f"Job '{job_id}' step {i}: exactly one of 'run' or 'uses' is required",
                    workflow=workflow,
                    job_id=job_id,
                )

    upstream: list[tuple[int, ...]] = []
    for job_id in job_ids:
        deps: list[int] = []
        for need in definition.jobs[job_id].needs:
            if need == job_id:
                raise ValidationError(
                    f"Job '{job_id}' needs itself",
                    workflow=workflow,
                    job_id=job_id,
                    edge=(need, job_id),
                )
            if need not in index:
                raise ValidationError(
                    f"Job '{job_id}' needs unknown job '{need}'. Known jobs: {sorted(index)}",
                    workflow=workflow,
                    job_id=job_id,
                    edge=(need, job_id),
                )
            deps.append(index[need])
        upstream.append(tuple(deps))

    downstream: list[list[int]] = [[] for _ in job_ids]
    for i, deps in enumerate(upstream):
        for u in deps:
            downstream[u].append(i)

    order = _topological_sort(upstream, downstream)
    if len(order) != len(job_ids):
        processed = set(order)
        cycle = _find_cycle(upstream, [i for i in range(len(job_ids)) if i not in processed])
        path = " -> ".join(job_ids[i] for i in cycle)
        raise ValidationError(
            f"Dependency cycle detected: {path}",
            workflow=workflow,
            job_id=job_ids[cycle[1]],
            edge=(job_ids[cycle[0]], job_ids[cycle[1]]),
        )

    graph = WorkflowGraph(
        definition=definition,
        job_ids=job_ids,
        upstream=tuple(upstream),
        downstream=tuple(tuple(d) for d in downstream),
        order=tuple(order),
        _index=index,
    )
    logger.debug("Validated workflow '%s': %s", workflow, graph.topological_order())
    return graph


def _topological_sort(
    upstream: list[tuple[int, ...]],
    downstream: list[list[int]],
) -> list[int]:
    """Kahn's algorithm. Ties resolve in declaration order.

    Returns fewer indices than there are jobs when the graph has a cycle.
    """
    indeg = [len(deps) for deps in upstream]
    queue = deque(i for i, d in enumerate(indeg) if d == 0)
    order: list[int] = []

    while queue:
        node = queue.popleft()
        order.append(node)
        for child in sorted(downstream[node]):
            indeg[child] -= 1
            if indeg[child] == 0:
                queue.append(child)

    return order


def _find_cycle(upstream: list[tuple[int, ...]], remaining: list[int]) -> list[int]:
    """Return one cycle among nodes Kahn's algorithm could not order.

    Every remaining node has at least one remaining dependency, so walking
    dependencies from any of them must revisit a node. The result is in
    execution direction and closed (first == last).
    """
    pending = set(remaining)
    position: dict[int, int] = {}
    path: list[int] = []
    node = remaining[0]
    while node not in position:
        position[node] = len(path)
        path.append(node)
        node = next(u for u in upstream[node] if u in pending)

    cycle = list(reversed(path[position[node]:]))
    return [*cycle, cycle[0]]


def _from_pydantic(exc: pydantic.ValidationError, *, workflow: str | None) -> ValidationError:
    """Convert the first pydantic error into a ValidationError naming the job."""
    err = exc.errors()[0]
    loc = tuple(err.get("loc", ()))
    job_id = str(loc[1]) if len(loc) > 1 and loc[0] == "jobs" else None
    msg = str(err.get("msg", "invalid value")).removeprefix("Value error, ")
    where = ".".join(str(part) for part in loc)
    message = f"{where}: {msg}" if where else msg
    return ValidationError(message, workflow=workflow, job_id=job_id)
