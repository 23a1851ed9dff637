"""Pipeline compilation: stage expansion, DAG validation and readiness rules."""

from __future__ import annotations

from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from types import MappingProxyType
from typing import Mapping, Optional

import networkx as nx
import structlog

from ..common.errors import CyclicDependencyError, ValidationError
from ..common.schemas import (
    TERMINAL_JOB_STATUSES,
    AllCondition,
    AlwaysCondition,
    AnyCondition,
    BranchCondition,
    Condition,
    EventCondition,
    JobSpec,
    JobStatus,
    NotCondition,
    PathsCondition,
    PipelineDefinition,
    SkipReason,
    TriggerContext,
    VariableCondition,
)

LOGGER = structlog.get_logger("stratus.control_plane.pipeline")

COMPONENT = "scheduler"


def evaluate_condition(condition: Optional[Condition], trigger: TriggerContext) -> bool:
    """Evaluate a ``when`` expression against a frozen trigger snapshot."""

    if condition is None or isinstance(condition, AlwaysCondition):
        return True
    if isinstance(condition, BranchCondition):
        branch = trigger.branch
        if branch is None:
            return False
        return any(fnmatchcase(branch, pattern) for pattern in condition.patterns)
    if isinstance(condition, EventCondition):
        return trigger.event in condition.events
    if isinstance(condition, PathsCondition):
        return any(
            fnmatchcase(path, pattern) for path in trigger.changed_paths for pattern in condition.patterns
        )
    if isinstance(condition, VariableCondition):
        return trigger.variables.get(condition.name) == condition.equals
    if isinstance(condition, AllCondition):
        return all(evaluate_condition(item, trigger) for item in condition.conditions)
    if isinstance(condition, AnyCondition):
        return any(evaluate_condition(item, trigger) for item in condition.conditions)
    if isinstance(condition, NotCondition):
        return not evaluate_condition(condition.condition, trigger)
    raise ValidationError(f"unsupported condition {type(condition).__name__}", component=COMPONENT)


@dataclass(frozen=True)
class CompiledJob:
    spec: JobSpec
    stage: str
    stage_index: int
    needs: tuple[str, ...]

    @property
    def name(self) -> str:
        return self.spec.name


@dataclass(frozen=True, eq=False)
class PipelineGraph:
    """Immutable job DAG for one pipeline definition."""

    definition: PipelineDefinition
    jobs: Mapping[str, CompiledJob]
    order: tuple[str, ...]
    graph: nx.DiGraph = field(repr=False)

    def job(self, name: str) -> CompiledJob:
        return self.jobs[name]

    def predecessors(self, name: str) -> tuple[str, ...]:
        return self.jobs[name].needs

    def successors(self, name: str) -> tuple[str, ...]:
        return tuple(sorted(self.graph.successors(name), key=self.order.index))

    def __len__(self) -> int:
        return len(self.order)


def compile_pipeline(definition: PipelineDefinition) -> PipelineGraph:
    """Expand stages into a job DAG and validate it.

    A job that omits ``needs`` depends on every job of the previous stage;
    an explicit ``needs`` list (even an empty one) replaces that default.
    """

    if not definition.stages or not any(stage.jobs for stage in definition.stages):
        raise ValidationError("pipeline defines no jobs", component=COMPONENT, pipeline=definition.name)

    stage_names: set[str] = set()
    declared: dict[str, tuple[JobSpec, str, int]] = {}
    for index, stage in enumerate(definition.stages):
        if stage.name in stage_names:
            raise ValidationError(
                f"duplicate stage name {stage.name!r}", component=COMPONENT, pipeline=definition.name
            )
        stage_names.add(stage.name)
        for job in stage.jobs:
            if job.name in declared:
                raise ValidationError(
                    f"duplicate job name {job.name!r}",
                    component=COMPONENT,
                    pipeline=definition.name,
                    job=job.name,
                )
            declared[job.name] = (job, stage.name, index)

    graph: nx.DiGraph = nx.DiGraph()
    position = {name: offset for offset, name in enumerate(declared)}
    for name in declared:
        graph.add_node(name)

    previous_stage_jobs: tuple[str, ...] = ()
    needs_by_job: dict[str, tuple[str, ...]] = {}
    for stage in definition.stages:
        for job in stage.jobs:
            if job.needs is None:
                needs = previous_stage_jobs
            else:
                needs = tuple(dict.fromkeys(job.needs))
                for dependency in needs:
                    if dependency == job.name:
                        raise ValidationError(
                            f"job {job.name!r} depends on itself",
                            component=COMPONENT,
                            pipeline=definition.name,
                            job=job.name,
                        )
                    if dependency not in declared:
                        raise ValidationError(
                            f"job {job.name!r} needs unknown job {dependency!r}",
                            component=COMPONENT,
                            pipeline=definition.name,
                            job=job.name,
                        )
            needs_by_job[job.name] = needs
            for dependency in needs:
                graph.add_edge(dependency, job.name)
        previous_stage_jobs = tuple(job.name for job in stage.jobs)

    if not nx.is_directed_acyclic_graph(graph):
        try:
            cycle = [source for source, _ in nx.find_cycle(graph)]
        except nx.NetworkXNoCycle:  # pragma: no cover - is_directed_acyclic_graph said otherwise
            cycle = []
        cycle_str = " -> ".join([*cycle, cycle[0]]) if cycle else "unknown"
        raise CyclicDependencyError(
            f"pipeline contains a dependency cycle: {cycle_str}",
            component=COMPONENT,
            pipeline=definition.name,
            cycle=cycle,
        )

    order = tuple(nx.lexicographical_topological_sort(graph, key=position.__getitem__))
    jobs = {
        name: CompiledJob(spec=spec, stage=stage_name, stage_index=index, needs=needs_by_job[name])
        for name, (spec, stage_name, index) in declared.items()
    }
    LOGGER.debug("Pipeline compiled", pipeline=definition.name, jobs=len(jobs), edges=graph.number_of_edges())
    return PipelineGraph(
        definition=definition,
        jobs=MappingProxyType(jobs),
        order=order,
        graph=nx.freeze(graph),
    )


@dataclass(frozen=True)
class JobState:
    status: JobStatus
    skip_reason: Optional[SkipReason] = None


@dataclass(frozen=True)
class Readiness:
    """Outcome of one readiness pass over the pending jobs."""

    ready: tuple[str, ...]
    skipped: Mapping[str, SkipReason]


def condition_skips(graph: PipelineGraph, trigger: TriggerContext) -> dict[str, SkipReason]:
    """Jobs whose ``when`` predicate is false for this trigger."""

    return {
        name: "condition"
        for name in graph.order
        if not evaluate_condition(graph.job(name).spec.when, trigger)
    }


def resolve_readiness(graph: PipelineGraph, states: Mapping[str, JobState]) -> Readiness:
    """Decide which pending jobs can be queued and which must be skipped.

    Pure function of the graph and the current job states. Skips are applied
    in topological order within the pass, so a whole chain of dependents is
    resolved at once.
    """

    current = dict(states)
    ready: list[str] = []
    skipped: dict[str, SkipReason] = {}
    for name in graph.order:
        state = current.get(name)
        if state is None or state.status != "pending":
            continue
        compiled = graph.job(name)
        upstream = [current[dependency] for dependency in compiled.needs]
        if any(item.status not in TERMINAL_JOB_STATUSES for item in upstream):
            continue

        if compiled.spec.run == "always":
            ready.append(name)
            continue

        reason: Optional[SkipReason] = None
        for item in upstream:
            if item.status in ("failed", "cancelled") or (
                item.status == "skipped" and item.skip_reason == "upstream_failure"
            ):
                reason = "upstream_failure"
                break
            if item.status == "skipped" and not compiled.spec.skip_is_success:
                reason = "upstream_skipped"
        if reason is None:
            ready.append(name)
        else:
            skipped[name] = reason
            current[name] = JobState(status="skipped", skip_reason=reason)
    return Readiness(ready=tuple(ready), skipped=MappingProxyType(skipped))
