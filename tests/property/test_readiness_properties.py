"""Property-based tests for readiness resolution."""

from __future__ import annotations

from hypothesis import given, settings, strategies as st

from stratus.common.schemas import TERMINAL_JOB_STATUSES, PipelineDefinition
from stratus.control_plane.pipeline import JobState, compile_pipeline, resolve_readiness

STATES = st.sampled_from(
    [
        JobState("pending"),
        JobState("queued"),
        JobState("running"),
        JobState("succeeded"),
        JobState("failed"),
        JobState("cancelled"),
        JobState("skipped", "condition"),
        JobState("skipped", "upstream_failure"),
    ]
)


@st.composite
def scenarios(draw):
    size = draw(st.integers(min_value=1, max_value=8))
    jobs = []
    for index in range(size):
        needs = draw(st.lists(st.sampled_from(range(index)), unique=True)) if index else []
        jobs.append(
            {
                "name": f"j{index}",
                "needs": [f"j{item}" for item in needs],
                "run": draw(st.sampled_from(["on_success", "always"])),
                "skip_is_success": draw(st.booleans()),
            }
        )
    graph = compile_pipeline(PipelineDefinition.parse({"name": "p", "stages": [{"name": "all", "jobs": jobs}]}))
    states = {job["name"]: draw(STATES) for job in jobs}
    return graph, states


def _apply(states, readiness):
    updated = dict(states)
    for name, reason in readiness.skipped.items():
        updated[name] = JobState("skipped", reason)
    return updated


@settings(max_examples=200, deadline=None)
@given(scenarios())
def test_only_pending_jobs_with_terminal_upstream_are_decided(scenario):
    graph, states = scenario
    readiness = resolve_readiness(graph, states)
    after = _apply(states, readiness)

    assert not set(readiness.ready) & set(readiness.skipped)
    for name in [*readiness.ready, *readiness.skipped]:
        assert states[name].status == "pending"
        assert all(after[dependency].status in TERMINAL_JOB_STATUSES for dependency in graph.predecessors(name))


@settings(max_examples=200, deadline=None)
@given(scenarios())
def test_failures_never_release_on_success_jobs(scenario):
    graph, states = scenario
    readiness = resolve_readiness(graph, states)
    after = _apply(states, readiness)

    for name in readiness.ready:
        if graph.job(name).spec.run == "always":
            continue
        for dependency in graph.predecessors(name):
            upstream = after[dependency]
            assert upstream.status not in ("failed", "cancelled")
            assert upstream.skip_reason != "upstream_failure"


@settings(max_examples=200, deadline=None)
@given(scenarios())
def test_resolution_is_a_fixed_point(scenario):
    graph, states = scenario
    first = resolve_readiness(graph, states)
    second = resolve_readiness(graph, _apply(states, first))

    assert dict(second.skipped) == {}
    assert second.ready == first.ready
