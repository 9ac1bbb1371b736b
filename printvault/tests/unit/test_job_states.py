from __future__ import annotations

import pytest

from printvault.core.errors import InvalidTransitionError
from printvault.domain.states import (
    STATUS_FOR_STAGE,
    JobStage,
    JobStatus,
    allowed_sources,
    ensure_stage_transition,
    is_allowed,
)
from printvault.persistence.counters import AtomicCounterStore, CounterValue
from printvault.persistence.repos.jobs import PageCompletionCounter
from printvault.persistence.repos.ledger import LedgerUsageCounter


def test_forward_transitions_are_allowed() -> None:
    assert ensure_stage_transition("rendering", "merging") == JobStage.MERGING
    assert ensure_stage_transition(JobStage.MERGING, JobStage.COMPLETED) == JobStage.COMPLETED
    assert is_allowed("pending", "rendering")


def test_failed_can_only_recover_to_rendering_or_merging() -> None:
    assert is_allowed("failed", "rendering")
    assert is_allowed("failed", "merging")
    with pytest.raises(InvalidTransitionError):
        ensure_stage_transition("failed", "completed")


@pytest.mark.parametrize(
    ("current", "target"),
    [
        ("completed", "rendering"),
        ("completed", "failed"),
        ("merging", "rendering"),
        ("rendering", "pending"),
    ],
)
def test_backward_transitions_are_rejected(current: str, target: str) -> None:
    with pytest.raises(InvalidTransitionError):
        ensure_stage_transition(current, target)


def test_unknown_stage_is_rejected() -> None:
    with pytest.raises(InvalidTransitionError):
        ensure_stage_transition("rendering", "printing")


def test_status_mirrors_stage() -> None:
    assert STATUS_FOR_STAGE[JobStage.RENDERING] == JobStatus.PROCESSING
    assert STATUS_FOR_STAGE[JobStage.MERGING] == JobStatus.PROCESSING
    assert STATUS_FOR_STAGE[JobStage.FAILED] == JobStatus.FAILED


def test_completed_is_reachable_only_from_merging() -> None:
    assert allowed_sources(JobStage.COMPLETED) == frozenset({JobStage.MERGING, JobStage.COMPLETED})


def test_counters_share_one_increment_contract() -> None:
    assert isinstance(LedgerUsageCounter(), AtomicCounterStore)
    assert isinstance(PageCompletionCounter(page_index=0, storage_key="pages/0.pdf"), AtomicCounterStore)
    assert CounterValue(value=3, limit=3).reached
    assert not CounterValue(value=2, limit=3).reached
    # A zero limit never counts as reached.
    assert not CounterValue(value=1, limit=0).reached
