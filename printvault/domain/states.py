from __future__ import annotations

from enum import Enum

from printvault.core.errors import InvalidTransitionError


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobStage(str, Enum):
    PENDING = "pending"
    RENDERING = "rendering"
    MERGING = "merging"
    COMPLETED = "completed"
    FAILED = "failed"


class LedgerStatus(str, Enum):
    ACTIVE = "active"
    EXHAUSTED = "exhausted"


class DocumentKind(str, Enum):
    SOURCE = "source"
    GENERATED = "generated"


# Stages only move forward; failed -> rendering is the recovery path taken by the
# Reconciler and by a page that succeeds on retry after an earlier failure.
# Self-transitions cover idempotent re-marking by retried workers.
ALLOWED_STAGE_TRANSITIONS: dict[JobStage, frozenset[JobStage]] = {
    JobStage.PENDING: frozenset({JobStage.PENDING, JobStage.RENDERING, JobStage.MERGING, JobStage.FAILED}),
    JobStage.RENDERING: frozenset({JobStage.RENDERING, JobStage.MERGING, JobStage.FAILED}),
    JobStage.MERGING: frozenset({JobStage.MERGING, JobStage.COMPLETED, JobStage.FAILED}),
    JobStage.COMPLETED: frozenset({JobStage.COMPLETED}),
    JobStage.FAILED: frozenset({JobStage.FAILED, JobStage.RENDERING, JobStage.MERGING}),
}

# Status mirrors stage; each stage has exactly one status.
STATUS_FOR_STAGE: dict[JobStage, JobStatus] = {
    JobStage.PENDING: JobStatus.PENDING,
    JobStage.RENDERING: JobStatus.PROCESSING,
    JobStage.MERGING: JobStatus.PROCESSING,
    JobStage.COMPLETED: JobStatus.COMPLETED,
    JobStage.FAILED: JobStatus.FAILED,
}

# Stages that still accept page completions.
RENDERABLE_STAGES: frozenset[JobStage] = frozenset({JobStage.PENDING, JobStage.RENDERING})


def allowed_sources(target: JobStage) -> frozenset[JobStage]:
    # Invert the table so repos can build `stage IN (...)` guards.
    return frozenset(source for source, targets in ALLOWED_STAGE_TRANSITIONS.items() if target in targets)


def is_allowed(current: JobStage | str, target: JobStage | str) -> bool:
    return JobStage(target) in ALLOWED_STAGE_TRANSITIONS[JobStage(current)]


def ensure_stage_transition(current: JobStage | str, target: JobStage | str) -> JobStage:
    """Validate a stage change against the transition table.

    Returns the target stage so callers can chain the result into an update.
    Raises InvalidTransitionError for any change not in the table, including
    unknown stage names.
    """
    try:
        current_stage = JobStage(current)
        target_stage = JobStage(target)
    except ValueError as exc:
        raise InvalidTransitionError(f"Unknown job stage: {exc}") from exc
    if target_stage not in ALLOWED_STAGE_TRANSITIONS[current_stage]:
        raise InvalidTransitionError(
            f"Stage transition {current_stage.value} -> {target_stage.value} is not allowed",
            current=current_stage.value,
            target=target_stage.value,
        )
    return target_stage
