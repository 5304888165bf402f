"""
conductor.core.state - Run-Time Records
=========================================

This module defines the records produced while an ensemble runs. They are
distinct from the static definitions in flow.py:

    flow.py:   WHAT should run (EnsembleDefinition, StepNode) - never changes
    state.py:  WHAT happened (metrics, access log, scores, suspension)

Run Lifecycle:

    PENDING → RUNNING → COMPLETED
                     → FAILED
                     → SUSPENDED ──resume──→ RUNNING

    COMPLETED and FAILED are terminal; ``check_transition`` enforces the
    table below.

Records:
    AccessLogEntry / AccessReport   state reads and writes per step
    StepMetric / ExecutionMetrics   timing, cache hits, success per step
    ScoreRecord / ScoringState      scoring history per step
    SuspendedExecutionState         resumable snapshot handed to the caller
    ExecutionOutput                 what execute_ensemble returns on success
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from conductor.core.enums import RunStatus, ScoringStatus, StateOperation


def _now() -> datetime:
    """Current UTC time (timezone-aware)."""
    return datetime.now(timezone.utc)


# =============================================================================
# Run Status Transitions
# =============================================================================
RUN_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.PENDING: frozenset({RunStatus.RUNNING}),
    RunStatus.RUNNING: frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.SUSPENDED}),
    RunStatus.SUSPENDED: frozenset({RunStatus.RUNNING}),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.FAILED: frozenset(),
}


def check_transition(current: RunStatus, target: RunStatus) -> RunStatus:
    """Validate a run status transition and return the new status.

    Raises:
        ValueError: If ``target`` is not reachable from ``current``.
    """
    if target not in RUN_TRANSITIONS[current]:
        raise ValueError(f"Invalid run status transition: {current.value} -> {target.value}")
    return target


# =============================================================================
# State Access Records
# =============================================================================
class AccessLogEntry(BaseModel):
    """One read or write of a state key by a step."""

    model_config = ConfigDict(frozen=True)

    step_name: str
    key: str
    operation: StateOperation
    timestamp: datetime = Field(default_factory=_now)


class AccessReport(BaseModel):
    """Summary of state usage over a run.

    Attributes:
        unused_keys: Declared keys (schema or initial) no step ever read.
        access_patterns: Per step, the keys it read and wrote.
    """

    unused_keys: list[str] = Field(default_factory=list)
    access_patterns: dict[str, dict[str, list[str]]] = Field(default_factory=dict)


# =============================================================================
# Metrics
# =============================================================================
class StepMetric(BaseModel):
    """Timing and outcome of one agent step."""

    name: str
    agent: str
    duration_seconds: float = 0.0
    cached: bool = False
    success: bool = True
    attempts: int = 1


class ExecutionMetrics(BaseModel):
    """Aggregate metrics for one run.

    Steps are appended in completion order. Concurrent steps may complete in
    any order.
    """

    ensemble: str
    started_at: datetime = Field(default_factory=_now)
    total_duration_seconds: float = 0.0
    steps: list[StepMetric] = Field(default_factory=list)
    cache_hits: int = 0
    state_access: Optional[AccessReport] = None

    def record(self, metric: StepMetric) -> None:
        self.steps.append(metric)
        if metric.cached:
            self.cache_hits += 1

    def finish(self) -> None:
        self.total_duration_seconds = (_now() - self.started_at).total_seconds()


# =============================================================================
# Scoring Records
# =============================================================================
class ScoreRecord(BaseModel):
    """One evaluation of a scored step."""

    model_config = ConfigDict(frozen=True)

    step: str
    score: float
    passed: bool
    attempt: int
    status: ScoringStatus
    threshold: float
    feedback: Optional[str] = None
    breakdown: dict[str, float] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_now)


class ScoringState(BaseModel):
    """Scoring history of a run, replaced (not mutated) on every record."""

    model_config = ConfigDict(frozen=True)

    history: dict[str, list[ScoreRecord]] = Field(default_factory=dict)
    retry_counts: dict[str, int] = Field(default_factory=dict)

    def with_record(self, record: ScoreRecord) -> ScoringState:
        history = dict(self.history)
        history[record.step] = [*history.get(record.step, []), record]
        return self.model_copy(update={"history": history})

    def with_retries(self, step: str, retries: int) -> ScoringState:
        return self.model_copy(update={"retry_counts": {**self.retry_counts, step: retries}})


# =============================================================================
# Suspension
# =============================================================================
class SuspensionMetadata(BaseModel):
    """Why and until when an execution is suspended."""

    suspended_at: datetime = Field(default_factory=_now)
    suspended_by: Optional[str] = None
    reason: str = ""
    expires_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or _now()) >= self.expires_at


class SuspendedExecutionState(BaseModel):
    """Opaque, JSON-serializable snapshot of a suspended run.

    The caller owns persistence: store ``model_dump(mode="json")`` anywhere and
    hand it back through ``SuspendedExecutionState.model_validate(...)``.

    Attributes:
        token: Resumption token, ``resume_<hex>``.
        execution_id: Identifier of the suspended run.
        ensemble: Ensemble definition without its flow.
        flow: The resolved step list the run was executing.
        context: ExecutionContext snapshot at the suspension point.
        state: State manager snapshot (values and access log).
        scoring: Scoring state snapshot.
        resume_from_step: Index of the top-level step to re-execute.
        suspended_step: Key of the agent step that requested suspension;
            only that step receives ``resume_input``.
        metrics: Metrics collected before suspension.
        metadata: Reason, origin and expiry.
    """

    token: str
    execution_id: str
    ensemble: dict[str, Any]
    flow: list[dict[str, Any]]
    context: dict[str, Any]
    state: dict[str, Any] = Field(default_factory=dict)
    scoring: dict[str, Any] = Field(default_factory=dict)
    resume_from_step: int = 0
    suspended_step: Optional[str] = None
    metrics: dict[str, Any] = Field(default_factory=dict)
    metadata: SuspensionMetadata = Field(default_factory=SuspensionMetadata)

    @staticmethod
    def expiry(ttl_seconds: int) -> datetime:
        return _now() + timedelta(seconds=ttl_seconds)


# =============================================================================
# Execution Output
# =============================================================================
class ExecutionOutput(BaseModel):
    """Successful (or suspended) result of an ensemble run.

    Attributes:
        output: Resolved output mapping, or the last step's output.
        status: COMPLETED or SUSPENDED.
        results: Every step output keyed by step key.
        metrics: Aggregated run metrics.
        scoring: Ensemble score and quality metrics when scoring was used.
        suspension: Snapshot to resume from when status is SUSPENDED.
    """

    execution_id: str
    status: RunStatus = RunStatus.COMPLETED
    output: Any = None
    results: dict[str, Any] = Field(default_factory=dict)
    metrics: ExecutionMetrics
    scoring: Optional[dict[str, Any]] = None
    suspension: Optional[SuspendedExecutionState] = None

    @property
    def is_suspended(self) -> bool:
        return self.status == RunStatus.SUSPENDED
