"""
conductor.orchestration.scoring - Output Quality Scoring
==========================================================

Scored agent steps have their output judged by an evaluator agent. The
evaluator's verdict drives the step's ``onFailure`` policy:

    invoke agent ──→ output ──→ evaluator ──→ score >= threshold? ──yes──→ passed
                                                   │
                                                   no
                                                   │
                        ┌──────────────────────────┼──────────────────────┐
                        ↓                          ↓                      ↓
                  retry (backoff, up to     continue (accept,       abort (fail the
                  retryLimit attempts)      below_threshold)        step)

Evaluator Output:
    A bare number, or a mapping with ``score`` (or ``value``) and optional
    ``feedback`` (or ``message``) and ``breakdown`` (criterion → score). Scores are in [0, 1].

Threshold Resolution:
    step ``thresholds.minimum`` → ensemble ``defaultThresholds.minimum``
    → ConductorConfig.default_score_threshold (0.7).

Backoff Between Scoring Retries:
    exponential from the configured initial delay, doubling, capped at 60s.

EnsembleScorer aggregates the history into an ensemble score (mean of the
latest passing score per step) and quality metrics.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional

import structlog
from pydantic import BaseModel, Field

from conductor.core.enums import OnFailure, ScoringStatus
from conductor.core.exceptions import AgentExecutionError
from conductor.core.flow import EnsembleScoring, StepScoring
from conductor.core.state import ScoreRecord, ScoringState

logger = structlog.get_logger()

MAX_SCORING_BACKOFF_SECONDS = 60.0


# =============================================================================
# Score Parsing and Helpers
# =============================================================================
class EvaluationScore(BaseModel):
    """One parsed evaluator verdict."""

    score: float = Field(ge=0, le=1)
    passed: bool
    threshold: float
    feedback: Optional[str] = None
    breakdown: dict[str, float] = Field(default_factory=dict)


def parse_score(raw: Any) -> tuple[float, Optional[str], dict[str, float]]:
    """Extract ``(score, feedback, breakdown)`` from evaluator output.

    Raises:
        ValueError: If no numeric score can be found.
    """
    if isinstance(raw, bool):
        raise ValueError("Evaluator returned a boolean, expected a score")
    if isinstance(raw, (int, float)):
        return _clamp(float(raw)), None, {}
    if isinstance(raw, Mapping):
        value = raw.get("score", raw.get("value"))
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            breakdown = {
                str(k): float(v)
                for k, v in (raw.get("breakdown") or {}).items()
                if isinstance(v, (int, float))
            }
            feedback = raw.get("feedback", raw.get("message"))
            return _clamp(float(value)), str(feedback) if feedback is not None else None, breakdown
    raise ValueError(f"Evaluator output has no numeric score: {raw!r}")


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def resolve_threshold(
    step_scoring: StepScoring,
    ensemble_scoring: Optional[EnsembleScoring],
    default: float,
) -> float:
    if step_scoring.thresholds.minimum is not None:
        return step_scoring.thresholds.minimum
    if ensemble_scoring is not None and ensemble_scoring.default_thresholds.minimum is not None:
        return ensemble_scoring.default_thresholds.minimum
    return default


def composite_score(breakdown: Mapping[str, float], weights: Optional[Mapping[str, float]] = None) -> float:
    """(Weighted) mean of per-criterion scores; 0.0 when empty."""
    if not breakdown:
        return 0.0
    if not weights:
        return sum(breakdown.values()) / len(breakdown)
    total_weight = sum(weights.get(name, 1.0) for name in breakdown)
    weighted = sum(score * weights.get(name, 1.0) for name, score in breakdown.items())
    return weighted / total_weight if total_weight > 0 else 0.0


def score_range(score: float) -> str:
    if score >= 0.95:
        return "excellent"
    if score >= 0.8:
        return "good"
    if score >= 0.6:
        return "acceptable"
    return "poor"


# =============================================================================
# Scoring Executor
# =============================================================================
@dataclass(frozen=True)
class ScoredResult:
    """Final outcome of a scored step."""

    output: Any
    score: EvaluationScore
    attempts: int
    status: ScoringStatus
    history: tuple[EvaluationScore, ...] = ()


class ScoringExecutor:
    """Runs invoke → evaluate cycles under a StepScoring policy.

    Args:
        initial_backoff: First delay (seconds) between scoring retries.
        sleep: Awaitable sleep function (injectable for tests).
    """

    def __init__(
        self,
        initial_backoff: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._initial_backoff = initial_backoff
        self._sleep = sleep
        self._logger = logger.bind(component="scoring_executor")

    async def execute_with_scoring(
        self,
        invoke: Callable[[int], Awaitable[Any]],
        evaluate: Callable[[Any, int], Awaitable[EvaluationScore]],
        config: StepScoring,
        step_key: str,
        agent_name: str = "",
    ) -> ScoredResult:
        """Invoke, evaluate, and apply ``on_failure`` until done.

        Agent and evaluator failures propagate unchanged; their own retry
        policy has already been applied by the caller.

        Raises:
            AgentExecutionError: ``on_failure: abort`` and the score is below
                the threshold (error code SCORE_BELOW_THRESHOLD).
        """
        max_attempts = max(1, config.retry_limit)
        backoff = self._initial_backoff
        history: list[EvaluationScore] = []
        output: Any = None

        for attempt in range(1, max_attempts + 1):
            output = await invoke(attempt)
            score = await evaluate(output, attempt)
            previous = history[-1] if history else None
            history.append(score)

            self._logger.debug(
                "step_scored",
                step=step_key,
                attempt=attempt,
                score=score.score,
                threshold=score.threshold,
                passed=score.passed,
            )
            if score.passed:
                return ScoredResult(output, score, attempt, ScoringStatus.PASSED, tuple(history))

            if config.require_improvement and previous is not None:
                if score.score - previous.score < config.min_improvement:
                    self._logger.info(
                        "scoring_stalled",
                        step=step_key,
                        attempt=attempt,
                        improvement=round(score.score - previous.score, 4),
                    )
                    return ScoredResult(
                        output, score, attempt, ScoringStatus.MAX_RETRIES_EXCEEDED, tuple(history)
                    )

            if config.on_failure == OnFailure.CONTINUE:
                self._logger.warning(
                    "score_below_threshold_continuing",
                    step=step_key,
                    score=score.score,
                    threshold=score.threshold,
                    attempts=attempt,
                )
                return ScoredResult(output, score, attempt, ScoringStatus.BELOW_THRESHOLD, tuple(history))

            if config.on_failure == OnFailure.ABORT:
                raise AgentExecutionError(
                    agent_name=agent_name or step_key,
                    reason=f"score {score.score} below minimum threshold {score.threshold}",
                    step_key=step_key,
                    error_code="SCORE_BELOW_THRESHOLD",
                    details={"score": score.score, "threshold": score.threshold, "attempts": attempt},
                )

            if attempt < max_attempts:
                await self._sleep(backoff)
                backoff = min(backoff * 2, MAX_SCORING_BACKOFF_SECONDS)

        self._logger.warning("scoring_retries_exhausted", step=step_key, attempts=max_attempts)
        return ScoredResult(output, history[-1], max_attempts, ScoringStatus.MAX_RETRIES_EXCEEDED, tuple(history))


# =============================================================================
# Ensemble Scorer
# =============================================================================
class QualityMetrics(BaseModel):
    """Aggregated view over a run's scoring history."""

    ensemble_score: float = 0.0
    average_score: float = 0.0
    min_score: float = 0.0
    max_score: float = 0.0
    total_evaluations: int = 0
    pass_rate: float = 0.0
    total_retries: int = 0
    average_attempts: float = 0.0
    criteria_breakdown: dict[str, dict[str, float]] = Field(default_factory=dict)


class EnsembleScorer:
    """Aggregates per-step scores into ensemble-level results.

    Args:
        threshold: Pass mark used for per-criterion pass rates.
    """

    def __init__(self, threshold: float = 0.7) -> None:
        self._threshold = threshold

    @staticmethod
    def _flatten(state: ScoringState) -> list[ScoreRecord]:
        records = [record for records in state.history.values() for record in records]
        return sorted(records, key=lambda record: record.timestamp)

    def ensemble_score(self, state: ScoringState, weights: Optional[Mapping[str, float]] = None) -> float:
        """Mean of each step's latest passing score (weighted when given)."""
        latest: dict[str, float] = {}
        for record in self._flatten(state):
            if record.passed:
                latest[record.step] = record.score
        if not latest:
            return 0.0
        if not weights:
            return sum(latest.values()) / len(latest)
        total_weight = sum(weights.get(step, 1.0) for step in latest)
        weighted = sum(score * weights.get(step, 1.0) for step, score in latest.items())
        return weighted / total_weight if total_weight > 0 else 0.0

    def quality_metrics(self, state: ScoringState) -> QualityMetrics:
        records = self._flatten(state)
        if not records:
            return QualityMetrics()

        scores = [record.score for record in records]
        attempts = [record.attempt for record in records]

        criteria: dict[str, list[float]] = {}
        for record in records:
            for criterion, value in record.breakdown.items():
                criteria.setdefault(criterion, []).append(value)

        return QualityMetrics(
            ensemble_score=self.ensemble_score(state),
            average_score=sum(scores) / len(scores),
            min_score=min(scores),
            max_score=max(scores),
            total_evaluations=len(records),
            pass_rate=sum(1 for record in records if record.passed) / len(records),
            total_retries=sum(1 for attempt in attempts if attempt > 1),
            average_attempts=sum(attempts) / len(attempts),
            criteria_breakdown={
                criterion: {
                    "average": sum(values) / len(values),
                    "pass_rate": sum(1 for v in values if v >= self._threshold) / len(values),
                }
                for criterion, values in criteria.items()
            },
        )

    def record(self, state: ScoringState, record: ScoreRecord) -> ScoringState:
        """Append ``record``, bumping the step's retry count on attempts > 1."""
        updated = state.with_record(record)
        if record.attempt > 1:
            updated = updated.with_retries(record.step, state.retry_counts.get(record.step, 0) + 1)
        return updated

    def summary(self, state: ScoringState) -> dict[str, Any]:
        """JSON-safe summary placed on ExecutionOutput.scoring."""
        metrics = self.quality_metrics(state)
        return {
            "final_score": metrics.ensemble_score,
            "quality_metrics": metrics.model_dump(),
            "retry_counts": dict(state.retry_counts),
            "history": {
                step: [record.model_dump(mode="json") for record in records]
                for step, records in state.history.items()
            },
        }
