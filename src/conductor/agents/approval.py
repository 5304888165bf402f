"""
conductor.agents.approval - Human Approval Agent
==================================================

The built-in suspend primitive. On its first run the agent suspends the
ensemble; once the caller resumes with the approver's decision as
``resume_input``, the same step runs again and returns that decision.

    run 1:  HumanApprovalAgent ──raise ExecutionSuspended──→ caller persists
            SuspendedExecutionState and notifies a human (out of scope)
    run 2:  executor.resume_execution(state, {"approved": True})
            HumanApprovalAgent ──→ {"approved": True, ...}

Configuration (agent or step ``config``):
    message:         Suspension reason (default "Awaiting human approval").
    ttl_seconds:     Override of the resumption TTL.
    fail_on_reject:  Return a failure response when ``approved`` is false.
"""

from __future__ import annotations

from typing import Any, Optional

from conductor.agents.base import BaseAgent
from conductor.core.exceptions import ExecutionSuspended
from conductor.core.models import AgentExecutionContext, AgentResponse


class HumanApprovalAgent(BaseAgent):
    """Suspends execution until a human decision is supplied on resume."""

    def __init__(self, name: str = "approval", version: Optional[str] = None, config: Optional[dict[str, Any]] = None) -> None:
        super().__init__(name, version=version, config=config, description="Human-in-the-loop approval gate")

    async def _execute(self, context: AgentExecutionContext) -> Any:
        config = {**self.config, **context.config}
        decision = context.resume_input

        if decision is None:
            raise ExecutionSuspended(
                reason=config.get("message", "Awaiting human approval"),
                suspended_by=self.reference,
                ttl_seconds=config.get("ttl_seconds"),
                payload={"step": context.step_key, "input": context.input},
            )

        if not isinstance(decision, dict):
            decision = {"approved": bool(decision)}
        approved = bool(decision.get("approved", False))

        self._logger.info("approval_received", step=context.step_key, approved=approved)
        if not approved and config.get("fail_on_reject", False):
            return AgentResponse.failure(
                decision.get("comment") or "Approval rejected",
                error_code="APPROVAL_REJECTED",
            )
        return {**decision, "approved": approved}
