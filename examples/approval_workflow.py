"""
Approval Workflow Example - Suspend and Resume
================================================

This example shows the human-in-the-loop cycle:

    1. A draft is written and scored by an evaluator agent; drafts below the
       threshold are rewritten.
    2. The HumanApprovalAgent suspends the run. The Executor returns an
       ExecutionOutput with status SUSPENDED and a resumption token; the
       snapshot is kept in an InMemoryResumptionStore.
    3. Later (here: immediately) the run is resumed from the token with the
       reviewer's decision, and a branch publishes or archives the draft.

Usage:
    python examples/approval_workflow.py
"""

from __future__ import annotations

import asyncio

from conductor.agents.approval import HumanApprovalAgent
from conductor.core.config import ConductorConfig
from conductor.infrastructure.resumption_store import InMemoryResumptionStore
from conductor.orchestration.executor import Executor


ENSEMBLE = {
    "name": "approval-workflow",
    "state": {"initial": {"revisions": 0}},
    "flow": [
        {
            "agent": "writer",
            "input": "${input.topic}",
            "state": {"use": ["revisions"], "set": ["revisions"]},
            "scoring": {"evaluator": "judge", "thresholds": {"minimum": 0.8}, "retryLimit": 3},
        },
        {"agent": "approval", "id": "review", "input": "${writer.output}", "config": {"ttl_seconds": 3600}},
        {
            "type": "branch",
            "condition": "${review.output.approved}",
            "then": [{"agent": "publish", "input": "${writer.output}"}],
            "else": [{"agent": "archive", "input": "${review.output.comment}"}],
        },
    ],
    "output": {
        "draft": "${writer.output}",
        "decision": "${review.output}",
        "published": "${publish.output}",
        "archived": "${archive.output}",
    },
}


def writer(ctx):
    revision = ctx.state.get("revisions", 0) + 1
    ctx.set_state({"revisions": revision})
    return f"Draft {revision} about {ctx.input}"


def judge(ctx):
    score = 0.6 if ctx.input["previousScore"] is None else 0.9
    return {"score": score, "feedback": "needs an example" if score < 0.8 else "good"}


async def main() -> None:
    """Run until approval, then resume with the reviewer's decision."""
    store = InMemoryResumptionStore()
    executor = Executor(ConductorConfig(), resumption_store=store)
    executor.register_function("writer", writer)
    executor.register_function("judge", judge)
    executor.register_function("publish", lambda ctx: {"url": "https://blog.example.com/1", "body": ctx.input})
    executor.register_function("archive", lambda ctx: {"reason": ctx.input})
    executor.register_agent(HumanApprovalAgent())

    first = (await executor.execute_ensemble(ENSEMBLE, {"topic": "workflow engines"})).unwrap()
    print("Approval Workflow")
    print("-" * 40)
    print(f"Status    : {first.status.value}")
    print(f"Token     : {first.suspension.token}")
    print(f"Reason    : {first.suspension.metadata.reason}")
    print(f"Expires   : {first.suspension.metadata.expires_at.isoformat()}")
    print(f"Score     : {first.scoring['final_score']:.2f}")

    resumed = await executor.resume_from_token(first.suspension.token, {"approved": True, "comment": "ship it"})
    output = resumed.unwrap()
    print()
    print(f"Status    : {output.status.value}")
    for key, value in output.output.items():
        print(f"{key:<10}: {value}")


if __name__ == "__main__":
    asyncio.run(main())
