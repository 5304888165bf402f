"""
End-to-End Tests for Conductor
================================

A document review ensemble authored in YAML and run through the public
Executor API. It combines a cached fetch, a parallel fan-out, a bounded
foreach, a try/catch around an unreliable publisher, shared state, a human
approval gate and a branch on the approver's decision.

All tests are async (pytest-asyncio with asyncio_mode=auto).
"""

from __future__ import annotations

import pytest

from conductor.agents.approval import HumanApprovalAgent
from conductor.core.enums import RunStatus


REVIEW_YAML = """
name: document-review
description: Fetch, analyse and sign off a document
state:
  schema:
    reviewed: int
  initial:
    reviewed: 0
flow:
  - agent: fetch
    input:
      url: "${input.url}"
    cache:
      ttl: 60
  - type: parallel
    steps:
      - agent: summarize
        id: summary
        input: "${fetch.output.text}"
      - agent: classify
        id: labels
        input: "${fetch.output.text}"
  - type: foreach
    items: "${input.sections}"
    maxConcurrency: 2
    step:
      agent: count-words
      input: "${item}"
  - type: try
    steps:
      - agent: publish
        retry:
          attempts: 2
          initialDelay: 0
    catch:
      - agent: echo
        id: publish-fallback
        input: "${error.code}"
  - agent: tally
    state:
      use: [reviewed]
      set: [reviewed]
  - agent: approval
    id: signoff
    input: "${summary.output}"
  - type: branch
    condition: "signoff.output.approved && state.reviewed > 0"
    then:
      - agent: echo
        id: release
        input: "released: ${labels.output}"
    else:
      - agent: echo
        id: hold
        input: held
output:
  summary: "${summary.output}"
  words: "${foreach_2.output}"
  publish: "${publish-fallback.output}"
  reviewed: "${state.reviewed}"
  released: "${release.output}"
  held: "${hold.output}"
"""

INPUT = {"url": "https://docs.example.com/q3", "sections": ["alpha beta", "gamma delta epsilon"]}


class Calls:
    def __init__(self) -> None:
        self.fetch = 0
        self.publish = 0


@pytest.fixture
def calls(executor) -> Calls:
    """Registers the review agents on the shared executor fixture."""
    counter = Calls()

    def fetch(ctx):
        counter.fetch += 1
        return {"text": f"contents of {ctx.input['url']}"}

    def publish(ctx):
        counter.publish += 1
        raise ConnectionError("publisher unavailable")

    def tally(ctx):
        ctx.set_state({"reviewed": ctx.state["reviewed"] + 1})
        return ctx.state["reviewed"] + 1

    executor.register_function("fetch", fetch)
    executor.register_function("summarize", lambda ctx: ctx.input.split()[0])
    executor.register_function("classify", lambda ctx: "report")
    executor.register_function("count-words", lambda ctx: len(ctx.input.split()))
    executor.register_function("publish", publish)
    executor.register_function("tally", tally)
    executor.register_agent(HumanApprovalAgent())
    return counter


# =============================================================================
# Test: Document Review Ensemble
# =============================================================================
class TestDocumentReview:
    """The full review flow from first run to resumed completion."""

    async def test_runs_until_approval(self, executor, calls, resumption_store) -> None:
        output = (await executor.execute_from_yaml(REVIEW_YAML, INPUT)).unwrap()

        assert output.status == RunStatus.SUSPENDED
        assert output.suspension.suspended_step == "signoff"
        assert output.suspension.resume_from_step == 5
        assert output.results["summary"] == "contents"
        assert output.results["labels"] == "report"
        assert output.results["foreach_2"] == [2, 3]
        assert output.results["publish-fallback"] == "AGENT_EXCEPTION"
        assert output.results["tally"] == 1
        assert calls.publish == 2
        assert len(resumption_store) == 1

    async def test_approved_run_releases(self, executor, calls, resumption_store) -> None:
        suspended = (await executor.execute_from_yaml(REVIEW_YAML, INPUT)).unwrap().suspension
        output = (await executor.resume_execution(suspended, {"approved": True})).unwrap()

        assert output.status == RunStatus.COMPLETED
        assert output.output == {
            "summary": "contents",
            "words": [2, 3],
            "publish": "AGENT_EXCEPTION",
            "reviewed": 1,
            "released": "released: report",
            "held": None,
        }
        assert calls.fetch == 1
        assert calls.publish == 2
        assert len(resumption_store) == 0

    async def test_rejected_run_holds(self, executor, calls) -> None:
        suspended = (await executor.execute_from_yaml(REVIEW_YAML, INPUT)).unwrap().suspension
        output = (await executor.resume_from_token(suspended.token, {"approved": False})).unwrap()

        assert output.output["released"] is None
        assert output.output["held"] == "held"
        assert output.results["signoff"] == {"approved": False}

    async def test_second_run_reuses_cached_fetch(self, executor, calls, tmp_path) -> None:
        path = tmp_path / "review.yaml"
        path.write_text(REVIEW_YAML)

        await executor.execute_from_file(path, INPUT)
        second = (await executor.execute_from_file(path, INPUT)).unwrap()

        assert calls.fetch == 1
        assert second.metrics.cache_hits == 1
        assert second.results["fetch"] == {"text": "contents of https://docs.example.com/q3"}

    async def test_state_access_report(self, executor, calls) -> None:
        output = (await executor.execute_from_yaml(REVIEW_YAML, INPUT)).unwrap()
        report = output.metrics.state_access

        assert report.unused_keys == []
        assert report.access_patterns == {"tally": {"reads": ["reviewed"], "writes": ["reviewed"]}}
