"""
Quickstart Example - Run a Small Ensemble
===========================================

This example registers three plain-function agents and runs an ensemble
that fetches a document, analyses it in parallel, and scores each section
in a bounded foreach loop. The step results come back in one
ExecutionOutput together with per-step metrics.

    fetch ──→ parallel(summary, keywords) ──→ foreach(section) ──→ output

Usage:
    python examples/quickstart.py
"""

from __future__ import annotations

import asyncio

from conductor.core.config import ConductorConfig
from conductor.orchestration.executor import Executor


ENSEMBLE = """
name: quickstart
flow:
  - agent: fetch
    input:
      title: "${input.title}"
    cache:
      ttl: 300
  - type: parallel
    steps:
      - agent: summarize
        id: summary
        input: "${fetch.output.body}"
      - agent: keywords
        input: "${fetch.output.body}"
  - type: foreach
    items: "${fetch.output.sections}"
    maxConcurrency: 2
    step:
      agent: section-length
      input: "${item}"
output:
  title: "${input.title}"
  summary: "${summary.output}"
  keywords: "${keywords.output}"
  section_lengths: "${foreach_2.output}"
"""


def fetch(ctx):
    sections = [
        "Conductor runs ensembles of agents.",
        "Steps can run in parallel, loop, branch and recover from errors.",
    ]
    return {"body": " ".join(sections), "sections": sections}


async def summarize(ctx):
    await asyncio.sleep(0.01)
    return ctx.input.split(".")[0] + "."


def keywords(ctx):
    words = {word.strip(".,").lower() for word in ctx.input.split()}
    return sorted(word for word in words if len(word) > 7)


async def main() -> None:
    """Run the quickstart ensemble and print its output."""
    executor = Executor(ConductorConfig())
    executor.register_function("fetch", fetch)
    executor.register_function("summarize", summarize)
    executor.register_function("keywords", keywords)
    executor.register_function("section-length", lambda ctx: len(ctx.input))

    result = await executor.execute_ensemble(ENSEMBLE, {"title": "Conductor"})
    if result.is_err():
        print(f"Run failed: {result.error.message}")
        return

    output = result.value
    print("Quickstart Ensemble")
    print("-" * 40)
    print(f"Execution : {output.execution_id}")
    print(f"Status    : {output.status.value}")
    for key, value in output.output.items():
        print(f"{key:<16}: {value}")
    print()
    print("Step Metrics:")
    for metric in output.metrics.steps:
        print(f"  {metric.name:<16} {metric.duration_seconds * 1000:7.2f}ms  attempts={metric.attempts}")


if __name__ == "__main__":
    asyncio.run(main())
