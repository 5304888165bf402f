"""
conductor.agents - Pluggable Units of Work
============================================

Agents are what leaf steps invoke. The engine only knows the BaseAgent
contract; concrete I/O (HTTP, model providers, databases) lives in agents
supplied by the application.

    ┌─────────────── ORCHESTRATION LAYER ─────────────────┐
    │  Executor → AgentRegistry.resolve("name@version")    │
    └─────────────────────┬───────────────────────────────┘
                          │ AgentExecutionContext
                          ▼
    ┌─────────────── AGENT LAYER ─────────────────────────┐
    │  BaseAgent (abstract)                                │
    │    ├── FunctionAgent       (wraps a callable)        │
    │    └── HumanApprovalAgent  (suspend / resume gate)   │
    └──────────────────────────────────────────────────────┘

Usage:
    from conductor.agents import BaseAgent, FunctionAgent
"""

from conductor.agents.approval import HumanApprovalAgent
from conductor.agents.base import BaseAgent, FunctionAgent

__all__ = [
    "BaseAgent",
    "FunctionAgent",
    "HumanApprovalAgent",
]
