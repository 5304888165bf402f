"""
Conductor Test Suite
====================

Test organization mirrors the source code structure:
    tests/
    ├── test_core/          → conductor.core (result, errors, config, flow, context)
    ├── test_agents/        → conductor.agents (base agent, approval gate)
    ├── test_orchestration/ → conductor.orchestration (resolver, graph, executor)
    ├── test_infrastructure/→ conductor.infrastructure (cache, resumption store)
    ├── test_integration/   → End-to-end ensemble runs
    └── conftest.py         → Shared pytest fixtures

Running Tests:
    pytest                          # Run all tests
    pytest tests/test_core/         # Run only core tests
    pytest tests/test_integration/  # Run only end-to-end tests
"""
