# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the canvasflow test suite.

This module provides foundational fixtures used across all test modules:
- Workflow builders for small graphs
- Agent invokers that succeed, fail or record their calls
- A temporary project directory with a workflow file

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
    All fixtures in this file are automatically available in test modules.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Callable

import pytest
import yaml

from canvasflow.core.agents import AgentResponse, EchoAgentInvoker
from canvasflow.core.graph_schema import WorkflowGraph


# =============================================================================
# Workflow Builders
# =============================================================================


def build_workflow(
    nodes: list[dict[str, Any]],
    edges: list[tuple[str, str] | tuple[str, str, str] | dict[str, Any]] | None = None,
    **fields: Any,
) -> WorkflowGraph:
    """Build a WorkflowGraph from node dicts and compact edge tuples.

    Edge tuples are ``(source, target)`` or ``(source, target, source_handle)``;
    edge ids are assigned in order as ``e1``, ``e2``...

    Example:
        build_workflow(
            [{"id": "a", "type": "assign"}, {"id": "b", "type": "assign"}],
            [("a", "b")],
        )
    """
    edge_dicts = []
    for idx, edge in enumerate(edges or [], start=1):
        if isinstance(edge, dict):
            edge_dicts.append({"id": f"e{idx}", **edge})
            continue
        data = {"id": f"e{idx}", "source": edge[0], "target": edge[1]}
        if len(edge) > 2:
            data["sourceHandle"] = edge[2]
        edge_dicts.append(data)
    data = {"id": "wf-test", "name": "Test workflow", "nodes": nodes, "edges": edge_dicts}
    data.update(fields)
    return WorkflowGraph.model_validate(data)


@pytest.fixture
def make_workflow() -> Callable[..., WorkflowGraph]:
    """Factory fixture wrapping build_workflow."""
    return build_workflow


@pytest.fixture
def linear_workflow() -> WorkflowGraph:
    """Input -> Agent -> Output, the agent reading the ``topic`` input."""
    return build_workflow(
        [
            {"id": "in", "type": "input", "data": {"inputs": [{"name": "topic"}]}},
            {
                "id": "writer",
                "type": "agent",
                "data": {
                    "agentId": "tech-writer",
                    "inputSources": {
                        "query": {"type": "node_output", "nodeId": "in", "outputField": "topic"}
                    },
                },
            },
            {
                "id": "out",
                "type": "output",
                "data": {
                    "outputs": [
                        {"name": "article", "sourceNodeId": "writer", "sourceField": "content"}
                    ]
                },
            },
        ],
        [("in", "writer"), ("writer", "out")],
    )


@pytest.fixture
def branch_workflow() -> WorkflowGraph:
    """Condition on the ``score`` input routing to two assign nodes."""
    return build_workflow(
        [
            {"id": "in", "type": "input", "data": {"inputs": [{"name": "score"}]}},
            {
                "id": "check",
                "type": "condition",
                "data": {"condition": {"expression": "${in.output.score} >= 60"}},
            },
            {"id": "pass", "type": "assign", "data": {"variable": "grade", "value": "pass"}},
            {"id": "fail", "type": "assign", "data": {"variable": "grade", "value": "fail"}},
        ],
        [("in", "check"), ("check", "pass", "true"), ("check", "fail", "false")],
    )


# =============================================================================
# Agent Invokers
# =============================================================================


class FailingAgentInvoker:
    """Invoker whose calls fail for the listed agents (all agents by default)."""

    def __init__(self, failing: set[str] | None = None, error: str = "Agent exploded"):
        self.failing = failing
        self.error = error
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def invoke(self, agent_id: str, payload: dict[str, Any]) -> AgentResponse:
        self.calls.append((agent_id, payload))
        if self.failing is None or agent_id in self.failing:
            return AgentResponse(success=False, error=self.error)
        return AgentResponse(success=True, content=f"{agent_id} ok", data={"agentId": agent_id})


class FlakyAgentInvoker:
    """Invoker that fails a fixed number of times before succeeding."""

    def __init__(self, failures: int):
        self.failures = failures
        self.calls = 0

    async def invoke(self, agent_id: str, payload: dict[str, Any]) -> AgentResponse:
        self.calls += 1
        if self.calls <= self.failures:
            return AgentResponse(success=False, error=f"attempt {self.calls} failed")
        return AgentResponse(success=True, content="finally")


class SlowAgentInvoker:
    """Invoker that sleeps before answering and tracks peak concurrency."""

    def __init__(self, delay: float = 0.05):
        self.delay = delay
        self.active = 0
        self.peak = 0
        self.order: list[str] = []

    async def invoke(self, agent_id: str, payload: dict[str, Any]) -> AgentResponse:
        self.active += 1
        self.peak = max(self.peak, self.active)
        self.order.append(agent_id)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.active -= 1
        return AgentResponse(success=True, content=agent_id)


@pytest.fixture
def echo_invoker() -> EchoAgentInvoker:
    return EchoAgentInvoker()


@pytest.fixture
def failing_invoker() -> FailingAgentInvoker:
    return FailingAgentInvoker()


# =============================================================================
# Project Fixtures
# =============================================================================


@pytest.fixture
def workflow_file(tmp_path: Path) -> Path:
    """Write a small valid workflow (assign -> output) to a YAML file."""
    path = tmp_path / "workflow.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "id": "wf-file",
                "name": "File workflow",
                "nodes": [
                    {"id": "greet", "type": "assign", "data": {"variable": "greeting", "value": "hello"}},
                    {
                        "id": "done",
                        "type": "output",
                        "data": {
                            "outputs": [
                                {"name": "greeting", "sourceNodeId": "greet", "sourceField": "value"}
                            ]
                        },
                    },
                ],
                "edges": [{"id": "e1", "source": "greet", "target": "done"}],
            }
        )
    )
    return path


@pytest.fixture
def cyclic_workflow_file(tmp_path: Path) -> Path:
    """Write a workflow whose edges form a cycle (a -> b -> a)."""
    path = tmp_path / "cyclic.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "id": "wf-cycle",
                "name": "Cycle",
                "nodes": [{"id": "a", "type": "assign"}, {"id": "b", "type": "assign"}],
                "edges": [
                    {"id": "e1", "source": "a", "target": "b"},
                    {"id": "e2", "source": "b", "target": "a"},
                ],
            }
        )
    )
    return path
