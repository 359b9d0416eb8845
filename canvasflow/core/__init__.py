"""Core modules for the canvasflow engine."""

from canvasflow.core.agents import AgentResponse, EchoAgentInvoker, HttpAgentInvoker
from canvasflow.core.graph_engine import GraphOrchestrator, execute_workflow
from canvasflow.core.graph_schema import (
    Edge,
    GraphValidationError,
    NodeStatus,
    NodeType,
    WorkflowGraph,
    validate_graph,
)
from canvasflow.core.models import ExecutionOptions, ExecutionReport, NodeResult, RunControl, RunStatus

__all__ = [
    "AgentResponse",
    "EchoAgentInvoker",
    "HttpAgentInvoker",
    "GraphOrchestrator",
    "execute_workflow",
    "Edge",
    "GraphValidationError",
    "NodeStatus",
    "NodeType",
    "WorkflowGraph",
    "validate_graph",
    "ExecutionOptions",
    "ExecutionReport",
    "NodeResult",
    "RunControl",
    "RunStatus",
]
