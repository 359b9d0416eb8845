"""Tests for input materialization."""

import pytest

from canvasflow.core.graph_schema import NodeStatus, NodeType
from canvasflow.core.inputs import InputMaterializer
from canvasflow.core.models import NodeResult, ResultStore
from canvasflow.core.scheduler import InternalSchedulingError

from conftest import build_workflow


@pytest.fixture
def agent_node():
    wf = build_workflow(
        [
            {"id": "src", "type": "transform"},
            {
                "id": "agent",
                "type": "agent",
                "data": {
                    "agentId": "x",
                    "inputs": {"tone": "formal", "items": [1, 2]},
                    "inputSources": {
                        "query": {"type": "node_output", "nodeId": "src", "outputField": "output.text"},
                        "whole": {"type": "node_output", "nodeId": "src"},
                        "first": {"type": "node_output", "nodeId": "src", "outputField": "list[0]"},
                        "tone": {"type": "static", "value": "casual"},
                    },
                },
            },
        ],
        [("src", "agent")],
    )
    return wf.get_node("agent")


def store_with(status, output=None):
    store = ResultStore()
    store.record(
        NodeResult(node_id="src", node_type=NodeType.TRANSFORM, status=status, output=output)
    )
    return store


class TestInputMaterializer:
    def test_reads_fields_from_completed_output(self, agent_node):
        output = {"text": "hello", "list": ["a", "b"]}
        bag = InputMaterializer().materialize(agent_node, store_with(NodeStatus.COMPLETED, output))
        assert bag["query"] == "hello"
        assert bag["whole"] == output
        assert bag["first"] == "a"

    def test_static_source_overrides_static_inputs(self, agent_node):
        bag = InputMaterializer().materialize(agent_node, store_with(NodeStatus.COMPLETED, {}))
        assert bag["tone"] == "casual"
        assert bag["items"] == [1, 2]

    def test_missing_field_is_none(self, agent_node):
        bag = InputMaterializer().materialize(agent_node, store_with(NodeStatus.COMPLETED, {}))
        assert bag["query"] is None
        assert bag["first"] is None

    @pytest.mark.parametrize("status", [NodeStatus.FAILED, NodeStatus.SKIPPED])
    def test_non_completed_source_contributes_none(self, agent_node, status):
        bag = InputMaterializer().materialize(agent_node, store_with(status, {"text": "stale"}))
        assert bag["query"] is None
        assert bag["whole"] is None

    def test_reading_before_result_is_internal_error(self, agent_node):
        with pytest.raises(InternalSchedulingError, match="before it has a result"):
            InputMaterializer().materialize(agent_node, ResultStore())

    def test_bag_is_a_copy(self, agent_node):
        output = {"text": "hello", "list": ["a"]}
        store = store_with(NodeStatus.COMPLETED, output)
        bag = InputMaterializer().materialize(agent_node, store)
        bag["whole"]["list"].append("mutated")
        bag["items"].append(3)
        assert store.get("src").output["list"] == ["a"]
        assert agent_node.config.inputs["items"] == [1, 2]
