"""Tests for the per-type node evaluators.

Each evaluator is exercised directly with a hand-built EvaluationContext.
"""

import asyncio
from datetime import datetime

import pytest

from canvasflow.core.agents import EchoAgentInvoker
from canvasflow.core.evaluators import (
    EVALUATOR_TYPES,
    AgentEvaluator,
    AssignEvaluator,
    ConditionEvaluator,
    EvaluationContext,
    InputEvaluator,
    MemoryEvaluator,
    MergeEvaluator,
    NodeEvaluationError,
    OutputEvaluator,
    TransformEvaluator,
    build_evaluators,
    coerce_value,
    format_template,
    merge_outputs,
    parse_value,
)
from canvasflow.core.graph_schema import NodeStatus, NodeType
from canvasflow.core.models import ExecutionOptions, NodeResult, RunContext

from conftest import FailingAgentInvoker, FlakyAgentInvoker, build_workflow


def context(node_data, inputs=None, options=None, upstream=None, results=None):
    """Context for a single node, with optional completed upstream outputs."""
    results = results or {}
    nodes = [{"id": node_id, "type": "assign"} for node_id in results]
    nodes.append(node_data)
    wf = build_workflow(nodes)
    run = RunContext(workflow=wf, options=options or ExecutionOptions())
    for node_id, output in results.items():
        status = NodeStatus.FAILED if output is None else NodeStatus.COMPLETED
        run.results.record(
            NodeResult(node_id=node_id, node_type=NodeType.ASSIGN, status=status, output=output)
        )
    return EvaluationContext(
        node=wf.get_node(node_data["id"]),
        inputs=inputs or {},
        run=run,
        upstream=upstream or [],
    )


def evaluate(evaluator, ctx):
    return asyncio.run(evaluator.evaluate(ctx))


class TestRegistry:
    def test_every_type_registered(self):
        assert set(EVALUATOR_TYPES) == set(NodeType)
        evaluators = build_evaluators(EchoAgentInvoker())
        assert isinstance(evaluators[NodeType.AGENT], AgentEvaluator)
        assert evaluators[NodeType.AGENT].invoker is not None


class TestAgentEvaluator:
    def test_success_output(self):
        invoker = EchoAgentInvoker()
        ctx = context(
            {"id": "a", "type": "agent", "data": {"agentId": "writer"}}, inputs={"query": "Hi"}
        )
        output = evaluate(AgentEvaluator(invoker), ctx)
        assert output["content"] == "Hi"
        assert output["success"] is True
        assert output["metadata"] == {"invoker": "echo"}
        assert invoker.calls == [("writer", {"query": "Hi"})]

    def test_failure_carries_error_output(self):
        ctx = context({"id": "a", "type": "agent", "data": {"agentId": "writer"}})
        with pytest.raises(NodeEvaluationError, match="Agent exploded") as exc_info:
            evaluate(AgentEvaluator(FailingAgentInvoker()), ctx)
        assert exc_info.value.output == {"success": False, "error": "Agent exploded"}

    def test_missing_agent_id(self):
        ctx = context({"id": "a", "type": "agent"})
        with pytest.raises(NodeEvaluationError, match="no agent configured"):
            evaluate(AgentEvaluator(EchoAgentInvoker()), ctx)

    def test_missing_invoker(self):
        ctx = context({"id": "a", "type": "agent", "data": {"agentId": "writer"}})
        with pytest.raises(NodeEvaluationError, match="No agent invoker"):
            evaluate(AgentEvaluator(None), ctx)

    def test_node_retries(self):
        invoker = FlakyAgentInvoker(failures=2)
        ctx = context({"id": "a", "type": "agent", "data": {"agentId": "w", "maxRetries": 2}})
        output = evaluate(AgentEvaluator(invoker), ctx)
        assert output["content"] == "finally"
        assert invoker.calls == 3
        assert ctx.attempts == 3

    def test_run_level_retries_need_retry_on_failure(self):
        ctx = context(
            {"id": "a", "type": "agent", "data": {"agentId": "w"}},
            options=ExecutionOptions(max_retries=3),
        )
        invoker = FlakyAgentInvoker(failures=1)
        with pytest.raises(NodeEvaluationError, match="attempt 1 failed"):
            evaluate(AgentEvaluator(invoker), ctx)
        assert invoker.calls == 1

        ctx = context(
            {"id": "a", "type": "agent", "data": {"agentId": "w"}},
            options=ExecutionOptions(max_retries=3, retry_on_failure=True),
        )
        invoker = FlakyAgentInvoker(failures=1)
        assert evaluate(AgentEvaluator(invoker), ctx)["content"] == "finally"

    def test_agent_timeout(self):
        class HangingInvoker:
            async def invoke(self, agent_id, payload):
                await asyncio.sleep(10)

        ctx = context({"id": "a", "type": "agent", "data": {"agentId": "w", "timeout": 0.01}})
        with pytest.raises(NodeEvaluationError, match="timed out after 0.01s"):
            evaluate(AgentEvaluator(HangingInvoker()), ctx)


class TestConditionEvaluator:
    def test_structured_comparison(self):
        ctx = context(
            {
                "id": "c",
                "type": "condition",
                "data": {"condition": {"left": 10, "operator": ">", "right": 5}},
            }
        )
        output = evaluate(ConditionEvaluator(), ctx)
        assert output["result"] is True
        assert output["branch"] == "true"
        assert output["condition"] == "10 > 5"
        assert output["leftValue"] == 10

    def test_references_resolved(self):
        ctx = context(
            {
                "id": "c",
                "type": "condition",
                "data": {
                    "condition": {
                        "left": "${writer.output.content}",
                        "operator": "contains",
                        "right": "draft",
                    }
                },
            },
            results={"writer": {"content": "first draft"}},
        )
        output = evaluate(ConditionEvaluator(), ctx)
        assert output["result"] is True
        assert output["leftValue"] == "first draft"

    def test_input_bag_overrides_config(self):
        ctx = context(
            {
                "id": "c",
                "type": "condition",
                "data": {"condition": {"left": 1, "operator": "==", "right": 1}},
            },
            inputs={"left": 2},
        )
        assert evaluate(ConditionEvaluator(), ctx)["result"] is False

    def test_expression_sees_left_and_right(self):
        ctx = context(
            {
                "id": "c",
                "type": "condition",
                "data": {"condition": {"expression": "left > right", "left": 3, "right": 2}},
            }
        )
        output = evaluate(ConditionEvaluator(), ctx)
        assert output["result"] is True
        assert output["operator"] == "expression"

    def test_exists_description(self):
        ctx = context(
            {
                "id": "c",
                "type": "condition",
                "data": {"condition": {"left": "${ghost}", "operator": "exists"}},
            }
        )
        output = evaluate(ConditionEvaluator(), ctx)
        # Unresolved reference stays as text, which exists
        assert output["result"] is True
        assert output["condition"] == "${ghost} exists"

    def test_invalid_expression_fails_node(self):
        ctx = context(
            {"id": "c", "type": "condition", "data": {"condition": {"expression": "1 >"}}}
        )
        with pytest.raises(NodeEvaluationError, match="Invalid condition expression"):
            evaluate(ConditionEvaluator(), ctx)


class TestAssignEvaluator:
    def test_sets_run_variable(self):
        ctx = context({"id": "s", "type": "assign", "data": {"variable": "n", "value": "42"}})
        output = evaluate(AssignEvaluator(), ctx)
        assert output == {"value": 42, "variable": "n", "valueType": "number"}
        assert ctx.run.variables["n"] == 42

    def test_reference_value_keeps_type(self):
        ctx = context(
            {"id": "s", "type": "assign", "data": {"value": "${src.output.items}"}},
            results={"src": {"items": [1, 2]}},
        )
        assert evaluate(AssignEvaluator(), ctx)["value"] == [1, 2]

    def test_expression_evaluated(self):
        ctx = context(
            {"id": "s", "type": "assign", "data": {"expression": "${src.output.n} > 3"}},
            results={"src": {"n": 5}},
        )
        assert evaluate(AssignEvaluator(), ctx)["value"] is True

    def test_non_expression_rendered_as_text(self):
        ctx = context(
            {
                "id": "s",
                "type": "assign",
                "data": {"expression": "Hello ${src.output.name}!", "valueType": "string"},
            },
            results={"src": {"name": "Ada"}},
        )
        assert evaluate(AssignEvaluator(), ctx)["value"] == "Hello Ada!"

    def test_value_from_input_bag(self):
        ctx = context({"id": "s", "type": "assign"}, inputs={"value": {"k": 1}})
        output = evaluate(AssignEvaluator(), ctx)
        assert output["value"] == {"k": 1}
        assert output["variable"] == "result"

    def test_number_coercion_failure(self):
        ctx = context(
            {"id": "s", "type": "assign", "data": {"value": "abc", "valueType": "number"}}
        )
        with pytest.raises(NodeEvaluationError, match="Cannot convert"):
            evaluate(AssignEvaluator(), ctx)

    @pytest.mark.parametrize(
        "value,value_type,expected",
        [
            ("true", "auto", True),
            ('{"a": 1}', "auto", {"a": 1}),
            ("[1", "auto", "[1"),
            ("yes", "boolean", True),
            (5, "string", "5"),
            ('["x"]', "object", ["x"]),
        ],
    )
    def test_coerce_value(self, value, value_type, expected):
        assert coerce_value(value, value_type) == expected


class TestMerge:
    def test_override_later_wins(self):
        assert merge_outputs([{"x": 1}, {"x": 2, "y": 3}], "override") == {"x": 2, "y": 3}

    def test_merge_recursive(self):
        result = merge_outputs([{"a": {"x": 1}}, {"a": {"y": 2}}], "merge")
        assert result == {"a": {"x": 1, "y": 2}}

    def test_append_flattens_lists(self):
        assert merge_outputs([[1, 2], {"k": 1}, 3], "append") == [1, 2, {"k": 1}, 3]

    def test_concat(self):
        assert merge_outputs(["ab", "cd"], "concat") == "abcd"
        assert merge_outputs([[1], [2]], "concat") == [1, 2]
        assert merge_outputs(["n=", 5], "concat") == "n=5"
        assert merge_outputs([], "concat") == ""

    def test_evaluator_uses_upstream_and_skips_failed(self):
        ctx = context(
            {"id": "m", "type": "merge"},
            upstream=["a", "b", "c"],
            results={"a": {"x": 1}, "b": None, "c": {"x": 2, "y": 3}},
        )
        output = evaluate(MergeEvaluator(), ctx)
        assert output["result"] == {"x": 2, "y": 3}
        assert output["mergedCount"] == 2
        assert output["sources"] == ["a", "b", "c"]

    def test_explicit_sources(self):
        ctx = context(
            {"id": "m", "type": "merge", "data": {"sources": ["c"], "strategy": "append"}},
            upstream=["a"],
            results={"a": {"x": 1}, "c": {"y": 2}},
        )
        assert evaluate(MergeEvaluator(), ctx)["result"] == [{"y": 2}]


class TestTransformEvaluator:
    def test_json_path(self):
        ctx = context(
            {
                "id": "t",
                "type": "transform",
                "data": {"ruleType": "json_path", "rule": {"jsonPath": "$.data.items[1]"}},
            },
            inputs={"data": {"items": ["a", "b"]}},
        )
        assert evaluate(TransformEvaluator(), ctx)["result"] == "b"

    def test_source_field_reference(self):
        ctx = context(
            {
                "id": "t",
                "type": "transform",
                "data": {
                    "ruleType": "json_path",
                    "sourceField": "${src.output.payload}",
                    "rule": {"jsonPath": "$.name"},
                },
            },
            results={"src": {"payload": {"name": "Ada"}}},
        )
        output = evaluate(TransformEvaluator(), ctx)
        assert output["result"] == "Ada"
        assert output["sourceData"] == {"name": "Ada"}

    def test_format_with_target_field(self):
        ctx = context(
            {
                "id": "t",
                "type": "transform",
                "data": {
                    "ruleType": "format",
                    "targetField": "greeting",
                    "rule": {"format": "Hello {name}, {missing}!"},
                },
            },
            inputs={"name": "Ada"},
        )
        output = evaluate(TransformEvaluator(), ctx)
        assert output["result"] == "Hello Ada, !"
        assert output["greeting"] == "Hello Ada, !"

    def test_format_positional(self):
        assert format_template("{0}-{1}-{2}", ["a", 1]) == "a-1-"

    def test_parse_and_stringify(self):
        ctx = context(
            {
                "id": "t",
                "type": "transform",
                "data": {"ruleType": "parse", "sourceField": "raw", "rule": {"parseAs": "json"}},
            },
            inputs={"raw": '{"n": 1}'},
        )
        assert evaluate(TransformEvaluator(), ctx)["result"] == {"n": 1}

        ctx = context(
            {"id": "t", "type": "transform", "data": {"ruleType": "stringify", "sourceField": "v"}},
            inputs={"v": {"n": 1}},
        )
        assert evaluate(TransformEvaluator(), ctx)["result"] == '{"n": 1}'

    def test_parse_errors(self):
        with pytest.raises(NodeEvaluationError, match="JSON"):
            parse_value("{bad", "json")
        with pytest.raises(NodeEvaluationError, match="number"):
            parse_value("abc", "number")
        with pytest.raises(NodeEvaluationError, match="date"):
            parse_value("yesterday", "date")

    def test_parse_date(self):
        value = parse_value("2024-05-01T10:00:00Z", "date")
        assert isinstance(value, datetime)
        assert value.year == 2024


class TestInputEvaluator:
    def test_declared_parameters(self):
        ctx = context(
            {
                "id": "in",
                "type": "input",
                "data": {"inputs": [{"name": "topic"}, {"name": "n", "defaultValue": 3}]},
            },
            options=ExecutionOptions(input={"topic": "EVs", "extra": 1}),
        )
        output = evaluate(InputEvaluator(), ctx)
        assert output["topic"] == "EVs"
        assert output["n"] == 3
        assert output["count"] == 2
        assert "extra" not in output
        assert output["inputs"][0] == {"name": "topic", "value": "EVs", "type": "string"}

    def test_no_parameters_exposes_all_input(self):
        ctx = context(
            {"id": "in", "type": "input"}, options=ExecutionOptions(input={"a": 1, "b": "x"})
        )
        output = evaluate(InputEvaluator(), ctx)
        assert output["a"] == 1
        assert output["b"] == "x"
        assert output["count"] == 2

    def test_required_missing(self):
        ctx = context(
            {"id": "in", "type": "input", "data": {"inputs": [{"name": "topic", "required": True}]}}
        )
        with pytest.raises(NodeEvaluationError, match="Required input 'topic' was not provided"):
            evaluate(InputEvaluator(), ctx)

    def test_file_limits(self):
        node = {
            "id": "in",
            "type": "input",
            "data": {
                "inputs": [
                    {"name": "doc", "type": "file", "accept": ".pdf,image/*", "maxSize": 1048576}
                ]
            },
        }
        ok = context(node, options=ExecutionOptions(input={"doc": {"name": "a.PDF", "size": 10}}))
        assert evaluate(InputEvaluator(), ok)["doc"]["name"] == "a.PDF"

        image = context(
            node,
            options=ExecutionOptions(input={"doc": {"name": "x", "type": "image/png", "size": 1}}),
        )
        assert evaluate(InputEvaluator(), image)["doc"]["type"] == "image/png"

        too_big = context(node, options=ExecutionOptions(input={"doc": {"name": "a.pdf", "size": 2097152}}))
        with pytest.raises(NodeEvaluationError, match="size limit of 1.00MB"):
            evaluate(InputEvaluator(), too_big)

        wrong_type = context(node, options=ExecutionOptions(input={"doc": {"name": "a.exe"}}))
        with pytest.raises(NodeEvaluationError, match="unsupported type"):
            evaluate(InputEvaluator(), wrong_type)


class TestOutputEvaluator:
    def test_collects_declared_outputs(self):
        ctx = context(
            {
                "id": "out",
                "type": "output",
                "data": {
                    "outputs": [
                        {"name": "article", "sourceNodeId": "w", "sourceField": "output.content"},
                        {"name": "all", "sourceNodeId": "w"},
                    ]
                },
            },
            results={"w": {"content": "text"}},
        )
        output = evaluate(OutputEvaluator(), ctx)
        assert output["outputs"] == {"article": "text", "all": {"content": "text"}}
        assert ctx.run.outputs["article"] == "text"

    def test_missing_source_fails(self):
        ctx = context(
            {"id": "out", "type": "output", "data": {"outputName": "x", "sourceNodeId": "w"}},
            results={"w": None},
        )
        with pytest.raises(NodeEvaluationError, match="source node 'w' has no output"):
            evaluate(OutputEvaluator(), ctx)

    def test_implicit_parameter_from_upstream(self):
        ctx = context(
            {"id": "out", "type": "output"},
            upstream=["a", "b"],
            results={"a": None, "b": {"value": 1}},
        )
        output = evaluate(OutputEvaluator(), ctx)
        assert output["output"] == {"value": 1}
        assert ctx.run.outputs == {"output": {"value": 1}}

    def test_file_download_fields(self):
        ctx = context(
            {
                "id": "out",
                "type": "output",
                "data": {"outputs": [{"name": "report", "type": "file", "downloadFileName": "r.pdf"}]},
            },
            inputs={"report": {"name": "tmp.pdf", "url": "/files/1"}},
        )
        value = evaluate(OutputEvaluator(), ctx)["report"]
        assert value["downloadFileName"] == "r.pdf"
        assert value["downloadUrl"] == "/files/1"


class TestMemoryEvaluator:
    def test_stores_source_field(self):
        ctx = context(
            {
                "id": "mem",
                "type": "memory",
                "data": {"sourceNodeId": "w", "sourceField": "content", "memoryId": "notes"},
            },
            results={"w": {"content": "remember this"}},
        )
        output = evaluate(MemoryEvaluator(), ctx)
        assert output["content"] == "remember this"
        assert ctx.run.memories == {"notes": "remember this"}

    def test_structured_source_stored_as_json(self):
        ctx = context(
            {"id": "mem", "type": "memory", "data": {"sourceNodeId": "w"}},
            results={"w": {"a": 1}},
        )
        output = evaluate(MemoryEvaluator(), ctx)
        assert output["content"] == '{\n  "a": 1\n}'
        assert output["memoryId"] == "memory_mem"

    def test_configured_content_rendered(self):
        ctx = context(
            {"id": "mem", "type": "memory", "data": {"content": "Topic: ${topic}"}},
            options=ExecutionOptions(input={"topic": "EVs"}),
        )
        assert evaluate(MemoryEvaluator(), ctx)["content"] == "Topic: EVs"

    def test_content_from_input_bag(self):
        ctx = context({"id": "mem", "type": "memory"}, inputs={"content": "from bag"})
        assert evaluate(MemoryEvaluator(), ctx)["content"] == "from bag"
