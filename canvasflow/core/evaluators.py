"""Node evaluators, one per node type.

Each evaluator receives an :class:`EvaluationContext` (the node, its
materialized input bag and the run context) and returns the node's output
record. A node-level failure raises :class:`NodeEvaluationError`; the
orchestrator turns it into a FAILED result.

Evaluators are registered in ``EVALUATOR_TYPES``; importing this module
fails if a node type has no evaluator.
"""

import asyncio
import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar

from canvasflow.core.agents import AgentInvocationError, AgentInvoker
from canvasflow.core.conditions import ConditionError, compare, evaluate_condition, evaluate_expression
from canvasflow.core.graph_schema import (
    BaseNode,
    InputParameter,
    NodeStatus,
    NodeType,
    OutputParameter,
)
from canvasflow.core.models import RunContext
from canvasflow.core.utils import deep_merge, to_number, to_text, type_name
from canvasflow.core.variables import TEMPLATE_PATTERN, VariableScope, get_path, read_field

logger = logging.getLogger(__name__)


class NodeEvaluationError(Exception):
    """A node failed. ``output`` is recorded on the failed result, if given."""

    def __init__(self, message: str, output: dict[str, Any] | None = None):
        super().__init__(message)
        self.output = output


@dataclass
class EvaluationContext:
    node: BaseNode
    inputs: dict[str, Any]
    run: RunContext
    upstream: list[str] = field(default_factory=list)  # Direct upstream node ids
    attempts: int = 1

    def scope(self, extra: dict[str, Any] | None = None) -> VariableScope:
        bag = dict(self.inputs)
        if extra:
            bag.update(extra)
        return self.run.scope(bag)

    def completed_output(self, node_id: str) -> dict[str, Any] | None:
        result = self.run.results.get(node_id)
        if result is None or result.status != NodeStatus.COMPLETED:
            return None
        return result.output


class NodeEvaluator(ABC):
    node_type: ClassVar[NodeType]

    @abstractmethod
    async def evaluate(self, ctx: EvaluationContext) -> dict[str, Any]:
        """Produce the node's output record."""


# ---------------------------------------------------------------------------
# AGENT
# ---------------------------------------------------------------------------


class AgentEvaluator(NodeEvaluator):
    """Call an agent with the node's input bag.

    Retries come from the node's ``max_retries`` when set, otherwise from the
    run options (``max_retries`` when ``retry_on_failure`` is on).
    """

    node_type = NodeType.AGENT

    def __init__(self, invoker: AgentInvoker | None = None):
        self.invoker = invoker

    async def evaluate(self, ctx: EvaluationContext) -> dict[str, Any]:
        config = ctx.node.config
        if not config.agent_id:
            raise self._failure(f"Agent node '{ctx.node.id}' has no agent configured")
        if self.invoker is None:
            raise self._failure("No agent invoker configured for this run")

        options = ctx.run.options
        if config.max_retries is not None:
            retries = config.max_retries
        else:
            retries = options.max_retries if options.retry_on_failure else 0
        timeout = config.timeout or options.agent_timeout

        error = "Agent execution failed"
        for attempt in range(1, retries + 2):
            ctx.attempts = attempt
            try:
                call = self.invoker.invoke(config.agent_id, dict(ctx.inputs))
                response = await asyncio.wait_for(call, timeout) if timeout else await call
            except asyncio.TimeoutError:
                error = f"Agent '{config.agent_id}' timed out after {timeout}s"
            except AgentInvocationError as e:
                error = str(e)
            else:
                if response.success:
                    return {
                        "content": response.content,
                        "data": response.data,
                        "metadata": response.metadata,
                        "success": True,
                    }
                error = response.error or "Agent execution failed"
            if attempt <= retries:
                logger.warning(
                    f"Agent node '{ctx.node.id}' attempt {attempt}/{retries + 1} failed: "
                    f"{error}; retrying"
                )
        raise self._failure(error)

    @staticmethod
    def _failure(message: str) -> NodeEvaluationError:
        return NodeEvaluationError(message, output={"success": False, "error": message})


# ---------------------------------------------------------------------------
# CONDITION
# ---------------------------------------------------------------------------


class ConditionEvaluator(NodeEvaluator):
    """Evaluate ``left <operator> right`` or an expression.

    ``left``/``right`` supplied in the input bag take priority over the
    configured values.
    """

    node_type = NodeType.CONDITION

    async def evaluate(self, ctx: EvaluationContext) -> dict[str, Any]:
        config = ctx.node.config
        rule = config.condition
        scope = ctx.scope()
        left = ctx.inputs["left"] if "left" in ctx.inputs else scope.resolve_value(rule.left)
        right = ctx.inputs["right"] if "right" in ctx.inputs else scope.resolve_value(rule.right)

        if rule.expression and rule.expression.strip():
            expression = rule.expression.strip()
            try:
                result = evaluate_condition(expression, ctx.scope({"left": left, "right": right}))
            except ConditionError as e:
                raise NodeEvaluationError(f"Invalid condition expression '{expression}': {e}") from e
            operator = "expression"
            description = expression
        else:
            try:
                result = compare(left, rule.operator, right)
            except ConditionError as e:
                raise NodeEvaluationError(str(e)) from e
            operator = rule.operator
            if rule.operator in ("exists", "not_exists"):
                description = f"{to_text(rule.left)} {rule.operator}"
            else:
                description = f"{to_text(rule.left)} {rule.operator} {to_text(rule.right)}"

        branch = "true" if result else "false"
        logger.debug(f"Condition '{ctx.node.id}': {description} -> {branch}")
        return {
            "result": result,
            "leftValue": left,
            "rightValue": right,
            "operator": operator,
            "condition": description,
            "branch": branch,
        }


# ---------------------------------------------------------------------------
# ASSIGN
# ---------------------------------------------------------------------------


def coerce_value(value: Any, value_type: str) -> Any:
    """Convert an assigned value to the configured type.

    ``auto`` tries number, then boolean, then a JSON object or array, and
    otherwise keeps the value as it is.
    """
    if value_type == "string":
        return to_text(value)
    if value_type == "number":
        number = to_number(value)
        if number is None:
            raise NodeEvaluationError(f"Cannot convert {value!r} to a number")
        return number
    if value_type == "boolean":
        if isinstance(value, str):
            return value.strip().lower() in ("true", "1", "yes")
        return bool(value)
    if value_type == "object":
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return value
        return value

    # auto
    if not isinstance(value, str):
        return value
    number = to_number(value)
    if number is not None:
        return number
    lowered = value.strip().lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    if value.strip().startswith(("{", "[")):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            pass
    return value


class AssignEvaluator(NodeEvaluator):
    """Set a run variable from a value or an expression."""

    node_type = NodeType.ASSIGN

    async def evaluate(self, ctx: EvaluationContext) -> dict[str, Any]:
        config = ctx.node.config
        scope = ctx.scope()

        if config.value is not None:
            value = scope.resolve_value(config.value)
        elif "value" in ctx.inputs:
            value = ctx.inputs["value"]
        elif config.expression:
            try:
                value = evaluate_expression(config.expression, scope, strict=True)
            except ConditionError as e:
                # Not an expression: use the text with references substituted
                logger.debug(f"Assign '{ctx.node.id}': expression not evaluated ({e})")
                value = scope.render_template(config.expression)
        else:
            value = ""

        value = coerce_value(value, config.value_type)
        ctx.run.variables[config.variable] = value
        return {"value": value, "variable": config.variable, "valueType": type_name(value)}


# ---------------------------------------------------------------------------
# MERGE
# ---------------------------------------------------------------------------


def merge_outputs(outputs: list[Any], strategy: str) -> Any:
    """Combine outputs, in order, with one of the merge strategies."""
    if strategy == "merge":
        return deep_merge(*outputs)
    if strategy == "append":
        result: list[Any] = []
        for output in outputs:
            if isinstance(output, list):
                result.extend(output)
            else:
                result.append(output)
        return result
    if strategy == "concat":
        if not outputs:
            return ""
        result = outputs[0]
        for output in outputs[1:]:
            if isinstance(result, str) and isinstance(output, str):
                result = result + output
            elif isinstance(result, list) and isinstance(output, list):
                result = result + output
            else:
                result = to_text(result) + to_text(output)
        return result

    # override
    merged: dict[str, Any] = {}
    for output in outputs:
        if isinstance(output, dict):
            merged.update(output)
    return merged


class MergeEvaluator(NodeEvaluator):
    """Combine the outputs of several nodes.

    Sources default to the direct upstream nodes. Only COMPLETED sources
    contribute.
    """

    node_type = NodeType.MERGE

    async def evaluate(self, ctx: EvaluationContext) -> dict[str, Any]:
        config = ctx.node.config
        sources = list(config.sources) or list(ctx.upstream)
        outputs = []
        for source in sources:
            output = ctx.completed_output(source)
            if output is not None:
                outputs.append(output)
        return {
            "result": merge_outputs(outputs, config.strategy),
            "sources": sources,
            "strategy": config.strategy,
            "mergedCount": len(outputs),
        }


# ---------------------------------------------------------------------------
# TRANSFORM
# ---------------------------------------------------------------------------

_PLACEHOLDER_PATTERN = re.compile(r"\{(\w+)\}")


def format_template(template: str, data: Any) -> str:
    """Fill ``{0}`` placeholders by position and ``{name}`` placeholders by key."""
    values = data if isinstance(data, list) else [data]

    def replace(match: re.Match) -> str:
        key = match.group(1)
        if key.isdigit():
            index = int(key)
            return to_text(values[index]) if index < len(values) else ""
        if isinstance(data, dict):
            return to_text(data.get(key))
        return ""

    return _PLACEHOLDER_PATTERN.sub(replace, template)


def parse_value(data: Any, parse_as: str) -> Any:
    """Parse text as json, number, boolean or date. Non-text is returned as is."""
    if not isinstance(data, str):
        return data
    text = data.strip()
    if parse_as == "json":
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise NodeEvaluationError(f"Cannot parse value as JSON: {e}") from e
    if parse_as == "number":
        number = to_number(text)
        if number is None:
            raise NodeEvaluationError(f"Cannot parse {data!r} as a number")
        return number
    if parse_as == "boolean":
        return text.lower() in ("true", "1", "yes")
    if parse_as == "date":
        try:
            return datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError as e:
            raise NodeEvaluationError(f"Cannot parse {data!r} as a date") from e
    raise NodeEvaluationError(f"Unknown parse type: {parse_as}")


def stringify(data: Any) -> str:
    return json.dumps(data, ensure_ascii=False, default=str)


class TransformEvaluator(NodeEvaluator):
    """Apply one transform rule to a source value."""

    node_type = NodeType.TRANSFORM

    async def evaluate(self, ctx: EvaluationContext) -> dict[str, Any]:
        config = ctx.node.config
        rule = config.rule
        source_data = self._source_data(ctx)

        if config.rule_type == "json_path":
            if rule.json_path:
                path = re.sub(r"^\$\.?", "", rule.json_path.strip())
                result = get_path(source_data, path)
            else:
                result = source_data
        elif config.rule_type == "format":
            result = format_template(rule.format, source_data) if rule.format else source_data
        elif config.rule_type == "parse":
            result = parse_value(source_data, rule.parse_as)
        else:
            result = stringify(source_data)

        output = {
            "result": result,
            "sourceData": source_data,
            "sourceField": config.source_field,
            "targetField": config.target_field,
            "ruleType": config.rule_type,
        }
        if config.target_field:
            output[config.target_field] = result
        return output

    @staticmethod
    def _source_data(ctx: EvaluationContext) -> Any:
        source_field = (ctx.node.config.source_field or "").strip()
        if not source_field:
            return dict(ctx.inputs)
        scope = ctx.scope()
        match = TEMPLATE_PATTERN.fullmatch(source_field)
        if match:
            return scope.lookup(match.group(1))[1]
        found, value = scope.lookup(source_field)
        return value if found else None


# ---------------------------------------------------------------------------
# INPUT
# ---------------------------------------------------------------------------


def _matches_accept(accept: str, file_type: str, file_name: str) -> bool:
    extension = f".{file_name.rsplit('.', 1)[-1].lower()}" if "." in file_name else ""
    for pattern in (a.strip() for a in accept.split(",")):
        if not pattern:
            continue
        if pattern.startswith("."):
            if extension == pattern.lower():
                return True
        elif "*" in pattern:
            if file_type.startswith(pattern.split("/")[0] + "/"):
                return True
        elif file_type == pattern or extension == pattern:
            return True
    return False


def check_file_parameter(param: InputParameter, value: Any) -> Any:
    """Check a file described by ``{name, type, size}`` against the parameter limits."""
    if not isinstance(value, dict):
        return value
    size = value.get("size")
    if param.max_size and isinstance(size, (int, float)) and size > param.max_size:
        raise NodeEvaluationError(
            f"File '{param.name}' exceeds the size limit of "
            f"{param.max_size / (1024 * 1024):.2f}MB"
        )
    if param.accept:
        file_type = str(value.get("type") or "")
        file_name = str(value.get("name") or "")
        if not _matches_accept(param.accept, file_type, file_name):
            raise NodeEvaluationError(
                f"File '{param.name}' has an unsupported type, expected: {param.accept}"
            )
    return value


class InputEvaluator(NodeEvaluator):
    """Expose workflow input values under the declared parameter names.

    Without declared parameters every key of the run input is exposed.
    """

    node_type = NodeType.INPUT

    async def evaluate(self, ctx: EvaluationContext) -> dict[str, Any]:
        supplied = ctx.run.options.input
        params = ctx.node.config.inputs or [InputParameter(name=name) for name in supplied]

        records = []
        values: dict[str, Any] = {}
        for param in params:
            value = supplied.get(param.name)
            if value is None and param.default_value is not None:
                value = param.default_value
            if param.required and value is None:
                raise NodeEvaluationError(f"Required input '{param.name}' was not provided")
            if param.type == "file" and value:
                value = check_file_parameter(param, value)
            records.append({"name": param.name, "value": value, "type": param.type or type_name(value)})
            values[param.name] = value

        output: dict[str, Any] = {"inputs": records, "count": len(records)}
        for name, value in values.items():
            output.setdefault(name, value)
        return output


# ---------------------------------------------------------------------------
# OUTPUT
# ---------------------------------------------------------------------------


class OutputEvaluator(NodeEvaluator):
    """Collect workflow results into the run's outputs.

    Without declared parameters a single ``output`` parameter is collected
    from the input bag or the first completed upstream node.
    """

    node_type = NodeType.OUTPUT

    async def evaluate(self, ctx: EvaluationContext) -> dict[str, Any]:
        params = ctx.node.config.outputs or [OutputParameter(name="output")]

        collected: dict[str, Any] = {}
        for param in params:
            value = self._value_for(ctx, param)
            if param.type == "file" and isinstance(value, dict) and value.get("name"):
                value = {
                    **value,
                    "downloadFileName": param.download_file_name or value["name"],
                    "downloadUrl": value.get("url") or value.get("path"),
                }
            collected[param.name] = value
            ctx.run.outputs[param.name] = value

        output: dict[str, Any] = {"outputs": collected, "count": len(collected)}
        for name, value in collected.items():
            output.setdefault(name, value)
        return output

    @staticmethod
    def _value_for(ctx: EvaluationContext, param: OutputParameter) -> Any:
        if param.source_node_id:
            source = ctx.completed_output(param.source_node_id)
            if source is None:
                raise NodeEvaluationError(
                    f"Output '{param.name}': source node '{param.source_node_id}' has no output"
                )
            if param.source_field:
                return read_field(source, param.source_field)
            return source
        if param.name in ctx.inputs:
            return ctx.inputs[param.name]
        for node_id in ctx.upstream:
            upstream_output = ctx.completed_output(node_id)
            if upstream_output is not None:
                return upstream_output
        return None


# ---------------------------------------------------------------------------
# MEMORY
# ---------------------------------------------------------------------------


class MemoryEvaluator(NodeEvaluator):
    """Store text in the run's memories."""

    node_type = NodeType.MEMORY

    async def evaluate(self, ctx: EvaluationContext) -> dict[str, Any]:
        config = ctx.node.config
        content = ctx.scope().render_template(config.content or "")

        if config.source_node_id:
            source = ctx.completed_output(config.source_node_id)
            if source is None:
                logger.warning(
                    f"Memory node '{ctx.node.id}': source node '{config.source_node_id}' "
                    f"has no output, keeping configured content"
                )
            else:
                value = read_field(source, config.source_field) if config.source_field else source
                if value is not None:
                    content = to_text(value, indent=2)
        elif ctx.inputs.get("content") is not None:
            content = to_text(ctx.inputs["content"], indent=2)

        memory_id = config.memory_id or f"memory_{ctx.node.id}"
        ctx.run.memories[memory_id] = content
        return {
            "content": content,
            "memoryId": memory_id,
            "editable": config.editable,
            "autoSave": config.auto_save,
            "sourceNodeId": config.source_node_id,
            "sourceField": config.source_field,
        }


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

EVALUATOR_TYPES: dict[NodeType, type[NodeEvaluator]] = {
    cls.node_type: cls
    for cls in (
        AgentEvaluator,
        ConditionEvaluator,
        AssignEvaluator,
        MergeEvaluator,
        TransformEvaluator,
        InputEvaluator,
        OutputEvaluator,
        MemoryEvaluator,
    )
}

_unregistered = set(NodeType) - set(EVALUATOR_TYPES)
if _unregistered:
    raise RuntimeError(f"No evaluator for node types: {sorted(t.value for t in _unregistered)}")


def build_evaluators(agent_invoker: AgentInvoker | None = None) -> dict[NodeType, NodeEvaluator]:
    """One evaluator instance per node type."""
    evaluators: dict[NodeType, NodeEvaluator] = {}
    for node_type, cls in EVALUATOR_TYPES.items():
        evaluators[node_type] = cls(agent_invoker) if cls is AgentEvaluator else cls()
    return evaluators
