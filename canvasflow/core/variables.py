"""Variable names, field paths and ``${}`` templates.

Every field of a node's output has a canonical variable name:

    {nodeId}.{nodeType}.output.{fieldPath}     e.g. node-1.agent.output.content

The editor displays a shorter form, ``{nodeId}.output.{fieldPath}``, which
needs the node type from context to expand back.

Field paths are dot-separated segments with optional bracket indices
(``output.items[0].name`` or ``output.items.0.name``). A leading ``output``
segment names the output record itself. Lookups never raise: an absent path
yields the caller's default.
"""

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from canvasflow.core.graph_schema import NodeType
from canvasflow.core.utils import to_text

OUTPUT_ROOT = "output"
TEMPLATE_PATTERN = re.compile(r"\$\{([^}]+)\}")

_MISSING = object()
_SEGMENT_PATTERN = re.compile(r"([^\[\]]*)((?:\[\d+\])*)")
_INDEX_PATTERN = re.compile(r"\[(\d+)\]")


# ---------------------------------------------------------------------------
# Field paths
# ---------------------------------------------------------------------------


def parse_field_path(path: str) -> list[str | int]:
    """Split a field path into keys and list indices.

    ``"items[0].name"`` -> ``["items", 0, "name"]``. Empty segments are
    dropped; a segment that is not ``name[n]...`` shaped is kept verbatim.
    """
    segments: list[str | int] = []
    for raw in path.split("."):
        if not raw:
            continue
        match = _SEGMENT_PATTERN.fullmatch(raw)
        if match is None:
            segments.append(raw)
            continue
        name, indices = match.groups()
        if name:
            segments.append(name)
        segments.extend(int(i) for i in _INDEX_PATTERN.findall(indices))
    return segments


def _walk(data: Any, segments: list[str | int]) -> Any:
    current = data
    for segment in segments:
        if isinstance(current, Mapping):
            if segment in current:
                current = current[segment]
            elif str(segment) in current:
                current = current[str(segment)]
            else:
                return _MISSING
        elif isinstance(current, (list, tuple)):
            if isinstance(segment, int):
                index = segment
            elif segment.isdigit():
                index = int(segment)
            else:
                return _MISSING
            if index >= len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current


def _segments(path: str | list[str | int] | None) -> list[str | int]:
    if path is None:
        return []
    if isinstance(path, str):
        return parse_field_path(path)
    return list(path)


def get_path(data: Any, path: str | list[str | int], default: Any = None) -> Any:
    """Walk ``path`` from ``data`` (no ``output`` root handling)."""
    value = _walk(data, _segments(path))
    return default if value is _MISSING else value


def read_field(output: Any, field_path: str | list[str | int] | None, default: Any = None) -> Any:
    """Read a field from a node output record.

    ``"output"``, ``""`` and None return the whole record; ``"output.x"`` and
    ``"x"`` both read key ``x``.
    """
    segments = _segments(field_path)
    if segments and segments[0] == OUTPUT_ROOT:
        segments = segments[1:]
    if output is None:
        return default
    value = _walk(output, segments)
    return default if value is _MISSING else value


# ---------------------------------------------------------------------------
# Variable names
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class VariableRef:
    node_id: str
    node_type: str
    field_path: str  # Always starts with "output."


def _type_value(node_type: NodeType | str) -> str:
    return node_type.value if isinstance(node_type, NodeType) else str(node_type)


def generate_variable_name(node_id: str, node_type: NodeType | str, field_path: str) -> str:
    """Canonical variable name for a field of a node's output."""
    clean_path = re.sub(r"^output\.", "", field_path)
    return f"{node_id}.{_type_value(node_type)}.{OUTPUT_ROOT}.{clean_path}"


def parse_variable_name(name: str) -> VariableRef | None:
    """Parse a canonical variable name, or return None if it is not one."""
    parts = name.split(".")
    if len(parts) < 4 or parts[2] != OUTPUT_ROOT:
        return None
    return VariableRef(
        node_id=parts[0],
        node_type=parts[1],
        field_path=f"{OUTPUT_ROOT}.{'.'.join(parts[3:])}",
    )


def is_valid_variable_name(name: str) -> bool:
    return parse_variable_name(name) is not None


def simplify_variable_name(name: str) -> str:
    """Canonical name -> display form. Other strings are returned unchanged."""
    ref = parse_variable_name(name)
    if ref is None:
        return name
    return f"{ref.node_id}.{OUTPUT_ROOT}.{re.sub(r'^output[.]', '', ref.field_path)}"


def expand_variable_name(simplified: str, node_type: NodeType | str) -> str:
    """Display form -> canonical name. Other strings are returned unchanged."""
    parts = simplified.split(".")
    if len(parts) < 3 or parts[1] != OUTPUT_ROOT:
        return simplified
    return generate_variable_name(parts[0], node_type, f"output.{'.'.join(parts[2:])}")


# ---------------------------------------------------------------------------
# Output field catalogue
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OutputField:
    path: str
    name: str
    type: str  # string | number | boolean | object | array | any
    description: str
    required: bool = False


@dataclass(frozen=True)
class OutputStructure:
    fields: tuple[OutputField, ...]
    default_path: str | None = None


@dataclass(frozen=True)
class NodeOutputField:
    node_id: str
    node_type: str
    field_path: str
    variable_name: str
    description: str


NODE_OUTPUT_FIELDS: dict[NodeType, OutputStructure] = {
    NodeType.AGENT: OutputStructure(
        default_path="output.content",
        fields=(
            OutputField("output.content", "content", "string", "Main text returned by the agent", True),
            OutputField("output.data", "data", "object", "Full data object returned by the agent"),
            OutputField("output.metadata", "metadata", "object", "Agent execution metadata"),
            OutputField("output.success", "success", "boolean", "Whether the agent call succeeded"),
            OutputField("output.error", "error", "string", "Error message if the call failed"),
        ),
    ),
    NodeType.CONDITION: OutputStructure(
        default_path="output.result",
        fields=(
            OutputField("output.result", "result", "boolean", "Condition result (true/false)", True),
            OutputField("output.leftValue", "leftValue", "any", "Left-hand comparison value"),
            OutputField("output.rightValue", "rightValue", "any", "Right-hand comparison value"),
            OutputField("output.condition", "condition", "string", "Condition that was evaluated"),
        ),
    ),
    NodeType.ASSIGN: OutputStructure(
        default_path="output.value",
        fields=(
            OutputField("output.value", "value", "any", "Assigned value", True),
            OutputField("output.variable", "variable", "string", "Variable name", True),
            OutputField("output.valueType", "valueType", "string", "Type of the assigned value"),
        ),
    ),
    NodeType.MERGE: OutputStructure(
        default_path="output.result",
        fields=(
            OutputField("output.result", "result", "object", "Merged result", True),
            OutputField("output.sources", "sources", "array", "Merged source node ids"),
            OutputField("output.strategy", "strategy", "string", "Merge strategy used"),
        ),
    ),
    NodeType.TRANSFORM: OutputStructure(
        default_path="output.result",
        fields=(
            OutputField("output.result", "result", "any", "Transformed value", True),
            OutputField("output.sourceField", "sourceField", "string", "Source field path"),
            OutputField("output.targetField", "targetField", "string", "Target field name"),
            OutputField("output.ruleType", "ruleType", "string", "Transform rule type"),
        ),
    ),
    NodeType.INPUT: OutputStructure(
        default_path="output.inputs",
        fields=(
            OutputField("output.inputs", "inputs", "array", "Input parameter list", True),
            OutputField("output.count", "count", "number", "Number of input parameters"),
            OutputField("output.{paramName}", "{paramName}", "any", "Value of one input parameter"),
        ),
    ),
    NodeType.OUTPUT: OutputStructure(
        default_path="output.outputs",
        fields=(
            OutputField("output.outputs", "outputs", "object", "Output parameters by name", True),
            OutputField("output.count", "count", "number", "Number of output parameters"),
            OutputField("output.{paramName}", "{paramName}", "any", "Value of one output parameter"),
        ),
    ),
    NodeType.MEMORY: OutputStructure(
        default_path="output.content",
        fields=(
            OutputField("output.content", "content", "string", "Stored text", True),
            OutputField("output.memoryId", "memoryId", "string", "Memory id"),
            OutputField("output.editable", "editable", "boolean", "Whether the memory is editable"),
            OutputField("output.autoSave", "autoSave", "boolean", "Whether the memory auto-saves"),
            OutputField("output.sourceNodeId", "sourceNodeId", "string", "Source node id"),
            OutputField("output.sourceField", "sourceField", "string", "Source field path"),
        ),
    ),
}


def get_node_output_fields(node_id: str, node_type: NodeType | str) -> list[NodeOutputField]:
    """All catalogued output fields of a node, with their variable names."""
    try:
        structure = NODE_OUTPUT_FIELDS[NodeType(_type_value(node_type))]
    except ValueError:
        return []
    return [
        NodeOutputField(
            node_id=node_id,
            node_type=_type_value(node_type),
            field_path=f.path,
            variable_name=generate_variable_name(node_id, node_type, f.path),
            description=f.description,
        )
        for f in structure.fields
    ]


def get_default_output_variable(node_id: str, node_type: NodeType | str) -> str | None:
    try:
        structure = NODE_OUTPUT_FIELDS[NodeType(_type_value(node_type))]
    except ValueError:
        return None
    if not structure.default_path:
        return None
    return generate_variable_name(node_id, node_type, structure.default_path)


# ---------------------------------------------------------------------------
# Scopes and templates
# ---------------------------------------------------------------------------


@dataclass
class VariableScope:
    """Names visible to ``${}`` references while a node evaluates.

    Lookup order: the node's input bag, completed node outputs (by canonical
    variable name or ``nodeId.field``), run variables, workflow input.
    """

    inputs: Mapping[str, Any] = field(default_factory=dict)
    outputs: Mapping[str, Any] = field(default_factory=dict)
    variables: Mapping[str, Any] = field(default_factory=dict)
    workflow_input: Mapping[str, Any] = field(default_factory=dict)

    def lookup(self, reference: str) -> tuple[bool, Any]:
        """Return ``(found, value)`` for a reference."""
        reference = reference.strip()
        segments = parse_field_path(reference)
        if not segments:
            return False, None
        head = segments[0]

        if head in self.inputs:
            value = _walk(self.inputs, segments)
            if value is not _MISSING:
                return True, value

        ref = parse_variable_name(reference)
        if ref is not None and ref.node_id in self.outputs:
            value = _walk(self.outputs[ref.node_id], parse_field_path(ref.field_path)[1:])
            if value is not _MISSING:
                return True, value
        if head in self.outputs:
            rest = segments[1:]
            if rest and rest[0] == OUTPUT_ROOT:
                rest = rest[1:]
            value = _walk(self.outputs[head], rest)
            if value is not _MISSING:
                return True, value

        for source in (self.variables, self.workflow_input):
            if head in source:
                value = _walk(source, segments)
                if value is not _MISSING:
                    return True, value
        return False, None

    def resolve_value(self, value: Any) -> Any:
        """Resolve ``${}`` references in a config value.

        A string that is exactly one reference resolves to the raw value
        (keeping its type); other strings have references substituted as
        text. Non-strings are returned unchanged.
        """
        if not isinstance(value, str):
            return value
        match = TEMPLATE_PATTERN.fullmatch(value.strip())
        if match:
            found, resolved = self.lookup(match.group(1))
            return resolved if found else value
        return self.render_template(value)

    def render_template(self, text: str) -> str:
        """Substitute every resolvable ``${ref}``; unresolved ones stay as written."""

        def replace(match: re.Match) -> str:
            found, value = self.lookup(match.group(1))
            return to_text(value) if found else match.group(0)

        return TEMPLATE_PATTERN.sub(replace, text)
