"""Workflow graph schema definitions using Pydantic models.

Workflows are directed graphs of typed nodes (agent, condition, assign,
merge, transform, input, output, memory) joined by edges. Each node type is
its own model with its own config model; ``Node`` is the discriminated union
over the ``type`` tag.

Documents saved by the visual editor use camelCase keys and keep node
configuration under ``data``. Both spellings are accepted:

    {"id": "n1", "type": "agent", "data": {"agentId": "writer"}}
    {"id": "n1", "type": "agent", "config": {"agent_id": "writer"}}

Security-first design:
- No arbitrary code execution in conditions (structured operators and a
  restricted expression grammar only)
- Comprehensive validation before execution
"""

import re
import uuid
from enum import Enum
from typing import Annotated, Any, Literal, Union

import networkx as nx
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel


class NodeType(str, Enum):
    """Supported node types in workflow graphs"""

    AGENT = "agent"  # Call an AI agent with the node's input bag
    CONDITION = "condition"  # Compare values, route via "true"/"false" edges
    ASSIGN = "assign"  # Set a run variable
    MERGE = "merge"  # Combine several upstream outputs
    TRANSFORM = "transform"  # Reshape data (json path, format, parse, stringify)
    INPUT = "input"  # Expose workflow input parameters
    OUTPUT = "output"  # Collect workflow results
    MEMORY = "memory"  # Store text in run memory


class NodeStatus(str, Enum):
    """Execution status for nodes"""

    PENDING = "pending"  # Not yet ready (dependencies not met)
    READY = "ready"  # Ready to execute (all dependencies satisfied)
    RUNNING = "running"  # Currently executing
    COMPLETED = "completed"  # Successfully completed
    FAILED = "failed"  # Execution failed
    SKIPPED = "skipped"  # Not executed (branch not taken or upstream failure)


class BranchHandle(str, Enum):
    """Source handles of edges leaving a CONDITION node"""

    TRUE = "true"
    FALSE = "false"


ComparisonOperator = Literal[
    "==",
    "!=",
    ">",
    "<",
    ">=",
    "<=",
    "contains",
    "not_contains",
    "startsWith",
    "endsWith",
    "exists",
    "not_exists",
]

ParameterType = Literal["string", "number", "boolean", "object", "array", "file"]


class GraphValidationError(Exception):
    """Raised when a workflow graph fails validation."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("Invalid workflow graph: " + "; ".join(self.errors))


class SchemaModel(BaseModel):
    """Base model accepting both camelCase and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _pick(data: dict, *keys: str) -> Any:
    for key in keys:
        if key in data:
            return data[key]
    return None


# ---------------------------------------------------------------------------
# Input sources
# ---------------------------------------------------------------------------


class StaticInputSource(SchemaModel):
    """Literal value supplied to a node parameter"""

    type: Literal["static"] = "static"
    value: Any = None


class NodeOutputInputSource(SchemaModel):
    """Parameter read from a field of another node's output"""

    type: Literal["node_output"] = "node_output"
    node_id: str
    output_field: str = "output"  # Field path; "output" means the whole record

    @field_validator("output_field", mode="before")
    @classmethod
    def default_output_field(cls, v):
        return v or "output"


InputSource = Annotated[
    Union[StaticInputSource, NodeOutputInputSource], Field(discriminator="type")
]


# ---------------------------------------------------------------------------
# Node configs
# ---------------------------------------------------------------------------


class NodeConfig(SchemaModel):
    """Fields shared by every node config"""

    label: str | None = None
    input_sources: dict[str, InputSource] = Field(default_factory=dict)

    def static_inputs(self) -> dict[str, Any]:
        """Static parameter map that seeds the node's input bag."""
        return {}

    def referenced_nodes(self) -> list[str]:
        """Ids of nodes whose output this node reads."""
        return [
            source.node_id
            for source in self.input_sources.values()
            if isinstance(source, NodeOutputInputSource)
        ]


class ParameterizedConfig(NodeConfig):
    """Config with a static ``inputs`` parameter map"""

    inputs: dict[str, Any] = Field(default_factory=dict)

    def static_inputs(self) -> dict[str, Any]:
        return dict(self.inputs)


class AgentNodeConfig(ParameterizedConfig):
    """Configuration for AGENT nodes"""

    agent_id: str | None = None
    agent_name: str | None = None
    timeout: float | None = Field(default=None, gt=0)  # Seconds per call
    max_retries: int | None = Field(default=None, ge=0)


class ConditionSpec(SchemaModel):
    """``left <operator> right``, or a free-text expression"""

    left: Any = None
    operator: ComparisonOperator = "=="
    right: Any = None
    expression: str | None = None


class ConditionNodeConfig(ParameterizedConfig):
    """Configuration for CONDITION nodes"""

    condition: ConditionSpec = Field(default_factory=ConditionSpec)
    true_label: str | None = None
    false_label: str | None = None


class AssignNodeConfig(ParameterizedConfig):
    """Configuration for ASSIGN nodes"""

    variable: str = "result"
    value: Any = None
    expression: str | None = None
    value_type: Literal["string", "number", "boolean", "object", "auto"] = "auto"


class MergeNodeConfig(ParameterizedConfig):
    """
    Configuration for MERGE nodes.

    override: shallow merge, later sources win
    merge: recursive dict merge
    append: flatten lists, append other values
    concat: join strings or lists
    """

    strategy: Literal["override", "merge", "append", "concat"] = "override"
    sources: list[str] = Field(default_factory=list)  # Empty: direct upstream nodes

    def referenced_nodes(self) -> list[str]:
        return super().referenced_nodes() + list(self.sources)


class TransformRule(SchemaModel):
    json_path: str | None = None  # e.g. "$.data.items[0]"
    format: str | None = None  # e.g. "Hello {name}" or "{0}-{1}"
    parse_as: Literal["json", "number", "boolean", "date"] = "json"


class TransformNodeConfig(ParameterizedConfig):
    """Configuration for TRANSFORM nodes"""

    rule_type: Literal["json_path", "format", "parse", "stringify"] = "json_path"
    source_field: str | None = None
    target_field: str | None = None
    rule: TransformRule = Field(default_factory=TransformRule)


class InputParameter(SchemaModel):
    """One workflow input parameter exposed by an INPUT node"""

    name: str = "input"
    type: ParameterType | None = None
    default_value: Any = None
    description: str | None = None
    required: bool = False
    accept: str | None = None  # File types, e.g. ".pdf,image/*"
    max_size: int | None = None  # Bytes


class InputNodeConfig(NodeConfig):
    """Configuration for INPUT nodes"""

    inputs: list[InputParameter] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def upgrade_single_parameter(cls, data):
        """Convert the single-parameter layout (inputName, inputType...) to a list."""
        if not isinstance(data, dict) or data.get("inputs"):
            return data
        name = _pick(data, "inputName", "input_name")
        if not name:
            return data
        upgraded = dict(data)
        upgraded["inputs"] = [
            {
                "name": name,
                "type": _pick(data, "inputType", "input_type"),
                "default_value": _pick(data, "defaultValue", "default_value"),
                "description": data.get("description"),
                "required": bool(data.get("required", False)),
            }
        ]
        return upgraded


class OutputParameter(SchemaModel):
    """One workflow result collected by an OUTPUT node"""

    name: str = "output"
    source_node_id: str | None = None
    source_field: str | None = None
    type: ParameterType | None = None
    description: str | None = None
    download_file_name: str | None = None


class OutputNodeConfig(NodeConfig):
    """Configuration for OUTPUT nodes"""

    outputs: list[OutputParameter] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def upgrade_single_parameter(cls, data):
        """Convert the single-parameter layout (outputName, sourceNodeId...) to a list."""
        if not isinstance(data, dict) or data.get("outputs"):
            return data
        name = _pick(data, "outputName", "output_name")
        if not name:
            return data
        upgraded = dict(data)
        upgraded["outputs"] = [
            {
                "name": name,
                "source_node_id": _pick(data, "sourceNodeId", "source_node_id"),
                "source_field": _pick(data, "sourceField", "source_field"),
                "type": _pick(data, "outputType", "output_type"),
                "description": data.get("description"),
            }
        ]
        return upgraded

    def referenced_nodes(self) -> list[str]:
        refs = super().referenced_nodes()
        refs.extend(p.source_node_id for p in self.outputs if p.source_node_id)
        return refs


class MemoryNodeConfig(ParameterizedConfig):
    """Configuration for MEMORY nodes"""

    source_node_id: str | None = None
    source_field: str | None = None
    memory_id: str | None = None  # Defaults to "memory_<node id>"
    content: str = ""
    editable: bool = True
    auto_save: bool = False

    def referenced_nodes(self) -> list[str]:
        refs = super().referenced_nodes()
        if self.source_node_id:
            refs.append(self.source_node_id)
        return refs


# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------


_CONFIG_ALIASES = AliasChoices("config", "data")
_NODE_ID_PATTERN = re.compile(r"^[^\s.${}\[\]]+$")


class BaseNode(SchemaModel):
    """Fields shared by every node type"""

    id: str
    label: str | None = None
    position: Any = None  # Editor canvas position, carried through untouched

    @field_validator("id")
    @classmethod
    def validate_node_id(cls, v):
        """Node ids become the first segment of variable names, so they cannot
        contain dots, brackets, whitespace or template characters.

        Valid: "node-1", "agent_2", "n1715000000000"
        Invalid: "", "a.b", "my node", "${x}"
        """
        if not _NODE_ID_PATTERN.match(v):
            raise ValueError(f"Invalid node ID: '{v}'")
        return v

    @property
    def node_type(self) -> NodeType:
        return NodeType(self.type)

    @property
    def display_name(self) -> str:
        return self.label or self.config.label or self.id


class AgentNode(BaseNode):
    type: Literal["agent"]
    config: AgentNodeConfig = Field(
        default_factory=AgentNodeConfig, validation_alias=_CONFIG_ALIASES
    )

    @model_validator(mode="before")
    @classmethod
    def move_agent_id_into_config(cls, data):
        """The editor stores ``agentId`` on the node itself; it belongs in the config."""
        if not isinstance(data, dict):
            return data
        agent_id = _pick(data, "agentId", "agent_id")
        if agent_id is None:
            return data
        data = dict(data)
        config_key = "config" if "config" in data else "data"
        config = dict(data.get(config_key) or {})
        if not _pick(config, "agentId", "agent_id"):
            config["agentId"] = agent_id
        data[config_key] = config
        return data


class ConditionNode(BaseNode):
    type: Literal["condition"]
    config: ConditionNodeConfig = Field(
        default_factory=ConditionNodeConfig, validation_alias=_CONFIG_ALIASES
    )


class AssignNode(BaseNode):
    type: Literal["assign"]
    config: AssignNodeConfig = Field(
        default_factory=AssignNodeConfig, validation_alias=_CONFIG_ALIASES
    )


class MergeNode(BaseNode):
    type: Literal["merge"]
    config: MergeNodeConfig = Field(
        default_factory=MergeNodeConfig, validation_alias=_CONFIG_ALIASES
    )


class TransformNode(BaseNode):
    type: Literal["transform"]
    config: TransformNodeConfig = Field(
        default_factory=TransformNodeConfig, validation_alias=_CONFIG_ALIASES
    )


class InputNode(BaseNode):
    type: Literal["input"]
    config: InputNodeConfig = Field(
        default_factory=InputNodeConfig, validation_alias=_CONFIG_ALIASES
    )


class OutputNode(BaseNode):
    type: Literal["output"]
    config: OutputNodeConfig = Field(
        default_factory=OutputNodeConfig, validation_alias=_CONFIG_ALIASES
    )


class MemoryNode(BaseNode):
    type: Literal["memory"]
    config: MemoryNodeConfig = Field(
        default_factory=MemoryNodeConfig, validation_alias=_CONFIG_ALIASES
    )


Node = Annotated[
    Union[
        AgentNode,
        ConditionNode,
        AssignNode,
        MergeNode,
        TransformNode,
        InputNode,
        OutputNode,
        MemoryNode,
    ],
    Field(discriminator="type"),
]

NODE_MODELS: dict[NodeType, type[BaseNode]] = {
    NodeType.AGENT: AgentNode,
    NodeType.CONDITION: ConditionNode,
    NodeType.ASSIGN: AssignNode,
    NodeType.MERGE: MergeNode,
    NodeType.TRANSFORM: TransformNode,
    NodeType.INPUT: InputNode,
    NodeType.OUTPUT: OutputNode,
    NodeType.MEMORY: MemoryNode,
}

_unmodelled = set(NodeType) - set(NODE_MODELS)
if _unmodelled:
    raise RuntimeError(f"Node types without a model: {sorted(t.value for t in _unmodelled)}")


class Edge(SchemaModel):
    """Directed edge between nodes"""

    id: str = Field(default_factory=lambda: f"edge-{uuid.uuid4().hex[:8]}")
    source: str  # Source node ID
    target: str  # Target node ID
    source_handle: str | None = None  # "true"/"false" on CONDITION nodes
    target_handle: str | None = None
    label: str | None = None

    @property
    def branch(self) -> BranchHandle | None:
        """Branch this edge belongs to, if its handle names one."""
        handle = (self.source_handle or "").strip().lower()
        if handle in (BranchHandle.TRUE.value, BranchHandle.FALSE.value):
            return BranchHandle(handle)
        return None


class ValidationResult(BaseModel):
    ok: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


def _cycle_path(cycle: list[tuple]) -> str:
    path = [edge[0] for edge in cycle]
    path.append(cycle[0][0])
    return " -> ".join(path)


def _data_dependencies(nodes: list[BaseNode]) -> list[tuple[str, str]]:
    """(referenced node, referencing node) pairs for references to existing nodes."""
    node_ids = {node.id for node in nodes}
    pairs: list[tuple[str, str]] = []
    for node in nodes:
        for ref in node.config.referenced_nodes():
            pair = (ref, node.id)
            if ref != node.id and ref in node_ids and pair not in pairs:
                pairs.append(pair)
    return pairs


def validate_graph(nodes: list[BaseNode], edges: list[Edge]) -> ValidationResult:
    """
    Validate graph structure using NetworkX.

    Errors block execution; warnings describe graphs that run but are
    probably not what the author meant.
    """
    errors: list[str] = []
    warnings: list[str] = []

    # Check for duplicate node IDs (critical - would corrupt execution state)
    seen_node_ids = set()
    for node in nodes:
        if node.id in seen_node_ids:
            errors.append(f"Duplicate node ID: '{node.id}'")
        seen_node_ids.add(node.id)
    node_ids = seen_node_ids
    node_map = {node.id: node for node in nodes}

    seen_edge_ids = set()
    for edge in edges:
        if edge.id in seen_edge_ids:
            errors.append(f"Duplicate edge ID: '{edge.id}'")
        seen_edge_ids.add(edge.id)

    # Check all edge endpoints exist
    for edge in edges:
        if edge.source not in node_ids:
            errors.append(f"Edge {edge.id}: source '{edge.source}' not found")
        if edge.target not in node_ids:
            errors.append(f"Edge {edge.id}: target '{edge.target}' not found")

    # Edges leaving a CONDITION node must name a branch (or none)
    for edge in edges:
        source = node_map.get(edge.source)
        if (
            source is not None
            and source.node_type == NodeType.CONDITION
            and edge.source_handle
            and edge.branch is None
        ):
            errors.append(
                f"Edge {edge.id}: CONDITION node '{edge.source}' has unknown "
                f"branch handle '{edge.source_handle}' (expected 'true' or 'false')"
            )

    # Data references must point at other existing nodes
    for node in nodes:
        for ref in node.config.referenced_nodes():
            if ref == node.id:
                errors.append(f"Node '{node.id}' references its own output")
            elif ref not in node_ids:
                errors.append(f"Node '{node.id}' references unknown node '{ref}'")

    G = nx.DiGraph()
    G.add_nodes_from(node_ids)
    G.add_edges_from(
        (e.source, e.target) for e in edges if e.source in node_ids and e.target in node_ids
    )
    try:
        cycle = nx.find_cycle(G)
        errors.append(f"Cycle detected: {_cycle_path(cycle)}")
    except nx.NetworkXNoCycle:
        # Edges alone are acyclic; data references must not close a loop either
        G.add_edges_from(_data_dependencies(nodes))
        try:
            cycle = nx.find_cycle(G)
            errors.append(f"Data references form a cycle: {_cycle_path(cycle)}")
        except nx.NetworkXNoCycle:
            pass

    referenced = {ref for node in nodes for ref in node.config.referenced_nodes()}
    connected = {e.source for e in edges} | {e.target for e in edges}
    if len(nodes) > 1:
        for node in nodes:
            if (
                node.id not in connected
                and node.id not in referenced
                and not node.config.referenced_nodes()
            ):
                warnings.append(f"Node '{node.id}' is not connected to any other node")

    for node in nodes:
        if node.node_type == NodeType.MERGE:
            sources = node.config.sources or [e.source for e in edges if e.target == node.id]
            if len(set(sources)) < 2:
                warnings.append(f"MERGE node '{node.id}' should have at least 2 sources")
        elif node.node_type == NodeType.INPUT:
            if any(e.target == node.id for e in edges):
                warnings.append(f"INPUT node '{node.id}' has incoming edges")

    return ValidationResult(ok=not errors, errors=errors, warnings=warnings)


class WorkflowGraph(SchemaModel):
    """Complete workflow definition"""

    id: str = Field(default_factory=lambda: f"workflow-{uuid.uuid4().hex[:8]}")
    name: str = "Untitled workflow"
    description: str | None = None
    version: str = "1.0.0"

    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)

    metadata: dict[str, Any] = Field(default_factory=dict)

    def get_node(self, node_id: str) -> BaseNode | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def get_edges_from(self, node_id: str) -> list[Edge]:
        return [e for e in self.edges if e.source == node_id]

    def get_edges_to(self, node_id: str) -> list[Edge]:
        return [e for e in self.edges if e.target == node_id]

    def data_dependencies(self) -> list[tuple[str, str]]:
        """(referenced node, referencing node) pairs from data references."""
        return _data_dependencies(self.nodes)

    def check(self) -> ValidationResult:
        """Full validation result including warnings."""
        return validate_graph(self.nodes, self.edges)

    def validate_graph(self) -> list[str]:
        """Validate graph structure. Returns list of validation errors."""
        return self.check().errors

    def ensure_valid(self) -> None:
        """Raise GraphValidationError if the graph has validation errors."""
        errors = self.validate_graph()
        if errors:
            raise GraphValidationError(errors)

    def _to_networkx(self, include_references: bool = False) -> nx.DiGraph:
        """Convert to NetworkX DiGraph for analysis"""
        G = nx.DiGraph()
        for node in self.nodes:
            G.add_node(node.id)
        for edge in self.edges:
            G.add_edge(edge.source, edge.target)
        if include_references:
            G.add_edges_from(self.data_dependencies())
        return G

    def analyze_parallelism(self) -> list[list[str]]:
        """Find nodes that can execute in parallel (topological levels)"""
        G = self._to_networkx(include_references=True)
        order = {node.id: idx for idx, node in enumerate(self.nodes)}
        try:
            return [
                sorted(level, key=lambda n: order.get(n, len(order)))
                for level in nx.topological_generations(G)
            ]
        except nx.NetworkXUnfeasible:
            return []  # Has cycles

    def execution_order(self) -> list[str]:
        """Deterministic topological order; ties keep node-list order."""
        G = self._to_networkx(include_references=True)
        order = {node.id: idx for idx, node in enumerate(self.nodes)}
        try:
            return list(
                nx.lexicographical_topological_sort(G, key=lambda n: order.get(n, len(order)))
            )
        except nx.NetworkXUnfeasible:
            return []  # Has cycles
