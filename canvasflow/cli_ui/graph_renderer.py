"""Terminal graph rendering for workflow visualization.

Provides level-based and tree-based views of workflow graphs, run status
tables and variable tables using Rich.
"""

from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from canvasflow.core.graph_schema import BaseNode, Edge, NodeStatus, NodeType, WorkflowGraph
from canvasflow.core.models import ExecutionReport
from canvasflow.core.utils import to_text
from canvasflow.core.variables import get_node_output_fields


class TerminalGraphRenderer:
    """
    Renders workflow graphs in the terminal.

    Features:
    - Topological layout (one line per level)
    - Color-coded node types
    - Status indicators
    - Branch labels on condition edges (render_as_tree only)

    NOTE: render_graph() shows topological levels but not the exact edges.
    Use render_as_tree() for the structure including branches.
    """

    # Node type symbols and colors
    NODE_STYLES = {
        NodeType.AGENT: ("[A]", "cyan"),
        NodeType.CONDITION: ("[?]", "magenta"),
        NodeType.ASSIGN: ("[=]", "yellow"),
        NodeType.MERGE: ("[M]", "blue"),
        NodeType.TRANSFORM: ("[T]", "green"),
        NodeType.INPUT: ("[>]", "bright_white"),
        NodeType.OUTPUT: ("[<]", "bright_white"),
        NodeType.MEMORY: ("[#]", "white"),
    }

    STATUS_COLORS = {
        "pending": "dim",
        "ready": "yellow",
        "running": "blue bold",
        "completed": "green",
        "failed": "red bold",
        "skipped": "dim strikethrough",
    }

    STATUS_MARKS = {"completed": " ✓", "failed": " ✗", "running": " ⟳", "skipped": " ⊘"}

    @staticmethod
    def _normalize_status(status: NodeStatus | str | None) -> str:
        """Normalize status to string for consistent lookup."""
        if isinstance(status, NodeStatus):
            return status.value
        return str(status) if status else "pending"

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def _build_edge_map(self, workflow: WorkflowGraph) -> dict[str, list[Edge]]:
        """Outgoing edges by source node ID."""
        edge_map: dict[str, list[Edge]] = {n.id: [] for n in workflow.nodes}
        for edge in workflow.edges:
            if edge.source in edge_map:
                edge_map[edge.source].append(edge)
        return edge_map

    def _node_text(self, node: BaseNode, statuses: dict[str, Any] | None) -> str:
        symbol, color = self.NODE_STYLES.get(node.node_type, ("[ ]", "white"))
        # SECURITY: Escape node labels to prevent Rich markup injection
        safe_label = escape(node.display_name)
        status = self._normalize_status(statuses.get(node.id)) if statuses else None
        if status and status != "pending":
            status_color = self.STATUS_COLORS.get(status, "white")
            return f"[{status_color}]{symbol} {safe_label}{self.STATUS_MARKS.get(status, '')}[/]"
        return f"[{color}]{symbol} {safe_label}[/]"

    def render_graph(
        self,
        workflow: WorkflowGraph,
        statuses: dict[str, NodeStatus | str] | None = None,
    ) -> str:
        """
        Render workflow graph as one line per topological level.

        Args:
            workflow: The workflow graph to render
            statuses: Optional dict of node_id -> current status
        """
        node_map = {n.id: n for n in workflow.nodes}
        levels = workflow.analyze_parallelism() or [[n.id for n in workflow.nodes]]

        lines = []
        for level_idx, level in enumerate(levels):
            level_nodes = [self._node_text(node_map[n], statuses) for n in level if n in node_map]
            lines.append("  |  ".join(level_nodes))
            if level_idx < len(levels) - 1:
                lines.append("  " + "  |  " * len(level_nodes))
                lines.append("  " + "  v  " * len(level_nodes))
        return "\n".join(lines)

    def render_as_tree(
        self,
        workflow: WorkflowGraph,
        statuses: dict[str, NodeStatus | str] | None = None,
        max_depth: int = 50,
    ) -> Tree:
        """
        Render workflow as a Rich Tree rooted at nodes without incoming edges.

        Args:
            workflow: The workflow graph to render
            statuses: Optional dict of node_id -> current status
            max_depth: Maximum tree depth (default: 50)
        """
        safe_name = escape(workflow.name)
        safe_version = escape(workflow.version)
        tree = Tree(f"[bold]{safe_name}[/] (v{safe_version})")

        node_map = {n.id: n for n in workflow.nodes}
        edge_map = self._build_edge_map(workflow)
        targets = {e.target for e in workflow.edges}
        roots = [n for n in workflow.nodes if n.id not in targets]
        if not roots:
            tree.add("[red]Error: no node without incoming edges[/]")
            return tree

        for root in roots:
            self._add_node_to_tree(tree, root, statuses, node_map, edge_map, set(), 0, max_depth)
        return tree

    def _add_node_to_tree(
        self,
        parent: Tree,
        node: BaseNode,
        statuses: dict[str, Any] | None,
        node_map: dict[str, BaseNode],
        edge_map: dict[str, list[Edge]],
        visited: set,
        depth: int = 0,
        max_depth: int = 50,
    ):
        """Recursively add nodes to the tree."""
        if depth >= max_depth:
            parent.add("[dim]... (max depth reached)[/]")
            return
        if node.id in visited:
            parent.add(f"[dim]↩ {escape(node.id)} (loop)[/]")
            return
        visited.add(node.id)

        branch = parent.add(self._node_text(node, statuses))
        for edge in edge_map.get(node.id, []):
            child = node_map.get(edge.target)
            if child is None:
                continue
            target = branch
            if edge.branch is not None:
                label = edge.label or edge.branch.value
                target = branch.add(f"[dim]({escape(label)})[/]")
            self._add_node_to_tree(
                target, child, statuses, node_map, edge_map, visited.copy(), depth + 1, max_depth
            )


class StatusTableRenderer:
    """Renders node results of a run as a Rich table.

    SECURITY: All user-controlled strings are escaped to prevent Rich markup
    injection.
    """

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def render_status_table(self, workflow: WorkflowGraph, report: ExecutionReport) -> Table:
        """Render one row per node: label, type, status, duration, output or error."""
        safe_run_id = escape(report.run_id)
        table = Table(title=f"Run: {safe_run_id} ({report.status.value})")

        table.add_column("Node", style="cyan")
        table.add_column("Type", style="magenta")
        table.add_column("Status", justify="center")
        table.add_column("Time", justify="right")
        table.add_column("Output", max_width=40)

        for node in workflow.nodes:
            result = report.get_result(node.id)
            status = TerminalGraphRenderer._normalize_status(result.status if result else None)

            if status == "completed":
                status_text = "[green]✓ Completed[/]"
            elif status == "failed":
                status_text = "[red]✗ Failed[/]"
            elif status == "skipped":
                status_text = "[dim]⊘ Skipped[/]"
            else:
                status_text = "[dim]○ Pending[/]"

            if result is None:
                detail, duration = "", ""
            elif result.status == NodeStatus.FAILED:
                detail, duration = result.error or "", f"{result.duration:.2f}s"
            elif result.status == NodeStatus.SKIPPED:
                detail, duration = result.skip_reason or "", ""
            else:
                detail, duration = to_text(result.output), f"{result.duration:.2f}s"

            output_str = escape(detail)
            if len(output_str) > 40:
                output_str = output_str[:37] + "..."

            table.add_row(escape(node.display_name), node.type, status_text, duration, output_str)

        return table


class VariableTableRenderer:
    """Lists the variable names a workflow's nodes expose."""

    def render_variable_table(self, workflow: WorkflowGraph, node_id: str | None = None) -> Table:
        table = Table(title=f"Variables: {escape(workflow.name)}")
        table.add_column("Variable", style="cyan")
        table.add_column("Description")

        for node in workflow.nodes:
            if node_id and node.id != node_id:
                continue
            for field in get_node_output_fields(node.id, node.node_type):
                table.add_row(escape(field.variable_name), escape(field.description))
        return table
