"""CLI UI components for terminal-based workflow visualization.

This package provides rich terminal UI capabilities for:
- Visualizing workflow graphs
- Run status tables
- Variable name listings
"""

from canvasflow.cli_ui.graph_renderer import (
    StatusTableRenderer,
    TerminalGraphRenderer,
    VariableTableRenderer,
)

__all__ = [
    "TerminalGraphRenderer",
    "StatusTableRenderer",
    "VariableTableRenderer",
]
