"""canvasflow - workflow graph execution engine.

Runs graphs of typed nodes (agent, condition, assign, merge, transform,
input, output, memory) end to end and reports every node's result.
"""

__version__ = "0.1.0"
