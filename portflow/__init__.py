"""
PortFlow - an async workflow execution engine for port-based node graphs.

Workflows are graphs of typed nodes connected output port to input port.
Each node type is backed by a plugin descriptor; the engine walks the graph
from its trigger node and moves data along the edges.
"""

__version__ = "1.0.0"
