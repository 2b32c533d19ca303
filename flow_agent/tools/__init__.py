"""
Flow Agent Tools

Structural validation, deterministic repair, id allocation and the CLI.
"""

from flow_agent.tools.allocator import AssemblyResult, NodeAllocator
from flow_agent.tools.repair import RepairEngine, RepairResult
from flow_agent.tools.validation import StructuralValidator, validate_text

__all__ = [
    "AssemblyResult",
    "NodeAllocator",
    "RepairEngine",
    "RepairResult",
    "StructuralValidator",
    "validate_text",
]
