"""
Flow Agent: Validate and Repair Conversational Flow Documents

Checks 26-column flow documents against the structural contract of the
flow platform, applies deterministic repairs, assembles independently
generated segments, and drives an iterative refinement loop against an
external semantic validator and an optional generative repairer.
"""

__version__ = "0.1.0"

# Models
from flow_agent.models.diagnostics import (
    Diagnostic,
    DiagnosticKind,
    ExternalError,
    ValidationLevel,
    ValidationReport,
)
from flow_agent.models.record import ActionRecord, DecisionRecord, FlowDocument, NodeKind

# Core components
from flow_agent.core.llm_client import LLMClientFactory, LLMConfig, LLMMessage
from flow_agent.core.observability import ObservabilityConfig, ObservabilityManager

# Structural tools
from flow_agent.tools.allocator import NodeAllocator
from flow_agent.tools.repair import RepairEngine, RepairResult
from flow_agent.tools.validation import StructuralValidator

# Refinement
from flow_agent.agent.config import RefinementConfig, ServiceConfig
from flow_agent.agent.orchestrator import RefinementOrchestrator
from flow_agent.agent.state import RefinementResult

__all__ = [
    "__version__",
    "ActionRecord",
    "DecisionRecord",
    "Diagnostic",
    "DiagnosticKind",
    "ExternalError",
    "FlowDocument",
    "LLMClientFactory",
    "LLMConfig",
    "LLMMessage",
    "NodeAllocator",
    "NodeKind",
    "ObservabilityConfig",
    "ObservabilityManager",
    "RefinementConfig",
    "RefinementOrchestrator",
    "RefinementResult",
    "RepairEngine",
    "RepairResult",
    "ServiceConfig",
    "StructuralValidator",
    "ValidationLevel",
    "ValidationReport",
]
