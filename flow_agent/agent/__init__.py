"""
Refinement agent: the loop that drives a document to acceptance by the
external semantic validator.
"""

from flow_agent.agent.config import RefinementConfig, ServiceConfig
from flow_agent.agent.error_handler import (
    AuthenticationError,
    ConvergenceError,
    ExternalServiceError,
    FlowAgentError,
    StuckLoopDetector,
)
from flow_agent.agent.orchestrator import RefinementOrchestrator, SegmentRefinementResult
from flow_agent.agent.state import RefinementPhase, RefinementResult

__all__ = [
    "AuthenticationError",
    "ConvergenceError",
    "ExternalServiceError",
    "FlowAgentError",
    "RefinementConfig",
    "RefinementOrchestrator",
    "RefinementPhase",
    "RefinementResult",
    "SegmentRefinementResult",
    "ServiceConfig",
    "StuckLoopDetector",
]
