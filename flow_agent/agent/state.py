"""
Refinement State Management

Tracks a refinement session through its phases and iterations, and the
final result handed back to callers.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from flow_agent.models.diagnostics import ExternalError


class RefinementPhase(str, Enum):
    """Phases of one refinement iteration."""

    SANITIZING = "sanitizing"
    EXTERNAL_VALIDATING = "external_validating"
    ACCEPTED = "accepted"
    CLASSIFYING = "classifying"
    PROGRAMMATIC_FIXING = "programmatic_fixing"
    AI_REFINING = "ai_refining"
    VERIFYING = "verifying"
    EXHAUSTED = "exhausted"


class AIOutcome(str, Enum):
    """What happened to the generative repairer's proposal."""

    NOT_CALLED = "not_called"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass
class IterationRecord:
    """Summary of one loop iteration."""

    iteration: int
    error_count: int = 0
    signatures: List[str] = field(default_factory=list)
    programmatic_fixes: List[str] = field(default_factory=list)
    ai_outcome: AIOutcome = AIOutcome.NOT_CALLED
    ai_errors_sent: int = 0
    stuck: bool = False
    aggressive: bool = False
    rejection_reason: Optional[str] = None
    duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "iteration": self.iteration,
            "error_count": self.error_count,
            "signatures": self.signatures,
            "programmatic_fixes": self.programmatic_fixes,
            "ai_outcome": self.ai_outcome.value,
            "ai_errors_sent": self.ai_errors_sent,
            "stuck": self.stuck,
            "aggressive": self.aggressive,
            "rejection_reason": self.rejection_reason,
            "duration_ms": round(self.duration_ms, 1),
        }


@dataclass
class RefinementSession:
    """Mutable state of one session; owned by a single orchestrator call."""

    session_id: str
    start_time: datetime
    document_text: str
    phase: RefinementPhase = RefinementPhase.SANITIZING
    iteration: int = 0
    fixes_made: List[str] = field(default_factory=list)
    unfixable: Set[str] = field(default_factory=set)
    history: List[IterationRecord] = field(default_factory=list)
    errors: List[ExternalError] = field(default_factory=list)
    version_id: Optional[str] = None

    # signature -> (pattern id, fix description) awaiting the next validation
    pending_attempts: Dict[str, tuple] = field(default_factory=dict)
    pattern_ids: Dict[str, str] = field(default_factory=dict)


@dataclass
class RefinementResult:
    """Outcome of a refinement session."""

    document_text: str
    valid: bool
    iterations: int
    max_iterations_reached: bool = False
    fixes_made: List[str] = field(default_factory=list)
    remaining_errors: List[ExternalError] = field(default_factory=list)
    version_id: Optional[str] = None
    unfixable_signatures: List[str] = field(default_factory=list)
    history: List[IterationRecord] = field(default_factory=list)
    stopped_reason: Optional[str] = None

    def raise_for_status(self) -> None:
        """Raise ConvergenceError unless the document was accepted."""
        from flow_agent.agent.error_handler import ConvergenceError

        if not self.valid:
            raise ConvergenceError(
                f"Refinement stopped after {self.iterations} iterations "
                f"with {len(self.remaining_errors)} errors ({self.stopped_reason})",
                remaining_errors=self.remaining_errors,
                reason=self.stopped_reason or "exhausted",
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "csv": self.document_text,
            "valid": self.valid,
            "iterations": self.iterations,
            "max_iterations_reached": self.max_iterations_reached,
            "fixes_made": self.fixes_made,
            "remaining_errors": [e.model_dump() for e in self.remaining_errors],
            "version_id": self.version_id,
            "unfixable_signatures": self.unfixable_signatures,
            "stopped_reason": self.stopped_reason,
            "history": [h.to_dict() for h in self.history],
        }
