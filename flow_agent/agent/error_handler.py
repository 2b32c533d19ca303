"""
Error Handling for Refinement Sessions

Exception taxonomy for the engine and its collaborators, plus the two
failure trackers the orchestrator relies on:
- StuckLoopDetector: recognizes iterations that reproduce the previous error set
- FailureBackoff: throttles calls to a best-effort collaborator that keeps failing
"""

import logging
import random
from typing import Callable, FrozenSet, Iterable, List, Optional

logger = logging.getLogger(__name__)


class FlowAgentError(Exception):
    """Base class for all engine errors."""


class ExternalServiceError(FlowAgentError):
    """A collaborator could not be reached or answered with a failure."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class AuthenticationError(ExternalServiceError):
    """A collaborator rejected the session credentials (HTTP 401)."""


class ConvergenceError(FlowAgentError):
    """Refinement ended without the document being accepted."""

    def __init__(self, message: str, remaining_errors: Optional[list] = None, reason: str = "exhausted"):
        super().__init__(message)
        self.remaining_errors = remaining_errors or []
        self.reason = reason


class StuckLoopDetector:
    """Detects consecutive iterations that report the same error signatures.

    ``record`` returns how many consecutive iterations (including this one)
    produced the current non-empty signature set.
    """

    def __init__(self, threshold: int = 2):
        """
        Args:
            threshold: Consecutive identical iterations that count as stuck
        """
        if threshold < 2:
            raise ValueError(f"threshold must be at least 2, got {threshold}")
        self.threshold = threshold
        self.previous: Optional[FrozenSet[str]] = None
        self.repeats = 0

    def record(self, signatures: Iterable[str]) -> int:
        current = frozenset(signatures)
        if current and current == self.previous:
            self.repeats += 1
        else:
            self.repeats = 1 if current else 0
        self.previous = current
        return self.repeats

    @property
    def is_stuck(self) -> bool:
        return self.repeats >= self.threshold

    @property
    def should_terminate(self) -> bool:
        """Stuck again on the iteration after being marked stuck."""
        return self.repeats > self.threshold

    def reset(self) -> None:
        self.previous = None
        self.repeats = 0


class FailureBackoff:
    """Consecutive-failure throttle for best-effort calls.

    After ``max_failures`` consecutive failures only ``probe_rate`` of calls
    are attempted; one success restores normal operation.
    """

    def __init__(
        self,
        max_failures: int = 3,
        probe_rate: float = 0.1,
        rng: Optional[Callable[[], float]] = None,
    ):
        self.max_failures = max_failures
        self.probe_rate = probe_rate
        self.rng = rng or random.random
        self.consecutive_failures = 0

    def should_attempt(self) -> bool:
        if self.consecutive_failures < self.max_failures:
            return True
        return self.rng() < self.probe_rate

    def record_success(self) -> None:
        self.consecutive_failures = 0

    def record_failure(self, operation: str = "") -> None:
        self.consecutive_failures += 1
        if self.consecutive_failures == self.max_failures:
            logger.warning(
                f"{operation or 'call'} failed {self.consecutive_failures} times in a row, "
                f"backing off to {self.probe_rate:.0%} of attempts"
            )


def describe_errors(errors: List[object], limit: int = 5) -> str:
    """Short, log-friendly listing of errors."""
    shown = [getattr(e, "describe", lambda: str(e))() for e in errors[:limit]]
    more = len(errors) - limit
    return "; ".join(shown) + (f" (+{more} more)" if more > 0 else "")
