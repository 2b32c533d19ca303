"""
Agent Configuration Schema

Settings for refinement sessions and the external services they call.
"""

import os
from dataclasses import dataclass, field
from typing import Optional

from flow_agent.core.llm_client import LLMConfig
from flow_agent.models.contracts import GENERIC_ERROR_ID, RETURN_MENU_ID


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


@dataclass
class RefinementConfig:
    """Loop bounds, guard rails and timeouts of a refinement session."""

    max_iterations: int = 5

    # Stuck-loop detection
    stuck_threshold: int = 2

    # Guard rails on generative output
    row_change_ratio: float = 0.05
    row_change_min: int = 3
    max_bad_column_rows: int = 5

    # Concurrency and timeouts (seconds)
    concurrency: int = 3
    validator_timeout: float = 60.0
    repairer_timeout: float = 120.0
    store_timeout: float = 5.0

    # Repair fallbacks
    return_menu_id: int = RETURN_MENU_ID
    generic_error_id: int = GENERIC_ERROR_ID
    max_repair_passes: int = 4

    # Ask the learning store for known fixes before AI calls
    use_known_fixes: bool = True

    def __post_init__(self) -> None:
        if self.max_iterations < 1:
            raise ValueError(f"max_iterations must be positive, got {self.max_iterations}")
        if self.concurrency < 1:
            raise ValueError(f"concurrency must be positive, got {self.concurrency}")

    @classmethod
    def from_env(cls) -> "RefinementConfig":
        """Create refinement config from ``FLOW_*`` environment variables."""
        return cls(
            max_iterations=_env_int("FLOW_MAX_ITERATIONS", 5),
            stuck_threshold=_env_int("FLOW_STUCK_THRESHOLD", 2),
            row_change_ratio=_env_float("FLOW_ROW_CHANGE_RATIO", 0.05),
            row_change_min=_env_int("FLOW_ROW_CHANGE_MIN", 3),
            max_bad_column_rows=_env_int("FLOW_MAX_BAD_COLUMN_ROWS", 5),
            concurrency=_env_int("FLOW_CONCURRENCY", 3),
            validator_timeout=_env_float("FLOW_VALIDATOR_TIMEOUT", 60.0),
            repairer_timeout=_env_float("FLOW_REPAIRER_TIMEOUT", 120.0),
            store_timeout=_env_float("FLOW_STORE_TIMEOUT", 5.0),
        )


@dataclass
class ServiceConfig:
    """Endpoints and credentials of the external collaborators."""

    validator_url: Optional[str] = None
    validator_token: Optional[str] = None
    learning_store_url: Optional[str] = None
    learning_store_token: Optional[str] = None
    llm_config: LLMConfig = field(default_factory=LLMConfig)

    @property
    def has_validator(self) -> bool:
        return bool(self.validator_url)

    @classmethod
    def from_env(cls) -> "ServiceConfig":
        return cls(
            validator_url=os.getenv("FLOW_VALIDATOR_URL"),
            validator_token=os.getenv("FLOW_VALIDATOR_TOKEN"),
            learning_store_url=os.getenv("FLOW_LEARNING_STORE_URL"),
            learning_store_token=os.getenv("FLOW_LEARNING_STORE_TOKEN"),
            llm_config=LLMConfig.from_env(),
        )
