"""Core infrastructure: LLM clients and observability."""

from flow_agent.core.llm_client import BaseLLMClient, LLMClientFactory, LLMConfig, LLMMessage, LLMResponse
from flow_agent.core.observability import ObservabilityConfig, ObservabilityManager

__all__ = [
    "BaseLLMClient",
    "LLMClientFactory",
    "LLMConfig",
    "LLMMessage",
    "LLMResponse",
    "ObservabilityConfig",
    "ObservabilityManager",
]
