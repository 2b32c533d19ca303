"""
LLM Provider Abstraction Layer

Chat-completion access for the generative repairer:
- Ollama and OpenAI-compatible providers behind one interface
- Configuration from environment variables or explicit parameters
- Shared aiohttp session per client, closed by the owner
"""

import asyncio
import os
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, List, Optional

import aiohttp
from loguru import logger
from pydantic import BaseModel, Field, field_validator


class LLMProviderType(str, Enum):
    """Supported LLM provider types."""
    OLLAMA = "ollama"
    OPENAI = "openai"
    OPENAI_COMPATIBLE = "openai_compatible"


class LLMMessage(BaseModel):
    """Structured LLM message format."""
    role: str = Field(..., description="Role: 'system', 'user', or 'assistant'")
    content: str = Field(..., description="Message content")

    @field_validator("role")
    @classmethod
    def validate_role(cls, v: str) -> str:
        valid_roles = {"system", "user", "assistant"}
        if v not in valid_roles:
            raise ValueError(f"Role must be one of {valid_roles}, got '{v}'")
        return v

    @field_validator("content")
    @classmethod
    def validate_content(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Message content cannot be empty")
        return v


class LLMConfig(BaseModel):
    """Configuration for LLM provider."""

    provider: LLMProviderType = Field(
        default=LLMProviderType.OPENAI_COMPATIBLE,
        description="LLM provider type"
    )
    base_url: str = Field(
        default="http://localhost:11434",
        description="Base URL for LLM provider (Ollama or OpenAI-compatible)"
    )
    api_key: Optional[str] = Field(
        default=None,
        description="API key for authentication"
    )
    model: str = Field(
        default="mistral",
        description="Model name or ID"
    )
    temperature: float = Field(
        default=0.2,
        ge=0.0,
        le=2.0,
        description="Sampling temperature (0.0 to 2.0)"
    )
    max_tokens: Optional[int] = Field(
        default=None,
        description="Maximum tokens in response"
    )
    timeout: float = Field(
        default=120.0,
        gt=0,
        description="Request timeout in seconds"
    )
    context_window: int = Field(
        default=32768,
        gt=0,
        description="LLM context window size (tokens)"
    )

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        return v.rstrip("/")

    @classmethod
    def from_env(cls) -> "LLMConfig":
        """Load configuration from environment variables."""
        return cls(
            provider=os.getenv("LLM_PROVIDER", "openai_compatible").lower(),
            base_url=os.getenv("LLM_BASE_URL", "http://localhost:11434"),
            api_key=os.getenv("LLM_API_KEY"),
            model=os.getenv("LLM_MODEL", "mistral"),
            temperature=float(os.getenv("LLM_TEMPERATURE", "0.2")),
            max_tokens=int(os.getenv("LLM_MAX_TOKENS", "0")) or None,
            timeout=float(os.getenv("LLM_TIMEOUT", "120")),
            context_window=int(os.getenv("LLM_CONTEXT_WINDOW", "32768")),
        )


class LLMResponse(BaseModel):
    """Structured LLM response."""
    content: str = Field(..., description="Response content")
    model: str = Field(..., description="Model that generated the response")
    usage: Dict[str, int] = Field(
        default_factory=dict,
        description="Token usage: prompt_tokens, completion_tokens, total_tokens"
    )
    finish_reason: Optional[str] = Field(
        default=None,
        description="Reason for completion: 'stop', 'length', 'error', etc."
    )


class LLMStatusError(RuntimeError):
    """Non-200 response from the provider."""

    def __init__(self, status: int, body: str = ""):
        super().__init__(f"API error: {status}")
        self.status = status
        self.body = body


def estimate_tokens(text: str) -> int:
    """Rough token estimate, about four characters per token."""
    return max(1, len(text) // 4) if text else 0


class BaseLLMClient(ABC):
    """Abstract base class for LLM clients."""

    def __init__(self, config: LLMConfig):
        self.config = config
        self.session: Optional[aiohttp.ClientSession] = None
        logger.info(
            f"Initializing {self.__class__.__name__} with provider={config.provider}, "
            f"model={config.model}"
        )

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self.session is None or self.session.closed:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout)
            self.session = aiohttp.ClientSession(timeout=timeout)
        return self.session

    async def close_session(self) -> None:
        if self.session and not self.session.closed:
            await self.session.close()

    def _check_messages(self, messages: List[LLMMessage], max_tokens: Optional[int]) -> None:
        if not messages:
            raise ValueError("Messages list cannot be empty")
        for msg in messages:
            if not isinstance(msg, LLMMessage):
                raise ValueError(f"All messages must be LLMMessage instances, got {type(msg)}")
        if max_tokens is not None and max_tokens > self.config.context_window:
            raise ValueError(
                f"max_tokens ({max_tokens}) exceeds context window ({self.config.context_window})"
            )
        prompt_tokens = sum(estimate_tokens(msg.content) for msg in messages)
        if prompt_tokens > self.config.context_window:
            raise ValueError(
                f"Prompt of ~{prompt_tokens} tokens exceeds context window ({self.config.context_window})"
            )

    @abstractmethod
    async def call(
        self,
        messages: List[LLMMessage],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs: Any
    ) -> LLMResponse:
        """Call LLM with messages."""


class OllamaClient(BaseLLMClient):
    """Ollama LLM client."""

    async def call(
        self,
        messages: List[LLMMessage],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs: Any
    ) -> LLMResponse:
        self._check_messages(messages, max_tokens)
        payload: Dict[str, Any] = {
            "model": self.config.model,
            "messages": [m.model_dump() for m in messages],
            "options": {"temperature": self.config.temperature if temperature is None else temperature},
            "stream": False,
        }
        if max_tokens or self.config.max_tokens:
            payload["options"]["num_predict"] = max_tokens or self.config.max_tokens
        if kwargs.get("json_mode"):
            payload["format"] = "json"

        try:
            session = await self._get_session()
            async with session.post(f"{self.config.base_url}/api/chat", json=payload) as response:
                if response.status != 200:
                    error_text = await response.text()
                    logger.error(f"Ollama API error: HTTP {response.status} - {error_text}")
                    raise LLMStatusError(response.status, error_text)

                data = await response.json()
                prompt_tokens = data.get("prompt_eval_count", 0)
                completion_tokens = data.get("eval_count", 0)
                return LLMResponse(
                    content=data.get("message", {}).get("content", ""),
                    model=self.config.model,
                    usage={
                        "prompt_tokens": prompt_tokens,
                        "completion_tokens": completion_tokens,
                        "total_tokens": prompt_tokens + completion_tokens,
                    },
                    finish_reason="stop" if data.get("done", True) else "length",
                )
        except asyncio.TimeoutError:
            logger.error("Timeout calling Ollama API")
            raise
        except aiohttp.ClientError as e:
            logger.error(f"Ollama API call failed: {e}")
            raise


class OpenAICompatibleClient(BaseLLMClient):
    """OpenAI-compatible chat completions client (OpenAI, OpenRouter, LiteLLM, ...)."""

    def _get_headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    async def call(
        self,
        messages: List[LLMMessage],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs: Any
    ) -> LLMResponse:
        self._check_messages(messages, max_tokens)
        payload: Dict[str, Any] = {
            "model": self.config.model,
            "messages": [m.model_dump() for m in messages],
            "temperature": self.config.temperature if temperature is None else temperature,
            "stream": False,
        }
        if max_tokens or self.config.max_tokens:
            payload["max_tokens"] = max_tokens or self.config.max_tokens
        if kwargs.get("json_mode"):
            payload["response_format"] = {"type": "json_object"}

        try:
            session = await self._get_session()
            async with session.post(
                f"{self.config.base_url}/chat/completions",
                json=payload,
                headers=self._get_headers(),
            ) as response:
                if response.status != 200:
                    error_text = await response.text()
                    logger.error(f"API error: HTTP {response.status} - {error_text}")
                    raise LLMStatusError(response.status, error_text)

                data = await response.json()
                choice = data["choices"][0]
                usage = data.get("usage") or {}
                return LLMResponse(
                    content=choice["message"]["content"] or "",
                    model=data.get("model", self.config.model),
                    usage={
                        "prompt_tokens": usage.get("prompt_tokens", 0),
                        "completion_tokens": usage.get("completion_tokens", 0),
                        "total_tokens": usage.get("total_tokens", 0),
                    },
                    finish_reason=choice.get("finish_reason", "stop"),
                )
        except asyncio.TimeoutError:
            logger.error("Timeout calling API")
            raise
        except aiohttp.ClientError as e:
            logger.error(f"API call failed: {e}")
            raise


class LLMClientFactory:
    """Factory for creating LLM clients."""

    _clients: Dict[LLMProviderType, type] = {
        LLMProviderType.OLLAMA: OllamaClient,
        LLMProviderType.OPENAI: OpenAICompatibleClient,
        LLMProviderType.OPENAI_COMPATIBLE: OpenAICompatibleClient,
    }

    @classmethod
    def create(cls, config: LLMConfig) -> BaseLLMClient:
        client_class = cls._clients.get(config.provider)
        if not client_class:
            raise ValueError(f"Unsupported LLM provider: {config.provider}")
        return client_class(config)


__all__ = [
    "LLMProviderType",
    "LLMMessage",
    "LLMConfig",
    "LLMResponse",
    "LLMStatusError",
    "BaseLLMClient",
    "OllamaClient",
    "OpenAICompatibleClient",
    "LLMClientFactory",
    "estimate_tokens",
]
