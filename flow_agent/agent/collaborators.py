"""
External Collaborators

Clients for the three services a refinement session talks to:
- SemanticValidator: authoritative accept/reject of a flow document
- GenerativeRepairer: proposes a corrected document for a list of errors
- ErrorLearningStore: remembers error patterns and which fixes worked

Validator failures are raised as typed errors. Learning-store calls are
best-effort: failures are logged and swallowed, and a store that keeps
failing is throttled.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Dict, List, Optional, Sequence

import aiohttp
from pydantic import BaseModel, Field

from flow_agent.agent.error_handler import (
    AuthenticationError,
    ExternalServiceError,
    FailureBackoff,
)
from flow_agent.agent.signatures import categorize_error, normalize_error
from flow_agent.core.llm_client import BaseLLMClient, LLMMessage, LLMStatusError
from flow_agent.models.diagnostics import ExternalError, flatten_errors
from flow_agent.models.record import COLUMNS, HEADER_LINE
from flow_agent.stages.codec import parse
from flow_agent.stages.json_recovery import recover_json

logger = logging.getLogger(__name__)


class ValidationOutcome(BaseModel):
    """Response of the semantic validator."""

    valid: bool = Field(..., description="Whether the document was accepted")
    errors: List[ExternalError] = Field(default_factory=list, description="Reported errors, flattened")
    version_id: Optional[str] = Field(default=None, description="Version created by the validator")


class RepairProposal(BaseModel):
    """Response of the generative repairer."""

    csv: str = Field(..., description="Proposed document text")
    fixes_made: List[str] = Field(default_factory=list, description="Fixes the repairer claims to have made")
    still_broken: List[str] = Field(default_factory=list, description="Errors the repairer could not fix")


class FixHint(BaseModel):
    """A previously successful fix for an error signature."""

    signature: str
    error_type: str = "unknown"
    field_name: str = ""
    description: str
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    applied_count: int = 0


def parse_validator_errors(raw: Any) -> List[ExternalError]:
    """Normalize the validator's error payload into ExternalError objects."""
    if not raw:
        return []
    if isinstance(raw, (str, dict)):
        raw = [raw]
    errors: List[ExternalError] = []
    for item in raw:
        if isinstance(item, dict):
            errors.extend(flatten_errors([item]))
        else:
            errors.append(ExternalError(message=str(item)))
    return errors


# ----------------------------------------------------------------------
# Semantic validator
# ----------------------------------------------------------------------


class SemanticValidator(ABC):
    """Authoritative remote validation."""

    @abstractmethod
    async def validate(self, document_text: str) -> ValidationOutcome:
        """Submit a document. Raises AuthenticationError or ExternalServiceError."""

    async def close(self) -> None:
        """Release network resources."""


class HttpSemanticValidator(SemanticValidator):
    """Semantic validator reached over HTTP.

    Request body: ``{"csv": ..., "botId": ..., "token": ...}``.
    Response body: ``{"valid": bool, "errors": [...], "versionId": ...}``.
    """

    def __init__(self, url: str, token: Optional[str] = None, bot_id: Optional[str] = None, timeout: float = 60.0):
        self.url = url
        self.token = token
        self.bot_id = bot_id
        self.timeout = timeout
        self.session: Optional[aiohttp.ClientSession] = None
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
        return self.session

    async def close(self) -> None:
        if self.session and not self.session.closed:
            await self.session.close()

    async def validate(self, document_text: str) -> ValidationOutcome:
        payload = {"csv": document_text, "botId": self.bot_id, "token": self.token}
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        try:
            session = await self._get_session()
            async with session.post(self.url, json=payload, headers=headers) as response:
                if response.status == 401:
                    raise AuthenticationError("Validator rejected the session token", status=401)
                try:
                    data = await response.json(content_type=None)
                except (aiohttp.ContentTypeError, ValueError):
                    data = None
        except asyncio.TimeoutError as e:
            raise ExternalServiceError("Timeout calling semantic validator") from e
        except aiohttp.ClientError as e:
            raise ExternalServiceError(f"Semantic validator unreachable: {e}") from e

        if not isinstance(data, dict):
            raise ExternalServiceError(f"Validator returned no JSON body (HTTP {response.status})", response.status)
        if data.get("authError"):
            raise AuthenticationError(str(data.get("error") or "API token is invalid or expired"), status=401)
        if response.status != 200 and "valid" not in data and not data.get("errors"):
            raise ExternalServiceError(
                str(data.get("error") or f"Validation request failed: {response.status}"), response.status
            )

        errors = parse_validator_errors(data.get("errors"))
        outcome = ValidationOutcome(
            valid=bool(data.get("valid")) and not errors,
            errors=errors,
            version_id=data.get("versionId"),
        )
        self.logger.info(f"Semantic validation: valid={outcome.valid}, errors={len(outcome.errors)}")
        return outcome


# ----------------------------------------------------------------------
# Generative repairer
# ----------------------------------------------------------------------


class GenerativeRepairer(ABC):
    """Proposes a corrected document for a set of errors."""

    @abstractmethod
    async def propose(
        self,
        document_text: str,
        errors: Sequence[ExternalError],
        hints: str = "",
        iteration: int = 1,
    ) -> RepairProposal:
        """Return a proposal. Any exception is treated as a failed attempt."""

    async def close(self) -> None:
        """Release network resources."""


REPAIR_SYSTEM_PROMPT = """You repair conversational flow documents.

The document is CSV with exactly 26 columns per row and this header:
{header}

Rules:
- Fix only the listed errors; keep every other row byte-for-byte identical.
- Never add or remove rows unless an error requires it.
- Every row must keep exactly 26 columns; quote cells containing commas.
- Decision rows use Next Nodes / Rich Asset columns, Action rows use Command / What Next? columns.

Answer with a JSON object:
{{"csv": "<full corrected document>", "fixesMade": ["..."], "stillBroken": ["..."]}}"""


def build_repair_messages(
    document_text: str, errors: Sequence[ExternalError], hints: str = "", iteration: int = 1
) -> List[LLMMessage]:
    error_lines = "\n".join(f"- {error.describe()}" for error in errors)
    user = f"Iteration {iteration}. Validation errors:\n{error_lines}\n"
    if hints:
        user += f"\n{hints}\n"
    user += f"\nDocument:\n{document_text}"
    return [
        LLMMessage(role="system", content=REPAIR_SYSTEM_PROMPT.format(header=HEADER_LINE)),
        LLMMessage(role="user", content=user),
    ]


def parse_repair_response(content: str) -> RepairProposal:
    """Read the repairer's JSON answer; bare CSV is accepted as well."""
    recovered = recover_json(content)
    if recovered.success and isinstance(recovered.value, dict) and isinstance(recovered.value.get("csv"), str):
        value = recovered.value
        return RepairProposal(
            csv=value["csv"],
            fixes_made=[str(item) for item in value.get("fixesMade") or []],
            still_broken=[str(item) for item in value.get("stillBroken") or []],
        )
    text = content.strip()
    if text.startswith("```"):
        text = text.strip("`")
        text = text.split("\n", 1)[1] if "\n" in text else ""
    if "," in text and "\n" in text:
        return RepairProposal(csv=text.strip())
    raise ValueError("Repairer response contains no document")


class LLMRepairer(GenerativeRepairer):
    """Generative repairer backed by a chat-completion model."""

    def __init__(self, client: BaseLLMClient, temperature: float = 0.1):
        self.client = client
        self.temperature = temperature
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def propose(
        self,
        document_text: str,
        errors: Sequence[ExternalError],
        hints: str = "",
        iteration: int = 1,
    ) -> RepairProposal:
        messages = build_repair_messages(document_text, errors, hints, iteration)
        try:
            response = await self.client.call(messages, temperature=self.temperature, json_mode=True)
        except LLMStatusError as e:
            if e.status == 401:
                raise AuthenticationError("LLM provider rejected the API key", status=401) from e
            raise ExternalServiceError(str(e), status=e.status) from e
        except (asyncio.TimeoutError, aiohttp.ClientError) as e:
            raise ExternalServiceError(f"LLM call failed: {e}") from e
        proposal = parse_repair_response(response.content)
        self.logger.info(f"Repairer proposed {len(proposal.fixes_made)} fixes")
        return proposal

    async def close(self) -> None:
        await self.client.close_session()


class HttpRepairer(GenerativeRepairer):
    """Generative repairer exposed as an HTTP endpoint.

    Request body: ``{"csv", "validationErrors", "iteration", "knownFixesContext"}``.
    """

    def __init__(self, url: str, timeout: float = 120.0):
        self.url = url
        self.timeout = timeout
        self.session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
        return self.session

    async def close(self) -> None:
        if self.session and not self.session.closed:
            await self.session.close()

    async def propose(
        self,
        document_text: str,
        errors: Sequence[ExternalError],
        hints: str = "",
        iteration: int = 1,
    ) -> RepairProposal:
        payload = {
            "csv": document_text,
            "validationErrors": [error.model_dump() for error in errors],
            "iteration": iteration,
            "knownFixesContext": hints,
        }
        try:
            session = await self._get_session()
            async with session.post(self.url, json=payload) as response:
                if response.status != 200:
                    raise ExternalServiceError(f"Refinement failed: {response.status}", response.status)
                data = await response.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise ExternalServiceError("Timeout calling repairer") from e
        except aiohttp.ClientError as e:
            raise ExternalServiceError(f"Repairer unreachable: {e}") from e
        return RepairProposal(
            csv=str(data.get("csv") or ""),
            fixes_made=list(data.get("fixesMade") or []),
            still_broken=list(data.get("stillBroken") or []),
        )


# ----------------------------------------------------------------------
# Error-learning store
# ----------------------------------------------------------------------


def format_known_fixes(hints: Sequence[FixHint]) -> str:
    """Prompt section with the most reliable fix per error type."""
    if not hints:
        return ""
    best: Dict[str, FixHint] = {}
    for hint in hints:
        current = best.get(hint.error_type)
        if current is None or hint.confidence > current.confidence:
            best[hint.error_type] = hint
    lines = [
        f"- For {error_type} errors: {hint.description} ({round(hint.confidence * 100)}% success rate)"
        for error_type, hint in best.items()
    ]
    return "PROVEN FIXES (apply these first):\n" + "\n".join(lines)


class ErrorLearningStore:
    """
    Records error patterns and fix outcomes.

    Always keeps an in-memory record for the process; when ``base_url`` is
    set the same calls are mirrored to the remote store. Nothing here
    raises to the caller.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: float = 10.0,
        min_confidence: float = 0.5,
        backoff: Optional[FailureBackoff] = None,
    ):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.token = token
        self.timeout = timeout
        self.min_confidence = min_confidence
        self.backoff = backoff or FailureBackoff()
        self.session: Optional[aiohttp.ClientSession] = None
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

        self.patterns: Dict[str, Dict[str, Any]] = {}
        # signature -> description -> [applied, succeeded]
        self.fix_stats: Dict[str, Dict[str, List[int]]] = defaultdict(dict)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
        return self.session

    async def close(self) -> None:
        if self.session and not self.session.closed:
            await self.session.close()

    async def _post(self, path: str, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if not self.base_url or not self.backoff.should_attempt():
            return None
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        try:
            session = await self._get_session()
            async with session.post(f"{self.base_url}/{path}", json=payload, headers=headers) as response:
                if response.status != 200:
                    raise ExternalServiceError(f"Learning store error: {response.status}", response.status)
                data = await response.json(content_type=None)
        except (ExternalServiceError, aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            self.backoff.record_failure("learning store")
            self.logger.warning(f"Learning store call {path} failed: {e}")
            return None
        self.backoff.record_success()
        return data if isinstance(data, dict) else None

    async def log_pattern(self, error: ExternalError, document_snapshot: str = "") -> str:
        """Record an occurrence of ``error``; returns its pattern id."""
        signature = normalize_error(error)
        pattern = self.patterns.setdefault(
            signature,
            {
                "error_signature": signature,
                "error_type": categorize_error(error),
                "field_name": error.field,
                "error_description": error.message,
                "occurrence_count": 0,
            },
        )
        pattern["occurrence_count"] += 1

        node_context = _node_context(document_snapshot, error.node_id)
        data = await self._post(
            "patterns",
            {
                "error_signature": signature,
                "error_type": pattern["error_type"],
                "field_name": error.field or None,
                "error_description": error.message,
                "node_context": node_context,
            },
        )
        if data and data.get("pattern_id"):
            pattern["remote_id"] = str(data["pattern_id"])
        return pattern.get("remote_id", signature)

    async def log_fix_attempt(self, pattern_id: str, fix_description: str, succeeded: bool) -> None:
        signature = next(
            (sig for sig, p in self.patterns.items() if p.get("remote_id") == pattern_id),
            pattern_id,
        )
        stats = self.fix_stats[signature].setdefault(fix_description, [0, 0])
        stats[0] += 1
        if succeeded:
            stats[1] += 1
        await self._post(
            "fixes",
            {"error_pattern_id": pattern_id, "fix_description": fix_description, "success": succeeded},
        )

    async def get_known_fixes(self, errors: Sequence[ExternalError]) -> List[FixHint]:
        """Fixes with at least ``min_confidence`` success rate for these errors."""
        signatures = sorted({normalize_error(error) for error in errors})
        hints: List[FixHint] = []
        for signature in signatures:
            pattern = self.patterns.get(signature, {})
            for description, (applied, succeeded) in self.fix_stats.get(signature, {}).items():
                confidence = succeeded / applied if applied else 0.0
                if confidence >= self.min_confidence:
                    hints.append(
                        FixHint(
                            signature=signature,
                            error_type=pattern.get("error_type", "unknown"),
                            field_name=pattern.get("field_name", ""),
                            description=description,
                            confidence=confidence,
                            applied_count=applied,
                        )
                    )
        if signatures:
            data = await self._post("query-fixes", {"error_signatures": signatures})
            for fix in (data or {}).get("fixes") or []:
                if not isinstance(fix, dict):
                    continue
                pattern = fix.get("error_patterns") or {}
                hints.append(
                    FixHint(
                        signature=str(pattern.get("error_signature") or ""),
                        error_type=str(pattern.get("error_type") or "unknown"),
                        field_name=str(pattern.get("field_name") or ""),
                        description=str(fix.get("fix_description") or ""),
                        confidence=_confidence(fix.get("confidence_score")),
                        applied_count=int(fix.get("applied_count") or 0),
                    )
                )
        return hints


def _confidence(value: Any) -> float:
    """Remote scores come as fractions or percentages."""
    try:
        score = float(value or 0.0)
    except (TypeError, ValueError):
        return 0.0
    if score > 1.0:
        score /= 100.0
    return min(max(score, 0.0), 1.0)


def _node_context(document_text: str, node_id: Optional[int]) -> Optional[Dict[str, str]]:
    if not document_text or node_id is None:
        return None
    for row in parse(document_text):
        if row.cell(0).strip() == str(node_id):
            return {name: value for name, value in zip(COLUMNS, row.fields) if value.strip()}
    return None
