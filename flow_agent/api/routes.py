"""
FastAPI REST endpoints for flow documents.

Provides:
- Structural validation with diagnostics
- Deterministic repair with a fix log
- Segment assembly with id remapping
- The full refinement loop against the semantic validator
"""

from typing import Dict, List, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from flow_agent.agent.collaborators import ErrorLearningStore, HttpSemanticValidator, LLMRepairer
from flow_agent.agent.config import RefinementConfig, ServiceConfig
from flow_agent.agent.error_handler import AuthenticationError, ExternalServiceError
from flow_agent.agent.orchestrator import RefinementOrchestrator
from flow_agent.core.llm_client import LLMClientFactory
from flow_agent.stages.codec import serialize_document
from flow_agent.tools.allocator import NodeAllocator
from flow_agent.tools.repair import RepairEngine
from flow_agent.tools.validation import StructuralValidator

# ===========================
# Request/Response Models
# ===========================


class DocumentRequest(BaseModel):
    """A flow document, optionally a single segment."""

    csv: str = Field(..., min_length=1, description="Flow document text")
    segment: bool = Field(default=False, description="Skip system-node checks")


class RepairResponse(BaseModel):
    csv: str
    fix_log: List[str] = Field(default_factory=list)
    passes: int = 0
    remaining: List[dict] = Field(default_factory=list)


class RemapRequest(BaseModel):
    segments: List[str] = Field(..., min_length=1, description="Segment texts in flow-index order")


class RemapResponse(BaseModel):
    csv: str
    mappings: Dict[int, Dict[int, int]] = Field(default_factory=dict)
    warnings: List[str] = Field(default_factory=list)


class RefineRequest(BaseModel):
    csv: str = Field(..., min_length=1, description="Flow document text")
    validator_url: Optional[str] = Field(default=None, description="Overrides FLOW_VALIDATOR_URL")
    token: Optional[str] = Field(default=None, description="Validator session token")
    bot_id: Optional[str] = Field(default=None, description="Bot identifier sent to the validator")
    use_ai: bool = Field(default=True, description="Call the generative repairer")
    max_iterations: Optional[int] = Field(default=None, ge=1, le=20)


# ===========================
# Router
# ===========================

router = APIRouter(prefix="/api/v1/flows", tags=["flows"])


def build_orchestrator(request: RefineRequest) -> RefinementOrchestrator:
    """Create an orchestrator wired to the configured collaborators."""
    services = ServiceConfig.from_env()
    config = RefinementConfig.from_env()
    if request.max_iterations is not None:
        config.max_iterations = request.max_iterations

    validator_url = request.validator_url or services.validator_url
    if not validator_url:
        raise HTTPException(status_code=400, detail="No semantic validator URL configured")

    validator = HttpSemanticValidator(
        validator_url,
        token=request.token or services.validator_token,
        bot_id=request.bot_id,
        timeout=config.validator_timeout,
    )
    repairer = LLMRepairer(LLMClientFactory.create(services.llm_config)) if request.use_ai else None
    store = ErrorLearningStore(services.learning_store_url, services.learning_store_token)
    return RefinementOrchestrator(validator, repairer, store, config)


@router.post("/validate")
async def validate_flow(request: DocumentRequest) -> dict:
    """Structural diagnostics for a document."""
    report = StructuralValidator(require_system_nodes=not request.segment).validate_text(request.csv)
    return report.to_dict()


@router.post("/repair", response_model=RepairResponse)
async def repair_flow(request: DocumentRequest) -> RepairResponse:
    """Deterministic repair until no rule applies."""
    engine = RepairEngine(StructuralValidator(require_system_nodes=not request.segment))
    result = engine.run(request.csv)
    return RepairResponse(
        csv=result.text,
        fix_log=result.fix_log,
        passes=result.passes,
        remaining=[d.to_dict() for d in result.remaining],
    )


@router.post("/remap", response_model=RemapResponse)
async def remap_segments(request: RemapRequest) -> RemapResponse:
    """Assemble segments, renumbering colliding ids."""
    validator = StructuralValidator(require_system_nodes=False)
    segments = [list(validator.validate_text(text).document.records) for text in request.segments]
    assembly = NodeAllocator().assemble_segments(segments)
    return RemapResponse(
        csv=serialize_document(assembly.document),
        mappings=assembly.mappings,
        warnings=assembly.warnings,
    )


@router.post("/refine")
async def refine_flow(request: RefineRequest) -> dict:
    """
    Run the refinement loop.

    Authentication failures map to 401, other validator failures to 502.
    """
    orchestrator = build_orchestrator(request)
    try:
        result = await orchestrator.refine(request.csv)
    except AuthenticationError as e:
        raise HTTPException(status_code=401, detail=str(e)) from e
    except ExternalServiceError as e:
        raise HTTPException(status_code=502, detail=str(e)) from e
    finally:
        await orchestrator.validator.close()
        if orchestrator.repairer is not None:
            await orchestrator.repairer.close()
        if orchestrator.learning_store is not None:
            await orchestrator.learning_store.close()
    return result.to_dict()
