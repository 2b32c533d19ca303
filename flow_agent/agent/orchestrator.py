"""
Refinement Orchestrator

Drives a flow document to acceptance by the remote semantic validator.

Each iteration:
1. Sanitizing: structural validation and deterministic repair
2. ExternalValidating: submit to the semantic validator, stop when accepted
3. Classifying: split errors into rule-fixable and the rest
4. ProgrammaticFixing: message-driven rules, then structural repair again
5. AiRefining: generative repair for what is left, minus unfixable signatures
6. Verifying: guard rails on the proposal, rule fallback for errors it missed

Stuck iterations (same signatures as the previous one) mark their
signatures unfixable and switch to rules only; a second stuck iteration
in a row ends the session.
"""

import asyncio
import inspect
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from flow_agent.agent.collaborators import (
    ErrorLearningStore,
    GenerativeRepairer,
    SemanticValidator,
    format_known_fixes,
)
from flow_agent.agent.config import RefinementConfig
from flow_agent.agent.error_handler import (
    AuthenticationError,
    ExternalServiceError,
    StuckLoopDetector,
    describe_errors,
)
from flow_agent.agent.signatures import normalize_error
from flow_agent.agent.state import (
    AIOutcome,
    IterationRecord,
    RefinementPhase,
    RefinementResult,
    RefinementSession,
)
from flow_agent.core.observability import record_metric, span
from flow_agent.models.contracts import MENU_NODE_IDS
from flow_agent.models.diagnostics import ExternalError
from flow_agent.models.record import COLUMN_COUNT, FlowDocument
from flow_agent.stages.codec import parse, serialize_document
from flow_agent.tools.allocator import NodeAllocator
from flow_agent.tools.diffing import describe_change, diff_documents, match_changes_to_errors
from flow_agent.tools.error_rules import (
    FallbackNodes,
    apply_all_error_rules,
    apply_error_rule,
    is_error_still_in_node,
)
from flow_agent.tools.repair import RepairEngine
from flow_agent.tools.validation import StructuralValidator

logger = logging.getLogger(__name__)

PhaseCallback = Callable[[RefinementPhase, int, str], Any]


@dataclass
class GuardRailVerdict:
    accepted: bool
    reason: Optional[str] = None


@dataclass
class SegmentRefinementResult:
    """Outcome of refining independently generated flow segments."""

    document_text: str
    segments: List[RefinementResult]
    mappings: Dict[int, Dict[int, int]] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return all(result.valid for result in self.segments)


def check_guard_rails(before_text: str, after_text: str, config: RefinementConfig) -> GuardRailVerdict:
    """Reject generative output that rewrote too much of the document.

    Rejected when the row count moved by more than ``row_change_ratio``
    and more than ``row_change_min`` rows, or when more than
    ``max_bad_column_rows`` rows do not have exactly 26 columns.
    """
    before_rows = len(parse(before_text))
    after = parse(after_text)
    delta = abs(len(after) - before_rows)
    if delta > before_rows * config.row_change_ratio and delta > config.row_change_min:
        return GuardRailVerdict(False, f"row count changed from {before_rows} to {len(after)}")

    bad_rows = [row for row in after if len(row) != COLUMN_COUNT]
    if len(bad_rows) > config.max_bad_column_rows:
        return GuardRailVerdict(False, f"{len(bad_rows)} rows had wrong column alignment")
    return GuardRailVerdict(True)


class RefinementOrchestrator:
    """
    Bounded validate/repair loop around the external collaborators.

    The structural stages are pure; all session state lives in a
    RefinementSession created per ``refine`` call, so one orchestrator can
    serve several sessions concurrently.
    """

    def __init__(
        self,
        validator: SemanticValidator,
        repairer: Optional[GenerativeRepairer] = None,
        learning_store: Optional[ErrorLearningStore] = None,
        config: Optional[RefinementConfig] = None,
        on_phase: Optional[PhaseCallback] = None,
    ):
        """
        Args:
            validator: Authoritative semantic validator
            repairer: Generative repairer, optional
            learning_store: Error-learning store, optional
            config: Loop bounds and guard rails
            on_phase: Progress callback, sync or async
        """
        self.validator = validator
        self.repairer = repairer
        self.learning_store = learning_store
        self.config = config or RefinementConfig()
        self.on_phase = on_phase
        self.allocator = NodeAllocator()
        self.repair_engine = RepairEngine(
            validator=StructuralValidator(),
            allocator=self.allocator,
            return_menu_id=self.config.return_menu_id,
            generic_error_id=self.config.generic_error_id,
            max_passes=self.config.max_repair_passes,
        )
        self.segment_engine = RepairEngine(
            validator=StructuralValidator(require_system_nodes=False),
            allocator=self.allocator,
            return_menu_id=self.config.return_menu_id,
            generic_error_id=self.config.generic_error_id,
            max_passes=self.config.max_repair_passes,
        )
        self.assembly_engine = RepairEngine(
            validator=StructuralValidator(external_ids=MENU_NODE_IDS),
            allocator=self.allocator,
            return_menu_id=self.config.return_menu_id,
            generic_error_id=self.config.generic_error_id,
            max_passes=self.config.max_repair_passes,
        )
        self.fallbacks = FallbackNodes(
            return_menu_id=self.config.return_menu_id,
            generic_error_id=self.config.generic_error_id,
        )
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    async def refine(self, document_text: str, segment: bool = False) -> RefinementResult:
        """
        Refine one document until accepted, stuck or out of iterations.

        Args:
            document_text: Flow document text
            segment: Document is one flow segment; system nodes are not required

        Returns:
            RefinementResult with the best document reached

        Raises:
            AuthenticationError: The validator rejected the credentials
            ExternalServiceError: The validator failed or timed out
        """
        engine = self.segment_engine if segment else self.repair_engine
        session = RefinementSession(
            session_id=str(uuid.uuid4()),
            start_time=datetime.now(),
            document_text=document_text,
        )
        detector = StuckLoopDetector(self.config.stuck_threshold)
        stopped_reason = "exhausted"

        with span("refinement.session", {"session_id": session.session_id, "segment": segment}):
            while session.iteration < self.config.max_iterations:
                session.iteration += 1
                started = time.time()
                record = IterationRecord(iteration=session.iteration)
                session.history.append(record)

                with span("refinement.iteration", {"iteration": session.iteration}):
                    accepted = await self._validate_step(session, engine, record)
                    if accepted:
                        record.duration_ms = (time.time() - started) * 1000
                        return await self._finish(session, valid=True, stopped_reason="accepted")

                    signatures = [normalize_error(error) for error in session.errors]
                    record.signatures = sorted(set(signatures))
                    detector.record(signatures)

                    if detector.should_terminate:
                        record.stuck = True
                        stopped_reason = "stuck"
                        self.logger.warning(
                            f"Session {session.session_id}: error set unchanged for "
                            f"{detector.repeats} iterations, stopping"
                        )
                        record.duration_ms = (time.time() - started) * 1000
                        break

                    aggressive = detector.is_stuck
                    if aggressive:
                        record.stuck = record.aggressive = True
                        session.unfixable.update(signatures)
                        self.logger.warning(
                            f"Session {session.session_id}: stuck on {len(set(signatures))} signatures, "
                            f"marking unfixable and switching to rule-based fixes"
                        )
                        record_metric("refinement_stuck_total", 1)

                    await self._fix_step(session, engine, record, aggressive)
                record.duration_ms = (time.time() - started) * 1000

        return await self._finish(
            session,
            valid=False,
            stopped_reason=stopped_reason,
            max_iterations_reached=stopped_reason == "exhausted",
        )

    async def refine_segments(self, segments: Sequence[str]) -> SegmentRefinementResult:
        """
        Refine flow segments concurrently, then assemble them.

        At most ``config.concurrency`` sessions run at once. Results are
        ordered by segment index before assembly, so id remapping does not
        depend on completion order. The assembled document gets the system
        nodes; links to the menu nodes are kept for the menu sequence.
        """
        semaphore = asyncio.Semaphore(self.config.concurrency)

        async def run(index: int, text: str) -> Tuple[int, RefinementResult]:
            async with semaphore:
                self.logger.info(f"Refining segment {index}")
                return index, await self.refine(text, segment=True)

        completed = await asyncio.gather(*(run(i, text) for i, text in enumerate(segments)))
        results = [result for _, result in sorted(completed, key=lambda item: item[0])]

        validator = self.segment_engine.validator
        documents = [validator.validate_text(result.document_text).document for result in results]
        assembly = self.allocator.assemble_segments([list(doc.records) for doc in documents])
        final = self.assembly_engine.run(assembly.document)
        for warning in assembly.warnings:
            self.logger.warning(warning)

        return SegmentRefinementResult(
            document_text=final.text,
            segments=results,
            mappings=assembly.mappings,
            warnings=assembly.warnings + final.fix_log,
        )

    # ------------------------------------------------------------------
    # Iteration steps
    # ------------------------------------------------------------------

    async def _validate_step(self, session: RefinementSession, engine: RepairEngine, record: IterationRecord) -> bool:
        await self._emit(session, RefinementPhase.SANITIZING, "Applying structural repairs")
        sanitized = engine.sanitize(session.document_text)
        if sanitized.fix_log:
            session.fixes_made.extend(sanitized.fix_log)
            record.programmatic_fixes.extend(sanitized.fix_log)
        session.document_text = sanitized.text

        await self._emit(
            session,
            RefinementPhase.EXTERNAL_VALIDATING,
            f"Validating (attempt {session.iteration}/{self.config.max_iterations})",
        )
        try:
            outcome = await asyncio.wait_for(
                self.validator.validate(session.document_text), timeout=self.config.validator_timeout
            )
        except asyncio.TimeoutError as e:
            raise ExternalServiceError(
                f"Semantic validator timed out after {self.config.validator_timeout}s"
            ) from e
        except AuthenticationError:
            self.logger.error(f"Session {session.session_id}: authentication failed")
            raise

        session.version_id = outcome.version_id or session.version_id
        previous_errors = session.errors
        session.errors = list(outcome.errors)
        record.error_count = len(session.errors)
        record_metric("refinement_iterations_total", 1)

        await self._settle_pending_attempts(session, accepted=outcome.valid)
        if outcome.valid:
            await self._emit(session, RefinementPhase.ACCEPTED, "Validation passed")
            return True

        self.logger.info(
            f"Session {session.session_id} iteration {session.iteration}: "
            f"{len(session.errors)} errors (previously {len(previous_errors)}): {describe_errors(session.errors)}"
        )
        pattern_ids = await asyncio.gather(
            *(
                self._best_effort("log_pattern", self._store_call("log_pattern", error, session.document_text))
                for error in session.errors
            )
        )
        for error, pattern_id in zip(session.errors, pattern_ids):
            if pattern_id:
                session.pattern_ids[normalize_error(error)] = pattern_id
        return False

    async def _fix_step(
        self,
        session: RefinementSession,
        engine: RepairEngine,
        record: IterationRecord,
        aggressive: bool,
    ) -> None:
        errors = session.errors
        await self._emit(session, RefinementPhase.CLASSIFYING, f"Classifying {len(errors)} errors")
        document = engine.validator.validate_text(session.document_text).document

        await self._emit(session, RefinementPhase.PROGRAMMATIC_FIXING, "Applying rule-based fixes")
        document, unresolved = self._apply_rules(session, document, errors, record, aggressive)
        repaired = engine.run(document)
        if repaired.fix_log:
            session.fixes_made.extend(repaired.fix_log)
            record.programmatic_fixes.extend(repaired.fix_log)
        document = repaired.document
        programmatic_text = serialize_document(document)

        candidates = [error for error in unresolved if normalize_error(error) not in session.unfixable]
        if aggressive or not candidates or self.repairer is None:
            session.document_text = programmatic_text
            return

        await self._emit(session, RefinementPhase.AI_REFINING, f"Refining {len(candidates)} errors")
        record.ai_errors_sent = len(candidates)
        proposal = await self._call_repairer(session, programmatic_text, candidates)
        if proposal is None:
            record.ai_outcome = AIOutcome.FAILED
            session.document_text = programmatic_text
            return

        await self._emit(session, RefinementPhase.VERIFYING, "Checking proposed document")
        verdict = check_guard_rails(programmatic_text, proposal.csv, self.config)
        if not verdict.accepted:
            record.ai_outcome = AIOutcome.REJECTED
            record.rejection_reason = verdict.reason
            self.logger.warning(f"Session {session.session_id}: rejected generative output, {verdict.reason}")
            session.fixes_made.append(f"REJECTED: {verdict.reason}")
            session.document_text = programmatic_text
            return

        proposed = engine.validator.validate_text(proposal.csv).document
        for error in errors:
            if is_error_still_in_node(proposed, error):
                outcome = apply_error_rule(proposed, error, self.fallbacks)
                if outcome.applied:
                    proposed = outcome.document
                    session.fixes_made.append(f"Fallback: {outcome.description}")

        diff = diff_documents(document, proposed)
        for signature, changes in match_changes_to_errors(diff.changes, candidates).items():
            pattern_id = session.pattern_ids.get(signature)
            if pattern_id:
                session.pending_attempts[signature] = (pattern_id, describe_change(changes[0]))

        record.ai_outcome = AIOutcome.ACCEPTED
        session.fixes_made.extend(proposal.fixes_made)
        session.document_text = serialize_document(proposed)
        self.logger.info(f"Session {session.session_id}: accepted generative output, {diff.summary}")

    def _apply_rules(
        self,
        session: RefinementSession,
        document: FlowDocument,
        errors: Sequence[ExternalError],
        record: IterationRecord,
        aggressive: bool,
    ) -> Tuple[FlowDocument, List[ExternalError]]:
        unresolved: List[ExternalError] = []
        apply = apply_all_error_rules if aggressive else apply_error_rule
        for error in errors:
            outcome = apply(document, error, self.fallbacks)
            if not outcome.applied:
                unresolved.append(error)
                continue
            document = outcome.document
            session.fixes_made.append(outcome.description)
            record.programmatic_fixes.append(outcome.description)
            signature = normalize_error(error)
            pattern_id = session.pattern_ids.get(signature)
            if pattern_id:
                session.pending_attempts[signature] = (pattern_id, outcome.description)
            if is_error_still_in_node(document, error):
                unresolved.append(error)
        return document, unresolved

    async def _call_repairer(self, session: RefinementSession, document_text: str, errors: List[ExternalError]):
        hints = ""
        if self.learning_store is not None and self.config.use_known_fixes:
            known = await self._best_effort("get_known_fixes", self._store_call("get_known_fixes", errors))
            hints = format_known_fixes(known or [])
        try:
            return await asyncio.wait_for(
                self.repairer.propose(document_text, errors, hints, session.iteration),
                timeout=self.config.repairer_timeout,
            )
        except asyncio.TimeoutError:
            self.logger.warning(
                f"Session {session.session_id}: repairer timed out after {self.config.repairer_timeout}s"
            )
        except Exception as e:
            self.logger.warning(f"Session {session.session_id}: repairer failed: {e}")
        record_metric("refinement_repairer_failures_total", 1)
        return None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _settle_pending_attempts(self, session: RefinementSession, accepted: bool) -> None:
        if not session.pending_attempts:
            return
        current = {normalize_error(error) for error in session.errors}
        await asyncio.gather(
            *(
                self._best_effort(
                    "log_fix_attempt",
                    self._store_call("log_fix_attempt", pattern_id, description, accepted or signature not in current),
                )
                for signature, (pattern_id, description) in session.pending_attempts.items()
            )
        )
        session.pending_attempts.clear()

    def _store_call(self, method: str, *args: Any):
        if self.learning_store is None:
            return None
        return getattr(self.learning_store, method)(*args)

    async def _best_effort(self, name: str, awaitable) -> Any:
        if awaitable is None:
            return None
        try:
            return await asyncio.wait_for(awaitable, timeout=self.config.store_timeout)
        except asyncio.TimeoutError:
            self.logger.warning(f"Learning store {name} timed out after {self.config.store_timeout}s")
            return None
        except Exception as e:
            self.logger.warning(f"Learning store {name} failed: {e}")
            return None

    async def _emit(self, session: RefinementSession, phase: RefinementPhase, message: str) -> None:
        session.phase = phase
        if self.on_phase is None:
            return
        result = self.on_phase(phase, session.iteration, message)
        if inspect.isawaitable(result):
            await result

    async def _finish(
        self,
        session: RefinementSession,
        valid: bool,
        stopped_reason: str,
        max_iterations_reached: bool = False,
    ) -> RefinementResult:
        if not valid:
            await self._emit(session, RefinementPhase.EXHAUSTED, f"Stopped: {stopped_reason}")
        record_metric("refinement_sessions_total", 1, {"valid": str(valid).lower()})
        return RefinementResult(
            document_text=session.document_text,
            valid=valid,
            iterations=session.iteration,
            max_iterations_reached=max_iterations_reached,
            fixes_made=session.fixes_made,
            remaining_errors=[] if valid else session.errors,
            version_id=session.version_id,
            unfixable_signatures=sorted(session.unfixable),
            history=session.history,
            stopped_reason=stopped_reason,
        )
