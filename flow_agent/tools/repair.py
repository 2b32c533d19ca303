"""
Repair Engine

Deterministic repairs for structural validator diagnostics.

Each diagnostic kind maps to exactly one rule. Rules:
- are safe defaults that keep user-authored content where possible
- log every change to the fix log, with the removed text when content is dropped
- re-check their condition before acting, so they are idempotent

``RepairEngine.run`` alternates validation and repair until no rule fires,
which is the sanitize pass used before every external validation call.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import AbstractSet, Callable, Dict, List, Optional, Sequence, Set, Union

from flow_agent.core.observability import Timer
from flow_agent.models.contracts import (
    AGENT_TRANSFER_ID,
    DISABLE_INPUT_BEHAVIOR,
    ENTRY_NODE_ID,
    ENTRY_NODE_TEMPLATE,
    ERROR_TOKEN,
    GENERIC_ERROR_ID,
    MAIN_MENU_ID,
    RETURN_MENU_ID,
    STRING_DEST_RICH_TYPES,
    SYSTEM_NODE_TEMPLATES,
    TRANSFER_BEHAVIOR,
)
from flow_agent.models.diagnostics import Diagnostic, DiagnosticKind, ValidationReport
from flow_agent.models.record import (
    COLUMNS,
    ActionRecord,
    DecisionRecord,
    FlowDocument,
    RawRow,
    Record,
    clear_stray,
    format_route_pairs,
    parse_int,
    parse_route_pairs,
)
from flow_agent.stages import rich_content
from flow_agent.stages.codec import parse, serialize_document
from flow_agent.stages.json_recovery import dumps, recover_json
from flow_agent.tools.allocator import NodeAllocator
from flow_agent.tools.graph_analysis import is_dead_end, retarget_record
from flow_agent.tools.validation import (
    StructuralValidator,
    assignment_keys,
    diagnostics_by_node,
    normalize_variable_name,
)

logger = logging.getLogger(__name__)

PLACEHOLDER_ASSIGNMENT = '{"set":{"PLACEHOLDER":"true"}}'
DEFAULT_DECISION_VAR = "success"
UPLOAD_DEFAULTS = {"type": "action_node", "upload_label": "Upload", "cancel_label": "Cancel"}
PICKER_PROMPTS = {"datepicker": "Select a date", "timepicker": "Select a time"}


@dataclass
class RepairResult:
    """Repaired document plus the fix log."""

    document: FlowDocument
    fix_log: List[str] = field(default_factory=list)
    passes: int = 0
    remaining: List[Diagnostic] = field(default_factory=list)

    @property
    def text(self) -> str:
        return serialize_document(self.document)

    @property
    def changed(self) -> bool:
        return bool(self.fix_log)


@dataclass
class RepairContext:
    """Document-wide facts a record rule may need."""

    ids: Set[int]
    records: Dict[int, Record]
    return_menu_id: int = RETURN_MENU_ID
    generic_error_id: int = GENERIC_ERROR_ID
    external_ids: AbstractSet[int] = frozenset()

    def resolves(self, node_id: int) -> bool:
        return node_id in self.ids or node_id in self.external_ids

    def menu_target(self) -> int:
        for candidate in (self.return_menu_id, MAIN_MENU_ID, ENTRY_NODE_ID):
            if self.resolves(candidate):
                return candidate
        return self.return_menu_id

    def orphan_fallback(self, source: int) -> int:
        """Return-to-menu node, else the numerically nearest node, else the error node."""
        if self.resolves(self.return_menu_id) and self.return_menu_id != source:
            return self.return_menu_id
        candidates = [node_id for node_id in self.ids if node_id != source]
        if candidates:
            return nearest(candidates, source)
        return self.generic_error_id


def nearest(candidates: Sequence[int], target: int) -> int:
    """Closest id to ``target``; ties go to the lower id."""
    return min(candidates, key=lambda node_id: (abs(node_id - target), node_id))


RecordRule = Callable[[Record, Diagnostic, RepairContext], Optional[Record]]


class RepairEngine:
    """
    Applies one deterministic rule per diagnostic kind.

    Document-level rules (missing system nodes, duplicate ids) run first,
    then record rules in a fixed order, so the same input always yields the
    same output and fix log.
    """

    def __init__(
        self,
        validator: Optional[StructuralValidator] = None,
        allocator: Optional[NodeAllocator] = None,
        return_menu_id: int = RETURN_MENU_ID,
        generic_error_id: int = GENERIC_ERROR_ID,
        max_passes: int = 4,
    ):
        self.validator = validator or StructuralValidator()
        self.allocator = allocator or NodeAllocator()
        self.return_menu_id = return_menu_id
        self.generic_error_id = generic_error_id
        self.max_passes = max_passes
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

        self.record_rules: Dict[DiagnosticKind, RecordRule] = {
            DiagnosticKind.CROSS_KIND_FIELD: self._fix_cross_kind,
            DiagnosticKind.VARIABLE_FORMAT: self._fix_variable_format,
            DiagnosticKind.EMPTY_COMMAND: self._fix_empty_command,
            DiagnosticKind.MISSING_DECISION_VAR: self._fix_decision_var,
            DiagnosticKind.MISSING_ERROR_PATH: self._fix_error_path,
            DiagnosticKind.ROUTING_GAP: self._fix_routing_gap,
            DiagnosticKind.INVALID_JSON: self._fix_invalid_json,
            DiagnosticKind.UNDECLARED_ASSIGNMENT: self._fix_undeclared_assignment,
            DiagnosticKind.RICH_FORMAT_MISMATCH: self._fix_rich_format,
            DiagnosticKind.BUTTON_SEPARATOR: self._fix_button_separator,
            DiagnosticKind.DESTINATION_TYPE: self._fix_destination_type,
            DiagnosticKind.ANSWER_REQUIRED: self._fix_answer_required,
            DiagnosticKind.PICKER_FORMAT: self._fix_picker_format,
            DiagnosticKind.UPLOAD_DEFAULTS: self._fix_upload_defaults,
            DiagnosticKind.NLU_MULTI_CHILD: self._fix_nlu_multi_child,
            DiagnosticKind.TRANSFER_WITH_NEXT: self._fix_transfer_with_next,
            DiagnosticKind.UNBOUND_VARIABLE: self._fix_unbound_variable,
            DiagnosticKind.DEAD_END: self._fix_dead_end,
            DiagnosticKind.ORPHAN_REFERENCE: self._fix_orphan,
        }
        self.rule_order = list(self.record_rules)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def repair(self, document: FlowDocument, diagnostics: Sequence[Diagnostic]) -> RepairResult:
        """Apply the rule for every diagnostic once.

        Args:
            document: Typed records
            diagnostics: Diagnostics for ``document``

        Returns:
            RepairResult with the new document and what was changed
        """
        fix_log: List[str] = []

        for diagnostic in diagnostics:
            if diagnostic.kind in (DiagnosticKind.COLUMN_COUNT, DiagnosticKind.UNKNOWN_KIND):
                fix_log.append(f"Node {diagnostic.node_id}: {diagnostic.message}")
            elif diagnostic.kind == DiagnosticKind.NON_INTEGER_ID:
                fix_log.append(f"Line {diagnostic.line}: dropped leaked text row {diagnostic.payload!r}")

        kinds = {diagnostic.kind for diagnostic in diagnostics}
        if DiagnosticKind.MISSING_SYSTEM_NODE in kinds:
            document = self._add_system_nodes(document, diagnostics, fix_log)
        if DiagnosticKind.DUPLICATE_ID in kinds:
            document, log = self.allocator.resolve_duplicates(document)
            fix_log.extend(log)

        context = RepairContext(
            ids=document.id_set,
            records=document.by_id(),
            return_menu_id=self.return_menu_id,
            generic_error_id=self.generic_error_id,
            external_ids=self.validator.external_ids,
        )
        grouped = diagnostics_by_node(
            [d for d in diagnostics if d.kind in self.record_rules]
        )
        order = {kind: index for index, kind in enumerate(self.rule_order)}

        records: List[Record] = []
        done: Set[int] = set()
        for record in document:
            node_diagnostics = grouped.get(record.id, [])
            if not node_diagnostics or record.id in done:
                records.append(record)
                continue
            done.add(record.id)
            for diagnostic in sorted(node_diagnostics, key=lambda d: (order[d.kind], d.payload)):
                updated = self.record_rules[diagnostic.kind](record, diagnostic, context)
                if updated is not None and updated != record:
                    fix_log.append(self._describe(record.id, diagnostic, record, updated))
                    record = updated
            records.append(record)

        return RepairResult(document=document.with_records(records), fix_log=fix_log, passes=1)

    def run(self, source: Union[str, Sequence[RawRow], FlowDocument]) -> RepairResult:
        """Validate and repair until no rule changes the document.

        Args:
            source: Flow text, raw rows or a typed document

        Returns:
            RepairResult with the remaining diagnostics of the final document
        """
        if isinstance(source, str):
            report = self.validator.validate(parse(source))
        elif isinstance(source, FlowDocument):
            report = self.validator.validate_document(source)
        else:
            report = self.validator.validate(source)

        document = report.document
        fix_log: List[str] = []
        passes = 0
        while passes < self.max_passes:
            actionable = self._actionable(report)
            if not actionable:
                break
            passes += 1
            result = self.repair(document, report.diagnostics)
            fix_log.extend(result.fix_log)
            if result.document == document:
                break
            document = result.document
            report = self.validator.validate_document(document)

        if fix_log:
            self.logger.info(f"Repair finished after {passes} passes with {len(fix_log)} fixes")
        return RepairResult(document=document, fix_log=fix_log, passes=passes, remaining=report.diagnostics)

    def sanitize(self, text: str) -> RepairResult:
        """Cheap deterministic pass run before every external validation."""
        with Timer("sanitize"):
            return self.run(text)

    def _actionable(self, report: ValidationReport) -> List[Diagnostic]:
        return [d for d in report.diagnostics if d.kind not in (DiagnosticKind.UNREACHABLE,)]

    @staticmethod
    def _describe(node_id: int, diagnostic: Diagnostic, before: Record, after: Record) -> str:
        changes = []
        before_row, after_row = before.to_row(), after.to_row()
        for column, old, new in zip(COLUMNS, before_row, after_row):
            if old != new:
                changes.append(f"{column}: {_clip(old)!r} -> {_clip(new)!r}")
        return f"Node {node_id}: fixed {diagnostic.kind.value} ({'; '.join(changes)})"

    # ------------------------------------------------------------------
    # Document rules
    # ------------------------------------------------------------------

    def _add_system_nodes(
        self, document: FlowDocument, diagnostics: Sequence[Diagnostic], fix_log: List[str]
    ) -> FlowDocument:
        records = list(document.records)
        present = document.id_set
        for diagnostic in diagnostics:
            if diagnostic.kind != DiagnosticKind.MISSING_SYSTEM_NODE or diagnostic.node_id in present:
                continue
            template = (
                ENTRY_NODE_TEMPLATE
                if diagnostic.node_id == ENTRY_NODE_ID
                else SYSTEM_NODE_TEMPLATES.get(diagnostic.node_id)
            )
            if template is None:
                continue
            records.append(template)
            present.add(template.id)
            fix_log.append(f"Node {template.id}: added missing {template.name} node")
        return document.with_records(records)

    # ------------------------------------------------------------------
    # Record rules
    # ------------------------------------------------------------------

    def _fix_cross_kind(self, record: Record, diagnostic: Diagnostic, context: RepairContext) -> Optional[Record]:
        if not record.stray:
            return None
        return clear_stray(record)

    def _fix_variable_format(self, record: Record, diagnostic: Diagnostic, context: RepairContext) -> Optional[Record]:
        names = [normalize_variable_name(name) for name in record.variable_names]
        value = ",".join(dict.fromkeys(names))
        if value == record.variable:
            return None
        return record.model_copy(update={"variable": value})

    def _fix_empty_command(self, record: Record, diagnostic: Diagnostic, context: RepairContext) -> Optional[Record]:
        if not isinstance(record, ActionRecord) or record.command.strip():
            return None
        tokens = [token.lower() for token in record.route_tokens]
        what_next = record.what_next
        if "true" not in tokens:
            first = _first_route(record)
            dest = first if first is not None else context.menu_target()
            what_next = f"true~{dest}|{ERROR_TOKEN}~{context.generic_error_id}"
        return record.model_copy(
            update={
                "command": "SysAssignVariable",
                "param_input": PLACEHOLDER_ASSIGNMENT,
                "decision_var": record.decision_var or DEFAULT_DECISION_VAR,
                "output": record.output or DEFAULT_DECISION_VAR,
                "what_next": what_next,
                "variable": _add_variable(record.variable, "PLACEHOLDER"),
            }
        )

    def _fix_decision_var(self, record: Record, diagnostic: Diagnostic, context: RepairContext) -> Optional[Record]:
        if not isinstance(record, ActionRecord) or record.decision_var.strip():
            return None
        return record.model_copy(update={"decision_var": DEFAULT_DECISION_VAR})

    def _fix_error_path(self, record: Record, diagnostic: Diagnostic, context: RepairContext) -> Optional[Record]:
        if not isinstance(record, ActionRecord):
            return None
        if ERROR_TOKEN in [token.lower() for token in record.route_tokens]:
            return None
        what_next = _append_route(record.what_next, ERROR_TOKEN, context.generic_error_id)
        return record.model_copy(update={"what_next": what_next})

    def _fix_routing_gap(self, record: Record, diagnostic: Diagnostic, context: RepairContext) -> Optional[Record]:
        if not isinstance(record, ActionRecord):
            return None
        value = diagnostic.payload
        if value in [token.lower() for token in record.route_tokens]:
            return None
        first = _first_route(record)
        dest = first if first is not None else context.generic_error_id
        return record.model_copy(update={"what_next": _append_route(record.what_next, value, dest)})

    def _fix_invalid_json(self, record: Record, diagnostic: Diagnostic, context: RepairContext) -> Optional[Record]:
        attr = "param_input" if isinstance(record, ActionRecord) else "rich_content"
        current = getattr(record, attr)
        result = recover_json(current)
        if not result.success or result.text == current:
            logger.debug(f"Node {record.id}: {attr} could not be recovered: {result.error}")
            return None
        return record.model_copy(update={attr: result.text})

    def _fix_undeclared_assignment(
        self, record: Record, diagnostic: Diagnostic, context: RepairContext
    ) -> Optional[Record]:
        if not isinstance(record, ActionRecord):
            return None
        variable = record.variable
        for key in assignment_keys(record.param_input):
            variable = _add_variable(variable, normalize_variable_name(key))
        if variable == record.variable:
            return None
        return record.model_copy(update={"variable": variable})

    def _fix_rich_format(self, record: Record, diagnostic: Diagnostic, context: RepairContext) -> Optional[Record]:
        if not isinstance(record, DecisionRecord):
            return None
        rich_type = record.rich_type.strip().lower()
        content = record.rich_content
        if rich_type == "buttons" and rich_content.is_pipe_content(content):
            return record.model_copy(update={"rich_type": "button"})
        if rich_type == "button" and rich_content.is_json_content(content):
            pipe = rich_content.json_to_pipe(content)
            if pipe:
                return record.model_copy(update={"rich_content": pipe})
            return record.model_copy(update={"rich_type": "buttons"})
        return None

    def _fix_button_separator(self, record: Record, diagnostic: Diagnostic, context: RepairContext) -> Optional[Record]:
        if not isinstance(record, DecisionRecord) or not rich_content.needs_separator_fix(record.rich_content):
            return None
        return record.model_copy(update={"rich_content": rich_content.fix_button_separators(record.rich_content)})

    def _fix_destination_type(self, record: Record, diagnostic: Diagnostic, context: RepairContext) -> Optional[Record]:
        if not isinstance(record, DecisionRecord):
            return None
        string_dests = record.rich_type.strip().lower() in STRING_DEST_RICH_TYPES
        fixed = rich_content.coerce_dest_types(record.rich_content, string_dests)
        if fixed == record.rich_content:
            return None
        return record.model_copy(update={"rich_content": fixed})

    def _fix_answer_required(self, record: Record, diagnostic: Diagnostic, context: RepairContext) -> Optional[Record]:
        if not isinstance(record, DecisionRecord):
            return None
        behaviors = _add_behavior(record.behaviors, DISABLE_INPUT_BEHAVIOR)
        if record.requires_answer and behaviors == record.behaviors:
            return None
        return record.model_copy(update={"answer_required": "1", "behaviors": behaviors})

    def _fix_picker_format(self, record: Record, diagnostic: Diagnostic, context: RepairContext) -> Optional[Record]:
        if not isinstance(record, DecisionRecord):
            return None
        rich_type = record.rich_type.strip().lower()
        content = record.rich_content.strip()
        data = rich_content.load_json(content) if rich_content.is_json_content(content) else None
        message = record.message.strip()
        if not message and data and isinstance(data.get("message"), str):
            message = data["message"]
        if not message and content and not rich_content.is_json_content(content):
            message = content
        fixed = rich_content.picker_content(message or PICKER_PROMPTS.get(rich_type, "Select"))
        if fixed == record.rich_content and not record.message:
            return None
        return record.model_copy(update={"rich_content": fixed, "message": ""})

    def _fix_upload_defaults(self, record: Record, diagnostic: Diagnostic, context: RepairContext) -> Optional[Record]:
        if not isinstance(record, DecisionRecord):
            return None
        data = rich_content.load_json(record.rich_content) if record.rich_content.strip() else {}
        if data is None:
            return None
        merged = {**UPLOAD_DEFAULTS, **data}
        if merged == data:
            return None
        return record.model_copy(update={"rich_content": dumps(merged)})

    def _fix_nlu_multi_child(self, record: Record, diagnostic: Diagnostic, context: RepairContext) -> Optional[Record]:
        if not isinstance(record, DecisionRecord) or not record.nlu_disabled:
            return None
        return record.model_copy(update={"nlu_disabled": ""})

    def _fix_transfer_with_next(
        self, record: Record, diagnostic: Diagnostic, context: RepairContext
    ) -> Optional[Record]:
        if not isinstance(record, DecisionRecord) or not record.has_behavior(TRANSFER_BEHAVIOR):
            return None
        if not record.next_nodes:
            return None
        return record.model_copy(update={"next_nodes": ""})

    def _fix_unbound_variable(self, record: Record, diagnostic: Diagnostic, context: RepairContext) -> Optional[Record]:
        name = diagnostic.payload
        token = "{" + name + "}"
        if isinstance(record, ActionRecord) and diagnostic.field == "Parameter Input":
            if name in {normalize_variable_name(n) for n in record.node_input_bindings}:
                return None
            source = _prior_answer_node(record.id, context)
            if source is not None:
                binding = f"{name}:{source}"
                node_input = f"{record.node_input}|{binding}" if record.node_input.strip() else binding
                return record.model_copy(update={"node_input": node_input})

        attr = {
            "Parameter Input": "param_input",
            "Message": "message",
            "Rich Asset Content": "rich_content",
        }.get(diagnostic.field)
        if attr is None or not hasattr(record, attr):
            return None
        current = getattr(record, attr)
        if token not in current:
            return None
        return record.model_copy(update={attr: current.replace(token, "")})

    def _fix_dead_end(self, record: Record, diagnostic: Diagnostic, context: RepairContext) -> Optional[Record]:
        if not is_dead_end(record):
            return None
        return record.model_copy(
            update={
                "rich_type": "button",
                "rich_content": f"Back to Menu~{context.menu_target()}|Talk to Agent~{AGENT_TRANSFER_ID}",
                "answer_required": "1",
            }
        )

    def _fix_orphan(self, record: Record, diagnostic: Diagnostic, context: RepairContext) -> Optional[Record]:
        target = parse_int(diagnostic.payload)
        if target is None or context.resolves(target):
            return None
        fallback = context.orphan_fallback(record.id)
        updated = retarget_record(record, lambda node_id: fallback if node_id == target else None)
        return None if updated is record else updated


def repair_text(text: str) -> RepairResult:
    """Sanitize flow text with default settings."""
    return RepairEngine().run(text)


def _clip(value: str, limit: int = 60) -> str:
    return value if len(value) <= limit else value[:limit] + "..."


def _first_route(record: ActionRecord) -> Optional[int]:
    """First non-error destination in What Next?."""
    for token, dest in record.route_pairs:
        target = parse_int(dest)
        if target is not None and token.lower() != ERROR_TOKEN:
            return target
    return None


def _append_route(what_next: str, token: str, dest: int) -> str:
    pairs = parse_route_pairs(what_next)
    pairs.append((token, str(dest)))
    return format_route_pairs(pairs)


def _add_variable(variable: str, name: str) -> str:
    names = [n.strip() for n in variable.split(",") if n.strip()]
    if name in names:
        return variable
    return ",".join(names + [name])


def _add_behavior(behaviors: str, behavior: str) -> str:
    names = [n.strip() for n in re.split(r"[,|]", behaviors) if n.strip()]
    if behavior in names:
        return behaviors
    return ",".join(names + [behavior])


def _prior_answer_node(node_id: int, context: RepairContext) -> Optional[int]:
    """Nearest Decision node before ``node_id`` that waits for user input."""
    candidates = [
        record.id
        for record in context.records.values()
        if isinstance(record, DecisionRecord) and record.requires_answer and record.id < node_id
    ]
    return max(candidates) if candidates else None
