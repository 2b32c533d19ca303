"""
Structural Validator

Pure function from raw rows to typed records plus diagnostics:
- column normalization and leaked-text row removal
- kind-field exclusivity
- reference graph: orphans, dead ends, unreachable nodes
- command output contract completeness
- variable scope analysis in ascending id order
- field-level checks (JSON cells, rich content shape, answer flags)

Running it twice on the same input yields identical diagnostics.
"""

import json
import logging
import re
from typing import AbstractSet, Dict, FrozenSet, List, Optional, Sequence, Set, Union

from flow_agent.models.contracts import (
    CHOICE_RICH_TYPES,
    DISABLE_INPUT_BEHAVIOR,
    ERROR_TOKEN,
    INPUT_RICH_TYPES,
    PICKER_RICH_TYPES,
    REQUIRED_NODE_IDS,
    SHARED_NODE_IDS,
    STRING_DEST_RICH_TYPES,
    SYSTEM_VARIABLES,
    TRANSFER_BEHAVIOR,
    contract_for,
)
from flow_agent.models.diagnostics import (
    Diagnostic,
    DiagnosticKind,
    ValidationLevel,
    ValidationReport,
)
from flow_agent.models.record import (
    COLUMNS,
    ActionRecord,
    Col,
    DecisionRecord,
    FlowDocument,
    MalformedRow,
    RawRow,
    Record,
    parse_node_id,
    record_from_row,
)
from flow_agent.stages import rich_content
from flow_agent.stages.codec import normalize_columns, parse
from flow_agent.tools.graph_analysis import ReferenceGraph

logger = logging.getLogger(__name__)

VARIABLE_REF_RE = re.compile(r"\{([A-Z][A-Z0-9_]*)\}")
VARIABLE_NAME_RE = re.compile(r"^[A-Z][A-Z0-9_]*$")
ASSIGN_COMMAND = "SysAssignVariable"
UPLOAD_DEFAULT_KEYS = ("type", "upload_label", "cancel_label")

# Columns scanned for {VARIABLE} references
DECISION_SCOPE_FIELDS = (("message", Col.MESSAGE), ("rich_content", Col.RICH_CONTENT))
ACTION_SCOPE_FIELDS = (("param_input", Col.PARAM_INPUT),)


def normalize_variable_name(name: str) -> str:
    """``my-var name`` -> ``MY_VAR_NAME``."""
    return re.sub(r"[\s\-]+", "_", name.strip()).upper()


def assignment_keys(param_input: str) -> List[str]:
    """Keys of the ``set`` object of a SysAssignVariable node."""
    try:
        data = json.loads(param_input)
    except (json.JSONDecodeError, TypeError):
        return []
    if not isinstance(data, dict) or not isinstance(data.get("set"), dict):
        return []
    return [str(key) for key in data["set"]]


def is_json_object(text: str) -> bool:
    try:
        return isinstance(json.loads(text), dict)
    except json.JSONDecodeError:
        return False


def destination_count(record: DecisionRecord) -> int:
    return len(record.next_node_tokens) + len(rich_content.parse_options(record.rich_content))


class StructuralValidator:
    """Validates flow rows and typed flow documents.

    Args:
        require_system_nodes: Report missing entry/system nodes. Disable for
            standalone flow segments that are assembled later; references
            from a segment to system and menu nodes then resolve.
        external_ids: Ids that resolve outside the document. Defaults to
            none for full documents and to the shared nodes for segments.
    """

    def __init__(self, require_system_nodes: bool = True, external_ids: Optional[AbstractSet[int]] = None):
        self.require_system_nodes = require_system_nodes
        self._external_ids = frozenset(external_ids) if external_ids is not None else None
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @property
    def external_ids(self) -> FrozenSet[int]:
        """Ids that resolve outside the document being validated."""
        if self._external_ids is not None:
            return self._external_ids
        return frozenset() if self.require_system_nodes else SHARED_NODE_IDS

    def validate_text(self, text: str) -> ValidationReport:
        return self.validate(parse(text))

    def validate(self, rows: Sequence[RawRow]) -> ValidationReport:
        """Type raw rows and validate the resulting document.

        Args:
            rows: Raw rows from the codec

        Returns:
            ValidationReport with typed records, dropped rows and diagnostics
        """
        entries: List[Union[Record, MalformedRow]] = []
        diagnostics: List[Diagnostic] = []

        for row in rows:
            node_id = parse_node_id(row.cell(Col.NODE_NUM))
            if node_id is None:
                entries.append(MalformedRow(row=row, reason="non-integer node number"))
                diagnostics.append(
                    Diagnostic(
                        kind=DiagnosticKind.NON_INTEGER_ID,
                        node_id=None,
                        field=COLUMNS[Col.NODE_NUM],
                        message="Row dropped: node number is not an integer",
                        payload=row.cell(Col.NODE_NUM)[:80],
                        level=ValidationLevel.WARNING,
                        line=row.line,
                    )
                )
                continue

            cells, note = normalize_columns(row.fields)
            if note:
                diagnostics.append(
                    Diagnostic(
                        kind=DiagnosticKind.COLUMN_COUNT,
                        node_id=node_id,
                        field="",
                        message=f"Row has {len(row)} columns: {note}",
                        payload=str(len(row)),
                        level=ValidationLevel.WARNING,
                        line=row.line,
                    )
                )

            node_type = cells[Col.NODE_TYPE].strip().upper()
            record = record_from_row(cells)
            if node_type not in ("D", "A"):
                diagnostics.append(
                    Diagnostic(
                        kind=DiagnosticKind.UNKNOWN_KIND,
                        node_id=node_id,
                        field=COLUMNS[Col.NODE_TYPE],
                        message=f"Unknown node type {cells[Col.NODE_TYPE]!r}, treated as {record.kind}",
                        payload=cells[Col.NODE_TYPE],
                        level=ValidationLevel.WARNING,
                        line=row.line,
                    )
                )
            entries.append(record)

        report = ValidationReport(entries=entries)
        report.diagnostics = self._sorted(diagnostics + self.check_document(report.document))

        dropped = len(report.malformed)
        if dropped:
            self.logger.info(f"Dropped {dropped} leaked text rows")
        self.logger.debug(f"Validated {len(report.records)} records: {report.counts()}")
        return report

    def validate_document(self, document: FlowDocument) -> ValidationReport:
        """Validate an already typed document."""
        report = ValidationReport(entries=list(document.records))
        report.diagnostics = self._sorted(self.check_document(document))
        return report

    def check_document(self, document: FlowDocument) -> List[Diagnostic]:
        """All document-level and record-level checks."""
        diagnostics: List[Diagnostic] = []
        diagnostics.extend(self._check_duplicates(document))
        if self.require_system_nodes:
            diagnostics.extend(self._check_system_nodes(document))
        diagnostics.extend(self._check_graph(document))
        for record in document:
            diagnostics.extend(self._check_cross_kind(record))
            diagnostics.extend(self._check_variable_format(record))
            if isinstance(record, ActionRecord):
                diagnostics.extend(self._check_action(record))
            else:
                diagnostics.extend(self._check_decision(record))
        diagnostics.extend(self._check_scope(document))
        return diagnostics

    @staticmethod
    def _sorted(diagnostics: List[Diagnostic]) -> List[Diagnostic]:
        unique = list(dict.fromkeys(diagnostics))
        return sorted(unique, key=lambda d: d.sort_key())

    # ------------------------------------------------------------------
    # Document checks
    # ------------------------------------------------------------------

    def _check_duplicates(self, document: FlowDocument) -> List[Diagnostic]:
        seen: Set[int] = set()
        found = []
        for record in document:
            if record.id in seen:
                found.append(
                    Diagnostic(
                        kind=DiagnosticKind.DUPLICATE_ID,
                        node_id=record.id,
                        field=COLUMNS[Col.NODE_NUM],
                        message=f"Node number {record.id} is used more than once",
                        payload=str(record.id),
                    )
                )
            seen.add(record.id)
        return found

    def _check_system_nodes(self, document: FlowDocument) -> List[Diagnostic]:
        present = document.id_set
        return [
            Diagnostic(
                kind=DiagnosticKind.MISSING_SYSTEM_NODE,
                node_id=node_id,
                field=COLUMNS[Col.NODE_NUM],
                message=f"Required node {node_id} is missing",
                payload=str(node_id),
            )
            for node_id in REQUIRED_NODE_IDS
            if node_id not in present
        ]

    def _check_graph(self, document: FlowDocument) -> List[Diagnostic]:
        graph = ReferenceGraph(document, self.external_ids)
        diagnostics = []
        for ref in graph.orphan_references():
            label = f" ({ref.label})" if ref.label else ""
            diagnostics.append(
                Diagnostic(
                    kind=DiagnosticKind.ORPHAN_REFERENCE,
                    node_id=ref.source,
                    field=ref.field.value,
                    message=f"Reference to missing node {ref.target}{label}",
                    payload=str(ref.target),
                )
            )
        for node_id in graph.dead_ends():
            diagnostics.append(
                Diagnostic(
                    kind=DiagnosticKind.DEAD_END,
                    node_id=node_id,
                    field=COLUMNS[Col.NEXT_NODES],
                    message="Decision node has no next nodes, choices or transfer",
                )
            )
        for node_id in graph.unreachable():
            diagnostics.append(
                Diagnostic(
                    kind=DiagnosticKind.UNREACHABLE,
                    node_id=node_id,
                    field=COLUMNS[Col.NODE_NUM],
                    message="Node is not reachable from any entry point",
                    level=ValidationLevel.INFO,
                )
            )
        return diagnostics

    # ------------------------------------------------------------------
    # Record checks
    # ------------------------------------------------------------------

    def _check_cross_kind(self, record: Record) -> List[Diagnostic]:
        return [
            Diagnostic(
                kind=DiagnosticKind.CROSS_KIND_FIELD,
                node_id=record.id,
                field=column,
                message=f"{column} is not used by {'Decision' if record.kind == 'D' else 'Action'} nodes",
                payload=value[:80],
            )
            for column, value in sorted(record.stray.items())
        ]

    def _check_variable_format(self, record: Record) -> List[Diagnostic]:
        return [
            Diagnostic(
                kind=DiagnosticKind.VARIABLE_FORMAT,
                node_id=record.id,
                field=COLUMNS[Col.VARIABLE],
                message=f"Variable {name!r} must be UPPER_SNAKE_CASE",
                payload=name,
            )
            for name in record.variable_names
            if not VARIABLE_NAME_RE.match(name)
        ]

    def _check_action(self, record: ActionRecord) -> List[Diagnostic]:
        diagnostics = []

        def add(kind: DiagnosticKind, col: Col, message: str, payload: str = "") -> None:
            diagnostics.append(
                Diagnostic(kind=kind, node_id=record.id, field=COLUMNS[col], message=message, payload=payload)
            )

        command = record.command.strip()
        if not command:
            add(DiagnosticKind.EMPTY_COMMAND, Col.COMMAND, "Action node has no command")
        if not record.decision_var.strip():
            add(DiagnosticKind.MISSING_DECISION_VAR, Col.DEC_VAR, "Action node has no decision variable")

        contract = contract_for(command)
        tokens = {token.lower() for token in record.route_tokens}
        if ERROR_TOKEN not in tokens and (not contract or ERROR_TOKEN in contract):
            add(DiagnosticKind.MISSING_ERROR_PATH, Col.WHAT_NEXT, "What Next? has no error route")
        for value in contract:
            if value != ERROR_TOKEN and value not in tokens:
                add(
                    DiagnosticKind.ROUTING_GAP,
                    Col.WHAT_NEXT,
                    f"{command} can return {value!r} but What Next? does not route it",
                    value,
                )

        if record.param_input.strip() and not is_json_object(record.param_input):
            add(DiagnosticKind.INVALID_JSON, Col.PARAM_INPUT, "Parameter Input is not a JSON object", record.param_input[:80])

        if command == ASSIGN_COMMAND:
            declared = {normalize_variable_name(name) for name in record.variable_names}
            for key in assignment_keys(record.param_input):
                if normalize_variable_name(key) not in declared:
                    add(
                        DiagnosticKind.UNDECLARED_ASSIGNMENT,
                        Col.VARIABLE,
                        f"Assigned variable {key!r} is not declared",
                        key,
                    )
        return diagnostics

    def _check_decision(self, record: DecisionRecord) -> List[Diagnostic]:
        diagnostics = []

        def add(kind: DiagnosticKind, col: Col, message: str, payload: str = "") -> None:
            diagnostics.append(
                Diagnostic(kind=kind, node_id=record.id, field=COLUMNS[col], message=message, payload=payload)
            )

        rich_type = record.rich_type.strip().lower()
        content = record.rich_content.strip()

        if record.is_nlu_disabled and destination_count(record) > 1:
            add(DiagnosticKind.NLU_MULTI_CHILD, Col.NLU_DISABLED, "NLU Disabled is set on a node with several children")
        if record.has_behavior(TRANSFER_BEHAVIOR) and record.next_node_tokens:
            add(DiagnosticKind.TRANSFER_WITH_NEXT, Col.NEXT_NODES, "Agent transfer node must not have next nodes")

        if content and rich_content.is_json_content(content) and not is_json_object(content):
            add(DiagnosticKind.INVALID_JSON, Col.RICH_CONTENT, "Rich Asset Content is not valid JSON", content[:80])

        if rich_type == "buttons" and rich_content.is_pipe_content(content):
            add(DiagnosticKind.RICH_FORMAT_MISMATCH, Col.RICH_TYPE, "'buttons' expects JSON content", rich_type)
        elif rich_type == "button" and rich_content.is_json_content(content):
            add(DiagnosticKind.RICH_FORMAT_MISMATCH, Col.RICH_TYPE, "'button' expects pipe content", rich_type)

        if rich_content.needs_separator_fix(content):
            add(DiagnosticKind.BUTTON_SEPARATOR, Col.RICH_CONTENT, "Button options are missing a | separator", content[:80])

        if rich_type in CHOICE_RICH_TYPES and rich_content.is_json_content(content):
            wrong = rich_content.wrong_dest_types(content, rich_type in STRING_DEST_RICH_TYPES)
            for label in wrong:
                add(DiagnosticKind.DESTINATION_TYPE, Col.RICH_CONTENT, f"Destination type is wrong for {label!r}", label)

        if rich_type in INPUT_RICH_TYPES and (
            not record.requires_answer or not record.has_behavior(DISABLE_INPUT_BEHAVIOR)
        ):
            add(DiagnosticKind.ANSWER_REQUIRED, Col.ANS_REQ, f"{rich_type} needs Answer Required and disable_input", rich_type)

        if rich_type in PICKER_RICH_TYPES and (
            not rich_content.is_picker_content(content) or record.message.strip()
        ):
            add(DiagnosticKind.PICKER_FORMAT, Col.RICH_CONTENT, f"{rich_type} content must be a static message object", rich_type)

        if rich_type == "file_upload":
            data = rich_content.load_json(content) if content else None
            missing = [key for key in UPLOAD_DEFAULT_KEYS if not data or key not in data]
            if missing:
                add(DiagnosticKind.UPLOAD_DEFAULTS, Col.RICH_CONTENT, f"file_upload content lacks {', '.join(missing)}", ",".join(missing))
        return diagnostics

    # ------------------------------------------------------------------
    # Variable scope
    # ------------------------------------------------------------------

    def _check_scope(self, document: FlowDocument) -> List[Diagnostic]:
        available: Set[str] = set(SYSTEM_VARIABLES)
        diagnostics = []
        for record in sorted(document.records, key=lambda r: r.id):
            available |= {normalize_variable_name(name) for name in record.variable_names}
            local: Set[str] = set()
            if isinstance(record, ActionRecord):
                local = {normalize_variable_name(name) for name in record.node_input_bindings}
                fields = ACTION_SCOPE_FIELDS
            else:
                fields = DECISION_SCOPE_FIELDS
            for attr, col in fields:
                for name in dict.fromkeys(VARIABLE_REF_RE.findall(getattr(record, attr))):
                    if name not in available and name not in local:
                        diagnostics.append(
                            Diagnostic(
                                kind=DiagnosticKind.UNBOUND_VARIABLE,
                                node_id=record.id,
                                field=COLUMNS[col],
                                message=f"{{{name}}} is used before it is declared",
                                payload=name,
                            )
                        )
        return diagnostics


def validate_text(text: str, require_system_nodes: bool = True) -> ValidationReport:
    return StructuralValidator(require_system_nodes=require_system_nodes).validate_text(text)


def diagnostics_by_node(diagnostics: Sequence[Diagnostic]) -> Dict[Optional[int], List[Diagnostic]]:
    grouped: Dict[Optional[int], List[Diagnostic]] = {}
    for diagnostic in diagnostics:
        grouped.setdefault(diagnostic.node_id, []).append(diagnostic)
    return grouped
