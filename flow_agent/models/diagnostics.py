"""
Diagnostics

Result types shared by the structural validator, the repair engine and the
refinement loop:
- Diagnostic: one finding from the structural validator
- ValidationReport: typed records plus diagnostics for one document
- ExternalError: one error reported by the remote semantic validator
"""

from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import BaseModel, Field

from flow_agent.models.record import FlowDocument, MalformedRow, Record


class ValidationLevel(str, Enum):
    """Diagnostic severity levels."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class DiagnosticKind(str, Enum):
    """What the validator found."""

    # Row structure
    COLUMN_COUNT = "column_count"
    NON_INTEGER_ID = "non_integer_id"
    DUPLICATE_ID = "duplicate_id"
    UNKNOWN_KIND = "unknown_kind"
    CROSS_KIND_FIELD = "cross_kind_field"

    # Graph
    ORPHAN_REFERENCE = "orphan_reference"
    DEAD_END = "dead_end"
    UNREACHABLE = "unreachable"
    MISSING_SYSTEM_NODE = "missing_system_node"

    # Action routing
    ROUTING_GAP = "routing_gap"
    MISSING_ERROR_PATH = "missing_error_path"
    MISSING_DECISION_VAR = "missing_decision_var"
    EMPTY_COMMAND = "empty_command"

    # Variables
    UNBOUND_VARIABLE = "unbound_variable"
    VARIABLE_FORMAT = "variable_format"
    UNDECLARED_ASSIGNMENT = "undeclared_assignment"

    # Field content
    INVALID_JSON = "invalid_json"
    NLU_MULTI_CHILD = "nlu_multi_child"
    TRANSFER_WITH_NEXT = "transfer_with_next"
    RICH_FORMAT_MISMATCH = "rich_format_mismatch"
    BUTTON_SEPARATOR = "button_separator"
    DESTINATION_TYPE = "destination_type"
    ANSWER_REQUIRED = "answer_required"
    PICKER_FORMAT = "picker_format"
    UPLOAD_DEFAULTS = "upload_defaults"


@dataclass(frozen=True)
class Diagnostic:
    """A single validator finding.

    ``payload`` carries the offending token (the dangling id, the missing
    contract value, the unbound variable name) so the repair engine does not
    have to re-derive it.
    """

    kind: DiagnosticKind
    node_id: Optional[int]
    field: str
    message: str
    payload: str = ""
    level: ValidationLevel = ValidationLevel.ERROR
    line: Optional[int] = None

    def sort_key(self) -> tuple:
        node = self.node_id if self.node_id is not None else -(10**9)
        return (node, self.line or 0, self.kind.value, self.field, self.payload)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "node_id": self.node_id,
            "field": self.field,
            "message": self.message,
            "payload": self.payload,
            "level": self.level.value,
            "line": self.line,
        }


@dataclass
class ValidationReport:
    """Typed records and diagnostics for one document."""

    entries: List[Union[Record, MalformedRow]] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)

    @property
    def records(self) -> List[Record]:
        return [entry for entry in self.entries if not isinstance(entry, MalformedRow)]

    @property
    def malformed(self) -> List[MalformedRow]:
        return [entry for entry in self.entries if isinstance(entry, MalformedRow)]

    @property
    def document(self) -> FlowDocument:
        return FlowDocument.of(self.records)

    @property
    def errors(self) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.level == ValidationLevel.ERROR]

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def of_kind(self, kind: DiagnosticKind) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.kind == kind]

    def for_node(self, node_id: int) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.node_id == node_id]

    def counts(self) -> Dict[str, int]:
        return dict(Counter(d.kind.value for d in self.diagnostics))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "record_count": len(self.records),
            "malformed_count": len(self.malformed),
            "counts": self.counts(),
            "diagnostics": [d.to_dict() for d in self.diagnostics],
        }


class ExternalError(BaseModel):
    """An error reported by the remote semantic validator."""

    node_id: Optional[int] = Field(default=None, description="Node the error refers to")
    row: Optional[int] = Field(default=None, description="Row number in the submitted file")
    field: str = Field(default="", description="Field name as reported by the validator")
    message: str = Field(default="", description="Error description")
    entry: str = Field(default="", description="Offending cell content, when reported")

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> List["ExternalError"]:
        """Flatten one validator error object.

        Accepts both the flat form (``nodeId``/``field``/``message``) and the
        nested form (``node_num``/``row_num``/``err_msgs``).
        """
        node_id = payload.get("nodeId", payload.get("node_num"))
        row = payload.get("row", payload.get("row_num"))
        node_id = _as_int(node_id)
        row = _as_int(row)

        messages = payload.get("err_msgs")
        if messages:
            if not isinstance(messages, list):
                messages = [messages]
            return [
                cls(
                    node_id=node_id,
                    row=row,
                    field=str(msg.get("field_name") or ""),
                    message=str(msg.get("error_description") or ""),
                    entry=str(msg.get("field_entry") or ""),
                )
                if isinstance(msg, dict)
                else cls(node_id=node_id, row=row, message=str(msg))
                for msg in messages
            ]
        return [
            cls(
                node_id=node_id,
                row=row,
                field=str(payload.get("field") or payload.get("field_name") or ""),
                message=str(payload.get("message") or payload.get("error_description") or ""),
                entry=str(payload.get("entry") or payload.get("field_entry") or ""),
            )
        ]

    def describe(self) -> str:
        where = f"node {self.node_id}" if self.node_id is not None else "document"
        field_name = self.field or "unknown field"
        return f"{where} [{field_name}]: {self.message}"


def flatten_errors(payloads: Iterable[Dict[str, Any]]) -> List[ExternalError]:
    errors: List[ExternalError] = []
    for payload in payloads:
        errors.extend(ExternalError.from_payload(payload))
    return errors


def _as_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
