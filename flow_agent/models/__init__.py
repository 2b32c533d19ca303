"""Record model and diagnostic types for flow documents."""

from flow_agent.models.diagnostics import (
    Diagnostic,
    DiagnosticKind,
    ExternalError,
    ValidationLevel,
    ValidationReport,
    flatten_errors,
)
from flow_agent.models.record import (
    COLUMN_COUNT,
    COLUMNS,
    ActionRecord,
    Col,
    DecisionRecord,
    FlowDocument,
    MalformedRow,
    NodeKind,
    RawRow,
    Record,
    record_from_row,
)

__all__ = [
    "COLUMN_COUNT",
    "COLUMNS",
    "ActionRecord",
    "Col",
    "DecisionRecord",
    "Diagnostic",
    "DiagnosticKind",
    "ExternalError",
    "FlowDocument",
    "MalformedRow",
    "NodeKind",
    "RawRow",
    "Record",
    "ValidationLevel",
    "ValidationReport",
    "flatten_errors",
    "record_from_row",
]
