"""
Document diffing

Node-level comparison of two flow documents, used to describe what a
repair or an AI refinement actually changed and to attribute those changes
to the errors they were meant to fix.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence

from flow_agent.agent.signatures import normalize_error
from flow_agent.models.diagnostics import ExternalError
from flow_agent.models.record import COLUMNS, FlowDocument


class ChangeType(str, Enum):
    ADDED = "added"
    REMOVED = "removed"
    MODIFIED = "modified"


@dataclass(frozen=True)
class NodeChange:
    node_id: int
    change_type: ChangeType
    changed_fields: List[str]
    before: Optional[Dict[str, str]] = None
    after: Optional[Dict[str, str]] = None


@dataclass
class DocumentDiff:
    changes: List[NodeChange] = field(default_factory=list)
    added: List[int] = field(default_factory=list)
    removed: List[int] = field(default_factory=list)
    modified: List[int] = field(default_factory=list)

    @property
    def summary(self) -> str:
        parts = []
        if self.added:
            parts.append(f"Added {len(self.added)} node(s): {', '.join(map(str, self.added))}")
        if self.removed:
            parts.append(f"Removed {len(self.removed)} node(s): {', '.join(map(str, self.removed))}")
        if self.modified:
            parts.append(f"Modified {len(self.modified)} node(s): {', '.join(map(str, self.modified))}")
        return "; ".join(parts) or "No changes detected"

    @property
    def changed_rows(self) -> int:
        return len(self.changes)


def _row_map(document: FlowDocument) -> Dict[int, Dict[str, str]]:
    return {node_id: dict(zip(COLUMNS, record.to_row())) for node_id, record in document.by_id().items()}


def diff_documents(before: FlowDocument, after: FlowDocument) -> DocumentDiff:
    """Compare two documents node by node, keyed on node number."""
    before_rows = _row_map(before)
    after_rows = _row_map(after)
    diff = DocumentDiff()

    for node_id, after_row in after_rows.items():
        before_row = before_rows.get(node_id)
        if before_row is None:
            diff.added.append(node_id)
            diff.changes.append(
                NodeChange(node_id, ChangeType.ADDED, [k for k, v in after_row.items() if v], after=after_row)
            )
            continue
        changed = [k for k in COLUMNS if before_row[k] != after_row[k]]
        if changed:
            diff.modified.append(node_id)
            diff.changes.append(NodeChange(node_id, ChangeType.MODIFIED, changed, before_row, after_row))

    for node_id, before_row in before_rows.items():
        if node_id not in after_rows:
            diff.removed.append(node_id)
            diff.changes.append(
                NodeChange(node_id, ChangeType.REMOVED, [k for k, v in before_row.items() if v], before=before_row)
            )
    return diff


def _truncate(value: str, limit: int = 50) -> str:
    return value[:limit] + "..." if len(value) > limit else value


def describe_change(change: NodeChange) -> str:
    """One-line, human-readable description of a node change."""
    if change.change_type == ChangeType.ADDED:
        return f"Added node {change.node_id}"
    if change.change_type == ChangeType.REMOVED:
        return f"Removed node {change.node_id}"
    before = change.before or {}
    after = change.after or {}
    fields = [
        f'{name}: "{_truncate(before.get(name) or "(empty)")}" -> "{_truncate(after.get(name) or "(empty)")}"'
        for name in change.changed_fields
    ]
    return f"Modified node {change.node_id}: {', '.join(fields)}"


def match_changes_to_errors(
    changes: Sequence[NodeChange], errors: Sequence[ExternalError]
) -> Dict[str, List[NodeChange]]:
    """Changes that plausibly addressed each error, keyed by error signature.

    A change matches when it touches the error's node, or when one of its
    changed fields overlaps the error's field name.
    """
    matches: Dict[str, List[NodeChange]] = {}
    for error in errors:
        field_name = error.field.lower()
        matching = [
            change
            for change in changes
            if (error.node_id is not None and change.node_id == error.node_id)
            or (
                field_name
                and any(field_name in name.lower() or name.lower() in field_name for name in change.changed_fields)
            )
        ]
        if matching:
            matches[normalize_error(error)] = matching
    return matches
