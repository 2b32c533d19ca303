"""
Reference Graph Analysis

Builds the directed reference multigraph of a flow document and answers
structural questions about it:
- orphan references (targets that are not nodes)
- dead-end Decision nodes
- nodes unreachable from any entry point

Also owns reference extraction and rewriting, which the repair engine and
the node allocator share.
"""

import logging
import re
from collections import defaultdict, deque
from dataclasses import dataclass
from enum import Enum
from typing import AbstractSet, Callable, Dict, Iterable, List, Optional, Set

from flow_agent.models.contracts import (
    CHOICE_RICH_TYPES,
    ENTRY_NODE_ID,
    SYSTEM_NODE_IDS,
    TERMINAL_NODE_IDS,
    TRANSFER_BEHAVIOR,
)
from flow_agent.models.record import (
    DecisionRecord,
    FlowDocument,
    Record,
    format_route_pairs,
    parse_int,
    parse_route_pairs,
)
from flow_agent.stages import rich_content

logger = logging.getLogger(__name__)

_NEXT_SPLIT_RE = re.compile(r"([,|])")


class ReferenceField(str, Enum):
    """Fields that can hold node references."""

    NEXT_NODES = "Next Nodes"
    WHAT_NEXT = "What Next?"
    RICH_CONTENT = "Rich Asset Content"


@dataclass(frozen=True)
class Reference:
    """One edge of the reference graph."""

    source: int
    field: ReferenceField
    target: int
    label: str = ""


def record_references(record: Record) -> List[Reference]:
    """Every reference a record makes, in field order."""
    refs: List[Reference] = []
    if isinstance(record, DecisionRecord):
        for target in record.next_node_ids:
            refs.append(Reference(record.id, ReferenceField.NEXT_NODES, target))
        for label, target in rich_content.destination_ids(record.rich_content):
            refs.append(Reference(record.id, ReferenceField.RICH_CONTENT, target, label))
    else:
        for token, dest in record.route_pairs:
            target = parse_int(dest)
            if target is not None:
                refs.append(Reference(record.id, ReferenceField.WHAT_NEXT, target, token))
    return refs


def _retarget_next_nodes(value: str, remap: Callable[[int], Optional[int]]) -> str:
    parts = _NEXT_SPLIT_RE.split(value)
    changed = False
    for i, part in enumerate(parts):
        current = parse_int(part)
        if current is None:
            continue
        target = remap(current)
        if target is not None and target != current:
            parts[i] = part.replace(part.strip(), str(target))
            changed = True
    return "".join(parts) if changed else value


def _retarget_what_next(value: str, remap: Callable[[int], Optional[int]]) -> str:
    pairs = []
    changed = False
    for token, dest in parse_route_pairs(value):
        current = parse_int(dest)
        target = remap(current) if current is not None else None
        if target is not None and target != current:
            pairs.append((token, str(target)))
            changed = True
        else:
            pairs.append((token, dest))
    return format_route_pairs(pairs) if changed else value


def retarget_record(record: Record, remap: Callable[[int], Optional[int]]) -> Record:
    """Rewrite every reference of ``record`` through ``remap``.

    ``remap`` returns the new target id, or None to leave a reference alone.
    The same record object comes back when nothing changes.
    """
    if isinstance(record, DecisionRecord):
        update = {
            "next_nodes": _retarget_next_nodes(record.next_nodes, remap),
            "rich_content": rich_content.retarget(record.rich_content, remap),
        }
    else:
        update = {"what_next": _retarget_what_next(record.what_next, remap)}
    if all(getattr(record, key) == value for key, value in update.items()):
        return record
    return record.model_copy(update=update)


def is_dead_end(record: Record) -> bool:
    """A Decision node with no way forward.

    The end-of-chat node and agent transfers are terminal.
    """
    if not isinstance(record, DecisionRecord):
        return False
    if record.id in TERMINAL_NODE_IDS or record.has_behavior(TRANSFER_BEHAVIOR):
        return False
    if record.next_node_tokens:
        return False
    if record.rich_type.strip().lower() in CHOICE_RICH_TYPES and rich_content.parse_options(record.rich_content):
        return False
    return True


class ReferenceGraph:
    """Directed multigraph over node ids.

    ``external_ids`` are nodes that live outside the document but resolve
    once it is assembled, such as system nodes referenced from a segment.
    """

    def __init__(self, document: FlowDocument, external_ids: AbstractSet[int] = frozenset()):
        self.document = document
        self.node_ids: Set[int] = document.id_set
        self.external_ids = frozenset(external_ids)
        self.outgoing: Dict[int, List[Reference]] = defaultdict(list)
        self.incoming: Dict[int, List[Reference]] = defaultdict(list)
        for record in document:
            for ref in record_references(record):
                self.outgoing[ref.source].append(ref)
                self.incoming[ref.target].append(ref)

    @property
    def references(self) -> List[Reference]:
        return [ref for refs in self.outgoing.values() for ref in refs]

    def successors(self, node_id: int) -> List[int]:
        return [ref.target for ref in self.outgoing.get(node_id, [])]

    def orphan_references(self) -> List[Reference]:
        return [
            ref for ref in self.references if ref.target not in self.node_ids and ref.target not in self.external_ids
        ]

    def dead_ends(self) -> List[int]:
        return [record.id for record in self.document if is_dead_end(record)]

    def entry_points(self) -> Set[int]:
        """Entry node, system nodes and every node an intent can enter."""
        roots = {ENTRY_NODE_ID} | set(SYSTEM_NODE_IDS)
        roots |= {record.id for record in self.document if record.intent.strip()}
        return roots & self.node_ids

    def reachable_from(self, roots: Iterable[int]) -> Set[int]:
        seen: Set[int] = set()
        queue = deque(root for root in roots if root in self.node_ids)
        while queue:
            node_id = queue.popleft()
            if node_id in seen:
                continue
            seen.add(node_id)
            for target in self.successors(node_id):
                if target in self.node_ids and target not in seen:
                    queue.append(target)
        return seen

    def unreachable(self) -> List[int]:
        reachable = self.reachable_from(self.entry_points())
        return sorted(self.node_ids - reachable)

    def metrics(self) -> Dict[str, int]:
        return {
            "nodes": len(self.node_ids),
            "references": len(self.references),
            "orphans": len(self.orphan_references()),
            "dead_ends": len(self.dead_ends()),
        }
