"""
Node Allocator

Keeps node ids inside their bands and renumbers colliding ids:
- reserved bands: system nodes, startup sequence, main menu
- flow bands: one contiguous range per generated flow

Renumbering rewrites every reference in the processed batch (Next Nodes,
What Next? targets, pipe and JSON rich-content destinations). The id mapping
of one call is injective.
"""

import logging
import sys
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, NamedTuple, Optional, Sequence, Set, Tuple

from flow_agent.models.contracts import (
    FLOW_BAND_START,
    FLOW_BAND_WIDTH,
    MAIN_MENU_BAND,
    STARTUP_BAND,
    SYSTEM_NODE_IDS,
    flow_band,
)
from flow_agent.models.record import FlowDocument, Record
from flow_agent.tools.graph_analysis import retarget_record

logger = logging.getLogger(__name__)


class RemapResult(NamedTuple):
    """Outcome of :meth:`NodeAllocator.remap`."""

    records: List[Record]
    mapping: Dict[int, int]
    warnings: List[str]


@dataclass
class AssemblyResult:
    """A document assembled from independently generated flow segments."""

    document: FlowDocument
    mappings: Dict[int, Dict[int, int]] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)


def band_of(node_id: int) -> Tuple[int, int]:
    """Inclusive band containing ``node_id``; system ids form their own band."""
    if STARTUP_BAND[0] <= node_id <= STARTUP_BAND[1]:
        return STARTUP_BAND
    if MAIN_MENU_BAND[0] <= node_id <= MAIN_MENU_BAND[1]:
        return MAIN_MENU_BAND
    if node_id >= FLOW_BAND_START:
        return flow_band((node_id - FLOW_BAND_START) // FLOW_BAND_WIDTH)
    return node_id, node_id


class NodeAllocator:
    """Allocates free node ids within flow bands."""

    def __init__(self, system_ids: Iterable[int] = SYSTEM_NODE_IDS):
        self.system_ids: Set[int] = set(system_ids)
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def _next_free(
        self,
        band: Tuple[int, int],
        flow_index: Optional[int],
        taken: Set[int],
        warnings: List[str],
        start: Optional[int] = None,
    ) -> int:
        """First id from ``start`` that is neither taken nor a system id.

        A full flow band spills into the next flow band; any other band
        spills upwards. Both cases add a warning.
        """
        candidate = band[0] if start is None else start
        end = band[1]
        while True:
            if candidate > end:
                if flow_index is not None:
                    flow_index += 1
                    next_band = flow_band(flow_index)
                    warnings.append(
                        f"Band {band[0]}-{band[1]} is full; allocating in {next_band[0]}-{next_band[1]}"
                    )
                    band, end = next_band, next_band[1]
                    candidate = max(candidate, next_band[0])
                else:
                    warnings.append(f"Band {band[0]}-{band[1]} is full; allocating above it")
                    end = sys.maxsize
            if candidate not in taken and candidate not in self.system_ids:
                return candidate
            candidate += 1

    def remap(
        self,
        records: Sequence[Record],
        flow_index: int,
        reserved_ids: Iterable[int],
    ) -> RemapResult:
        """Move records whose ids collide with ``reserved_ids`` into the flow band.

        Args:
            records: Records of one flow segment
            flow_index: Index of the flow, selects the band
            reserved_ids: Ids already owned by other segments or the base document

        Returns:
            (remapped records, source id -> new id, warnings)
        """
        reserved = set(reserved_ids)
        batch_ids = [record.id for record in records]
        colliding = [node_id for node_id in dict.fromkeys(batch_ids) if node_id in reserved]
        taken = reserved | (set(batch_ids) - set(colliding))

        mapping: Dict[int, int] = {}
        warnings: List[str] = []
        band = flow_band(flow_index)
        for node_id in colliding:
            target = self._next_free(band, flow_index, taken, warnings)
            mapping[node_id] = target
            taken.add(target)

        if not mapping:
            return RemapResult(list(records), {}, warnings)

        remapped = [self._apply(record, mapping) for record in records]
        self.logger.info(f"Flow {flow_index}: remapped {len(mapping)} ids {mapping}")
        return RemapResult(remapped, mapping, warnings)

    @staticmethod
    def _apply(record: Record, mapping: Dict[int, int]) -> Record:
        record = retarget_record(record, mapping.get)
        if record.id in mapping:
            record = record.model_copy(update={"id": mapping[record.id]})
        return record

    def resolve_duplicates(self, document: FlowDocument) -> Tuple[FlowDocument, List[str]]:
        """Drop repeated identical rows and renumber repeated ids.

        References keep pointing at the first occurrence.
        """
        seen: Dict[int, Record] = {}
        taken = document.id_set
        kept: List[Record] = []
        log: List[str] = []
        warnings: List[str] = []
        for record in document:
            first = seen.get(record.id)
            if first is None:
                seen[record.id] = record
                kept.append(record)
                continue
            if first.to_row() == record.to_row():
                log.append(f"Node {record.id}: removed identical duplicate row")
                continue
            band = band_of(record.id)
            new_id = self._next_free(band, None, taken, warnings, start=record.id + 1)
            taken.add(new_id)
            kept.append(record.model_copy(update={"id": new_id}))
            log.append(f"Node {record.id}: duplicate node number renumbered to {new_id}")
        log.extend(warnings)
        return document.with_records(kept), log

    def assemble_segments(
        self,
        segments: Sequence[Sequence[Record]],
        base: Optional[FlowDocument] = None,
    ) -> AssemblyResult:
        """Join flow segments in flow-index order.

        Segment ``i`` is remapped against the base document and every segment
        placed before it, so the outcome does not depend on the order in
        which segments were produced.
        """
        records: List[Record] = list(base.records) if base else []
        result = AssemblyResult(document=FlowDocument())
        for index, segment in enumerate(segments):
            reserved = {record.id for record in records}
            remapped = self.remap(segment, index, reserved)
            result.mappings[index] = remapped.mapping
            result.warnings.extend(remapped.warnings)
            records.extend(remapped.records)
        result.document = FlowDocument.of(records)
        return result
