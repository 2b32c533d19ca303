"""
Flow Record Model

Typed representation of one conversational-flow node and of a flow document.

A flow row has 26 positional columns. Rows are promoted into one of two
record variants:
- DecisionRecord ("D"): presents content or choices and routes by user input
- ActionRecord ("A"): runs a server-side command and routes by its result

Records are frozen pydantic models. Every stage produces new records with
``model_copy(update=...)`` instead of mutating them in place.
"""

import re
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Dict, Iterator, List, Literal, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

COLUMN_COUNT = 26

COLUMNS: Tuple[str, ...] = (
    "Node Number",
    "Node Type",
    "Node Name",
    "Intent",
    "Entity Type",
    "Entity",
    "NLU Disabled?",
    "Next Nodes",
    "Message",
    "Rich Asset Type",
    "Rich Asset Content",
    "Answer Required?",
    "Behaviors",
    "Command",
    "Description",
    "Output",
    "Node Input",
    "Parameter Input",
    "Decision Variable",
    "What Next?",
    "Node Tags",
    "Skill Tag",
    "Variable",
    "Platform Flag",
    "Flows",
    "CSS Classname",
)

HEADER_LINE = ",".join(COLUMNS)


class Col(IntEnum):
    """Column positions in a flow row."""

    NODE_NUM = 0
    NODE_TYPE = 1
    NAME = 2
    INTENT = 3
    ENTITY_TYPE = 4
    ENTITY = 5
    NLU_DISABLED = 6
    NEXT_NODES = 7
    MESSAGE = 8
    RICH_TYPE = 9
    RICH_CONTENT = 10
    ANS_REQ = 11
    BEHAVIORS = 12
    COMMAND = 13
    DESCRIPTION = 14
    OUTPUT = 15
    NODE_INPUT = 16
    PARAM_INPUT = 17
    DEC_VAR = 18
    WHAT_NEXT = 19
    TAGS = 20
    SKILL = 21
    VARIABLE = 22
    PLATFORM = 23
    FLOWS = 24
    CSS = 25


class NodeKind(str, Enum):
    """Node variants."""

    DECISION = "D"
    ACTION = "A"


# Record attribute -> column
SHARED_FIELDS: Dict[str, Col] = {
    "name": Col.NAME,
    "intent": Col.INTENT,
    "tags": Col.TAGS,
    "skill": Col.SKILL,
    "variable": Col.VARIABLE,
    "platform": Col.PLATFORM,
    "flows": Col.FLOWS,
    "css": Col.CSS,
}

DECISION_FIELDS: Dict[str, Col] = {
    "entity_type": Col.ENTITY_TYPE,
    "entity": Col.ENTITY,
    "nlu_disabled": Col.NLU_DISABLED,
    "next_nodes": Col.NEXT_NODES,
    "message": Col.MESSAGE,
    "rich_type": Col.RICH_TYPE,
    "rich_content": Col.RICH_CONTENT,
    "answer_required": Col.ANS_REQ,
    "behaviors": Col.BEHAVIORS,
}

ACTION_FIELDS: Dict[str, Col] = {
    "command": Col.COMMAND,
    "description": Col.DESCRIPTION,
    "output": Col.OUTPUT,
    "node_input": Col.NODE_INPUT,
    "param_input": Col.PARAM_INPUT,
    "decision_var": Col.DEC_VAR,
    "what_next": Col.WHAT_NEXT,
}

_INTEGER_RE = re.compile(r"^-?\d+$")
_SPLIT_NEXT_RE = re.compile(r"[,|]")
_BINDING_SPLIT_RE = re.compile(r"[|,]")


def parse_node_id(value: str) -> Optional[int]:
    """Return the integer id in a Node Number cell, or None for leaked text.

    Generators leak bullets, numbered prose ("1. Welcome") and labels
    ("Node: 5") into the first column; none of those are nodes.
    """
    text = value.strip()
    if not text or len(text) > 6 or ":" in text:
        return None
    if not _INTEGER_RE.match(text):
        return None
    return int(text)


def parse_int(value: str) -> Optional[int]:
    """Parse an integer reference target, ignoring surrounding whitespace."""
    text = str(value).strip()
    if _INTEGER_RE.match(text):
        return int(text)
    return None


def split_tokens(value: str, pattern: "re.Pattern[str]" = _SPLIT_NEXT_RE) -> List[str]:
    """Split a multi-valued cell and drop empty entries."""
    return [part.strip() for part in pattern.split(value) if part.strip()]


def parse_route_pairs(value: str) -> List[Tuple[str, str]]:
    """Parse ``token~dest|token~dest`` into (token, dest) pairs.

    Entries without a ``~`` are kept with an empty destination so callers can
    still see the token.
    """
    pairs: List[Tuple[str, str]] = []
    for part in value.split("|"):
        part = part.strip()
        if not part:
            continue
        token, sep, dest = part.rpartition("~")
        if not sep:
            pairs.append((part, ""))
        else:
            pairs.append((token.strip(), dest.strip()))
    return pairs


def format_route_pairs(pairs: Sequence[Tuple[str, object]]) -> str:
    """Inverse of :func:`parse_route_pairs`."""
    return "|".join(f"{token}~{dest}" if dest != "" else str(token) for token, dest in pairs)


@dataclass(frozen=True)
class RawRow:
    """One physical row from the codec, columns still untyped.

    ``line`` is informational and does not take part in equality, so a row
    parsed back from its own serialization compares equal.
    """

    fields: Tuple[str, ...]
    line: int = field(default=0, compare=False)

    def __len__(self) -> int:
        return len(self.fields)

    def cell(self, col: int) -> str:
        return self.fields[col] if col < len(self.fields) else ""


@dataclass(frozen=True)
class MalformedRow:
    """A row the validator could not promote to a record."""

    row: RawRow
    reason: str


class BaseRecord(BaseModel):
    """Fields common to both node variants."""

    model_config = ConfigDict(frozen=True)

    id: int = Field(..., description="Node number, may be negative")
    name: str = Field(default="", description="Node name")
    intent: str = Field(default="", description="NLU intent that enters this node")
    tags: str = Field(default="", description="Node tags")
    skill: str = Field(default="", description="Skill tag")
    variable: str = Field(default="", description="Declared variables, comma separated")
    platform: str = Field(default="", description="Platform flag")
    flows: str = Field(default="", description="Flow label")
    css: str = Field(default="", description="CSS class name")
    stray: Dict[str, str] = Field(
        default_factory=dict,
        description="Content found in columns that belong to the other node kind",
    )

    @property
    def variable_names(self) -> List[str]:
        return split_tokens(self.variable)

    def kind_fields(self) -> Dict[str, Col]:
        raise NotImplementedError

    def to_row(self) -> Tuple[str, ...]:
        """Render the record back to its 26 columns."""
        cells = [""] * COLUMN_COUNT
        cells[Col.NODE_NUM] = str(self.id)
        cells[Col.NODE_TYPE] = self.kind  # type: ignore[attr-defined]
        for attr, col in SHARED_FIELDS.items():
            cells[col] = getattr(self, attr)
        for attr, col in self.kind_fields().items():
            cells[col] = getattr(self, attr)
        for column_name, value in self.stray.items():
            cells[COLUMNS.index(column_name)] = value
        return tuple(cells)

    def cell(self, col: int) -> str:
        return self.to_row()[col]


class DecisionRecord(BaseRecord):
    """Decision node: shows content and routes by user input."""

    kind: Literal["D"] = "D"
    entity_type: str = ""
    entity: str = ""
    nlu_disabled: str = ""
    next_nodes: str = ""
    message: str = ""
    rich_type: str = ""
    rich_content: str = ""
    answer_required: str = ""
    behaviors: str = ""

    def kind_fields(self) -> Dict[str, Col]:
        return DECISION_FIELDS

    @property
    def next_node_tokens(self) -> List[str]:
        return split_tokens(self.next_nodes)

    @property
    def next_node_ids(self) -> List[int]:
        ids = []
        for token in self.next_node_tokens:
            value = parse_int(token)
            if value is not None:
                ids.append(value)
        return ids

    @property
    def behavior_set(self) -> List[str]:
        return split_tokens(self.behaviors)

    @property
    def is_nlu_disabled(self) -> bool:
        return self.nlu_disabled.strip() == "1"

    @property
    def requires_answer(self) -> bool:
        return self.answer_required.strip() == "1"

    def has_behavior(self, behavior: str) -> bool:
        return behavior in self.behavior_set


class ActionRecord(BaseRecord):
    """Action node: executes a command and routes by its result."""

    kind: Literal["A"] = "A"
    command: str = ""
    description: str = ""
    output: str = ""
    node_input: str = ""
    param_input: str = ""
    decision_var: str = ""
    what_next: str = ""

    def kind_fields(self) -> Dict[str, Col]:
        return ACTION_FIELDS

    @property
    def route_pairs(self) -> List[Tuple[str, str]]:
        return parse_route_pairs(self.what_next)

    @property
    def route_tokens(self) -> List[str]:
        return [token for token, _ in self.route_pairs]

    @property
    def node_input_bindings(self) -> Dict[str, str]:
        """``name:id`` pairs from the Node Input column."""
        bindings: Dict[str, str] = {}
        for part in split_tokens(self.node_input, _BINDING_SPLIT_RE):
            name, sep, source = part.partition(":")
            if sep:
                bindings[name.strip()] = source.strip()
        return bindings


Record = Union[DecisionRecord, ActionRecord]


def infer_kind(cells: Sequence[str]) -> NodeKind:
    """Kind from the Node Type column, falling back to content inspection."""
    value = cells[Col.NODE_TYPE].strip().upper()
    if value in ("D", "DECISION"):
        return NodeKind.DECISION
    if value in ("A", "ACTION"):
        return NodeKind.ACTION
    if cells[Col.COMMAND].strip() or cells[Col.WHAT_NEXT].strip():
        return NodeKind.ACTION
    return NodeKind.DECISION


def record_from_row(cells: Sequence[str]) -> Record:
    """Promote a normalized 26-column row into a typed record.

    The caller guarantees the row has exactly 26 cells and an integer id.
    """
    if len(cells) != COLUMN_COUNT:
        raise ValueError(f"Expected {COLUMN_COUNT} columns, got {len(cells)}")
    node_id = parse_node_id(cells[Col.NODE_NUM])
    if node_id is None:
        raise ValueError(f"Not an integer node number: {cells[Col.NODE_NUM]!r}")

    kind = infer_kind(cells)
    own, other = (
        (DECISION_FIELDS, ACTION_FIELDS)
        if kind == NodeKind.DECISION
        else (ACTION_FIELDS, DECISION_FIELDS)
    )
    data: Dict[str, object] = {"id": node_id}
    for attr, col in SHARED_FIELDS.items():
        data[attr] = cells[col]
    for attr, col in own.items():
        data[attr] = cells[col]
    data["stray"] = {COLUMNS[col]: cells[col] for col in other.values() if cells[col].strip()}

    if kind == NodeKind.DECISION:
        return DecisionRecord(**data)
    return ActionRecord(**data)


def clear_stray(record: Record) -> Record:
    return record.model_copy(update={"stray": {}})


class FlowDocument(BaseModel):
    """Ordered collection of records for one conversational flow."""

    model_config = ConfigDict(frozen=True)

    records: Tuple[Record, ...] = Field(default_factory=tuple, description="Records in file order")

    @classmethod
    def of(cls, records: Sequence[Record]) -> "FlowDocument":
        return cls(records=tuple(records))

    def __iter__(self) -> Iterator[Record]:  # type: ignore[override]
        return iter(self.records)

    def __len__(self) -> int:
        return len(self.records)

    @property
    def ids(self) -> List[int]:
        return [record.id for record in self.records]

    @property
    def id_set(self) -> set:
        return {record.id for record in self.records}

    def by_id(self) -> Dict[int, Record]:
        """Id index; the first occurrence wins for duplicated ids."""
        index: Dict[int, Record] = {}
        for record in self.records:
            index.setdefault(record.id, record)
        return index

    def get(self, node_id: int) -> Optional[Record]:
        for record in self.records:
            if record.id == node_id:
                return record
        return None

    def with_records(self, records: Sequence[Record]) -> "FlowDocument":
        return FlowDocument(records=tuple(records))

    def replace(self, record: Record) -> "FlowDocument":
        """Swap every record with ``record.id`` for ``record``."""
        return self.with_records([record if r.id == record.id else r for r in self.records])
