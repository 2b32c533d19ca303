"""
External Error Rules

Narrow, message-driven fixes for errors reported by the remote semantic
validator, for constraints the structural validator does not check.

Also answers whether an error's offending text is still present in the
node and field it was reported for.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from flow_agent.models.contracts import GENERIC_ERROR_ID, RETURN_MENU_ID
from flow_agent.models.diagnostics import ExternalError
from flow_agent.models.record import (
    COLUMNS,
    ActionRecord,
    Col,
    DecisionRecord,
    FlowDocument,
    Record,
    parse_int,
)
from flow_agent.stages import rich_content
from flow_agent.stages.json_recovery import dumps, quote_bare_variables, recover_json
from flow_agent.tools.validation import normalize_variable_name

logger = logging.getLogger(__name__)

_FIELD_ALIASES: Dict[str, Col] = {
    "destination": Col.NEXT_NODES,
    "default destination": Col.NEXT_NODES,
    "action script": Col.COMMAND,
    "action_script": Col.COMMAND,
    "dir_field": Col.DEC_VAR,
    "ans_req": Col.ANS_REQ,
    "rich_asset_type": Col.RICH_TYPE,
    "rich_asset_content": Col.RICH_CONTENT,
    "answer_required": Col.ANS_REQ,
    "decision_variable": Col.DEC_VAR,
    "nlu_disabled": Col.NLU_DISABLED,
}


def column_for_field(field_name: str) -> Optional[Col]:
    """Column for a field name as the remote validator spells it.

    Accepts display names ("What Next?"), snake_case names ("what_next") and
    the validator's own aliases ("dir_field", "action_script").
    """
    if not field_name:
        return None
    name = field_name.strip()
    for index, column in enumerate(COLUMNS):
        if name == column or name.lower() == column.lower():
            return Col(index)
        snake = re.sub(r"[^a-z0-9]+", "_", column.lower()).strip("_")
        if name.lower() == snake:
            return Col(index)
    return _FIELD_ALIASES.get(name.lower())


def is_error_still_in_node(document: FlowDocument, error: ExternalError) -> bool:
    """Whether the error's offending text is still in its node.

    Only the reported column is checked when it can be resolved. A node
    that no longer exists counts as fixed.
    """
    if error.node_id is None or not error.entry:
        return False
    record = document.get(error.node_id)
    if record is None:
        return False
    cells = record.to_row()
    col = column_for_field(error.field)
    if col is not None:
        return error.entry in cells[col]
    return any(error.entry in cell for cell in cells)


@dataclass(frozen=True)
class RuleOutcome:
    document: FlowDocument
    description: Optional[str] = None

    @property
    def applied(self) -> bool:
        return self.description is not None


@dataclass(frozen=True)
class FallbackNodes:
    """Destinations for routes a rule has to invent."""

    return_menu_id: int = RETURN_MENU_ID
    generic_error_id: int = GENERIC_ERROR_ID


ErrorRule = Callable[[FlowDocument, ExternalError, FallbackNodes], RuleOutcome]


def _update_node(
    document: FlowDocument, node_id: Optional[int], update: Callable[[Record], Optional[Record]]
) -> Tuple[FlowDocument, bool]:
    if node_id is None:
        return document, False
    record = document.get(node_id)
    if record is None:
        return document, False
    updated = update(record)
    if updated is None or updated == record:
        return document, False
    return document.replace(updated), True


def fix_reserved_characters(document: FlowDocument, error: ExternalError, fallbacks: FallbackNodes) -> RuleOutcome:
    """Pipe characters inside button labels and missing separators."""
    changed = []
    records = []
    for record in document:
        if (
            isinstance(record, DecisionRecord)
            and rich_content.is_pipe_content(record.rich_content)
            and (not error.entry or error.entry in record.rich_content or record.id == error.node_id)
        ):
            fixed = rich_content.fix_button_separators(record.rich_content)
            if fixed != record.rich_content:
                record = record.model_copy(update={"rich_content": fixed})
                changed.append(record.id)
        records.append(record)
    if not changed:
        return RuleOutcome(document)
    return RuleOutcome(document.with_records(records), f"fixed reserved characters in buttons of nodes {changed}")


def clear_nlu_disabled(document: FlowDocument, error: ExternalError, fallbacks: FallbackNodes) -> RuleOutcome:
    def update(record: Record) -> Optional[Record]:
        if isinstance(record, DecisionRecord) and record.is_nlu_disabled:
            return record.model_copy(update={"nlu_disabled": ""})
        return None

    document, changed = _update_node(document, error.node_id, update)
    return RuleOutcome(document, f"cleared NLU Disabled on node {error.node_id}" if changed else None)


def repair_parameter_input(text: str) -> Optional[str]:
    """Best-effort Parameter Input repair; None unless the result is valid JSON."""
    value = text.strip()
    while value.count("}") > value.count("{"):
        index = value.rfind("}")
        value = value[:index] + value[index + 1 :]
    if value.startswith("["):
        try:
            items = json.loads(value)
        except json.JSONDecodeError:
            items = None
        if isinstance(items, list) and items and isinstance(items[0], dict):
            value = dumps({"set": items[0]})
    value = quote_bare_variables(value)
    try:
        json.loads(value)
        return value
    except json.JSONDecodeError:
        recovered = recover_json(value)
        return recovered.text if recovered.success else None


def fix_parameter_input(document: FlowDocument, error: ExternalError, fallbacks: FallbackNodes) -> RuleOutcome:
    if column_for_field(error.field) != Col.PARAM_INPUT:
        return RuleOutcome(document)

    def update(record: Record) -> Optional[Record]:
        if not isinstance(record, ActionRecord) or not record.param_input.strip():
            return None
        fixed = repair_parameter_input(record.param_input)
        if fixed is None:
            logger.info(f"Parameter Input of node {record.id} is not repairable, leaving it for refinement")
            return None
        return record.model_copy(update={"param_input": fixed})

    document, changed = _update_node(document, error.node_id, update)
    return RuleOutcome(document, f"repaired Parameter Input JSON on node {error.node_id}" if changed else None)


def fix_decision_variable(document: FlowDocument, error: ExternalError, fallbacks: FallbackNodes) -> RuleOutcome:
    """Decision variable not produced by the command: fall back to ``success``."""

    def update(record: Record) -> Optional[Record]:
        if not isinstance(record, ActionRecord):
            return None
        what_next = record.what_next
        if "true" not in [token.lower() for token in record.route_tokens]:
            targets = [parse_int(dest) for token, dest in record.route_pairs if token.lower() != "error"]
            targets = [target for target in targets if target is not None]
            first = targets[0] if targets else fallbacks.return_menu_id
            error_id = fallbacks.generic_error_id
            what_next = f"true~{first}|false~{error_id}|error~{error_id}"
        return record.model_copy(update={"decision_var": "success", "what_next": what_next})

    document, changed = _update_node(document, error.node_id, update)
    return RuleOutcome(document, f"set Decision Variable of node {error.node_id} to success" if changed else None)


def fix_variable_case(document: FlowDocument, error: ExternalError, fallbacks: FallbackNodes) -> RuleOutcome:
    def update(record: Record) -> Optional[Record]:
        if not record.variable.strip():
            return None
        names = [normalize_variable_name(name) for name in record.variable_names]
        return record.model_copy(update={"variable": ",".join(dict.fromkeys(names))})

    document, changed = _update_node(document, error.node_id, update)
    return RuleOutcome(document, f"uppercased Variable of node {error.node_id}" if changed else None)


def fix_answer_required(document: FlowDocument, error: ExternalError, fallbacks: FallbackNodes) -> RuleOutcome:
    def update(record: Record) -> Optional[Record]:
        if isinstance(record, DecisionRecord) and not record.requires_answer:
            return record.model_copy(update={"answer_required": "1"})
        return None

    document, changed = _update_node(document, error.node_id, update)
    return RuleOutcome(document, f"set Answer Required on node {error.node_id}" if changed else None)


def fix_non_integer_reference(document: FlowDocument, error: ExternalError, fallbacks: FallbackNodes) -> RuleOutcome:
    """Drop non-integer entries from Next Nodes."""
    if column_for_field(error.field) != Col.NEXT_NODES:
        return RuleOutcome(document)

    def update(record: Record) -> Optional[Record]:
        if not isinstance(record, DecisionRecord):
            return None
        tokens = record.next_node_tokens
        kept = [token for token in tokens if parse_int(token) is not None]
        if kept == tokens:
            return None
        return record.model_copy(update={"next_nodes": ",".join(kept)})

    document, changed = _update_node(document, error.node_id, update)
    return RuleOutcome(document, f"removed non-integer Next Nodes on node {error.node_id}" if changed else None)


# (message predicate, rule) in priority order
ERROR_RULES: List[Tuple[Callable[[str], bool], ErrorRule]] = [
    (lambda m: "pipe character" in m or "button construction" in m, fix_reserved_characters),
    (lambda m: "nlu disabled" in m and "one child" in m, clear_nlu_disabled),
    (
        lambda m: "json input error" in m or "expecting property name" in m or "expecting input" in m,
        fix_parameter_input,
    ),
    (lambda m: "dir_field" in m, fix_decision_variable),
    (lambda m: "capital letters" in m or "all capital" in m, fix_variable_case),
    (lambda m: "ans_req" in m and "1" in m, fix_answer_required),
    (lambda m: "not an integer" in m, fix_non_integer_reference),
]


def has_error_rule(error: ExternalError) -> bool:
    message = error.message.lower()
    return any(matches(message) for matches, _ in ERROR_RULES)


def apply_error_rule(
    document: FlowDocument, error: ExternalError, fallbacks: Optional[FallbackNodes] = None
) -> RuleOutcome:
    """Apply the first rule whose message pattern matches ``error``."""
    fallbacks = fallbacks or FallbackNodes()
    message = error.message.lower()
    for matches, rule in ERROR_RULES:
        if matches(message):
            outcome = rule(document, error, fallbacks)
            if outcome.applied:
                logger.info(f"Programmatic fix: {outcome.description}")
            return outcome
    return RuleOutcome(document)


def apply_all_error_rules(
    document: FlowDocument, error: ExternalError, fallbacks: Optional[FallbackNodes] = None
) -> RuleOutcome:
    """Try every rule regardless of the message; used once a loop is stuck."""
    fallbacks = fallbacks or FallbackNodes()
    descriptions = []
    for _, rule in ERROR_RULES:
        outcome = rule(document, error, fallbacks)
        if outcome.applied:
            document = outcome.document
            descriptions.append(outcome.description)
    if not descriptions:
        return RuleOutcome(document)
    logger.info(f"Aggressive fix for {error.describe()}: {'; '.join(descriptions)}")
    return RuleOutcome(document, "; ".join(descriptions))
