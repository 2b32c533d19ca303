"""
Error signatures

A signature identifies an error independently of the node it was reported
on, so repeated occurrences across iterations and documents can be counted
and matched to known fixes.
"""

import re

from flow_agent.models.diagnostics import ExternalError

_NORMALIZERS = (
    (re.compile(r"node \d+", re.IGNORECASE), "node X"),
    (re.compile(r'"\d+"'), '"X"'),
    (re.compile(r"row \d+", re.IGNORECASE), "row X"),
    (re.compile(r"\d+ characters?", re.IGNORECASE), "N characters"),
)


def normalize_description(description: str) -> str:
    """Strip node numbers, row numbers and lengths from an error message."""
    for pattern, replacement in _NORMALIZERS:
        description = pattern.sub(replacement, description)
    return description.lower().strip()


def _string_hash(value: str) -> int:
    """31-multiplier string hash with signed 32-bit wraparound."""
    h = 0
    for char in value:
        h = ((h << 5) - h + ord(char)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return h


def normalize_error(error: ExternalError) -> str:
    """Stable ``err_<hex>`` signature from field name and normalized message.

    "Node 7 not found" and "Node 8 not found" on the same field share a
    signature.
    """
    field_name = (error.field or "unknown").lower()
    key = f"{field_name}:{normalize_description(error.message)}"
    return f"err_{abs(_string_hash(key)):x}"


def categorize_error(error: ExternalError) -> str:
    """Coarse error category used to group learned fixes."""
    description = error.message.lower()
    field_name = error.field.lower()

    if "nlu disabled" in description and "one child" in description:
        return "NLU_DISABLED_MULTI_CHILD"
    if "invalid json" in description or "malformed" in description:
        return "INVALID_JSON"
    if "does not exist" in description or "not found" in description:
        return "MISSING_REFERENCE"
    if "next nodes" in field_name and "child" in description:
        return "NEXT_NODES_CONSTRAINT"
    if "rich asset" in field_name:
        return "RICH_ASSET_ERROR"
    if "message" in field_name and "character" in description:
        return "MESSAGE_LENGTH"
    if "reserved" in description or "special character" in description:
        return "RESERVED_CHARACTER"
    if "answer required" in description:
        return "ANSWER_REQUIRED_CONSTRAINT"
    if field_name:
        return re.sub(r"\s+", "_", field_name.upper()) + "_ERROR"
    return "UNKNOWN_ERROR"
