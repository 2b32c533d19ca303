"""
Rich Asset Content

Rich Asset Content comes in two shapes:
- pipe form: ``Label~dest|Label~dest``
- JSON form: ``{"type":"static","options":[{"label":..,"dest":..}]}``

This module reads both, converts between them and rewrites destinations.
Destinations that are not integers (URLs, variables) are left alone.
"""

import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from flow_agent.models.record import format_route_pairs, parse_int, parse_route_pairs
from flow_agent.stages.json_recovery import dumps, recover_json

_MISSING_SEPARATOR_RE = re.compile(r"(~-?\d+)[ \t]*(?=[A-Za-z$])")
_SPLIT_AMOUNT_RE = re.compile(r"(\$\d+(?:\.\d+)?)\|([kKmMbB])(?=[^A-Za-z]|$)")


@dataclass(frozen=True)
class RichOption:
    label: str
    dest: Any

    @property
    def dest_id(self) -> Optional[int]:
        if isinstance(self.dest, bool):
            return None
        if isinstance(self.dest, int):
            return self.dest
        return parse_int(str(self.dest))


def is_json_content(content: str) -> bool:
    return content.strip().startswith("{")


def is_pipe_content(content: str) -> bool:
    return bool(content.strip()) and not is_json_content(content) and "~" in content


def parse_pipe(content: str) -> List[RichOption]:
    return [RichOption(label=label, dest=dest) for label, dest in parse_route_pairs(content)]


def format_pipe(options: List[RichOption]) -> str:
    return format_route_pairs([(option.label, option.dest) for option in options])


def load_json(content: str) -> Optional[Dict[str, Any]]:
    """Parsed JSON content, or None when it cannot be recovered."""
    result = recover_json(content)
    return result.value if result.success else None


def parse_json_options(content: str) -> List[RichOption]:
    data = load_json(content)
    if not data:
        return []
    options = data.get("options")
    if not isinstance(options, list):
        return []
    return [
        RichOption(label=str(option.get("label", "")), dest=option.get("dest", ""))
        for option in options
        if isinstance(option, dict)
    ]


def parse_options(content: str) -> List[RichOption]:
    """Options from either content shape."""
    if is_json_content(content):
        return parse_json_options(content)
    if is_pipe_content(content):
        return parse_pipe(content)
    return []


def destination_ids(content: str) -> List[Tuple[str, int]]:
    """(label, id) for every option whose destination is a node id."""
    found = []
    for option in parse_options(content):
        dest_id = option.dest_id
        if dest_id is not None:
            found.append((option.label, dest_id))
    return found


def retarget(content: str, remap: Callable[[int], Optional[int]]) -> str:
    """Rewrite integer destinations with ``remap``.

    ``remap`` returns the new id or None to keep the old one. Content is
    returned untouched when nothing changes.
    """
    if is_json_content(content):
        data = load_json(content)
        if not data or not isinstance(data.get("options"), list):
            return content
        changed = False
        for option in data["options"]:
            if not isinstance(option, dict):
                continue
            current = RichOption(label="", dest=option.get("dest", "")).dest_id
            if current is None:
                continue
            target = remap(current)
            if target is not None and target != current:
                option["dest"] = str(target) if isinstance(option.get("dest"), str) else target
                changed = True
        return dumps(data) if changed else content

    if is_pipe_content(content):
        pairs = parse_route_pairs(content)
        changed = False
        rewritten = []
        for label, dest in pairs:
            current = parse_int(dest)
            target = remap(current) if current is not None else None
            if target is not None and target != current:
                rewritten.append((label, str(target)))
                changed = True
            else:
                rewritten.append((label, dest))
        return format_route_pairs(rewritten) if changed else content

    return content


def json_to_pipe(content: str) -> Optional[str]:
    """JSON options -> pipe form; None when there are no options."""
    options = parse_json_options(content)
    if not options:
        return None
    return format_pipe(options)


def pipe_to_json(content: str, string_dests: bool = False) -> str:
    options = []
    for option in parse_pipe(content):
        dest_id = option.dest_id
        if dest_id is None:
            dest: Any = option.dest
        else:
            dest = str(dest_id) if string_dests else dest_id
        options.append({"label": option.label, "dest": dest})
    return dumps({"type": "static", "options": options})


def coerce_dest_types(content: str, string_dests: bool) -> str:
    """Make every numeric JSON destination a string or an int."""
    data = load_json(content)
    if not data or not isinstance(data.get("options"), list):
        return content
    changed = False
    for option in data["options"]:
        if not isinstance(option, dict) or "dest" not in option:
            continue
        dest = option["dest"]
        dest_id = RichOption(label="", dest=dest).dest_id
        if dest_id is None:
            continue
        wanted: Any = str(dest_id) if string_dests else dest_id
        if type(dest) is not type(wanted) or dest != wanted:
            option["dest"] = wanted
            changed = True
    return dumps(data) if changed else content


def wrong_dest_types(content: str, string_dests: bool) -> List[str]:
    """Labels whose numeric destination has the wrong JSON type."""
    data = load_json(content)
    if not data or not isinstance(data.get("options"), list):
        return []
    labels = []
    for option in data["options"]:
        if not isinstance(option, dict):
            continue
        dest = option.get("dest")
        if isinstance(dest, bool) or RichOption(label="", dest=dest).dest_id is None:
            continue
        if string_dests and not isinstance(dest, str):
            labels.append(str(option.get("label", "")))
        elif not string_dests and not isinstance(dest, int):
            labels.append(str(option.get("label", "")))
    return labels


def fix_button_separators(content: str) -> str:
    """``Yes~100No~200`` -> ``Yes~100|No~200`` and ``$25|k`` -> ``$25k``."""
    fixed = _MISSING_SEPARATOR_RE.sub(r"\1|", content)
    return _SPLIT_AMOUNT_RE.sub(r"\1\2", fixed)


def needs_separator_fix(content: str) -> bool:
    return is_pipe_content(content) and fix_button_separators(content) != content


def picker_content(message: str) -> str:
    return dumps({"type": "static", "message": message})


def is_picker_content(content: str) -> bool:
    data = load_json(content) if is_json_content(content) else None
    return bool(data) and data.get("type") == "static" and "message" in data and "options" not in data
