"""
Forgiving JSON Recovery

Recovers JSON objects from the almost-JSON that generators write into
Parameter Input and Rich Asset Content cells. Every heuristic lives here so
it can be tested on its own.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)
_LINE_COMMENT_RE = re.compile(r"(?<![:\"'])//[^\n]*$", re.MULTILINE)
_BLOCK_COMMENT_RE = re.compile(r"/\*.*?\*/", re.DOTALL)
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_SINGLE_QUOTED_KEY_RE = re.compile(r"'([^'\"]*)'(\s*:)")
_SINGLE_QUOTED_VALUE_RE = re.compile(r":\s*'([^'\"]*)'")
_BARE_KEY_RE = re.compile(r"([{,]\s*)([a-zA-Z_][a-zA-Z0-9_]*)(\s*:)")
_BARE_VARIABLE_RE = re.compile(r"(:\s*)(\{[A-Za-z_][A-Za-z0-9_]*\})(\s*[,}\]])")


@dataclass(frozen=True)
class JSONRecovery:
    """Outcome of a recovery attempt.

    ``text`` is the canonical compact JSON when ``success`` is true.
    """

    success: bool
    value: Any = None
    text: str = ""
    error: Optional[str] = None
    repairs: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def changed(self) -> bool:
        return bool(self.repairs)


def dumps(value: Any) -> str:
    """Compact JSON in the dialect's style (no spaces)."""
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def _try(text: str) -> Tuple[bool, Any, Optional[str]]:
    try:
        return True, json.loads(text), None
    except json.JSONDecodeError as e:
        return False, None, str(e)


def unwrap_stringified(text: str) -> Optional[str]:
    """``"{...}"`` (an object serialized as a string) -> ``{...}``."""
    stripped = text.strip()
    if len(stripped) >= 2 and stripped[0] == '"' and stripped[-1] == '"':
        inner = stripped[1:-1]
        if inner.strip().startswith("{"):
            return inner.replace('""', '"').replace('\\"', '"')
    return None


def quote_bare_variables(text: str) -> str:
    """``"k":{VAR}`` -> ``"k":"{VAR}"``."""
    return _BARE_VARIABLE_RE.sub(r'\1"\2"\3', text)


def fix_common_issues(text: str) -> str:
    """Apply the text-level heuristics in a fixed order."""
    text = _BLOCK_COMMENT_RE.sub("", text)
    text = _LINE_COMMENT_RE.sub("", text)
    text = _TRAILING_COMMA_RE.sub(r"\1", text)
    text = _SINGLE_QUOTED_KEY_RE.sub(r'"\1"\2', text)
    text = _SINGLE_QUOTED_VALUE_RE.sub(r':"\1"', text)
    text = _BARE_KEY_RE.sub(r'\1"\2"\3', text)
    text = quote_bare_variables(text)
    return text.strip()


def balance_brackets(text: str) -> str:
    """Append closers for brackets left open outside of strings."""
    stack: List[str] = []
    in_string = False
    escaped = False
    for char in text:
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in "{[":
            stack.append("}" if char == "{" else "]")
        elif char in "}]" and stack and stack[-1] == char:
            stack.pop()
    if in_string:
        text += '"'
    return text + "".join(reversed(stack))


def recover_json(text: str, expect_object: bool = True) -> JSONRecovery:
    """
    Parse ``text`` as JSON, repairing common generator mistakes.

    Steps, each tried only if the previous one failed:
    1. plain parse
    2. unwrap a stringified object / markdown fence
    3. text heuristics (comments, trailing commas, quotes, bare keys,
       bare ``{VAR}`` values)
    4. close unbalanced brackets

    A top-level array is wrapped as ``{"items": [...]}`` when an object is
    expected.

    Args:
        text: Raw cell content
        expect_object: Require a JSON object at the top level

    Returns:
        JSONRecovery with the parsed value and the repairs that were needed
    """
    if not text or not text.strip():
        return JSONRecovery(success=False, error="empty input")

    repairs: List[str] = []
    candidate = text.strip()

    ok, value, error = _try(candidate)
    if not ok:
        unwrapped = unwrap_stringified(candidate)
        if unwrapped is not None:
            candidate = unwrapped
            repairs.append("unwrapped stringified object")
        fence = _FENCE_RE.search(candidate)
        if fence:
            candidate = fence.group(1).strip()
            repairs.append("removed markdown fence")
        ok, value, error = _try(candidate)

    if not ok:
        fixed = fix_common_issues(candidate)
        if fixed != candidate:
            candidate = fixed
            repairs.append("fixed quoting and separators")
        ok, value, error = _try(candidate)

    if not ok:
        balanced = balance_brackets(candidate)
        if balanced != candidate:
            candidate = balanced
            repairs.append("closed unbalanced brackets")
        ok, value, error = _try(candidate)

    if not ok:
        return JSONRecovery(success=False, error=f"JSON parsing failed: {error}", repairs=tuple(repairs))

    if expect_object and isinstance(value, list):
        value = {"items": value}
        repairs.append("wrapped array in object")
    elif expect_object and not isinstance(value, dict):
        return JSONRecovery(
            success=False,
            error=f"expected a JSON object, got {type(value).__name__}",
            repairs=tuple(repairs),
        )

    return JSONRecovery(success=True, value=value, text=dumps(value), repairs=tuple(repairs))


def is_valid_json(text: str) -> bool:
    ok, _, _ = _try(text)
    return ok
