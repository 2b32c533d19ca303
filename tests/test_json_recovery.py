"""
Tests for forgiving JSON recovery of generator output.
"""

import pytest

from flow_agent.stages.json_recovery import (
    balance_brackets,
    dumps,
    is_valid_json,
    quote_bare_variables,
    recover_json,
)


class TestRecoverJson:
    """Test each recovery step."""

    def test_valid_json_is_canonicalized(self):
        result = recover_json('{ "a" : 1 }')
        assert result.success
        assert result.text == '{"a":1}'
        assert not result.changed

    def test_trailing_comma(self):
        result = recover_json('{"a":1,"b":[1,2,],}')
        assert result.success
        assert result.value == {"a": 1, "b": [1, 2]}
        assert "fixed quoting and separators" in result.repairs

    def test_single_quotes(self):
        result = recover_json("{'a': 'b'}")
        assert result.value == {"a": "b"}

    def test_bare_keys(self):
        result = recover_json('{set: {"NAME": "x"}}')
        assert result.value == {"set": {"NAME": "x"}}

    def test_bare_variable_value(self):
        result = recover_json('{"greeting":{NAME}}')
        assert result.success
        assert result.value == {"greeting": "{NAME}"}

    def test_markdown_fence(self):
        result = recover_json('```json\n{"a": 1}\n```')
        assert result.value == {"a": 1}
        assert "removed markdown fence" in result.repairs

    def test_stringified_object(self):
        result = recover_json('"{""a"":1}"')
        assert result.value == {"a": 1}
        assert "unwrapped stringified object" in result.repairs

    def test_unbalanced_brackets(self):
        result = recover_json('{"a":{"b":[1,2')
        assert result.value == {"a": {"b": [1, 2]}}
        assert "closed unbalanced brackets" in result.repairs

    def test_comments_removed(self):
        result = recover_json('{"a":1 /* note */}')
        assert result.value == {"a": 1}

    def test_array_wrapped_when_object_expected(self):
        result = recover_json("[1,2]")
        assert result.value == {"items": [1, 2]}

    def test_array_allowed_when_not_expected(self):
        result = recover_json("[1,2]", expect_object=False)
        assert result.value == [1, 2]

    def test_scalar_rejected(self):
        result = recover_json("42")
        assert not result.success
        assert "expected a JSON object" in result.error

    @pytest.mark.parametrize("text", ["", "   ", "not json at all"])
    def test_unrecoverable(self, text):
        assert not recover_json(text).success


class TestHelpers:
    """Test the individual heuristics."""

    def test_dumps_is_compact(self):
        assert dumps({"a": [1, {"b": "c"}]}) == '{"a":[1,{"b":"c"}]}'

    def test_dumps_keeps_unicode(self):
        assert dumps({"msg": "café"}) == '{"msg":"café"}'

    def test_quote_bare_variables(self):
        assert quote_bare_variables('{"a":{X},"b":{Y}}') == '{"a":"{X}","b":"{Y}"}'

    def test_balance_ignores_brackets_in_strings(self):
        assert balance_brackets('{"a":"{["') == '{"a":"{["}'

    def test_balance_closes_open_string(self):
        assert balance_brackets('{"a":"b') == '{"a":"b"}'

    def test_is_valid_json(self):
        assert is_valid_json("[]")
        assert not is_valid_json("{")
