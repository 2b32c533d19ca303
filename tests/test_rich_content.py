"""
Tests for Rich Asset Content parsing, conversion and destination rewriting.
"""

import json

from flow_agent.stages import rich_content


class TestParsing:
    """Test reading both content shapes."""

    def test_pipe_options(self):
        options = rich_content.parse_options("Yes~300|No~301")
        assert [(o.label, o.dest_id) for o in options] == [("Yes", 300), ("No", 301)]

    def test_json_options(self):
        content = '{"type":"static","options":[{"label":"Yes","dest":300},{"label":"No","dest":"301"}]}'
        options = rich_content.parse_options(content)
        assert [(o.label, o.dest_id) for o in options] == [("Yes", 300), ("No", 301)]

    def test_non_integer_destinations_skipped(self):
        content = "Website~https://example.com|Menu~200|Name~{NAME}"
        assert rich_content.destination_ids(content) == [("Menu", 200)]

    def test_boolean_destination_is_not_an_id(self):
        content = '{"options":[{"label":"Flag","dest":true}]}'
        assert rich_content.destination_ids(content) == []

    def test_plain_text_has_no_options(self):
        assert rich_content.parse_options("Just a message") == []

    def test_shape_detection(self):
        assert rich_content.is_json_content(' {"a":1}')
        assert rich_content.is_pipe_content("A~1")
        assert not rich_content.is_pipe_content("")
        assert not rich_content.is_pipe_content('{"a":"x~1"}')


class TestRetarget:
    """Test destination rewriting."""

    def test_pipe_retarget(self):
        remapped = rich_content.retarget("Yes~300|No~301", {300: 400}.get)
        assert remapped == "Yes~400|No~301"

    def test_json_retarget_keeps_destination_type(self):
        content = '{"options":[{"label":"A","dest":300},{"label":"B","dest":"301"}]}'
        remapped = json.loads(rich_content.retarget(content, {300: 400, 301: 401}.get))
        assert remapped["options"] == [{"label": "A", "dest": 400}, {"label": "B", "dest": "401"}]

    def test_unchanged_content_returned_as_is(self):
        content = '{ "options": [ {"label": "A", "dest": 300} ] }'
        assert rich_content.retarget(content, lambda node_id: None) == content


class TestConversion:
    """Test pipe/JSON conversion and destination types."""

    def test_json_to_pipe(self):
        content = '{"type":"static","options":[{"label":"Yes","dest":300},{"label":"No","dest":301}]}'
        assert rich_content.json_to_pipe(content) == "Yes~300|No~301"

    def test_json_to_pipe_without_options(self):
        assert rich_content.json_to_pipe('{"type":"static"}') is None

    def test_pipe_to_json(self):
        data = json.loads(rich_content.pipe_to_json("Yes~300|Site~https://x.io"))
        assert data == {
            "type": "static",
            "options": [{"label": "Yes", "dest": 300}, {"label": "Site", "dest": "https://x.io"}],
        }

    def test_pipe_to_json_string_destinations(self):
        data = json.loads(rich_content.pipe_to_json("Yes~300", string_dests=True))
        assert data["options"][0]["dest"] == "300"

    def test_wrong_dest_types(self):
        content = '{"options":[{"label":"A","dest":"300"},{"label":"B","dest":301}]}'
        assert rich_content.wrong_dest_types(content, string_dests=False) == ["A"]
        assert rich_content.wrong_dest_types(content, string_dests=True) == ["B"]

    def test_coerce_dest_types(self):
        content = '{"options":[{"label":"A","dest":"300"}]}'
        fixed = json.loads(rich_content.coerce_dest_types(content, string_dests=False))
        assert fixed["options"][0]["dest"] == 300


class TestButtonSeparators:
    """Test reserved-character repairs in pipe buttons."""

    def test_missing_separator_inserted(self):
        assert rich_content.fix_button_separators("Yes~300No~301") == "Yes~300|No~301"

    def test_split_amount_joined(self):
        assert rich_content.fix_button_separators("Under $25|k~300|More~301") == "Under $25k~300|More~301"

    def test_needs_separator_fix(self):
        assert rich_content.needs_separator_fix("Yes~300No~301")
        assert not rich_content.needs_separator_fix("Yes~300|No~301")


class TestPickers:
    """Test date and time picker content."""

    def test_picker_content(self):
        content = rich_content.picker_content("Pick a date")
        assert json.loads(content) == {"type": "static", "message": "Pick a date"}
        assert rich_content.is_picker_content(content)

    def test_options_are_not_picker_content(self):
        assert not rich_content.is_picker_content('{"type":"static","message":"x","options":[]}')
