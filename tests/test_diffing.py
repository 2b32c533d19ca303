"""
Tests for node-level document comparison.
"""

from flow_agent.agent.signatures import normalize_error
from flow_agent.models.diagnostics import ExternalError
from flow_agent.models.record import DecisionRecord, FlowDocument
from flow_agent.tools.diffing import ChangeType, describe_change, diff_documents, match_changes_to_errors

BEFORE = FlowDocument.of([DecisionRecord(id=300, message="a"), DecisionRecord(id=301, message="x")])
AFTER = FlowDocument.of([DecisionRecord(id=300, message="b"), DecisionRecord(id=302, message="y")])


def test_diff_documents():
    diff = diff_documents(BEFORE, AFTER)

    assert diff.added == [302]
    assert diff.removed == [301]
    assert diff.modified == [300]
    assert diff.changed_rows == 3
    assert diff.summary == "Added 1 node(s): 302; Removed 1 node(s): 301; Modified 1 node(s): 300"


def test_no_changes():
    diff = diff_documents(BEFORE, BEFORE)
    assert diff.changes == []
    assert diff.summary == "No changes detected"


def test_describe_change():
    changes = {change.node_id: change for change in diff_documents(BEFORE, AFTER).changes}

    assert describe_change(changes[300]) == 'Modified node 300: Message: "a" -> "b"'
    assert describe_change(changes[302]) == "Added node 302"
    assert describe_change(changes[301]) == "Removed node 301"
    assert changes[302].change_type == ChangeType.ADDED


def test_describe_change_truncates_and_marks_empty():
    before = FlowDocument.of([DecisionRecord(id=300, message="m" * 60)])
    after = FlowDocument.of([DecisionRecord(id=300, message="")])
    (change,) = diff_documents(before, after).changes

    assert describe_change(change) == f'Modified node 300: Message: "{"m" * 50}..." -> "(empty)"'


def test_match_changes_to_errors():
    changes = diff_documents(BEFORE, AFTER).changes
    by_node = ExternalError(node_id=300, field="Other", message="too formal")
    by_field = ExternalError(field="message", message="too long")
    unrelated = ExternalError(node_id=999, field="Command", message="unknown command")

    matches = match_changes_to_errors(changes, [by_node, by_field, unrelated])

    assert [c.node_id for c in matches[normalize_error(by_node)]] == [300]
    assert 300 in [c.node_id for c in matches[normalize_error(by_field)]]
    assert normalize_error(unrelated) not in matches
