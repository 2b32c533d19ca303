"""
Tests for the reference graph.
"""

from flow_agent.models.record import ActionRecord, DecisionRecord, FlowDocument
from flow_agent.tools.graph_analysis import (
    ReferenceField,
    ReferenceGraph,
    is_dead_end,
    record_references,
    retarget_record,
)


class TestReferences:
    """Test reference extraction."""

    def test_decision_references(self):
        record = DecisionRecord(id=300, next_nodes="301|302", rich_type="button", rich_content="Yes~303|Site~https://x")
        refs = record_references(record)
        assert [(r.field, r.target) for r in refs] == [
            (ReferenceField.NEXT_NODES, 301),
            (ReferenceField.NEXT_NODES, 302),
            (ReferenceField.RICH_CONTENT, 303),
        ]

    def test_action_references_carry_token(self):
        record = ActionRecord(id=5, what_next="true~6|error~99990|bad~{VAR}")
        refs = record_references(record)
        assert [(r.label, r.target) for r in refs] == [("true", 6), ("error", 99990)]

    def test_retarget_preserves_separators(self):
        record = DecisionRecord(id=300, next_nodes="301, 302|303")
        updated = retarget_record(record, {302: 402}.get)
        assert updated.next_nodes == "301, 402|303"

    def test_retarget_without_change_returns_same_record(self):
        record = ActionRecord(id=5, what_next="true~6|error~99990")
        assert retarget_record(record, lambda node_id: None) is record


class TestGraph:
    """Test whole-document queries."""

    def test_orphans_dead_ends_unreachable(self):
        document = FlowDocument.of(
            [
                ActionRecord(id=1, command="SysShowMetadata", what_next="true~200|error~99990"),
                DecisionRecord(id=200, next_nodes="300"),
                DecisionRecord(id=300, message="end of the road"),
                DecisionRecord(id=400, next_nodes="200"),
            ]
        )
        graph = ReferenceGraph(document)
        assert [(r.source, r.target) for r in graph.orphan_references()] == [(1, 99990)]
        assert graph.dead_ends() == [300]
        assert graph.unreachable() == [400]
        assert graph.metrics()["references"] == 4

    def test_terminal_and_transfer_nodes_are_not_dead_ends(self):
        assert not is_dead_end(DecisionRecord(id=666, message="Bye"))
        assert not is_dead_end(DecisionRecord(id=999, behaviors="xfer_to_agent"))
        assert not is_dead_end(ActionRecord(id=5))
        assert is_dead_end(DecisionRecord(id=300, rich_type="text", rich_content="Yes~301"))

    def test_cycles_terminate(self):
        document = FlowDocument.of(
            [DecisionRecord(id=1, next_nodes="2"), DecisionRecord(id=2, next_nodes="1")]
        )
        assert ReferenceGraph(document).reachable_from([1]) == {1, 2}
