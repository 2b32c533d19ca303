"""
Tests for node id allocation and segment assembly.
"""

from flow_agent.models.record import ActionRecord, DecisionRecord, FlowDocument
from flow_agent.tools.allocator import NodeAllocator, band_of


def segment(*records):
    return list(records)


class TestRemap:
    """Test collision remapping into flow bands."""

    def test_no_collision_keeps_records(self):
        records = segment(DecisionRecord(id=300, next_nodes="301"), DecisionRecord(id=301))
        result = NodeAllocator().remap(records, flow_index=0, reserved_ids={1, 200})
        assert result.mapping == {}
        assert result.records == records

    def test_colliding_ids_move_into_band(self):
        records = segment(
            DecisionRecord(id=50, next_nodes="51"),
            ActionRecord(id=51, command="VarCheck", what_next="true~50|false~52|error~99990"),
            DecisionRecord(id=52),
        )
        result = NodeAllocator().remap(records, flow_index=1, reserved_ids={50, 51})
        assert result.mapping == {50: 400, 51: 401}
        assert [r.id for r in result.records] == [400, 401, 52]
        assert result.records[0].next_nodes == "401"
        assert result.records[1].what_next == "true~400|false~52|error~99990"

    def test_rich_content_destinations_follow(self):
        records = segment(DecisionRecord(id=50, rich_type="button", rich_content="Again~50|Menu~200"))
        result = NodeAllocator().remap(records, flow_index=0, reserved_ids={50, 200})
        assert result.records[0].rich_content == "Again~300|Menu~200"

    def test_full_band_spills_into_next_band(self):
        reserved = set(range(300, 400)) | {10}
        result = NodeAllocator().remap(segment(DecisionRecord(id=10)), flow_index=0, reserved_ids=reserved)
        assert result.mapping == {10: 400}
        assert any("is full" in warning for warning in result.warnings)

    def test_system_ids_never_allocated(self):
        reserved = set(range(600, 666))
        result = NodeAllocator().remap(segment(DecisionRecord(id=600)), flow_index=3, reserved_ids=reserved)
        assert result.mapping == {600: 667}


class TestAssembleSegments:
    """Test joining independently generated segments."""

    def test_two_segments_with_same_ids(self):
        first = segment(DecisionRecord(id=50, message="Billing", next_nodes="51"), DecisionRecord(id=51, message="Done"))
        second = segment(DecisionRecord(id=50, message="Support", next_nodes="51"), DecisionRecord(id=51, message="End"))

        result = NodeAllocator().assemble_segments([first, second])

        assert result.mappings == {0: {}, 1: {50: 400, 51: 401}}
        document = result.document
        assert document.ids == [50, 51, 400, 401]
        assert document.get(400).message == "Support"
        assert document.get(400).next_nodes == "401"
        assert document.get(50).next_nodes == "51"

    def test_assembly_against_base_document(self):
        base = FlowDocument.of([DecisionRecord(id=300, message="Existing")])
        result = NodeAllocator().assemble_segments([segment(DecisionRecord(id=300, message="New"))], base=base)
        assert result.mappings == {0: {300: 301}}
        assert result.document.ids == [300, 301]

    def test_outcome_independent_of_input_objects(self):
        segments = [segment(DecisionRecord(id=50)), segment(DecisionRecord(id=50)), segment(DecisionRecord(id=50))]
        first = NodeAllocator().assemble_segments(segments)
        second = NodeAllocator().assemble_segments(segments)
        assert first.mappings == second.mappings == {0: {}, 1: {50: 400}, 2: {50: 500}}


class TestResolveDuplicates:
    """Test in-document duplicate handling."""

    def test_renumbers_within_band(self):
        document = FlowDocument.of(
            [DecisionRecord(id=300, message="a"), DecisionRecord(id=301, message="b"), DecisionRecord(id=300, message="c")]
        )
        fixed, log = NodeAllocator().resolve_duplicates(document)
        assert fixed.ids == [300, 301, 302]
        assert log == ["Node 300: duplicate node number renumbered to 302"]

    def test_identical_rows_removed(self):
        record = DecisionRecord(id=300, message="a")
        fixed, log = NodeAllocator().resolve_duplicates(FlowDocument.of([record, record]))
        assert fixed.ids == [300]
        assert log == ["Node 300: removed identical duplicate row"]


class TestBands:
    def test_band_of(self):
        assert band_of(5) == (1, 199)
        assert band_of(250) == (200, 299)
        assert band_of(455) == (400, 499)
        assert band_of(-500) == (-500, -500)
