"""
Tests for the structural validator.

Each test starts from a valid flow and introduces one defect.
"""

import pytest

from flow_agent.models.diagnostics import DiagnosticKind, ValidationLevel
from flow_agent.models.record import ActionRecord, DecisionRecord
from flow_agent.stages.codec import serialize_document
from flow_agent.tools.validation import StructuralValidator, assignment_keys, normalize_variable_name


def with_records(records, *changed):
    """Replace records by id, appending new ids."""
    by_id = {record.id: record for record in changed}
    result = [by_id.pop(record.id, record) for record in records]
    return result + list(by_id.values())


@pytest.fixture
def validator():
    return StructuralValidator()


def validate(validator, records):
    return validator.validate_text(serialize_document(records))


class TestValidDocument:
    """Test the baseline flow."""

    def test_no_diagnostics(self, validator, valid_flow_text):
        report = validator.validate_text(valid_flow_text)
        assert report.diagnostics == []
        assert report.is_valid

    def test_deterministic(self, validator, flow_records):
        records = with_records(flow_records, DecisionRecord(id=300, message="Hi {WHO}", next_nodes="450"))
        first = validate(validator, records)
        second = validate(validator, records)
        assert first.diagnostics == second.diagnostics

    def test_report_dict(self, validator, valid_flow_text):
        data = validator.validate_text(valid_flow_text).to_dict()
        assert data["is_valid"] is True
        assert data["record_count"] == 12
        assert data["diagnostics"] == []


class TestRowStructure:
    """Test row-level findings."""

    def test_leaked_text_row_dropped(self, validator, valid_flow_text):
        report = validator.validate_text(valid_flow_text + "\n1. Welcome to the billing flow")
        assert len(report.malformed) == 1
        (diagnostic,) = report.of_kind(DiagnosticKind.NON_INTEGER_ID)
        assert diagnostic.level == ValidationLevel.WARNING
        assert diagnostic.line is not None
        assert report.is_valid

    def test_short_row_is_padded(self, validator, valid_flow_text):
        report = validator.validate_text(valid_flow_text + "\n400,D,Short,,,,,201,Hello")
        (diagnostic,) = report.of_kind(DiagnosticKind.COLUMN_COUNT)
        assert diagnostic.node_id == 400
        assert report.document.get(400).message == "Hello"

    def test_duplicate_id(self, validator, flow_records):
        report = validate(validator, flow_records + [DecisionRecord(id=300, message="again", next_nodes="201")])
        (diagnostic,) = report.of_kind(DiagnosticKind.DUPLICATE_ID)
        assert diagnostic.node_id == 300

    def test_unknown_node_type(self, validator, valid_flow_text):
        report = validator.validate_text(valid_flow_text + "\n400,X,Odd,,,,,201,Hello")
        (diagnostic,) = report.of_kind(DiagnosticKind.UNKNOWN_KIND)
        assert diagnostic.level == ValidationLevel.WARNING
        assert report.document.get(400).kind == "D"

    def test_cross_kind_field(self, validator, valid_flow_text):
        row = ["300", "D", "Billing Info", "", "", "", "", "201", "Bill ready"] + [""] * 17
        row[13] = "VarCheck"
        text = valid_flow_text.replace(
            "300,D,Billing Info,,,,,201,Your latest bill is available in the portal." + "," * 17,
            ",".join(row),
        )
        report = validator.validate_text(text)
        (diagnostic,) = report.of_kind(DiagnosticKind.CROSS_KIND_FIELD)
        assert diagnostic.node_id == 300
        assert diagnostic.field == "Command"


class TestGraph:
    """Test reference graph findings."""

    def test_orphan_reference(self, validator, flow_records):
        report = validate(validator, with_records(flow_records, DecisionRecord(id=300, message="x", next_nodes="450")))
        (diagnostic,) = report.of_kind(DiagnosticKind.ORPHAN_REFERENCE)
        assert diagnostic.node_id == 300
        assert diagnostic.field == "Next Nodes"
        assert diagnostic.payload == "450"

    def test_orphan_in_rich_content(self, validator, flow_records):
        menu = DecisionRecord(id=200, message="Menu", rich_type="button", rich_content="Billing~300|Gone~455", answer_required="1")
        report = validate(validator, with_records(flow_records, menu))
        (diagnostic,) = report.of_kind(DiagnosticKind.ORPHAN_REFERENCE)
        assert diagnostic.field == "Rich Asset Content"
        assert "Gone" in diagnostic.message

    def test_dead_end(self, validator, flow_records):
        report = validate(validator, with_records(flow_records, DecisionRecord(id=300, message="Stuck here")))
        (diagnostic,) = report.of_kind(DiagnosticKind.DEAD_END)
        assert diagnostic.node_id == 300

    def test_unreachable_is_informational(self, validator, flow_records):
        report = validate(validator, flow_records + [DecisionRecord(id=350, message="Lonely", next_nodes="201")])
        (diagnostic,) = report.of_kind(DiagnosticKind.UNREACHABLE)
        assert diagnostic.node_id == 350
        assert diagnostic.level == ValidationLevel.INFO
        assert report.is_valid

    def test_intent_nodes_are_entry_points(self, validator, flow_records):
        report = validate(
            validator, flow_records + [DecisionRecord(id=350, intent="billing", message="Hi", next_nodes="201")]
        )
        assert report.of_kind(DiagnosticKind.UNREACHABLE) == []

    def test_missing_system_nodes(self, validator, flow_records):
        records = [r for r in flow_records if r.id not in (666, 99990)]
        report = validate(validator, records)
        missing = {d.node_id for d in report.of_kind(DiagnosticKind.MISSING_SYSTEM_NODE)}
        assert missing == {666, 99990}

    def test_segment_mode_skips_system_nodes(self):
        text = serialize_document([DecisionRecord(id=300, intent="billing", message="Hi", next_nodes="301"),
                                   DecisionRecord(id=301, message="Bye", rich_type="button",
                                                  rich_content="Menu~300", answer_required="1")])
        report = StructuralValidator(require_system_nodes=False).validate_text(text)
        assert report.of_kind(DiagnosticKind.MISSING_SYSTEM_NODE) == []
        assert report.is_valid

    def test_segment_references_to_shared_nodes_resolve(self):
        text = serialize_document(
            [
                DecisionRecord(
                    id=300, intent="billing", message="Hi", rich_type="button",
                    rich_content="Agent~999|Menu~201|Lost~555", answer_required="1",
                )
            ]
        )
        segment_report = StructuralValidator(require_system_nodes=False).validate_text(text)
        full_report = StructuralValidator().validate_text(text)

        assert [d.payload for d in segment_report.of_kind(DiagnosticKind.ORPHAN_REFERENCE)] == ["555"]
        assert sorted(d.payload for d in full_report.of_kind(DiagnosticKind.ORPHAN_REFERENCE)) == ["201", "555", "999"]

    def test_explicit_external_ids(self):
        text = serialize_document([DecisionRecord(id=300, intent="billing", message="Hi", next_nodes="200,201")])
        report = StructuralValidator(require_system_nodes=False, external_ids={200}).validate_text(text)
        assert [d.payload for d in report.of_kind(DiagnosticKind.ORPHAN_REFERENCE)] == ["201"]


class TestActionNodes:
    """Test command contracts and action fields."""

    def test_routing_gap(self, validator, flow_records):
        node = ActionRecord(id=50, command="PlatformDetect", decision_var="platform", what_next="ios~300|error~99990")
        report = validate(validator, flow_records + [node])
        gaps = sorted(d.payload for d in report.of_kind(DiagnosticKind.ROUTING_GAP))
        assert gaps == ["android", "other"]

    def test_missing_error_path(self, validator, flow_records):
        node = ActionRecord(id=50, command="VarCheck", decision_var="ok", what_next="true~300|false~201")
        report = validate(validator, flow_records + [node])
        assert [d.node_id for d in report.of_kind(DiagnosticKind.MISSING_ERROR_PATH)] == [50]

    def test_contract_without_error_value(self, validator, flow_records):
        # HandleBotError never returns "error"
        assert validate(validator, flow_records).of_kind(DiagnosticKind.MISSING_ERROR_PATH) == []

    def test_empty_command_and_decision_var(self, validator, flow_records):
        node = ActionRecord(id=50, what_next="true~300|error~99990")
        report = validate(validator, flow_records + [node])
        assert report.of_kind(DiagnosticKind.EMPTY_COMMAND)
        assert report.of_kind(DiagnosticKind.MISSING_DECISION_VAR)

    def test_invalid_parameter_json(self, validator, flow_records):
        node = ActionRecord(
            id=50, command="SysSetEnv", decision_var="success", param_input="{env: prod",
            what_next="true~300|error~99990",
        )
        report = validate(validator, flow_records + [node])
        (diagnostic,) = report.of_kind(DiagnosticKind.INVALID_JSON)
        assert diagnostic.field == "Parameter Input"

    def test_undeclared_assignment(self, validator, flow_records):
        node = ActionRecord(
            id=50, command="SysAssignVariable", decision_var="success", param_input='{"set":{"CITY":"Paris"}}',
            what_next="true~300|error~99990",
        )
        report = validate(validator, flow_records + [node])
        (diagnostic,) = report.of_kind(DiagnosticKind.UNDECLARED_ASSIGNMENT)
        assert diagnostic.payload == "CITY"

        declared = node.model_copy(update={"variable": "CITY"})
        assert validate(validator, flow_records + [declared]).of_kind(DiagnosticKind.UNDECLARED_ASSIGNMENT) == []


class TestDecisionNodes:
    """Test decision field rules."""

    def test_nlu_disabled_with_several_children(self, validator, flow_records):
        node = DecisionRecord(id=300, message="x", next_nodes="201,200", nlu_disabled="1")
        report = validate(validator, with_records(flow_records, node))
        assert report.of_kind(DiagnosticKind.NLU_MULTI_CHILD)

    def test_transfer_with_next_nodes(self, validator, flow_records):
        node = DecisionRecord(id=999, name="Agent Transfer", behaviors="xfer_to_agent", next_nodes="200")
        report = validate(validator, with_records(flow_records, node))
        assert [d.node_id for d in report.of_kind(DiagnosticKind.TRANSFER_WITH_NEXT)] == [999]

    def test_rich_format_mismatch(self, validator, flow_records):
        node = DecisionRecord(id=200, message="Menu", rich_type="buttons", rich_content="Billing~300|Agent~999", answer_required="1")
        report = validate(validator, with_records(flow_records, node))
        assert report.of_kind(DiagnosticKind.RICH_FORMAT_MISMATCH)

    def test_button_separator(self, validator, flow_records):
        node = DecisionRecord(id=200, message="Menu", rich_type="button", rich_content="Billing~300Agent~999", answer_required="1")
        report = validate(validator, with_records(flow_records, node))
        assert report.of_kind(DiagnosticKind.BUTTON_SEPARATOR)

    def test_destination_type(self, validator, flow_records):
        node = DecisionRecord(
            id=200, message="Menu", rich_type="listpicker",
            rich_content='{"type":"static","options":[{"label":"Billing","dest":300}]}', answer_required="1",
        )
        report = validate(validator, with_records(flow_records, node))
        (diagnostic,) = report.of_kind(DiagnosticKind.DESTINATION_TYPE)
        assert diagnostic.payload == "Billing"

    def test_picker_requirements(self, validator, flow_records):
        node = DecisionRecord(id=300, message="When?", rich_type="datepicker", next_nodes="201")
        report = validate(validator, with_records(flow_records, node))
        assert report.of_kind(DiagnosticKind.ANSWER_REQUIRED)
        assert report.of_kind(DiagnosticKind.PICKER_FORMAT)

    def test_file_upload_defaults(self, validator, flow_records):
        node = DecisionRecord(
            id=300, rich_type="file_upload", rich_content='{"type":"action_node"}', next_nodes="201",
            answer_required="1", behaviors="disable_input",
        )
        report = validate(validator, with_records(flow_records, node))
        (diagnostic,) = report.of_kind(DiagnosticKind.UPLOAD_DEFAULTS)
        assert diagnostic.payload == "upload_label,cancel_label"


class TestVariables:
    """Test variable naming and scope."""

    def test_variable_format(self, validator, flow_records):
        node = DecisionRecord(id=300, message="x", next_nodes="201", variable="customerName")
        report = validate(validator, with_records(flow_records, node))
        (diagnostic,) = report.of_kind(DiagnosticKind.VARIABLE_FORMAT)
        assert diagnostic.payload == "customerName"

    def test_unbound_variable(self, validator, flow_records):
        node = DecisionRecord(id=300, message="Hi {CUSTOMER_NAME}", next_nodes="201")
        report = validate(validator, with_records(flow_records, node))
        (diagnostic,) = report.of_kind(DiagnosticKind.UNBOUND_VARIABLE)
        assert diagnostic.payload == "CUSTOMER_NAME"
        assert diagnostic.field == "Message"

    def test_declared_by_lower_id_is_in_scope(self, validator, flow_records):
        menu = DecisionRecord(
            id=200, message="Menu", rich_type="button", rich_content="Billing~300|Agent~999",
            answer_required="1", variable="CUSTOMER_NAME",
        )
        node = DecisionRecord(id=300, message="Hi {CUSTOMER_NAME}", next_nodes="201")
        report = validate(validator, with_records(flow_records, menu, node))
        assert report.of_kind(DiagnosticKind.UNBOUND_VARIABLE) == []

    def test_declared_by_higher_id_is_out_of_scope(self, validator, flow_records):
        later = DecisionRecord(id=310, message="Later", next_nodes="201", variable="CUSTOMER_NAME")
        node = DecisionRecord(id=300, message="Hi {CUSTOMER_NAME}", next_nodes="201")
        report = validate(validator, with_records(flow_records, node) + [later])
        assert report.of_kind(DiagnosticKind.UNBOUND_VARIABLE)

    def test_system_variables_always_available(self, validator, flow_records):
        node = DecisionRecord(id=300, message="Session {SESSION_ID}", next_nodes="201")
        report = validate(validator, with_records(flow_records, node))
        assert report.of_kind(DiagnosticKind.UNBOUND_VARIABLE) == []

    def test_node_input_binding_is_local_scope(self, validator, flow_records):
        node = ActionRecord(
            id=310, command="SendEmail", decision_var="success", param_input='{"to":"{EMAIL}"}',
            node_input="EMAIL:201", what_next="true~201|error~99990",
        )
        report = validate(validator, flow_records + [node])
        assert report.of_kind(DiagnosticKind.UNBOUND_VARIABLE) == []


class TestHelpers:
    def test_normalize_variable_name(self):
        assert normalize_variable_name(" my-var name ") == "MY_VAR_NAME"

    def test_assignment_keys(self):
        assert assignment_keys('{"set":{"A":"1","B":"2"}}') == ["A", "B"]
        assert assignment_keys("not json") == []
        assert assignment_keys('{"other":{}}') == []
