"""
Flow Contracts and Reserved Nodes

Static knowledge about the flow dialect:
- Command output contracts (values a command's decision variable can take)
- System node templates required in every flow document
- Always-available system variables
- Reserved id bands used by the node allocator
"""

from typing import Dict, FrozenSet, List, Tuple

from flow_agent.models.record import ActionRecord, DecisionRecord, Record

ENTRY_NODE_ID = 1
ERROR_HANDLER_ID = -500
END_CHAT_ID = 666
AGENT_TRANSFER_ID = 999
OUT_OF_SCOPE_ID = 1800
GENAI_ANSWER_ID = 1802
ROUTE_INTENT_ID = 1803
FALLBACK_FAIL_ID = 1804
GENERIC_ERROR_ID = 99990
MAIN_MENU_ID = 200
RETURN_MENU_ID = 201

TRANSFER_BEHAVIOR = "xfer_to_agent"
DISABLE_INPUT_BEHAVIOR = "disable_input"

# Rich asset types whose content carries selectable destinations
CHOICE_RICH_TYPES: FrozenSet[str] = frozenset({"button", "buttons", "listpicker", "quick_reply", "imagebutton"})
PICKER_RICH_TYPES: FrozenSet[str] = frozenset({"datepicker", "timepicker"})
INPUT_RICH_TYPES: FrozenSet[str] = PICKER_RICH_TYPES | {"file_upload"}
STRING_DEST_RICH_TYPES: FrozenSet[str] = frozenset({"listpicker", "imagebutton"})

ERROR_TOKEN = "error"

COMMAND_OUTPUT_CONTRACTS: Dict[str, Tuple[str, ...]] = {
    "PlatformDetect": ("ios", "android", "other", "error"),
    "UserPlatformRouting": ("ios", "android", "mac", "windows", "other", "error"),
    "HandleBotError": ("bot_error", "bot_timeout", "other"),
    "SysShowMetadata": ("true", "error"),
    "SysAssignVariable": ("true", "error"),
    "SysSetEnv": ("true", "error"),
    "SysVariableReset": ("true", "error"),
    "ValidateRegex": ("true", "false", "error"),
    "ValidateDate": ("true", "false", "error"),
    "VarCheck": ("true", "false", "error"),
    "GenAIFallback": ("understood", "route_flow", "not_understood", "error"),
}

SYSTEM_VARIABLES: FrozenSet[str] = frozenset(
    {
        "LAST_USER_MESSAGE",
        "CHATID",
        "SESSION_ID",
        "USER_PLATFORM",
        "ENV",
        "PLATFORM_ERROR",
        "AI_RESPONSE",
        "DETECTED_INTENT",
        "LAST_TOPIC",
        "LAST_ENTITY",
        "CONVERSATION_CONTEXT",
        "CONTEXT_FLOW",
        "COMPANY_NAME",
        "COMPANY_CONTEXT",
        "BOT_PERSONA",
        "CONVERSATION_HISTORY",
    }
)


def contract_for(command: str) -> Tuple[str, ...]:
    """Known result values for ``command``; empty when the command is unknown."""
    return COMMAND_OUTPUT_CONTRACTS.get(command.strip(), ())


def _system_nodes() -> Dict[int, Record]:
    nodes: List[Record] = [
        ActionRecord(
            id=ERROR_HANDLER_ID,
            name="HandleBotError",
            command="HandleBotError",
            description="Catches exceptions",
            output="error_type",
            param_input='{"save_error_to":"PLATFORM_ERROR"}',
            decision_var="error_type",
            what_next=f"bot_error~{GENERIC_ERROR_ID}|bot_timeout~{GENERIC_ERROR_ID}|other~{GENERIC_ERROR_ID}",
            variable="PLATFORM_ERROR",
        ),
        DecisionRecord(
            id=END_CHAT_ID,
            name="EndChat",
            message="Thank you for using our service. Goodbye!",
        ),
        DecisionRecord(
            id=AGENT_TRANSFER_ID,
            name="Agent Transfer",
            behaviors=TRANSFER_BEHAVIOR,
        ),
        ActionRecord(
            id=OUT_OF_SCOPE_ID,
            name="OutOfScope",
            intent="out_of_scope",
            command="GenAIFallback",
            description="Answers out-of-scope questions",
            output="result",
            param_input='{"question":"{LAST_USER_MESSAGE}"}',
            decision_var="result",
            what_next=(
                f"understood~{GENAI_ANSWER_ID}|route_flow~{ROUTE_INTENT_ID}"
                f"|not_understood~{FALLBACK_FAIL_ID}|error~{FALLBACK_FAIL_ID}"
            ),
            variable="AI_RESPONSE",
        ),
        DecisionRecord(
            id=GENAI_ANSWER_ID,
            name="GenAIResponse",
            message="{AI_RESPONSE}",
            next_nodes=str(OUT_OF_SCOPE_ID),
            rich_type="quick_reply",
            rich_content=(
                '{"type":"static","options":[{"label":"Back to Menu","dest":200},'
                '{"label":"All Done","dest":666},{"label":"Talk to Agent","dest":999}]}'
            ),
            answer_required="1",
        ),
        ActionRecord(
            id=ROUTE_INTENT_ID,
            name="RouteDetectedIntent",
            command="SysMultiMatchRouting",
            description="Route to detected flow",
            output="route_to",
            param_input='{"global_vars":"DETECTED_INTENT","input_vars":""}',
            decision_var="route_to",
            what_next=f"error~{FALLBACK_FAIL_ID}",
        ),
        DecisionRecord(
            id=FALLBACK_FAIL_ID,
            name="FallbackFail",
            message="I want to make sure I help you correctly. Let me connect you with someone who can assist.",
            rich_type="button",
            rich_content=f"Talk to Agent~{AGENT_TRANSFER_ID}|Start Over~{ENTRY_NODE_ID}",
            answer_required="1",
            behaviors=DISABLE_INPUT_BEHAVIOR,
        ),
        DecisionRecord(
            id=GENERIC_ERROR_ID,
            name="Error Message",
            message="Oops! Something went wrong. Let me help you get back on track.",
            rich_type="button",
            rich_content=f"Start Over~{ENTRY_NODE_ID}|Talk to Agent~{AGENT_TRANSFER_ID}",
            answer_required="1",
            behaviors=DISABLE_INPUT_BEHAVIOR,
        ),
    ]
    return {node.id: node for node in nodes}


SYSTEM_NODE_TEMPLATES: Dict[int, Record] = _system_nodes()

ENTRY_NODE_TEMPLATE: Record = ActionRecord(
    id=ENTRY_NODE_ID,
    name="SysShowMetadata",
    command="SysShowMetadata",
    description="Gets session info",
    output="success",
    param_input='{"passthrough_mapping":{},"assign_metadata_vars":{"chat_id":"CHATID","session_id":"SESSION_ID"}}',
    decision_var="success",
    what_next=f"true~{MAIN_MENU_ID}|error~{GENERIC_ERROR_ID}",
    variable="CHATID",
)

REQUIRED_NODE_IDS: Tuple[int, ...] = (ENTRY_NODE_ID, *SYSTEM_NODE_TEMPLATES)

# Terminal nodes never count as dead ends
TERMINAL_NODE_IDS: FrozenSet[int] = frozenset({END_CHAT_ID})

# Id bands: (start, end) inclusive
STARTUP_BAND = (1, 199)
MAIN_MENU_BAND = (200, 299)
FLOW_BAND_START = 300
FLOW_BAND_WIDTH = 100

SYSTEM_NODE_IDS: FrozenSet[int] = frozenset(SYSTEM_NODE_TEMPLATES)

# Menu nodes come from the main-menu sequence, not from flow segments
MENU_NODE_IDS: FrozenSet[int] = frozenset({MAIN_MENU_ID, RETURN_MENU_ID})

# Nodes every assembled document provides; flow segments may route to them
SHARED_NODE_IDS: FrozenSet[int] = SYSTEM_NODE_IDS | MENU_NODE_IDS | {ENTRY_NODE_ID}


def flow_band(flow_index: int) -> Tuple[int, int]:
    """Inclusive id range owned by the flow at ``flow_index``."""
    start = FLOW_BAND_START + flow_index * FLOW_BAND_WIDTH
    return start, start + FLOW_BAND_WIDTH - 1
