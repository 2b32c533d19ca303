"""Pytest configuration for flow-agent tests."""

from typing import List

import pytest

from flow_agent.core.observability import ObservabilityConfig, ObservabilityManager
from flow_agent.models.contracts import ENTRY_NODE_TEMPLATE, SYSTEM_NODE_TEMPLATES
from flow_agent.models.record import DecisionRecord, Record
from flow_agent.stages.codec import serialize_document

# Configure pytest-asyncio
pytest_plugins = ("pytest_asyncio",)


def pytest_configure(config):
    """Configure pytest with asyncio support."""
    config.option.asyncio_mode = "auto"


@pytest.fixture(autouse=True, scope="session")
def observability():
    """Quiet logging and no span export during tests."""
    return ObservabilityManager.initialize(
        ObservabilityConfig(service_name="flow-agent-tests", log_level="WARNING")
    )


# ===========================
# Flow document fixtures
# ===========================


def build_flow_records() -> List[Record]:
    """A small, structurally valid flow: entry, menus, one content node, system nodes."""
    return [
        ENTRY_NODE_TEMPLATE,
        DecisionRecord(
            id=200,
            name="Main Menu",
            message="How can I help you today?",
            rich_type="button",
            rich_content="Billing~300|Talk to Agent~999",
            answer_required="1",
        ),
        DecisionRecord(
            id=201,
            name="Return Menu",
            message="Anything else?",
            rich_type="button",
            rich_content="Main Menu~200|All Done~666",
            answer_required="1",
        ),
        DecisionRecord(
            id=300,
            name="Billing Info",
            message="Your latest bill is available in the portal.",
            next_nodes="201",
        ),
        *SYSTEM_NODE_TEMPLATES.values(),
    ]


@pytest.fixture
def flow_records() -> List[Record]:
    return build_flow_records()


@pytest.fixture
def valid_flow_text(flow_records) -> str:
    return serialize_document(flow_records)


