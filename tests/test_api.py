"""
Tests for the REST API.
"""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from flow_agent import __version__
from flow_agent.agent.collaborators import SemanticValidator, ValidationOutcome
from flow_agent.agent.error_handler import AuthenticationError
from flow_agent.agent.orchestrator import RefinementOrchestrator
from flow_agent.api.app import app
from flow_agent.models.diagnostics import ExternalError
from flow_agent.models.record import DecisionRecord
from flow_agent.stages.codec import serialize_document


@pytest.fixture
def client():
    return TestClient(app)


class StaticValidator(SemanticValidator):
    def __init__(self, errors=None, fail=None):
        self.errors = errors or []
        self.fail = fail

    async def validate(self, document_text):
        if self.fail is not None:
            raise self.fail
        return ValidationOutcome(valid=not self.errors, errors=self.errors, version_id="v1")


def segment(intent):
    return serialize_document(
        [
            DecisionRecord(id=300, intent=intent, message="Hi", next_nodes="301"),
            DecisionRecord(id=301, message="Bye", rich_type="button", rich_content="Menu~300", answer_required="1"),
        ]
    )


class TestServiceEndpoints:
    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["version"] == __version__

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}


class TestValidateEndpoint:
    def test_valid_document(self, client, valid_flow_text):
        response = client.post("/api/v1/flows/validate", json={"csv": valid_flow_text})
        assert response.status_code == 200
        assert response.json()["is_valid"] is True

    def test_segment_mode(self, client):
        response = client.post("/api/v1/flows/validate", json={"csv": segment("billing"), "segment": True})
        assert response.json()["is_valid"] is True

    def test_empty_document_rejected(self, client):
        assert client.post("/api/v1/flows/validate", json={"csv": ""}).status_code == 422


class TestRepairEndpoint:
    def test_repair(self, client, flow_records):
        records = [r.model_copy(update={"next_nodes": "555"}) if r.id == 300 else r for r in flow_records]
        response = client.post("/api/v1/flows/repair", json={"csv": serialize_document(records)})

        assert response.status_code == 200
        data = response.json()
        assert data["fix_log"]
        assert all(d["level"] != "error" for d in data["remaining"])


class TestRemapEndpoint:
    def test_remap(self, client):
        response = client.post("/api/v1/flows/remap", json={"segments": [segment("billing"), segment("support")]})

        assert response.status_code == 200
        assert response.json()["mappings"] == {"0": {}, "1": {"300": 400, "301": 401}}

    def test_requires_segments(self, client):
        assert client.post("/api/v1/flows/remap", json={"segments": []}).status_code == 422


class TestRefineEndpoint:
    def test_no_validator_configured(self, client, valid_flow_text, monkeypatch):
        monkeypatch.delenv("FLOW_VALIDATOR_URL", raising=False)
        response = client.post("/api/v1/flows/refine", json={"csv": valid_flow_text, "use_ai": False})
        assert response.status_code == 400

    def test_accepted(self, client, valid_flow_text):
        orchestrator = RefinementOrchestrator(StaticValidator())
        with patch("flow_agent.api.routes.build_orchestrator", return_value=orchestrator):
            response = client.post("/api/v1/flows/refine", json={"csv": valid_flow_text})

        assert response.status_code == 200
        data = response.json()
        assert data["valid"] is True
        assert data["version_id"] == "v1"

    def test_not_converged_returns_errors(self, client, valid_flow_text):
        error = ExternalError(field="Greeting", message="Tone is too formal")
        orchestrator = RefinementOrchestrator(StaticValidator(errors=[error]))
        with patch("flow_agent.api.routes.build_orchestrator", return_value=orchestrator):
            response = client.post("/api/v1/flows/refine", json={"csv": valid_flow_text})

        data = response.json()
        assert data["valid"] is False
        assert data["stopped_reason"] == "stuck"
        assert data["remaining_errors"][0]["message"] == "Tone is too formal"

    def test_authentication_failure(self, client, valid_flow_text):
        orchestrator = RefinementOrchestrator(StaticValidator(fail=AuthenticationError("token expired", status=401)))
        with patch("flow_agent.api.routes.build_orchestrator", return_value=orchestrator):
            response = client.post("/api/v1/flows/refine", json={"csv": valid_flow_text})

        assert response.status_code == 401
        assert response.json()["detail"] == "token expired"
