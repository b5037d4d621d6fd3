"""Integration tests for batch processing through the CLI entry points."""
import json
import pytest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from conftest import ACME_ENTITIES, llm_payload, make_llm_client
from health import get_health_status
from main import load_utterances, process_utterances
from models import EntityType, TenantContext, Utterance
from retrieval import load_entities
from service import build_in_memory_service


@pytest.fixture
def utterances_file(tmp_path):
    path = tmp_path / "utterances.json"
    path.write_text(
        json.dumps(
            [
                {"tenant_id": "acme", "user_id": "alice", "text": "I finished the login task", "active_sprint_id": "sprint-42"},
                {"tenant_id": "acme", "user_id": "bob", "text": "close the sprint", "entity_type_hint": "sprint"},
            ]
        )
    )
    return path


@pytest.fixture
def entities_file(tmp_path):
    path = tmp_path / "entities.json"
    path.write_text(json.dumps(ACME_ENTITIES))
    return path


@pytest.mark.integration
class TestLoadUtterances:
    """Test loading utterances from a JSON file."""

    def test_records_become_utterance_and_context(self, utterances_file):
        requests = load_utterances(utterances_file)

        assert len(requests) == 2
        utterance, context = requests[0]
        assert isinstance(utterance, Utterance)
        assert isinstance(context, TenantContext)
        assert utterance.tenant_id == context.tenant_id == "acme"
        assert context.active_sprint_id == "sprint-42"
        assert requests[1][1].entity_type_hint is EntityType.SPRINT

    def test_entities_snapshot(self, entities_file):
        entities = load_entities(entities_file)
        assert [e.id for e in entities] == [record["id"] for record in ACME_ENTITIES]
        assert entities[0].pull_requests == ["#412"]


@pytest.mark.integration
class TestProcessUtterances:
    """Test a batch run against fake services."""

    @pytest.fixture
    def service(self, app_config, ports, entities_file):
        service = build_in_memory_service(
            app_config,
            ports,
            llm_client=make_llm_client(llm_payload("mark_complete", 0.93, target="login page validation")),
        )
        service.retrieval.index(load_entities(entities_file))
        yield service
        service.shutdown()

    def test_batch_results(self, service, backend, utterances_file):
        results = process_utterances(service, load_utterances(utterances_file)[:1])

        assert len(results) == 1
        result = results[0]
        assert result["state"] == "Resolved"
        assert result["act_result"]["success"] is True
        assert len(result["utterance_hash"]) == 64
        assert "finished the login" not in json.dumps(result)
        assert backend.tasks["task-login"]["status"] == "done"

    def test_correlation_ids_unique(self, service, utterances_file):
        results = process_utterances(service, load_utterances(utterances_file))
        correlation_ids = [r["correlation_id"] for r in results]
        assert len(set(correlation_ids)) == len(correlation_ids)

    def test_health_without_database(self, service):
        status = get_health_status(service)

        assert status.healthy
        assert status.checks["retrieval"].metadata["indexed_entities"] == len(ACME_ENTITIES)
        assert "llm_connection" not in status.checks

    def test_health_with_llm_probe(self, service):
        status = get_health_status(service, include_llm_check=True)
        assert status.checks["llm_connection"].healthy
