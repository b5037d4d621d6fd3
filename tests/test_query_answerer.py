"""Tests for query_answerer.py - status, search and sprint report answers."""
import pytest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from conftest import make_candidate
from errors import TenantIsolationViolation, ValidationError
from models import EntityType
from query_answerer import QueryAnswerer


@pytest.fixture
def answerer(ports):
    return QueryAnswerer(ports)


def reads_only(backend) -> bool:
    return all(operation.split(".", 1)[1].startswith("get_") for operation in backend.operations())


@pytest.mark.unit
class TestStatus:
    """Test status answers for one or more items."""

    def test_single_item(self, answerer, tenant_context, backend):
        answer = answerer.status([make_candidate("task-login", 0.9)], tenant_context)
        assert answer.kind == "status"
        assert answer.summary == "'Login page validation' is in_progress, assigned to alice."
        assert answer.items == [
            {"id": "task-login", "entity_type": "task", "title": "Login page validation",
             "status": "in_progress", "assignee": "alice"}
        ]
        assert reads_only(backend)

    def test_several_items(self, answerer, tenant_context):
        candidates = [make_candidate("task-pay-backoff", 0.6), make_candidate("task-pay-alerts", 0.58)]
        answer = answerer.status(candidates, tenant_context)
        assert answer.summary.startswith("2 items match")
        assert [row["status"] for row in answer.items] == ["todo", "todo"]

    def test_deleted_item(self, answerer, tenant_context, backend):
        del backend.tasks["task-login"]
        with pytest.raises(ValidationError, match="no longer exists"):
            answerer.status([make_candidate("task-login", 0.9)], tenant_context)

    def test_other_tenant_item_hidden(self, answerer, tenant_context):
        with pytest.raises(ValidationError):
            answerer.status([make_candidate("globex-login", 0.9)], tenant_context)

    def test_leaked_record_rejected(self, answerer, tenant_context, ports, backend):
        ports.task.get_task = lambda tenant_id, task_id: dict(backend.tasks["globex-login"])
        with pytest.raises(TenantIsolationViolation):
            answerer.status([make_candidate("task-login", 0.9)], tenant_context)


@pytest.mark.unit
class TestSearch:
    """Test search listings."""

    def test_lists_rows(self, answerer, tenant_context):
        candidates = [
            make_candidate("task-pay-backoff", 0.6),
            make_candidate("story-checkout", 0.4, entity_type=EntityType.STORY),
        ]
        answer = answerer.search(candidates, tenant_context)
        assert answer.summary == "Found 2 items."
        assert answer.items[1] == {
            "id": "story-checkout", "entity_type": "story", "title": "Checkout redesign",
            "status": "ready", "priority": 3, "sprint_id": "sprint-42",
        }

    def test_single_result_wording(self, answerer, tenant_context):
        answer = answerer.search([make_candidate("task-login", 0.9)], tenant_context)
        assert answer.summary == "Found 1 item."


@pytest.mark.unit
class TestSprintReport:
    """Test sprint progress reports."""

    def test_report_counts(self, answerer, tenant_context, backend):
        answer = answerer.sprint_report("sprint-42", tenant_context)
        assert answer.kind == "report"
        assert answer.report == {
            "sprint_id": "sprint-42",
            "name": "Sprint 42 Falcon",
            "status": "active",
            "total": 1,
            "by_status": {"ready": 1},
            "completion": 0.0,
        }
        assert answer.items == [{"id": "story-checkout", "title": "Checkout redesign", "status": "ready"}]
        assert answer.summary == "Sprint 42 Falcon: 0 of 1 items done."
        assert reads_only(backend)

    def test_done_items_leave_open_list(self, answerer, tenant_context, backend):
        backend.stories["story-checkout"]["status"] = "done"
        answer = answerer.sprint_report("sprint-42", tenant_context)
        assert answer.report["completion"] == 1.0
        assert answer.items == []

    def test_empty_sprint(self, answerer, tenant_context, backend):
        backend.sprint_items["sprint-42"] = []
        answer = answerer.sprint_report("sprint-42", tenant_context)
        assert answer.report["total"] == 0
        assert answer.report["completion"] == 0.0

    def test_unknown_sprint(self, answerer, tenant_context):
        with pytest.raises(ValidationError):
            answerer.sprint_report("sprint-99", tenant_context)

    def test_to_dict(self, answerer, tenant_context):
        payload = answerer.sprint_report("sprint-41", tenant_context).to_dict()
        assert payload["kind"] == "report"
        assert payload["report"]["by_status"] == {"backlog": 1}
