"""Tests for orchestrator.py - waves, retries, compensations and idempotent replay."""
import threading
import time

import pytest
import sys
from pathlib import Path
from unittest.mock import MagicMock

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from action_validator import ActionValidator
from config import OrchestratorConfig
from conftest import make_candidate
from errors import DownstreamServiceError, TenantIsolationViolation, TransientDownstreamError, ValidationError
from history_store import InMemoryHistoryStore
from locks import KeyedLock
from metrics import RequestMetrics
from models import (
    ActionDraft,
    ActionStep,
    ActionType,
    Compensation,
    EntityType,
    IntentOrigin,
    IntentType,
    ParsedIntent,
    RiskLevel,
    StepKind,
    StepRef,
)
from orchestrator import SKIPPED_AFTER_FAILURE, SKIPPED_DEPENDENCY, ActionOrchestrator, plan_waves, resolve_arguments

T = {"tenant_id": "acme"}


def step(step_id, operation=None, depends_on=(), compensation=None, kind=StepKind.API_CALL, idempotent=False, can_skip=False, **arguments):
    return ActionStep(
        id=step_id,
        kind=kind,
        description=step_id,
        operation=operation,
        arguments={**T, **arguments} if operation else {},
        depends_on=tuple(depends_on),
        idempotent=idempotent,
        can_skip=can_skip,
        compensation=compensation,
    )


def draft_of(*steps):
    return ActionDraft(
        action_type=ActionType.ASSIGN_TASK,
        target_entity_id="task-pay-backoff",
        target_entity_type=EntityType.TASK,
        parameters={},
        risk_level=RiskLevel.LOW,
        steps=list(steps),
        reasoning="test",
    )


def take_then_start():
    """Assign a task, then move it to in progress."""
    return draft_of(
        step(
            "take",
            "task.assign",
            compensation=Compensation("task.release", {**T, "task_id": "task-pay-backoff"}, "Release"),
            task_id="task-pay-backoff",
            user_id="alice",
        ),
        step("start", "task.update_status", depends_on=("take",), task_id="task-pay-backoff", status="in_progress"),
    )


@pytest.fixture
def history():
    return InMemoryHistoryStore()


@pytest.fixture
def orchestrator(ports, history):
    orchestrator = ActionOrchestrator(ports, history, OrchestratorConfig(step_timeout=2.0))
    yield orchestrator
    orchestrator.shutdown()


@pytest.mark.unit
class TestPlanning:
    """Test wave planning and argument references."""

    def test_waves_follow_dependencies(self):
        waves = plan_waves([step("a"), step("b", depends_on=("a",)), step("c", depends_on=("a",)), step("d", depends_on=("b", "c"))])
        assert [[s.id for s in wave] for wave in waves] == [["a"], ["b", "c"], ["d"]]

    def test_cycle_rejected(self):
        with pytest.raises(ValidationError, match="cycle"):
            plan_waves([step("a", depends_on=("b",)), step("b", depends_on=("a",))])

    def test_unknown_dependency_rejected(self):
        with pytest.raises(ValidationError, match="unknown"):
            plan_waves([step("a", depends_on=("ghost",))])

    def test_duplicate_ids_rejected(self):
        with pytest.raises(ValidationError, match="duplicate"):
            plan_waves([step("a"), step("a")])

    def test_resolve_arguments(self):
        resolved = resolve_arguments({"task_id": StepRef("create", "id"), "note": "$create.id", "n": 3}, {"create": {"id": "task-9"}})
        assert resolved == {"task_id": "task-9", "note": "$create.id", "n": 3}

    def test_missing_reference(self):
        with pytest.raises(ValidationError, match="missing output"):
            resolve_arguments({"task_id": StepRef("create", "id")}, {})


@pytest.mark.integration
class TestExecution:
    """Test execution against the fake services."""

    def test_all_steps_succeed(self, orchestrator, backend, tenant_context):
        metrics = RequestMetrics()
        result = orchestrator.execute(take_then_start(), "key-1", tenant_context, metrics=metrics)

        assert result.success and not result.partial_success
        assert result.rollback_token is None
        assert backend.tasks["task-pay-backoff"]["assignee"] == "alice"
        assert backend.tasks["task-pay-backoff"]["status"] == "in_progress"
        assert metrics.steps_total == 2 and metrics.steps_failed == 0

    def test_failed_step_compensates_earlier_steps(self, orchestrator, backend, tenant_context):
        """Step two fails after step one succeeded: partial success, step one is undone."""
        backend.fail("task.update_status", DownstreamServiceError("task", "500 internal error"))

        result = orchestrator.execute(take_then_start(), "key-1", tenant_context)

        assert not result.success
        assert result.partial_success
        assert result.rollback_token is not None
        assert [r.success for r in result.step_results] == [True, False]
        assert result.compensations == [
            {"step_id": "take", "operation": "task.release", "description": "Release", "success": True, "error": None}
        ]
        assert backend.tasks["task-pay-backoff"]["assignee"] is None

    def test_later_waves_skipped_after_failure(self, orchestrator, backend, tenant_context):
        backend.fail("task.assign", DownstreamServiceError("task", "500"))
        draft = draft_of(
            step("take", "task.assign", task_id="task-pay-backoff", user_id="alice"),
            step("comment", "task.add_comment", depends_on=("take",), task_id="task-pay-backoff", body="hi"),
        )

        result = orchestrator.execute(draft, "key-1", tenant_context)

        skipped = result.step_results[1]
        assert skipped.skipped and skipped.error == SKIPPED_AFTER_FAILURE
        assert not result.partial_success
        assert "task.add_comment" not in backend.operations()

    def test_compensation_uses_step_outputs(self, orchestrator, backend, tenant_context):
        backend.fail("task.assign", DownstreamServiceError("task", "500"))
        draft = draft_of(
            step(
                "create_task",
                "task.create_task",
                compensation=Compensation("task.delete_task", {**T, "task_id": StepRef("create_task", "id")}, "Delete"),
                story_id="story-checkout",
                title="Write tests",
            ),
            step("take", "task.assign", depends_on=("create_task",), task_id=StepRef("create_task", "id"), user_id="alice"),
        )

        result = orchestrator.execute(draft, "key-1", tenant_context)

        created_id = result.step_results[0].output["id"]
        assert created_id not in backend.tasks
        assert ("task.delete_task", {"tenant_id": "acme", "task_id": created_id}) in backend.calls

    def test_compensations_run_newest_first(self, orchestrator, backend, tenant_context):
        backend.fail("task.update_status", DownstreamServiceError("task", "500"))
        draft = draft_of(
            step("one", "task.assign", compensation=Compensation("task.release", {**T, "task_id": "task-pay-backoff"}, "1"),
                 task_id="task-pay-backoff", user_id="alice"),
            step("two", "task.assign", depends_on=("one",), compensation=Compensation("task.release", {**T, "task_id": "task-pay-alerts"}, "2"),
                 task_id="task-pay-alerts", user_id="alice"),
            step("three", "task.update_status", depends_on=("two",), task_id="task-pay-backoff", status="done"),
        )

        result = orchestrator.execute(draft, "key-1", tenant_context)
        assert [c["step_id"] for c in result.compensations] == ["two", "one"]

    def test_failed_compensation_is_recorded(self, orchestrator, backend, tenant_context):
        backend.fail("task.update_status", DownstreamServiceError("task", "500"))
        backend.fail("task.release", DownstreamServiceError("task", "503 unavailable"))

        result = orchestrator.execute(take_then_start(), "key-1", tenant_context)

        assert result.compensations[0]["success"] is False
        assert "503" in result.compensations[0]["error"]

    def test_idempotent_step_retried_once(self, orchestrator, backend, tenant_context):
        backend.fail("task.get_task", TransientDownstreamError("task", "timeout"))
        draft = draft_of(step("check", "task.get_task", kind=StepKind.VALIDATION, idempotent=True, task_id="task-login"))

        result = orchestrator.execute(draft, "key-1", tenant_context)

        assert result.success
        assert result.step_results[0].attempts == 2

    def test_idempotent_step_gives_up_after_retry(self, orchestrator, backend, tenant_context):
        backend.fail(
            "task.get_task", TransientDownstreamError("task", "timeout"), TransientDownstreamError("task", "timeout")
        )
        draft = draft_of(step("check", "task.get_task", kind=StepKind.VALIDATION, idempotent=True, task_id="task-login"))

        result = orchestrator.execute(draft, "key-1", tenant_context)

        assert not result.success
        assert result.step_results[0].attempts == 2

    def test_mutating_step_never_retried(self, orchestrator, backend, tenant_context):
        backend.fail("task.assign", TransientDownstreamError("task", "timeout"))

        result = orchestrator.execute(take_then_start(), "key-1", tenant_context)

        assert not result.success
        assert result.step_results[0].attempts == 1
        assert backend.operations().count("task.assign") == 1

    def test_notify_failure_does_not_halt(self, orchestrator, backend, tenant_context):
        backend.fail("notification.notify", DownstreamServiceError("notification", "500"))
        draft = draft_of(
            step("take", "task.assign", task_id="task-pay-backoff", user_id="bob"),
            step("notify", "notification.notify", depends_on=("take",), kind=StepKind.NOTIFY, can_skip=True,
                 user_id="bob", message="assigned"),
        )

        result = orchestrator.execute(draft, "key-1", tenant_context)

        assert result.success
        assert result.partial_success
        assert result.rollback_token is not None
        assert result.compensations == []
        assert backend.tasks["task-pay-backoff"]["assignee"] == "bob"

    def test_dependent_of_skippable_failure_is_skipped(self, orchestrator, backend, tenant_context):
        backend.fail("notification.notify", DownstreamServiceError("notification", "500"))
        draft = draft_of(
            step("notify", "notification.notify", kind=StepKind.NOTIFY, can_skip=True, user_id="bob", message="hi"),
            step("comment", "task.add_comment", depends_on=("notify",), task_id="task-login", body="pinged bob"),
        )

        result = orchestrator.execute(draft, "key-1", tenant_context)

        assert result.step_results[1].error == SKIPPED_DEPENDENCY

    def test_step_timeout_is_a_failure(self, history, tenant_context):
        slow_ports = MagicMock()
        slow_ports.call.side_effect = lambda operation, arguments: time.sleep(0.3)
        orchestrator = ActionOrchestrator(slow_ports, history, OrchestratorConfig(step_timeout=0.05))
        try:
            result = orchestrator.execute(take_then_start(), "key-1", tenant_context)
        finally:
            orchestrator.shutdown()

        assert not result.success
        assert "no response" in result.step_results[0].error

    def test_dollar_prefixed_user_text_passes_through(self, orchestrator, ports, backend, tenant_context):
        body = "$5.00 per seat is too much"
        draft = ActionValidator(ports).build_draft(
            ParsedIntent(IntentType.ADD_COMMENT, {"comment": body}, 0.9, IntentOrigin.LLM),
            make_candidate("task-login", 0.9),
            tenant_context,
        )

        result = orchestrator.execute(draft, "key-1", tenant_context)

        assert result.success
        assert backend.comments[-1]["body"] == body


@pytest.mark.integration
class TestIdempotency:
    """Test replay of stored results."""

    def test_second_call_replays(self, orchestrator, backend, history, tenant_context):
        first = orchestrator.execute(take_then_start(), "key-1", tenant_context)
        calls_after_first = len(backend.calls)
        second = orchestrator.execute(take_then_start(), "key-1", tenant_context)

        assert not first.replayed
        assert second.replayed
        assert second.success == first.success
        assert len(backend.calls) == calls_after_first
        assert orchestrator.replay("acme", "key-1").replayed
        assert orchestrator.replay("acme", "other-key") is None

    def test_keys_scoped_by_tenant(self, orchestrator, history, tenant_context):
        orchestrator.execute(take_then_start(), "key-1", tenant_context)
        assert history.find_act_by_idempotency_key("globex", "key-1") is None

    def test_concurrent_same_key_runs_once(self, orchestrator, backend, tenant_context):
        results = []
        barrier = threading.Barrier(6)

        def run():
            barrier.wait()
            results.append(orchestrator.execute(take_then_start(), "shared", tenant_context))

        threads = [threading.Thread(target=run) for _ in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert backend.operations().count("task.assign") == 1
        assert sum(not r.replayed for r in results) == 1
        assert len(orchestrator._key_locks) == 0

    def test_key_locks_released_after_each_call(self, orchestrator, tenant_context):
        for n in range(50):
            orchestrator.execute(take_then_start(), f"key-{n}", tenant_context)
        assert len(orchestrator._key_locks) == 0

    def test_blank_key_rejected(self, orchestrator, tenant_context):
        with pytest.raises(ValidationError):
            orchestrator.execute(take_then_start(), "  ", tenant_context)

    def test_cross_tenant_step_rejected(self, orchestrator, backend, tenant_context):
        draft = draft_of(step("take", "task.assign", task_id="globex-login", user_id="alice", tenant_id="globex"))
        with pytest.raises(TenantIsolationViolation):
            orchestrator.execute(draft, "key-1", tenant_context)
        assert backend.calls == []


@pytest.mark.unit
class TestKeyedLock:
    """Test per-key locking and cleanup."""

    def test_waiter_keeps_lock_until_done(self):
        locks = KeyedLock()
        order = []

        def second():
            with locks.acquire("k"):
                order.append("second")

        with locks.acquire("k"):
            thread = threading.Thread(target=second)
            thread.start()
            time.sleep(0.05)
            order.append("first")
            assert len(locks) == 1
        thread.join()

        assert order == ["first", "second"]
        assert len(locks) == 0

    def test_released_on_exception(self):
        locks = KeyedLock()
        with pytest.raises(RuntimeError):
            with locks.acquire("k"):
                raise RuntimeError("boom")
        assert len(locks) == 0
        with locks.acquire("k"):
            pass
