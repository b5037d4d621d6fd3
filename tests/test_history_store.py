"""Tests for history_store.py - append-only audit log in memory and on SQLite."""
from datetime import timedelta

import pytest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from config import StorageConfig
from errors import IdempotencyConflict
from history_store import InMemoryHistoryStore, SqlHistoryStore
from models import AuditEntry, EntryKind, ResolutionState, utcnow
from storage import create_all_tables, create_db_engine, create_session_factory, ping


@pytest.fixture
def engine(tmp_path):
    engine = create_db_engine(StorageConfig(database_url=f"sqlite:///{tmp_path / 'history.db'}"))
    create_all_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture(params=["memory", "sql"])
def store(request, engine):
    if request.param == "memory":
        return InMemoryHistoryStore()
    return SqlHistoryStore(create_session_factory(engine))


def interpret_entry(tenant_id="acme", **overrides):
    values = dict(
        tenant_id=tenant_id,
        user_id="alice",
        kind=EntryKind.INTERPRET,
        utterance_hash="ab" * 32,
        parsed_intent={"type": "mark_complete", "slots": {"target": "login"}, "source_confidence": 0.9, "origin": "llm"},
        candidates=[{"id": "task-login", "final_score": 0.93}],
        state=ResolutionState.AMBIGUOUS.value,
    )
    values.update(overrides)
    return AuditEntry(**values)


def act_entry(key, tenant_id="acme", interpret_id=None, **overrides):
    return AuditEntry(
        tenant_id=tenant_id,
        user_id="alice",
        kind=EntryKind.ACT,
        chosen_candidate_id="task-login",
        state=ResolutionState.USER_SELECTED.value,
        action={"action_type": "mark_task_complete"},
        action_result={"success": True, "partial_success": False, "step_results": []},
        idempotency_key=key,
        interpret_id=interpret_id,
        **overrides,
    )


@pytest.mark.integration
class TestHistoryStore:
    """Behaviour shared by the in-memory and SQL stores."""

    def test_append_and_get(self, store):
        entry = store.append(interpret_entry())
        loaded = store.get("acme", entry.id)

        assert loaded.id == entry.id
        assert loaded.parsed_intent == entry.parsed_intent
        assert loaded.candidate_ids == ["task-login"]
        assert loaded.created_at.tzinfo is not None

    def test_get_is_tenant_scoped(self, store):
        entry = store.append(interpret_entry())
        assert store.get("globex", entry.id) is None

    def test_duplicate_act_key_conflicts(self, store):
        store.append(act_entry("key-1"))
        with pytest.raises(IdempotencyConflict):
            store.append(act_entry("key-1"))

    def test_same_key_in_other_tenant_is_independent(self, store):
        store.append(act_entry("key-1"))
        store.append(act_entry("key-1", tenant_id="globex"))
        assert store.find_act_by_idempotency_key("globex", "key-1").tenant_id == "globex"

    def test_find_act_by_key(self, store):
        stored = store.append(act_entry("key-1"))
        assert store.find_act_by_idempotency_key("acme", "key-1").id == stored.id
        assert store.find_act_by_idempotency_key("acme", "key-2") is None

    def test_recent_newest_first_with_kind_filter(self, store):
        start = utcnow()
        first = store.append(interpret_entry(created_at=start))
        second = store.append(act_entry("key-1", created_at=start + timedelta(seconds=1)))
        third = store.append(interpret_entry(created_at=start + timedelta(seconds=2)))
        store.append(interpret_entry(tenant_id="globex"))

        assert [e.id for e in store.recent("acme")] == [third.id, second.id, first.id]
        assert [e.id for e in store.recent("acme", limit=1)] == [third.id]
        assert [e.id for e in store.recent("acme", kind=EntryKind.ACT)] == [second.id]

    def test_find_linked(self, store):
        interpret = store.append(interpret_entry())
        dismissal = store.append(
            AuditEntry(
                tenant_id="acme",
                user_id="alice",
                kind=EntryKind.DISMISSAL,
                state=ResolutionState.CANCELLED.value,
                interpret_id=interpret.id,
                note="wrong task",
            )
        )

        linked = store.find_linked("acme", interpret.id)
        assert [e.id for e in linked] == [dismissal.id]
        assert linked[0].note == "wrong task"
        assert store.find_linked("globex", interpret.id) == []


@pytest.mark.integration
def test_ping(engine):
    assert ping(engine)
