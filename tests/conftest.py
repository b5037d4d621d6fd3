"""Pytest configuration and shared fixtures."""
import json
import sys
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock

import pytest

# Add src directory to Python path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from config import AppConfig, LLMConfig, RetrievalConfig
from errors import DownstreamServiceError
from models import EntityCandidate, EntityType, TenantContext
from ports import Ports
from retrieval import HashingEmbedder, IndexedEntity, RetrievalClient


class FakeBackend:
    """In-memory story/task/sprint/notification services shared by the fake ports."""

    def __init__(self) -> None:
        self.stories: Dict[str, Dict[str, Any]] = {}
        self.tasks: Dict[str, Dict[str, Any]] = {}
        self.sprints: Dict[str, Dict[str, Any]] = {}
        self.sprint_items: Dict[str, List[str]] = {}
        self.comments: List[Dict[str, Any]] = []
        self.notifications: List[Dict[str, Any]] = []
        self.members: Dict[str, set] = {}
        self.calls: List[tuple] = []
        self.failures: Dict[str, List[Exception]] = {}
        self._lock = threading.Lock()
        self._next_id = 0

    def fail(self, operation: str, *errors: Exception) -> None:
        """Queue errors raised by the next calls to ``operation``."""
        self.failures.setdefault(operation, []).extend(errors)

    def record(self, operation: str, **arguments: Any) -> None:
        with self._lock:
            self.calls.append((operation, arguments))
            queue = self.failures.get(operation)
            error = queue.pop(0) if queue else None
        if error is not None:
            raise error

    def operations(self) -> List[str]:
        return [operation for operation, _ in self.calls]

    def new_id(self, prefix: str) -> str:
        with self._lock:
            self._next_id += 1
            return f"{prefix}-new-{self._next_id}"

    @staticmethod
    def scoped(records: Dict[str, Dict[str, Any]], tenant_id: str, record_id: str) -> Optional[Dict[str, Any]]:
        record = records.get(record_id)
        if record is None or record["tenant_id"] != tenant_id:
            return None
        return record

    def require(self, records: Dict[str, Dict[str, Any]], tenant_id: str, record_id: str, service: str) -> Dict[str, Any]:
        record = self.scoped(records, tenant_id, record_id)
        if record is None:
            raise DownstreamServiceError(service, f"404 {record_id} not found")
        return record


class FakeStoryPort:
    def __init__(self, backend: FakeBackend) -> None:
        self.backend = backend

    def get_story(self, tenant_id, story_id):
        self.backend.record("story.get_story", tenant_id=tenant_id, story_id=story_id)
        record = self.backend.scoped(self.backend.stories, tenant_id, story_id)
        return dict(record) if record else None

    def create_story(self, tenant_id, title, description=None, parent_id=None):
        self.backend.record("story.create_story", tenant_id=tenant_id, title=title, parent_id=parent_id)
        story_id = self.backend.new_id("story")
        self.backend.stories[story_id] = {
            "id": story_id, "tenant_id": tenant_id, "title": title, "description": description,
            "parent_id": parent_id, "status": "backlog",
        }
        return dict(self.backend.stories[story_id])

    def delete_story(self, tenant_id, story_id):
        self.backend.record("story.delete_story", tenant_id=tenant_id, story_id=story_id)
        self.backend.require(self.backend.stories, tenant_id, story_id, "story")
        return self.backend.stories.pop(story_id)

    def update_status(self, tenant_id, story_id, status):
        self.backend.record("story.update_status", tenant_id=tenant_id, story_id=story_id, status=status)
        record = self.backend.require(self.backend.stories, tenant_id, story_id, "story")
        record["status"] = status
        return dict(record)

    def update_priority(self, tenant_id, story_id, priority):
        self.backend.record("story.update_priority", tenant_id=tenant_id, story_id=story_id, priority=priority)
        record = self.backend.require(self.backend.stories, tenant_id, story_id, "story")
        record["priority"] = priority
        return dict(record)

    def archive(self, tenant_id, story_id):
        self.backend.record("story.archive", tenant_id=tenant_id, story_id=story_id)
        record = self.backend.require(self.backend.stories, tenant_id, story_id, "story")
        record["archived"] = True
        return dict(record)

    def restore(self, tenant_id, story_id):
        self.backend.record("story.restore", tenant_id=tenant_id, story_id=story_id)
        record = self.backend.require(self.backend.stories, tenant_id, story_id, "story")
        record["archived"] = False
        return dict(record)

    def add_comment(self, tenant_id, story_id, body):
        self.backend.record("story.add_comment", tenant_id=tenant_id, story_id=story_id, body=body)
        self.backend.require(self.backend.stories, tenant_id, story_id, "story")
        comment = {"id": self.backend.new_id("comment"), "story_id": story_id, "body": body}
        self.backend.comments.append(comment)
        return comment


class FakeTaskPort:
    def __init__(self, backend: FakeBackend) -> None:
        self.backend = backend

    def get_task(self, tenant_id, task_id):
        self.backend.record("task.get_task", tenant_id=tenant_id, task_id=task_id)
        record = self.backend.scoped(self.backend.tasks, tenant_id, task_id)
        return dict(record) if record else None

    def create_task(self, tenant_id, story_id, title):
        self.backend.record("task.create_task", tenant_id=tenant_id, story_id=story_id, title=title)
        task_id = self.backend.new_id("task")
        self.backend.tasks[task_id] = {
            "id": task_id, "tenant_id": tenant_id, "story_id": story_id, "title": title,
            "status": "todo", "assignee": None,
        }
        return dict(self.backend.tasks[task_id])

    def delete_task(self, tenant_id, task_id):
        self.backend.record("task.delete_task", tenant_id=tenant_id, task_id=task_id)
        self.backend.require(self.backend.tasks, tenant_id, task_id, "task")
        return self.backend.tasks.pop(task_id)

    def update_status(self, tenant_id, task_id, status):
        self.backend.record("task.update_status", tenant_id=tenant_id, task_id=task_id, status=status)
        record = self.backend.require(self.backend.tasks, tenant_id, task_id, "task")
        record["status"] = status
        return dict(record)

    def update_priority(self, tenant_id, task_id, priority):
        self.backend.record("task.update_priority", tenant_id=tenant_id, task_id=task_id, priority=priority)
        record = self.backend.require(self.backend.tasks, tenant_id, task_id, "task")
        record["priority"] = priority
        return dict(record)

    def assign(self, tenant_id, task_id, user_id):
        self.backend.record("task.assign", tenant_id=tenant_id, task_id=task_id, user_id=user_id)
        record = self.backend.require(self.backend.tasks, tenant_id, task_id, "task")
        record["assignee"] = user_id
        return dict(record)

    def release(self, tenant_id, task_id):
        self.backend.record("task.release", tenant_id=tenant_id, task_id=task_id)
        record = self.backend.require(self.backend.tasks, tenant_id, task_id, "task")
        record["assignee"] = None
        return dict(record)

    def add_comment(self, tenant_id, task_id, body):
        self.backend.record("task.add_comment", tenant_id=tenant_id, task_id=task_id, body=body)
        self.backend.require(self.backend.tasks, tenant_id, task_id, "task")
        comment = {"id": self.backend.new_id("comment"), "task_id": task_id, "body": body}
        self.backend.comments.append(comment)
        return comment

    def can_assign(self, tenant_id, task_id, user_id):
        return user_id in self.backend.members.get(tenant_id, set())


class FakeSprintPort:
    def __init__(self, backend: FakeBackend) -> None:
        self.backend = backend

    def get_sprint(self, tenant_id, sprint_id):
        self.backend.record("sprint.get_sprint", tenant_id=tenant_id, sprint_id=sprint_id)
        record = self.backend.scoped(self.backend.sprints, tenant_id, sprint_id)
        return dict(record) if record else None

    def list_items(self, tenant_id, sprint_id):
        self.backend.require(self.backend.sprints, tenant_id, sprint_id, "sprint")
        return [dict(self.backend.stories[story_id]) for story_id in self.backend.sprint_items.get(sprint_id, [])]

    def update_status(self, tenant_id, sprint_id, status):
        self.backend.record("sprint.update_status", tenant_id=tenant_id, sprint_id=sprint_id, status=status)
        record = self.backend.require(self.backend.sprints, tenant_id, sprint_id, "sprint")
        record["status"] = status
        return dict(record)

    def add_item(self, tenant_id, sprint_id, story_id):
        self.backend.record("sprint.add_item", tenant_id=tenant_id, sprint_id=sprint_id, story_id=story_id)
        self.backend.require(self.backend.sprints, tenant_id, sprint_id, "sprint")
        self.backend.sprint_items.setdefault(sprint_id, []).append(story_id)
        self.backend.stories[story_id]["sprint_id"] = sprint_id
        return {"sprint_id": sprint_id, "story_id": story_id}

    def remove_item(self, tenant_id, sprint_id, story_id):
        self.backend.record("sprint.remove_item", tenant_id=tenant_id, sprint_id=sprint_id, story_id=story_id)
        items = self.backend.sprint_items.get(sprint_id, [])
        if story_id in items:
            items.remove(story_id)
        self.backend.stories[story_id]["sprint_id"] = None
        return {"sprint_id": sprint_id, "story_id": story_id}


class FakeNotificationPort:
    def __init__(self, backend: FakeBackend) -> None:
        self.backend = backend

    def notify(self, tenant_id, user_id, message):
        self.backend.record("notification.notify", tenant_id=tenant_id, user_id=user_id, message=message)
        self.backend.notifications.append({"tenant_id": tenant_id, "user_id": user_id, "message": message})
        return {"delivered": True}


ACME_ENTITIES: List[Dict[str, Any]] = [
    {"id": "task-login", "tenant_id": "acme", "entity_type": "task", "title": "Login page validation",
     "status": "in_progress", "assignee": "alice", "pull_requests": ["#412"], "commits": ["a1b2c3d"]},
    {"id": "task-pay-backoff", "tenant_id": "acme", "entity_type": "task", "title": "Payment retry backoff",
     "status": "todo"},
    {"id": "task-pay-alerts", "tenant_id": "acme", "entity_type": "task", "title": "Payment retry alerts",
     "status": "todo"},
    {"id": "story-checkout", "tenant_id": "acme", "entity_type": "story", "title": "Checkout redesign",
     "status": "ready", "priority": 3, "sprint_id": "sprint-42"},
    {"id": "story-budget", "tenant_id": "acme", "entity_type": "story", "title": "Quarterly budget report",
     "status": "backlog", "sprint_id": "sprint-41"},
    {"id": "sprint-42", "tenant_id": "acme", "entity_type": "sprint", "title": "Sprint 42 Falcon", "status": "active"},
    {"id": "sprint-41", "tenant_id": "acme", "entity_type": "sprint", "title": "Sprint 41 Eagle", "status": "active"},
]

GLOBEX_ENTITIES: List[Dict[str, Any]] = [
    {"id": "globex-login", "tenant_id": "globex", "entity_type": "task", "title": "Login page validation",
     "status": "todo"},
]


def seed_backend(backend: FakeBackend, records: List[Dict[str, Any]]) -> None:
    for record in records:
        stored = {key: value for key, value in record.items() if key not in ("pull_requests", "commits", "entity_type")}
        if record["entity_type"] == "task":
            stored.setdefault("assignee", None)
            backend.tasks[record["id"]] = stored
        elif record["entity_type"] == "story":
            stored.setdefault("sprint_id", None)
            backend.stories[record["id"]] = stored
        else:
            backend.sprints[record["id"]] = stored


@pytest.fixture
def backend() -> FakeBackend:
    """Fake downstream services seeded with two tenants."""
    fake = FakeBackend()
    seed_backend(fake, ACME_ENTITIES + GLOBEX_ENTITIES)
    fake.sprint_items["sprint-41"] = ["story-budget"]
    fake.sprint_items["sprint-42"] = ["story-checkout"]
    fake.members["acme"] = {"alice", "bob"}
    return fake


@pytest.fixture
def ports(backend) -> Ports:
    return Ports(
        story=FakeStoryPort(backend),
        task=FakeTaskPort(backend),
        sprint=FakeSprintPort(backend),
        notification=FakeNotificationPort(backend),
    )


@pytest.fixture
def tenant_context() -> TenantContext:
    return TenantContext(tenant_id="acme", user_id="alice", project_id="web", active_sprint_id="sprint-42")


@pytest.fixture
def retrieval_config() -> RetrievalConfig:
    return RetrievalConfig(embedder="hashing", embedding_dimensions=256)


@pytest.fixture
def retrieval_client(retrieval_config):
    """Retrieval client with both tenants indexed."""
    client = RetrievalClient(HashingEmbedder(retrieval_config.embedding_dimensions), retrieval_config)
    client.index(IndexedEntity.from_dict(record) for record in ACME_ENTITIES + GLOBEX_ENTITIES)
    yield client
    client.close()


@pytest.fixture
def app_config(retrieval_config) -> AppConfig:
    config = AppConfig(llm=LLMConfig(timeout=2.0), retrieval=retrieval_config, environment="test")
    config.logging.console_output = False
    return config


def make_candidate(
    candidate_id: str,
    score: float,
    entity_type: EntityType = EntityType.TASK,
    tenant_id: str = "acme",
    title: Optional[str] = None,
) -> EntityCandidate:
    return EntityCandidate(
        id=candidate_id,
        tenant_id=tenant_id,
        entity_type=entity_type,
        title=title or candidate_id,
        retrieval_score=score,
        final_score=score,
    )


def make_llm_response(payload: Dict[str, Any]) -> MagicMock:
    """Mock OpenAI chat completion carrying ``payload`` as its JSON content."""
    mock_response = MagicMock()
    mock_choice = MagicMock()
    mock_message = MagicMock()

    mock_message.content = json.dumps(payload)
    mock_message.tool_calls = None

    mock_choice.message = mock_message
    mock_response.choices = [mock_choice]

    # Add usage stats
    mock_usage = MagicMock()
    mock_usage.prompt_tokens = 100
    mock_usage.completion_tokens = 50
    mock_usage.total_tokens = 150
    mock_response.usage = mock_usage

    return mock_response


def llm_payload(intent_type: str, confidence: float = 0.92, **slots: Any) -> Dict[str, Any]:
    full_slots = {name: None for name in ("target", "status", "priority", "assignee", "comment", "title", "sprint", "parts")}
    full_slots.update(slots)
    return {"type": intent_type, "slots": full_slots, "confidence": confidence}


def make_llm_client(payload: Dict[str, Any]) -> MagicMock:
    client = MagicMock()
    client.chat.completions.create.return_value = make_llm_response(payload)
    return client


@pytest.fixture
def mock_metrics():
    """Fresh RequestMetrics for testing."""
    from metrics import RequestMetrics
    return RequestMetrics()
