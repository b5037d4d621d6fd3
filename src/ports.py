"""Narrow request/response ports to the story, task, sprint and notification services."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

import httpx
from config import ServicesConfig
from errors import DownstreamServiceError, TenantIsolationViolation, TransientDownstreamError, ValidationError
from logging_utils import log_security_event, logger
from models import EntityType

Record = Dict[str, Any]


class StoryPort(Protocol):
    def get_story(self, tenant_id: str, story_id: str) -> Optional[Record]: ...
    def create_story(self, tenant_id: str, title: str, description: Optional[str] = None, parent_id: Optional[str] = None) -> Record: ...
    def delete_story(self, tenant_id: str, story_id: str) -> Record: ...
    def update_status(self, tenant_id: str, story_id: str, status: str) -> Record: ...
    def update_priority(self, tenant_id: str, story_id: str, priority: int) -> Record: ...
    def archive(self, tenant_id: str, story_id: str) -> Record: ...
    def restore(self, tenant_id: str, story_id: str) -> Record: ...
    def add_comment(self, tenant_id: str, story_id: str, body: str) -> Record: ...


class TaskPort(Protocol):
    def get_task(self, tenant_id: str, task_id: str) -> Optional[Record]: ...
    def create_task(self, tenant_id: str, story_id: str, title: str) -> Record: ...
    def delete_task(self, tenant_id: str, task_id: str) -> Record: ...
    def update_status(self, tenant_id: str, task_id: str, status: str) -> Record: ...
    def update_priority(self, tenant_id: str, task_id: str, priority: int) -> Record: ...
    def assign(self, tenant_id: str, task_id: str, user_id: Optional[str]) -> Record: ...
    def release(self, tenant_id: str, task_id: str) -> Record: ...
    def add_comment(self, tenant_id: str, task_id: str, body: str) -> Record: ...
    def can_assign(self, tenant_id: str, task_id: str, user_id: str) -> bool: ...


class SprintPort(Protocol):
    def get_sprint(self, tenant_id: str, sprint_id: str) -> Optional[Record]: ...
    def list_items(self, tenant_id: str, sprint_id: str) -> List[Record]: ...
    def update_status(self, tenant_id: str, sprint_id: str, status: str) -> Record: ...
    def add_item(self, tenant_id: str, sprint_id: str, story_id: str) -> Record: ...
    def remove_item(self, tenant_id: str, sprint_id: str, story_id: str) -> Record: ...


class NotificationPort(Protocol):
    def notify(self, tenant_id: str, user_id: str, message: str) -> Record: ...


# Closed set of operations an ActionStep may name.
PORT_OPERATIONS = frozenset(
    {
        "story.get_story", "story.create_story", "story.delete_story", "story.update_status",
        "story.update_priority", "story.archive", "story.restore", "story.add_comment",
        "task.get_task", "task.create_task", "task.delete_task", "task.update_status",
        "task.update_priority", "task.assign", "task.release", "task.add_comment",
        "sprint.get_sprint", "sprint.list_items", "sprint.update_status", "sprint.add_item",
        "sprint.remove_item",
        "notification.notify",
    }
)


@dataclass
class Ports:
    story: StoryPort
    task: TaskPort
    sprint: SprintPort
    notification: NotificationPort

    def call(self, operation: str, arguments: Dict[str, Any]) -> Any:
        if operation not in PORT_OPERATIONS:
            raise DownstreamServiceError("orchestrator", f"Unknown port operation {operation}")
        service, method = operation.split(".", 1)
        return getattr(getattr(self, service), method)(**arguments)

    def load(self, entity_type: EntityType, tenant_id: str, entity_id: str) -> Record:
        """
        Read-only lookup of a story, task or sprint.

        Raises:
            ValidationError: If the entity no longer exists
            TenantIsolationViolation: If the service answers with another tenant's record
        """
        if entity_type is EntityType.TASK:
            record = self.task.get_task(tenant_id, entity_id)
        elif entity_type is EntityType.STORY:
            record = self.story.get_story(tenant_id, entity_id)
        else:
            record = self.sprint.get_sprint(tenant_id, entity_id)
        if record is None:
            raise ValidationError(f"The {entity_type.value} {entity_id} no longer exists")
        if record.get("tenant_id", tenant_id) != tenant_id:
            log_security_event("Port returned cross-tenant record", {"tenant_id": tenant_id, "entity_id": entity_id})
            raise TenantIsolationViolation(f"{entity_type.value} {entity_id} belongs to another tenant")
        return record


class HttpPort:
    """
    Base for HTTP-backed ports.

    Timeouts, connection failures and 5xx responses raise TransientDownstreamError;
    other 4xx responses raise DownstreamServiceError and are never worth retrying.
    """

    service_name = "downstream"

    def __init__(self, base_url: str, timeout: float = 5.0, client: Optional[httpx.Client] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.Client(base_url=self.base_url, timeout=timeout)

    def _request(self, method: str, path: str, tenant_id: str, json: Optional[Record] = None, allow_missing: bool = False) -> Any:
        try:
            response = self.client.request(method, path, json=json, headers={"X-Tenant-ID": tenant_id})
            if allow_missing and response.status_code == 404:
                return None
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise TransientDownstreamError(self.service_name, f"timeout on {method} {path}: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientDownstreamError(self.service_name, f"connection failed on {method} {path}: {exc}") from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if status >= 500:
                raise TransientDownstreamError(self.service_name, f"server error {status} on {method} {path}") from exc
            raise DownstreamServiceError(self.service_name, f"{status} on {method} {path}: {exc.response.text}") from exc

        if not response.content:
            return {}
        return response.json()

    def health_check(self) -> bool:
        try:
            return self.client.get("/health").status_code == 200
        except httpx.HTTPError as exc:
            logger.warning("Port health check failed", extra={"extra": {"service": self.service_name, "error": str(exc)}})
            return False

    def close(self) -> None:
        self.client.close()


class HttpStoryPort(HttpPort):
    service_name = "story"

    def get_story(self, tenant_id: str, story_id: str) -> Optional[Record]:
        return self._request("GET", f"/stories/{story_id}", tenant_id, allow_missing=True)

    def create_story(self, tenant_id: str, title: str, description: Optional[str] = None, parent_id: Optional[str] = None) -> Record:
        return self._request("POST", "/stories", tenant_id, {"title": title, "description": description, "parent_id": parent_id})

    def delete_story(self, tenant_id: str, story_id: str) -> Record:
        return self._request("DELETE", f"/stories/{story_id}", tenant_id)

    def update_status(self, tenant_id: str, story_id: str, status: str) -> Record:
        return self._request("PATCH", f"/stories/{story_id}/status", tenant_id, {"status": status})

    def update_priority(self, tenant_id: str, story_id: str, priority: int) -> Record:
        return self._request("PATCH", f"/stories/{story_id}/priority", tenant_id, {"priority": priority})

    def archive(self, tenant_id: str, story_id: str) -> Record:
        return self._request("POST", f"/stories/{story_id}/archive", tenant_id)

    def restore(self, tenant_id: str, story_id: str) -> Record:
        return self._request("POST", f"/stories/{story_id}/restore", tenant_id)

    def add_comment(self, tenant_id: str, story_id: str, body: str) -> Record:
        return self._request("POST", f"/stories/{story_id}/comments", tenant_id, {"body": body})


class HttpTaskPort(HttpPort):
    service_name = "task"

    def get_task(self, tenant_id: str, task_id: str) -> Optional[Record]:
        return self._request("GET", f"/tasks/{task_id}", tenant_id, allow_missing=True)

    def create_task(self, tenant_id: str, story_id: str, title: str) -> Record:
        return self._request("POST", f"/stories/{story_id}/tasks", tenant_id, {"title": title})

    def delete_task(self, tenant_id: str, task_id: str) -> Record:
        return self._request("DELETE", f"/tasks/{task_id}", tenant_id)

    def update_status(self, tenant_id: str, task_id: str, status: str) -> Record:
        return self._request("PATCH", f"/tasks/{task_id}/status", tenant_id, {"status": status})

    def update_priority(self, tenant_id: str, task_id: str, priority: int) -> Record:
        return self._request("PATCH", f"/tasks/{task_id}/priority", tenant_id, {"priority": priority})

    def assign(self, tenant_id: str, task_id: str, user_id: Optional[str]) -> Record:
        return self._request("PUT", f"/tasks/{task_id}/owner", tenant_id, {"user_id": user_id})

    def release(self, tenant_id: str, task_id: str) -> Record:
        return self._request("DELETE", f"/tasks/{task_id}/owner", tenant_id)

    def add_comment(self, tenant_id: str, task_id: str, body: str) -> Record:
        return self._request("POST", f"/tasks/{task_id}/comments", tenant_id, {"body": body})

    def can_assign(self, tenant_id: str, task_id: str, user_id: str) -> bool:
        result = self._request("GET", f"/tasks/{task_id}/assignable/{user_id}", tenant_id, allow_missing=True)
        return bool(result and result.get("assignable"))


class HttpSprintPort(HttpPort):
    service_name = "sprint"

    def get_sprint(self, tenant_id: str, sprint_id: str) -> Optional[Record]:
        return self._request("GET", f"/sprints/{sprint_id}", tenant_id, allow_missing=True)

    def list_items(self, tenant_id: str, sprint_id: str) -> List[Record]:
        return self._request("GET", f"/sprints/{sprint_id}/items", tenant_id) or []

    def update_status(self, tenant_id: str, sprint_id: str, status: str) -> Record:
        return self._request("PATCH", f"/sprints/{sprint_id}/status", tenant_id, {"status": status})

    def add_item(self, tenant_id: str, sprint_id: str, story_id: str) -> Record:
        return self._request("POST", f"/sprints/{sprint_id}/items", tenant_id, {"story_id": story_id})

    def remove_item(self, tenant_id: str, sprint_id: str, story_id: str) -> Record:
        return self._request("DELETE", f"/sprints/{sprint_id}/items/{story_id}", tenant_id)


class HttpNotificationPort(HttpPort):
    service_name = "notification"

    def notify(self, tenant_id: str, user_id: str, message: str) -> Record:
        return self._request("POST", "/notifications", tenant_id, {"user_id": user_id, "message": message})


def create_http_ports(config: ServicesConfig, timeout: float = 5.0) -> Ports:
    return Ports(
        story=HttpStoryPort(config.story_url, timeout),
        task=HttpTaskPort(config.task_url, timeout),
        sprint=HttpSprintPort(config.sprint_url, timeout),
        notification=HttpNotificationPort(config.notification_url, timeout),
    )
