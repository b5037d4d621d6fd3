"""Data models and constants for the sprint assistant."""
from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from security_utils import hash_text


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class IntentType(str, Enum):
    """Closed set of intents the parser may emit."""

    MARK_COMPLETE = "mark_complete"
    START_WORK = "start_work"
    TAKE_OWNERSHIP = "take_ownership"
    RELEASE_OWNERSHIP = "release_ownership"
    UPDATE_STATUS = "update_status"
    ASSIGN_TASK = "assign_task"
    UPDATE_PRIORITY = "update_priority"
    ADD_COMMENT = "add_comment"
    CREATE_TASK = "create_task"
    SPLIT_STORY = "split_story"
    MOVE_TO_SPRINT = "move_to_sprint"
    BULK_UPDATE_STATUS = "bulk_update_status"
    CLOSE_SPRINT = "close_sprint"
    ARCHIVE_STORY = "archive_story"
    QUERY_STATUS = "query_status"
    SEARCH_ITEMS = "search_items"
    GENERATE_REPORT = "generate_report"


class ActionType(str, Enum):
    MARK_TASK_COMPLETE = "mark_task_complete"
    START_TASK = "start_task"
    TAKE_TASK_OWNERSHIP = "take_task_ownership"
    RELEASE_TASK_OWNERSHIP = "release_task_ownership"
    UPDATE_STORY_STATUS = "update_story_status"
    ASSIGN_TASK = "assign_task"
    UPDATE_PRIORITY = "update_priority"
    ADD_COMMENT = "add_comment"
    CREATE_TASK = "create_task"
    SPLIT_STORY = "split_story"
    MOVE_TO_SPRINT = "move_to_sprint"
    BULK_UPDATE_STATUS = "bulk_update_status"
    CLOSE_SPRINT = "close_sprint"
    ARCHIVE_STORY = "archive_story"


class EntityType(str, Enum):
    STORY = "story"
    TASK = "task"
    SPRINT = "sprint"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class IntentOrigin(str, Enum):
    LLM = "llm"
    HEURISTIC = "heuristic"


class EvidenceKind(str, Enum):
    PR = "pr"
    COMMIT = "commit"
    ASSIGNMENT = "assignment"
    TIME = "time"
    MENTION = "mention"


class StepKind(str, Enum):
    VALIDATION = "validation"
    API_CALL = "api_call"
    NOTIFY = "notify"


class ResolutionState(str, Enum):
    RESOLVED = "Resolved"
    NEEDS_CONFIRMATION = "NeedsConfirmation"
    AMBIGUOUS = "Ambiguous"
    NO_MATCH = "NoMatch"
    USER_SELECTED = "UserSelected"
    CANCELLED = "Cancelled"


class EntryKind(str, Enum):
    INTERPRET = "interpret"
    ACT = "act"
    DISMISSAL = "dismissal"


@dataclass(frozen=True)
class Utterance:
    """A single free-text user input. Only its hash leaves the request."""

    tenant_id: str
    user_id: str
    text: str
    received_at: datetime = field(default_factory=utcnow)

    @property
    def content_hash(self) -> str:
        return hash_text(self.text)

    def __repr__(self) -> str:
        return f"Utterance(tenant_id={self.tenant_id!r}, user_id={self.user_id!r}, hash={self.content_hash[:12]})"


@dataclass(frozen=True)
class TenantContext:
    tenant_id: str
    user_id: str
    project_id: Optional[str] = None
    active_sprint_id: Optional[str] = None
    entity_type_hint: Optional[EntityType] = None


@dataclass(frozen=True)
class ParsedIntent:
    """Structured intent produced by either parser stage."""

    type: IntentType
    slots: Dict[str, Any]
    source_confidence: float
    origin: IntentOrigin

    @property
    def can_auto_resolve(self) -> bool:
        # Heuristic slots are never trusted enough to skip disambiguation.
        return self.origin is IntentOrigin.LLM

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "slots": dict(self.slots),
            "source_confidence": self.source_confidence,
            "origin": self.origin.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ParsedIntent:
        return cls(
            type=IntentType(data["type"]),
            slots=dict(data.get("slots") or {}),
            source_confidence=float(data["source_confidence"]),
            origin=IntentOrigin(data["origin"]),
        )


@dataclass(frozen=True)
class IntentParseFailed:
    reason: str
    stage: str


ParseOutcome = Union[ParsedIntent, IntentParseFailed]


@dataclass(frozen=True)
class EvidenceChip:
    kind: EvidenceKind
    label: str
    value: str

    def to_dict(self) -> Dict[str, str]:
        return {"kind": self.kind.value, "label": self.label, "value": self.value}


@dataclass
class EntityCandidate:
    id: str
    tenant_id: str
    entity_type: EntityType
    title: str
    description: Optional[str] = None
    status: Optional[str] = None
    retrieval_score: float = 0.0
    recency_boost: float = 0.0
    exact_match_boost: float = 0.0
    final_score: float = 0.0
    evidence: List[EvidenceChip] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "entity_type": self.entity_type.value,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "retrieval_score": round(self.retrieval_score, 4),
            "recency_boost": round(self.recency_boost, 4),
            "exact_match_boost": round(self.exact_match_boost, 4),
            "final_score": round(self.final_score, 4),
            "evidence": [chip.to_dict() for chip in self.evidence],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> EntityCandidate:
        return cls(
            id=data["id"],
            tenant_id=data["tenant_id"],
            entity_type=EntityType(data["entity_type"]),
            title=data["title"],
            description=data.get("description"),
            status=data.get("status"),
            retrieval_score=float(data.get("retrieval_score", 0.0)),
            recency_boost=float(data.get("recency_boost", 0.0)),
            exact_match_boost=float(data.get("exact_match_boost", 0.0)),
            final_score=float(data.get("final_score", 0.0)),
            evidence=[
                EvidenceChip(EvidenceKind(chip["kind"]), chip["label"], chip["value"]) for chip in data.get("evidence", [])
            ],
        )


@dataclass(frozen=True)
class StepRef:
    """An argument that takes a field from the output of an earlier step."""

    step_id: str
    field_name: str

    def to_dict(self) -> Dict[str, Any]:
        return {"$ref": f"{self.step_id}.{self.field_name}"}


def arguments_to_dict(arguments: Dict[str, Any]) -> Dict[str, Any]:
    return {name: value.to_dict() if isinstance(value, StepRef) else value for name, value in arguments.items()}


@dataclass(frozen=True)
class Compensation:
    """Best-effort undo for a completed step."""

    operation: str
    arguments: Dict[str, Any]
    description: str

    def to_dict(self) -> Dict[str, Any]:
        return {"operation": self.operation, "arguments": arguments_to_dict(self.arguments), "description": self.description}


@dataclass(frozen=True)
class ActionStep:
    id: str
    kind: StepKind
    description: str
    can_skip: bool = False
    operation: Optional[str] = None
    arguments: Dict[str, Any] = field(default_factory=dict)
    depends_on: tuple[str, ...] = ()
    idempotent: bool = False
    compensation: Optional[Compensation] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "description": self.description,
            "can_skip": self.can_skip,
            "operation": self.operation,
            "arguments": arguments_to_dict(self.arguments),
            "depends_on": list(self.depends_on),
            "idempotent": self.idempotent,
            "compensation": self.compensation.to_dict() if self.compensation else None,
        }


@dataclass(frozen=True)
class ActionDraft:
    action_type: ActionType
    target_entity_id: str
    target_entity_type: EntityType
    parameters: Dict[str, Any]
    risk_level: RiskLevel
    steps: List[ActionStep]
    reasoning: str
    potential_issues: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action_type": self.action_type.value,
            "target_entity_id": self.target_entity_id,
            "target_entity_type": self.target_entity_type.value,
            "parameters": dict(self.parameters),
            "risk_level": self.risk_level.value,
            "steps": [step.to_dict() for step in self.steps],
            "reasoning": self.reasoning,
            "potential_issues": list(self.potential_issues),
        }


@dataclass
class StepResult:
    step_id: str
    success: bool
    error: Optional[str] = None
    skipped: bool = False
    attempts: int = 0
    output: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_id": self.step_id,
            "success": self.success,
            "error": self.error,
            "skipped": self.skipped,
            "attempts": self.attempts,
            "output": dict(self.output),
        }


@dataclass
class ActResult:
    success: bool
    step_results: List[StepResult]
    partial_success: bool
    rollback_token: Optional[str] = None
    compensations: List[Dict[str, Any]] = field(default_factory=list)
    replayed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "partial_success": self.partial_success,
            "step_results": [result.to_dict() for result in self.step_results],
            "rollback_token": self.rollback_token,
            "compensations": list(self.compensations),
            "replayed": self.replayed,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ActResult:
        return cls(
            success=bool(data["success"]),
            partial_success=bool(data["partial_success"]),
            step_results=[StepResult(**result) for result in data.get("step_results", [])],
            rollback_token=data.get("rollback_token"),
            compensations=list(data.get("compensations") or []),
            replayed=bool(data.get("replayed", False)),
        )


@dataclass(frozen=True)
class AuditEntry:
    """Append-only record linking utterance hash to intent, candidates, action and result."""

    tenant_id: str
    user_id: str
    kind: EntryKind
    utterance_hash: Optional[str] = None
    parsed_intent: Optional[Dict[str, Any]] = None
    candidates: List[Dict[str, Any]] = field(default_factory=list)
    chosen_candidate_id: Optional[str] = None
    state: Optional[str] = None
    action: Optional[Dict[str, Any]] = None
    action_result: Optional[Dict[str, Any]] = None
    idempotency_key: Optional[str] = None
    interpret_id: Optional[str] = None
    note: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def candidate_ids(self) -> List[str]:
        return [candidate["id"] for candidate in self.candidates]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        data["created_at"] = self.created_at.isoformat()
        return data


@dataclass
class RateLimitBucket:
    user_id: str
    resource: str
    tokens: float
    capacity: float
    refill_rate: float
    last_refill_at: float

    @property
    def key(self) -> tuple[str, str]:
        return (self.user_id, self.resource)
