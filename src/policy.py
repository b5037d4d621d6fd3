"""Static action policy: intent to action mapping, risk levels and target entity types."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from models import ActionType, EntityType, IntentType, RiskLevel

# Policy file path
POLICY_PATH = Path(__file__).resolve().parent.parent / "policy.json"

STORY_STATUSES: Tuple[str, ...] = ("backlog", "ready", "in_progress", "in_review", "done")
TASK_STATUSES: Tuple[str, ...] = ("todo", "in_progress", "done")
SPRINT_STATUSES: Tuple[str, ...] = ("planned", "active", "closed")
MIN_PRIORITY, MAX_PRIORITY = 1, 5
MAX_TITLE_LENGTH = 200

INTENT_ACTIONS: Dict[IntentType, ActionType] = {
    IntentType.MARK_COMPLETE: ActionType.MARK_TASK_COMPLETE,
    IntentType.START_WORK: ActionType.START_TASK,
    IntentType.TAKE_OWNERSHIP: ActionType.TAKE_TASK_OWNERSHIP,
    IntentType.RELEASE_OWNERSHIP: ActionType.RELEASE_TASK_OWNERSHIP,
    IntentType.UPDATE_STATUS: ActionType.UPDATE_STORY_STATUS,
    IntentType.ASSIGN_TASK: ActionType.ASSIGN_TASK,
    IntentType.UPDATE_PRIORITY: ActionType.UPDATE_PRIORITY,
    IntentType.ADD_COMMENT: ActionType.ADD_COMMENT,
    IntentType.CREATE_TASK: ActionType.CREATE_TASK,
    IntentType.SPLIT_STORY: ActionType.SPLIT_STORY,
    IntentType.MOVE_TO_SPRINT: ActionType.MOVE_TO_SPRINT,
    IntentType.BULK_UPDATE_STATUS: ActionType.BULK_UPDATE_STATUS,
    IntentType.CLOSE_SPRINT: ActionType.CLOSE_SPRINT,
    IntentType.ARCHIVE_STORY: ActionType.ARCHIVE_STORY,
}

# Read-only intents answer from the ports and never reach the orchestrator.
QUERY_TARGET_TYPES: Dict[IntentType, Tuple[EntityType, ...]] = {
    IntentType.QUERY_STATUS: (EntityType.TASK, EntityType.STORY, EntityType.SPRINT),
    IntentType.SEARCH_ITEMS: (EntityType.TASK, EntityType.STORY),
    IntentType.GENERATE_REPORT: (EntityType.SPRINT,),
}

DEFAULT_RISK_LEVELS: Dict[ActionType, RiskLevel] = {
    ActionType.MARK_TASK_COMPLETE: RiskLevel.LOW,
    ActionType.START_TASK: RiskLevel.LOW,
    ActionType.TAKE_TASK_OWNERSHIP: RiskLevel.LOW,
    ActionType.RELEASE_TASK_OWNERSHIP: RiskLevel.LOW,
    ActionType.UPDATE_STORY_STATUS: RiskLevel.LOW,
    ActionType.ASSIGN_TASK: RiskLevel.LOW,
    ActionType.UPDATE_PRIORITY: RiskLevel.LOW,
    ActionType.ADD_COMMENT: RiskLevel.LOW,
    ActionType.CREATE_TASK: RiskLevel.LOW,
    ActionType.SPLIT_STORY: RiskLevel.MEDIUM,
    ActionType.MOVE_TO_SPRINT: RiskLevel.MEDIUM,
    ActionType.BULK_UPDATE_STATUS: RiskLevel.MEDIUM,
    ActionType.CLOSE_SPRINT: RiskLevel.HIGH,
    ActionType.ARCHIVE_STORY: RiskLevel.HIGH,
}

TARGET_TYPES: Dict[ActionType, Tuple[EntityType, ...]] = {
    ActionType.MARK_TASK_COMPLETE: (EntityType.TASK,),
    ActionType.START_TASK: (EntityType.TASK,),
    ActionType.TAKE_TASK_OWNERSHIP: (EntityType.TASK,),
    ActionType.RELEASE_TASK_OWNERSHIP: (EntityType.TASK,),
    ActionType.UPDATE_STORY_STATUS: (EntityType.STORY,),
    ActionType.ASSIGN_TASK: (EntityType.TASK,),
    ActionType.UPDATE_PRIORITY: (EntityType.STORY, EntityType.TASK),
    ActionType.ADD_COMMENT: (EntityType.STORY, EntityType.TASK),
    ActionType.CREATE_TASK: (EntityType.STORY,),
    ActionType.SPLIT_STORY: (EntityType.STORY,),
    ActionType.MOVE_TO_SPRINT: (EntityType.STORY,),
    ActionType.BULK_UPDATE_STATUS: (EntityType.SPRINT,),
    ActionType.CLOSE_SPRINT: (EntityType.SPRINT,),
    ActionType.ARCHIVE_STORY: (EntityType.STORY,),
}


@dataclass(frozen=True)
class ActionPolicy:
    """Closed policy table. Every action type has exactly one risk level."""

    risk_levels: Dict[ActionType, RiskLevel] = field(default_factory=lambda: dict(DEFAULT_RISK_LEVELS))

    def __post_init__(self) -> None:
        missing = set(ActionType) - set(self.risk_levels)
        if missing:
            raise ValueError(f"Risk policy missing actions: {sorted(a.value for a in missing)}")

    def is_read_only(self, intent_type: IntentType) -> bool:
        return intent_type in QUERY_TARGET_TYPES

    def action_for(self, intent_type: IntentType) -> ActionType:
        if intent_type in QUERY_TARGET_TYPES:
            raise ValueError(f"'{intent_type.value}' is read-only and has no action")
        return INTENT_ACTIONS[intent_type]

    def query_types(self, intent_type: IntentType) -> Tuple[EntityType, ...]:
        return QUERY_TARGET_TYPES[intent_type]

    def risk_for(self, action_type: ActionType) -> RiskLevel:
        return self.risk_levels[action_type]

    def target_types(self, action_type: ActionType) -> Tuple[EntityType, ...]:
        return TARGET_TYPES[action_type]

    def primary_target_type(self, intent_type: IntentType) -> EntityType:
        return TARGET_TYPES[INTENT_ACTIONS[intent_type]][0]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "risk_levels": {action.value: level.value for action, level in self.risk_levels.items()},
            "target_types": {action.value: [t.value for t in types] for action, types in TARGET_TYPES.items()},
        }


def load_policy(path: Optional[Path] = POLICY_PATH) -> ActionPolicy:
    """
    Load risk overrides from a JSON file on top of the default table.

    Args:
        path: Path to policy.json (default: POLICY_PATH). A missing default file
            yields the built-in table.

    Returns:
        ActionPolicy covering every action type

    Raises:
        ValueError: If the file names an unknown action type or risk level
        json.JSONDecodeError: If policy file is malformed
    """
    risk_levels = dict(DEFAULT_RISK_LEVELS)
    if path is None or not path.exists():
        return ActionPolicy(risk_levels)

    with path.open("r", encoding="utf-8") as policy_file:
        raw_policy = json.load(policy_file)

    for action_name, level_name in raw_policy.get("risk_levels", {}).items():
        try:
            action = ActionType(action_name)
            level = RiskLevel(level_name)
        except ValueError as exc:
            raise ValueError(f"Invalid risk policy entry {action_name!r}: {level_name!r}") from exc
        risk_levels[action] = level
    return ActionPolicy(risk_levels)
