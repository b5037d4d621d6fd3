"""Turn a parsed intent and a selected entity into a validated, explained ActionDraft."""
from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Tuple

from errors import TenantIsolationViolation, ValidationError
from logging_utils import log_security_event, logger
from models import (
    ActionDraft,
    ActionStep,
    ActionType,
    Compensation,
    EntityCandidate,
    EntityType,
    ParsedIntent,
    RiskLevel,
    StepKind,
    StepRef,
    TenantContext,
)
from policy import (
    MAX_PRIORITY,
    MAX_TITLE_LENGTH,
    MIN_PRIORITY,
    STORY_STATUSES,
    ActionPolicy,
)
from ports import Ports, Record

CURRENT_SPRINT_WORDS = ("current", "this", "active")
MAX_SPLIT_PARTS = 5

# (steps, parameters, reasoning, potential_issues)
Plan = Tuple[List[ActionStep], Dict[str, Any], str, List[str]]


def validation_step(step_id: str, description: str, operation: str, arguments: Dict[str, Any]) -> ActionStep:
    return ActionStep(
        id=step_id,
        kind=StepKind.VALIDATION,
        description=description,
        operation=operation,
        arguments=arguments,
        idempotent=True,
    )


def api_step(
    step_id: str,
    description: str,
    operation: str,
    arguments: Dict[str, Any],
    compensation: Optional[Compensation] = None,
    depends_on: Tuple[str, ...] = (),
) -> ActionStep:
    return ActionStep(
        id=step_id,
        kind=StepKind.API_CALL,
        description=description,
        operation=operation,
        arguments=arguments,
        compensation=compensation,
        depends_on=depends_on,
    )


def notify_step(step_id: str, tenant_id: str, user_id: str, message: str, depends_on: Tuple[str, ...]) -> ActionStep:
    return ActionStep(
        id=step_id,
        kind=StepKind.NOTIFY,
        description=f"Notify {user_id}",
        can_skip=True,
        operation="notification.notify",
        arguments={"tenant_id": tenant_id, "user_id": user_id, "message": message},
        depends_on=depends_on,
    )


class ActionValidator:
    """
    Build drafts against the current state of the target entity.

    Reads go through the ports; nothing is mutated here. Re-applying a state the
    entity already has yields a single validation step marked ``no_op``.
    """

    def __init__(self, ports: Ports, policy: Optional[ActionPolicy] = None) -> None:
        self.ports = ports
        self.policy = policy or ActionPolicy()
        self._planners: Dict[ActionType, Callable[[ParsedIntent, EntityCandidate, Record, TenantContext], Plan]] = {
            ActionType.MARK_TASK_COMPLETE: self._plan_complete,
            ActionType.START_TASK: self._plan_start,
            ActionType.TAKE_TASK_OWNERSHIP: self._plan_take,
            ActionType.RELEASE_TASK_OWNERSHIP: self._plan_release,
            ActionType.UPDATE_STORY_STATUS: self._plan_story_status,
            ActionType.ASSIGN_TASK: self._plan_assign,
            ActionType.UPDATE_PRIORITY: self._plan_priority,
            ActionType.ADD_COMMENT: self._plan_comment,
            ActionType.CREATE_TASK: self._plan_create_task,
            ActionType.SPLIT_STORY: self._plan_split,
            ActionType.MOVE_TO_SPRINT: self._plan_move_to_sprint,
            ActionType.BULK_UPDATE_STATUS: self._plan_bulk_status,
            ActionType.CLOSE_SPRINT: self._plan_close_sprint,
            ActionType.ARCHIVE_STORY: self._plan_archive,
        }

    def build_draft(self, intent: ParsedIntent, selected: EntityCandidate, tenant_context: TenantContext) -> ActionDraft:
        """
        Validate the intent against the selected entity and draft its steps.

        Raises:
            TenantIsolationViolation: If the entity belongs to another tenant
            ValidationError: If the action cannot apply to the entity as it is now
        """
        if selected.tenant_id != tenant_context.tenant_id:
            log_security_event(
                "Draft requested for cross-tenant entity",
                {"tenant_id": tenant_context.tenant_id, "entity_id": selected.id},
            )
            raise TenantIsolationViolation(f"Entity {selected.id} belongs to another tenant")
        if self.policy.is_read_only(intent.type):
            raise ValidationError(f"'{intent.type.value}' is a question; there is nothing to execute")

        action_type = self.policy.action_for(intent.type)
        allowed = self.policy.target_types(action_type)
        if selected.entity_type not in allowed:
            expected = " or ".join(t.value for t in allowed)
            raise ValidationError(
                f"'{action_type.value}' applies to a {expected}, but '{selected.title}' is a {selected.entity_type.value}"
            )

        record = self.ports.load(selected.entity_type, tenant_context.tenant_id, selected.id)
        steps, parameters, reasoning, issues = self._planners[action_type](intent, selected, record, tenant_context)
        risk_level = self.policy.risk_for(action_type)
        if risk_level is not RiskLevel.LOW:
            issues.append(f"This is a {risk_level.value}-risk change and needs your confirmation.")

        logger.info(
            "Draft built",
            extra={
                "extra": {
                    "tenant_id": tenant_context.tenant_id,
                    "action_type": action_type.value,
                    "risk_level": risk_level.value,
                    "steps": len(steps),
                    "no_op": bool(parameters.get("no_op")),
                }
            },
        )
        return ActionDraft(
            action_type=action_type,
            target_entity_id=selected.id,
            target_entity_type=selected.entity_type,
            parameters=parameters,
            risk_level=risk_level,
            steps=steps,
            reasoning=reasoning,
            potential_issues=issues,
        )

    @staticmethod
    def _no_op(check: ActionStep, parameters: Dict[str, Any], reasoning: str) -> Plan:
        parameters["no_op"] = True
        return [check], parameters, reasoning, ["Nothing will change."]

    # Task actions

    def _plan_complete(self, intent: ParsedIntent, selected: EntityCandidate, task: Record, ctx: TenantContext) -> Plan:
        t = ctx.tenant_id
        check = validation_step("check_task", f"Confirm '{selected.title}' still exists", "task.get_task", {"tenant_id": t, "task_id": selected.id})
        previous = task.get("status")
        parameters = {"status": "done", "previous_status": previous}
        if previous == "done":
            return self._no_op(check, parameters, f"'{selected.title}' is already done.")
        apply = api_step(
            "complete_task",
            f"Mark '{selected.title}' as done",
            "task.update_status",
            {"tenant_id": t, "task_id": selected.id, "status": "done"},
            Compensation("task.update_status", {"tenant_id": t, "task_id": selected.id, "status": previous}, f"Restore status '{previous}'"),
            depends_on=("check_task",),
        )
        issues = ["If the story has unfinished tasks it will not advance automatically."]
        return [check, apply], parameters, f"You said you finished work matching '{selected.title}'; marking it done.", issues

    def _plan_start(self, intent: ParsedIntent, selected: EntityCandidate, task: Record, ctx: TenantContext) -> Plan:
        t = ctx.tenant_id
        check = validation_step("check_task", f"Confirm '{selected.title}' still exists", "task.get_task", {"tenant_id": t, "task_id": selected.id})
        previous = task.get("status")
        parameters: Dict[str, Any] = {"status": "in_progress", "previous_status": previous}
        if previous == "done":
            raise ValidationError(f"'{selected.title}' is already done; reopen it before starting work")
        steps = [check]
        if task.get("assignee") is None:
            parameters["assignee"] = ctx.user_id
            steps.append(
                api_step(
                    "take_task",
                    f"Assign '{selected.title}' to you",
                    "task.assign",
                    {"tenant_id": t, "task_id": selected.id, "user_id": ctx.user_id},
                    Compensation("task.release", {"tenant_id": t, "task_id": selected.id}, "Release ownership"),
                    depends_on=("check_task",),
                )
            )
        if previous == "in_progress" and len(steps) == 1:
            return self._no_op(check, parameters, f"'{selected.title}' is already in progress.")
        if previous != "in_progress":
            steps.append(
                api_step(
                    "start_task",
                    f"Move '{selected.title}' to in progress",
                    "task.update_status",
                    {"tenant_id": t, "task_id": selected.id, "status": "in_progress"},
                    Compensation("task.update_status", {"tenant_id": t, "task_id": selected.id, "status": previous}, f"Restore status '{previous}'"),
                    depends_on=("check_task",),
                )
            )
        return steps, parameters, f"Starting work on '{selected.title}'.", []

    def _plan_take(self, intent: ParsedIntent, selected: EntityCandidate, task: Record, ctx: TenantContext) -> Plan:
        t = ctx.tenant_id
        check = validation_step("check_task", f"Confirm '{selected.title}' still exists", "task.get_task", {"tenant_id": t, "task_id": selected.id})
        previous = task.get("assignee")
        parameters = {"assignee": ctx.user_id, "previous_assignee": previous}
        if previous == ctx.user_id:
            return self._no_op(check, parameters, f"You already own '{selected.title}'.")
        issues = [f"'{selected.title}' is currently owned by {previous}; they will be unassigned."] if previous else []
        return (
            [check, self._assign_step("take_task", selected, ctx, ctx.user_id, previous)],
            parameters,
            f"Taking ownership of '{selected.title}'.",
            issues,
        )

    def _plan_release(self, intent: ParsedIntent, selected: EntityCandidate, task: Record, ctx: TenantContext) -> Plan:
        t = ctx.tenant_id
        check = validation_step("check_task", f"Confirm '{selected.title}' still exists", "task.get_task", {"tenant_id": t, "task_id": selected.id})
        previous = task.get("assignee")
        parameters = {"previous_assignee": previous}
        if previous is None:
            return self._no_op(check, parameters, f"'{selected.title}' has no owner.")
        if previous != ctx.user_id:
            raise ValidationError(f"'{selected.title}' is owned by {previous}, not you")
        release = api_step(
            "release_task",
            f"Release ownership of '{selected.title}'",
            "task.release",
            {"tenant_id": t, "task_id": selected.id},
            Compensation("task.assign", {"tenant_id": t, "task_id": selected.id, "user_id": previous}, f"Reassign to {previous}"),
            depends_on=("check_task",),
        )
        return [check, release], parameters, f"Releasing '{selected.title}' so someone else can pick it up.", []

    def _plan_assign(self, intent: ParsedIntent, selected: EntityCandidate, task: Record, ctx: TenantContext) -> Plan:
        t = ctx.tenant_id
        assignee = intent.slots.get("assignee")
        if not assignee:
            raise ValidationError("Who should the task be assigned to? Mention them with @name.")
        if not self.ports.task.can_assign(t, selected.id, assignee):
            raise ValidationError(f"{assignee} is not a member who can be assigned '{selected.title}'")
        check = validation_step("check_task", f"Confirm '{selected.title}' still exists", "task.get_task", {"tenant_id": t, "task_id": selected.id})
        previous = task.get("assignee")
        parameters = {"assignee": assignee, "previous_assignee": previous}
        if previous == assignee:
            return self._no_op(check, parameters, f"'{selected.title}' is already assigned to {assignee}.")
        steps = [
            check,
            self._assign_step("assign_task", selected, ctx, assignee, previous),
            notify_step("notify_assignee", t, assignee, f"You were assigned '{selected.title}'", ("assign_task",)),
        ]
        return steps, parameters, f"Assigning '{selected.title}' to {assignee}.", []

    @staticmethod
    def _assign_step(step_id: str, selected: EntityCandidate, ctx: TenantContext, user_id: str, previous: Optional[str]) -> ActionStep:
        t = ctx.tenant_id
        if previous:
            undo = Compensation("task.assign", {"tenant_id": t, "task_id": selected.id, "user_id": previous}, f"Reassign to {previous}")
        else:
            undo = Compensation("task.release", {"tenant_id": t, "task_id": selected.id}, "Release ownership")
        return api_step(
            step_id,
            f"Assign '{selected.title}' to {user_id}",
            "task.assign",
            {"tenant_id": t, "task_id": selected.id, "user_id": user_id},
            undo,
            depends_on=("check_task",),
        )

    # Story and shared actions

    def _plan_story_status(self, intent: ParsedIntent, selected: EntityCandidate, story: Record, ctx: TenantContext) -> Plan:
        t = ctx.tenant_id
        status = intent.slots.get("status")
        if not status:
            raise ValidationError(f"Which status should '{selected.title}' move to?")
        if status not in STORY_STATUSES:
            raise ValidationError(f"'{status}' is not a story status; use one of {', '.join(STORY_STATUSES)}")
        check = validation_step("check_story", f"Confirm '{selected.title}' still exists", "story.get_story", {"tenant_id": t, "story_id": selected.id})
        previous = story.get("status")
        parameters = {"status": status, "previous_status": previous}
        if previous == status:
            return self._no_op(check, parameters, f"'{selected.title}' is already {status}.")
        apply = api_step(
            "update_story_status",
            f"Move '{selected.title}' to {status}",
            "story.update_status",
            {"tenant_id": t, "story_id": selected.id, "status": status},
            Compensation("story.update_status", {"tenant_id": t, "story_id": selected.id, "status": previous}, f"Restore status '{previous}'"),
            depends_on=("check_story",),
        )
        return [check, apply], parameters, f"Moving '{selected.title}' from {previous} to {status}.", []

    def _plan_priority(self, intent: ParsedIntent, selected: EntityCandidate, record: Record, ctx: TenantContext) -> Plan:
        t = ctx.tenant_id
        priority = intent.slots.get("priority")
        if priority is None:
            raise ValidationError(f"What priority should '{selected.title}' get (1-5)?")
        if isinstance(priority, bool) or not isinstance(priority, int) or not MIN_PRIORITY <= priority <= MAX_PRIORITY:
            raise ValidationError(f"Priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}, got {priority}")
        service, key = ("task", "task_id") if selected.entity_type is EntityType.TASK else ("story", "story_id")
        check = validation_step(
            f"check_{service}",
            f"Confirm '{selected.title}' still exists",
            f"{service}.get_{service}",
            {"tenant_id": t, key: selected.id},
        )
        previous = record.get("priority")
        parameters = {"priority": priority, "previous_priority": previous}
        if previous == priority:
            return self._no_op(check, parameters, f"'{selected.title}' already has priority {priority}.")
        undo = None
        if previous is not None:
            undo = Compensation(f"{service}.update_priority", {"tenant_id": t, key: selected.id, "priority": previous}, f"Restore priority {previous}")
        apply = api_step(
            "update_priority",
            f"Set priority of '{selected.title}' to {priority}",
            f"{service}.update_priority",
            {"tenant_id": t, key: selected.id, "priority": priority},
            undo,
            depends_on=(check.id,),
        )
        return [check, apply], parameters, f"Changing priority of '{selected.title}' to {priority}.", []

    def _plan_comment(self, intent: ParsedIntent, selected: EntityCandidate, record: Record, ctx: TenantContext) -> Plan:
        t = ctx.tenant_id
        body = (intent.slots.get("comment") or "").strip()
        if not body:
            raise ValidationError("What should the comment say?")
        service, key = ("task", "task_id") if selected.entity_type is EntityType.TASK else ("story", "story_id")
        check = validation_step(f"check_{service}", f"Confirm '{selected.title}' still exists", f"{service}.get_{service}", {"tenant_id": t, key: selected.id})
        apply = api_step(
            "add_comment",
            f"Comment on '{selected.title}'",
            f"{service}.add_comment",
            {"tenant_id": t, key: selected.id, "body": body},
            depends_on=(check.id,),
        )
        return [check, apply], {"comment": body}, f"Adding your comment to '{selected.title}'.", ["Comments cannot be removed automatically."]

    def _plan_create_task(self, intent: ParsedIntent, selected: EntityCandidate, story: Record, ctx: TenantContext) -> Plan:
        t = ctx.tenant_id
        title = (intent.slots.get("title") or "").strip()
        if not title:
            raise ValidationError(f"What should the new task under '{selected.title}' be called?")
        if len(title) > MAX_TITLE_LENGTH:
            raise ValidationError(f"Task title must be at most {MAX_TITLE_LENGTH} characters")
        if story.get("archived"):
            raise ValidationError(f"'{selected.title}' is archived; restore it before adding tasks")
        check = validation_step("check_story", f"Confirm '{selected.title}' still exists", "story.get_story", {"tenant_id": t, "story_id": selected.id})
        create = api_step(
            "create_task",
            f"Create task '{title}' under '{selected.title}'",
            "task.create_task",
            {"tenant_id": t, "story_id": selected.id, "title": title},
            Compensation("task.delete_task", {"tenant_id": t, "task_id": StepRef("create_task", "id")}, "Delete the created task"),
            depends_on=("check_story",),
        )
        return [check, create], {"title": title, "story_id": selected.id}, f"Creating '{title}' under '{selected.title}'.", []

    def _plan_split(self, intent: ParsedIntent, selected: EntityCandidate, story: Record, ctx: TenantContext) -> Plan:
        t = ctx.tenant_id
        parts = intent.slots.get("parts") or 2
        if isinstance(parts, bool) or not isinstance(parts, int) or not 2 <= parts <= MAX_SPLIT_PARTS:
            raise ValidationError(f"A story can be split into 2 to {MAX_SPLIT_PARTS} parts, got {parts}")
        if story.get("status") == "done":
            raise ValidationError(f"'{selected.title}' is done; split stories that still have work left")
        check = validation_step("check_story", f"Confirm '{selected.title}' still exists", "story.get_story", {"tenant_id": t, "story_id": selected.id})
        steps = [check]
        titles = [f"{selected.title} (part {i})" for i in range(1, parts + 1)]
        for i, title in enumerate(titles, start=1):
            step_id = f"create_part_{i}"
            steps.append(
                api_step(
                    step_id,
                    f"Create story '{title}'",
                    "story.create_story",
                    {"tenant_id": t, "title": title, "description": selected.description, "parent_id": selected.id},
                    Compensation("story.delete_story", {"tenant_id": t, "story_id": StepRef(step_id, "id")}, f"Delete '{title}'"),
                    depends_on=("check_story",),
                )
            )
        steps.append(
            api_step(
                "note_split",
                f"Note the split on '{selected.title}'",
                "story.add_comment",
                {"tenant_id": t, "story_id": selected.id, "body": f"Split into {parts} stories by {ctx.user_id}"},
                depends_on=tuple(f"create_part_{i}" for i in range(1, parts + 1)),
            )
        )
        issues = ["Acceptance criteria and tasks stay on the original story; move them by hand."]
        return steps, {"parts": parts, "titles": titles}, f"Splitting '{selected.title}' into {parts} stories.", issues

    def _plan_move_to_sprint(self, intent: ParsedIntent, selected: EntityCandidate, story: Record, ctx: TenantContext) -> Plan:
        t = ctx.tenant_id
        sprint_ref = intent.slots.get("sprint")
        sprint_id = ctx.active_sprint_id if sprint_ref in (None, *CURRENT_SPRINT_WORDS) else sprint_ref
        if not sprint_id:
            raise ValidationError("Which sprint? No active sprint is set for this project.")
        sprint = self.ports.sprint.get_sprint(t, sprint_id)
        if sprint is None:
            raise ValidationError(f"Sprint {sprint_id} does not exist")
        if sprint.get("status") == "closed":
            raise ValidationError(f"Sprint {sprint.get('name', sprint_id)} is already closed")
        check = validation_step("check_story", f"Confirm '{selected.title}' still exists", "story.get_story", {"tenant_id": t, "story_id": selected.id})
        previous_sprint = story.get("sprint_id")
        parameters = {"sprint_id": sprint_id, "previous_sprint_id": previous_sprint}
        if previous_sprint == sprint_id:
            return self._no_op(check, parameters, f"'{selected.title}' is already in that sprint.")
        steps = [
            check,
            validation_step("check_sprint", "Confirm the sprint is open", "sprint.get_sprint", {"tenant_id": t, "sprint_id": sprint_id}),
        ]
        issues: List[str] = []
        if previous_sprint:
            issues.append(f"'{selected.title}' will leave sprint {previous_sprint}.")
            steps.append(
                api_step(
                    "remove_from_previous",
                    f"Remove '{selected.title}' from sprint {previous_sprint}",
                    "sprint.remove_item",
                    {"tenant_id": t, "sprint_id": previous_sprint, "story_id": selected.id},
                    Compensation("sprint.add_item", {"tenant_id": t, "sprint_id": previous_sprint, "story_id": selected.id}, "Put the story back"),
                    depends_on=("check_story", "check_sprint"),
                )
            )
        steps.append(
            api_step(
                "add_to_sprint",
                f"Add '{selected.title}' to sprint {sprint.get('name', sprint_id)}",
                "sprint.add_item",
                {"tenant_id": t, "sprint_id": sprint_id, "story_id": selected.id},
                Compensation("sprint.remove_item", {"tenant_id": t, "sprint_id": sprint_id, "story_id": selected.id}, "Take the story out again"),
                depends_on=("remove_from_previous",) if previous_sprint else ("check_story", "check_sprint"),
            )
        )
        return steps, parameters, f"Moving '{selected.title}' into sprint {sprint.get('name', sprint_id)}.", issues

    def _plan_archive(self, intent: ParsedIntent, selected: EntityCandidate, story: Record, ctx: TenantContext) -> Plan:
        t = ctx.tenant_id
        check = validation_step("check_story", f"Confirm '{selected.title}' still exists", "story.get_story", {"tenant_id": t, "story_id": selected.id})
        if story.get("archived"):
            return self._no_op(check, {"archived": True}, f"'{selected.title}' is already archived.")
        archive = api_step(
            "archive_story",
            f"Archive '{selected.title}'",
            "story.archive",
            {"tenant_id": t, "story_id": selected.id},
            Compensation("story.restore", {"tenant_id": t, "story_id": selected.id}, "Restore the story"),
            depends_on=("check_story",),
        )
        return [check, archive], {"archived": True}, f"Archiving '{selected.title}'.", ["Archived stories disappear from boards and reports."]

    # Sprint actions

    def _plan_bulk_status(self, intent: ParsedIntent, selected: EntityCandidate, sprint: Record, ctx: TenantContext) -> Plan:
        t = ctx.tenant_id
        status = intent.slots.get("status")
        if not status or status not in STORY_STATUSES:
            raise ValidationError(f"Bulk updates need a story status: {', '.join(STORY_STATUSES)}")
        if sprint.get("status") == "closed":
            raise ValidationError(f"Sprint '{selected.title}' is closed")
        items = self.ports.sprint.list_items(t, selected.id)
        changing = [item for item in items if item.get("status") != status]
        if not items:
            raise ValidationError(f"Sprint '{selected.title}' has no items")
        check = validation_step("check_sprint", f"Confirm sprint '{selected.title}' is open", "sprint.get_sprint", {"tenant_id": t, "sprint_id": selected.id})
        parameters = {"status": status, "item_ids": [item["id"] for item in changing]}
        if not changing:
            return self._no_op(check, parameters, f"Every item in '{selected.title}' is already {status}.")
        steps = [check]
        for item in changing:
            steps.append(
                api_step(
                    f"update_{item['id']}",
                    f"Move '{item.get('title', item['id'])}' to {status}",
                    "story.update_status",
                    {"tenant_id": t, "story_id": item["id"], "status": status},
                    Compensation(
                        "story.update_status",
                        {"tenant_id": t, "story_id": item["id"], "status": item.get("status")},
                        f"Restore status '{item.get('status')}'",
                    ),
                    depends_on=("check_sprint",),
                )
            )
        issues = [f"This changes {len(changing)} of {len(items)} items in the sprint."]
        return steps, parameters, f"Moving every item in '{selected.title}' to {status}.", issues

    def _plan_close_sprint(self, intent: ParsedIntent, selected: EntityCandidate, sprint: Record, ctx: TenantContext) -> Plan:
        t = ctx.tenant_id
        previous = sprint.get("status")
        if previous == "closed":
            raise ValidationError(f"Sprint '{selected.title}' is already closed")
        items = self.ports.sprint.list_items(t, selected.id)
        unfinished = [item for item in items if item.get("status") != "done"]
        steps = [
            validation_step("check_sprint", f"Confirm sprint '{selected.title}' is open", "sprint.get_sprint", {"tenant_id": t, "sprint_id": selected.id}),
            api_step(
                "close_sprint",
                f"Close sprint '{selected.title}'",
                "sprint.update_status",
                {"tenant_id": t, "sprint_id": selected.id, "status": "closed"},
                Compensation("sprint.update_status", {"tenant_id": t, "sprint_id": selected.id, "status": previous}, "Reopen the sprint"),
                depends_on=("check_sprint",),
            ),
            notify_step("notify_team", t, ctx.user_id, f"Sprint '{selected.title}' was closed", ("close_sprint",)),
        ]
        issues = [f"{len(unfinished)} item(s) are not done and will stay unfinished."] if unfinished else []
        return steps, {"status": "closed", "previous_status": previous}, f"Closing sprint '{selected.title}'.", issues