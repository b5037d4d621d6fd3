"""Answer read-only questions (item status, search listings, sprint reports) straight from the ports."""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from logging_utils import logger
from models import EntityCandidate, EntityType, TenantContext
from ports import Ports, Record

ROW_FIELDS = ("status", "assignee", "priority", "sprint_id")


@dataclass
class Answer:
    """What a read-only request returns instead of a draft."""

    kind: str
    summary: str
    items: List[Dict[str, Any]] = field(default_factory=list)
    report: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "summary": self.summary,
            "items": [dict(item) for item in self.items],
            "report": dict(self.report) if self.report else None,
        }


def _row(candidate: EntityCandidate, record: Record) -> Dict[str, Any]:
    row: Dict[str, Any] = {
        "id": candidate.id,
        "entity_type": candidate.entity_type.value,
        "title": record.get("title") or candidate.title,
    }
    row.update({name: record[name] for name in ROW_FIELDS if record.get(name) is not None})
    return row


class QueryAnswerer:
    """
    Reads current state for questions. Every lookup goes through the same
    tenant-checked port reads the validator uses, and nothing is written.
    """

    def __init__(self, ports: Ports) -> None:
        self.ports = ports

    def _rows(self, candidates: Sequence[EntityCandidate], ctx: TenantContext) -> List[Dict[str, Any]]:
        return [_row(candidate, self.ports.load(candidate.entity_type, ctx.tenant_id, candidate.id)) for candidate in candidates]

    def status(self, candidates: Sequence[EntityCandidate], ctx: TenantContext) -> Answer:
        rows = self._rows(candidates, ctx)
        if len(rows) == 1:
            row = rows[0]
            summary = f"'{row['title']}' is {row.get('status', 'in an unknown state')}"
            if row.get("assignee"):
                summary += f", assigned to {row['assignee']}"
            summary += "."
        else:
            summary = f"{len(rows)} items match; here is where each one stands."
        return self._done("status", summary, rows, ctx)

    def search(self, candidates: Sequence[EntityCandidate], ctx: TenantContext) -> Answer:
        rows = self._rows(candidates, ctx)
        summary = f"Found {len(rows)} item{'s' if len(rows) != 1 else ''}."
        return self._done("search", summary, rows, ctx)

    def sprint_report(self, sprint_id: str, ctx: TenantContext) -> Answer:
        """Item counts by status, completion ratio and the items still open."""
        sprint = self.ports.load(EntityType.SPRINT, ctx.tenant_id, sprint_id)
        items = self.ports.sprint.list_items(ctx.tenant_id, sprint_id)
        by_status = Counter(item.get("status") or "unknown" for item in items)
        done = by_status.get("done", 0)
        name = sprint.get("name") or sprint.get("title") or sprint_id
        report = {
            "sprint_id": sprint_id,
            "name": name,
            "status": sprint.get("status"),
            "total": len(items),
            "by_status": dict(sorted(by_status.items())),
            "completion": round(done / len(items), 2) if items else 0.0,
        }
        open_items = [
            {"id": item.get("id"), "title": item.get("title"), "status": item.get("status")}
            for item in items
            if item.get("status") != "done"
        ]
        summary = f"{name}: {done} of {len(items)} items done."
        answer = self._done("report", summary, open_items, ctx)
        answer.report = report
        return answer

    @staticmethod
    def _done(kind: str, summary: str, rows: List[Dict[str, Any]], ctx: TenantContext) -> Answer:
        logger.info("Answer built", extra={"extra": {"tenant_id": ctx.tenant_id, "kind": kind, "items": len(rows)}})
        return Answer(kind=kind, summary=summary, items=rows)
