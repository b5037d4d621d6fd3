"""Append-only intent/action history, in memory or in SQL."""
from __future__ import annotations

import threading
from datetime import timezone
from typing import Dict, List, Optional, Protocol, Tuple

from errors import IdempotencyConflict
from logging_utils import logger
from models import AuditEntry, EntryKind
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from storage import IntentHistoryRow, session_scope


class HistoryStore(Protocol):
    def append(self, entry: AuditEntry) -> AuditEntry: ...
    def get(self, tenant_id: str, entry_id: str) -> Optional[AuditEntry]: ...
    def find_act_by_idempotency_key(self, tenant_id: str, key: str) -> Optional[AuditEntry]: ...
    def recent(self, tenant_id: str, limit: int = 50, kind: Optional[EntryKind] = None) -> List[AuditEntry]: ...
    def find_linked(self, tenant_id: str, interpret_id: str) -> List[AuditEntry]: ...


class InMemoryHistoryStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: List[AuditEntry] = []
        self._by_id: Dict[Tuple[str, str], AuditEntry] = {}
        self._act_keys: Dict[Tuple[str, str], AuditEntry] = {}

    def append(self, entry: AuditEntry) -> AuditEntry:
        with self._lock:
            if entry.kind is EntryKind.ACT and entry.idempotency_key:
                key = (entry.tenant_id, entry.idempotency_key)
                if key in self._act_keys:
                    raise IdempotencyConflict(f"Idempotency key {entry.idempotency_key} already used")
                self._act_keys[key] = entry
            self._entries.append(entry)
            self._by_id[(entry.tenant_id, entry.id)] = entry
        return entry

    def get(self, tenant_id: str, entry_id: str) -> Optional[AuditEntry]:
        return self._by_id.get((tenant_id, entry_id))

    def find_act_by_idempotency_key(self, tenant_id: str, key: str) -> Optional[AuditEntry]:
        return self._act_keys.get((tenant_id, key))

    def recent(self, tenant_id: str, limit: int = 50, kind: Optional[EntryKind] = None) -> List[AuditEntry]:
        with self._lock:
            matching = [e for e in self._entries if e.tenant_id == tenant_id and (kind is None or e.kind is kind)]
        return list(reversed(matching))[:limit]

    def find_linked(self, tenant_id: str, interpret_id: str) -> List[AuditEntry]:
        with self._lock:
            return [e for e in self._entries if e.tenant_id == tenant_id and e.interpret_id == interpret_id]


def _to_row(entry: AuditEntry) -> IntentHistoryRow:
    return IntentHistoryRow(
        id=entry.id,
        tenant_id=entry.tenant_id,
        user_id=entry.user_id,
        kind=entry.kind.value,
        utterance_hash=entry.utterance_hash,
        parsed_intent=entry.parsed_intent,
        candidates=entry.candidates,
        chosen_candidate_id=entry.chosen_candidate_id,
        state=entry.state,
        action=entry.action,
        action_result=entry.action_result,
        idempotency_key=entry.idempotency_key,
        interpret_id=entry.interpret_id,
        note=entry.note,
        created_at=entry.created_at,
    )


def _from_row(row: IntentHistoryRow) -> AuditEntry:
    created_at = row.created_at
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return AuditEntry(
        id=row.id,
        tenant_id=row.tenant_id,
        user_id=row.user_id,
        kind=EntryKind(row.kind),
        utterance_hash=row.utterance_hash,
        parsed_intent=row.parsed_intent,
        candidates=list(row.candidates or []),
        chosen_candidate_id=row.chosen_candidate_id,
        state=row.state,
        action=row.action,
        action_result=row.action_result,
        idempotency_key=row.idempotency_key,
        interpret_id=row.interpret_id,
        note=row.note,
        created_at=created_at,
    )


class SqlHistoryStore:
    """History table via SQLAlchemy. Inserts only; the act idempotency index is enforced by the database."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory

    def append(self, entry: AuditEntry) -> AuditEntry:
        try:
            with session_scope(self.session_factory) as session:
                session.add(_to_row(entry))
        except IntegrityError as exc:
            logger.warning(
                "Duplicate idempotency key on append",
                extra={"extra": {"tenant_id": entry.tenant_id, "idempotency_key": entry.idempotency_key}},
            )
            raise IdempotencyConflict(f"Idempotency key {entry.idempotency_key} already used") from exc
        return entry

    def get(self, tenant_id: str, entry_id: str) -> Optional[AuditEntry]:
        with session_scope(self.session_factory) as session:
            row = session.scalars(
                select(IntentHistoryRow).where(IntentHistoryRow.tenant_id == tenant_id, IntentHistoryRow.id == entry_id)
            ).first()
            return _from_row(row) if row else None

    def find_act_by_idempotency_key(self, tenant_id: str, key: str) -> Optional[AuditEntry]:
        with session_scope(self.session_factory) as session:
            row = session.scalars(
                select(IntentHistoryRow).where(
                    IntentHistoryRow.tenant_id == tenant_id,
                    IntentHistoryRow.kind == EntryKind.ACT.value,
                    IntentHistoryRow.idempotency_key == key,
                )
            ).first()
            return _from_row(row) if row else None

    def recent(self, tenant_id: str, limit: int = 50, kind: Optional[EntryKind] = None) -> List[AuditEntry]:
        query = select(IntentHistoryRow).where(IntentHistoryRow.tenant_id == tenant_id)
        if kind is not None:
            query = query.where(IntentHistoryRow.kind == kind.value)
        query = query.order_by(IntentHistoryRow.created_at.desc(), IntentHistoryRow.id.desc()).limit(limit)
        with session_scope(self.session_factory) as session:
            return [_from_row(row) for row in session.scalars(query)]

    def find_linked(self, tenant_id: str, interpret_id: str) -> List[AuditEntry]:
        """Act and dismissal entries that refer back to an interpret entry, oldest first."""
        query = (
            select(IntentHistoryRow)
            .where(IntentHistoryRow.tenant_id == tenant_id, IntentHistoryRow.interpret_id == interpret_id)
            .order_by(IntentHistoryRow.created_at)
        )
        with session_scope(self.session_factory) as session:
            return [_from_row(row) for row in session.scalars(query)]
