"""Resolve a natural-language reference to ranked, tenant-scoped entity candidates."""
from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from config import RetrievalConfig
from errors import TenantIsolationViolation
from logging_utils import logger
from metrics import RequestMetrics
from models import EntityCandidate, EntityType, EvidenceChip, EvidenceKind, utcnow
from retrieval import IndexedEntity, RetrievalClient, SearchHit, match_text, require_tenant

MAX_CHIPS_PER_KIND = 2


def levenshtein_within_one(a: str, b: str) -> bool:
    """True when a and b differ by at most one insertion, deletion or substitution."""
    if a == b:
        return True
    if abs(len(a) - len(b)) > 1:
        return False
    if len(a) > len(b):
        a, b = b, a
    i = j = edits = 0
    while i < len(a) and j < len(b):
        if a[i] == b[j]:
            i += 1
            j += 1
            continue
        edits += 1
        if edits > 1:
            return False
        if len(a) == len(b):
            i += 1
        j += 1
    return edits + (len(b) - j) + (len(a) - i) <= 1


def recency_boost(updated_at: datetime, now: datetime, weight: float, half_life_days: float) -> float:
    """Exponential half-life decay; an item touched today gets the full weight."""
    age_days = max(0.0, (now - updated_at).total_seconds() / 86400)
    return weight * 0.5 ** (age_days / half_life_days)


def build_evidence(entity: IndexedEntity, now: datetime) -> List[EvidenceChip]:
    chips: List[EvidenceChip] = []
    for pr in entity.pull_requests[:MAX_CHIPS_PER_KIND]:
        chips.append(EvidenceChip(EvidenceKind.PR, "Pull request", pr))
    for commit in entity.commits[:MAX_CHIPS_PER_KIND]:
        chips.append(EvidenceChip(EvidenceKind.COMMIT, "Commit", commit))
    if entity.assignee:
        chips.append(EvidenceChip(EvidenceKind.ASSIGNMENT, "Assigned to", entity.assignee))
    age_days = int(max(0.0, (now - entity.updated_at).total_seconds()) // 86400)
    chips.append(EvidenceChip(EvidenceKind.TIME, "Updated", "today" if age_days == 0 else f"{age_days}d ago"))
    for mention in entity.mentions[:MAX_CHIPS_PER_KIND]:
        chips.append(EvidenceChip(EvidenceKind.MENTION, "Mentioned in", mention))
    return chips


class CandidateResolver:
    """
    Hybrid (vector + lexical) candidate resolution with recency and exact-title boosts.

    Both index queries run concurrently under ``retrieval_timeout``. One slow or
    failing index degrades to the other's results; tenant violations always raise.
    """

    def __init__(
        self,
        retrieval: RetrievalClient,
        config: Optional[RetrievalConfig] = None,
        clock: Callable[[], datetime] = utcnow,
        max_workers: int = 8,
    ) -> None:
        self.retrieval = retrieval
        self.config = config or retrieval.config
        self.clock = clock
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="retrieval")

    def resolve(
        self,
        slot_text: str,
        tenant_id: str,
        entity_type_hint: Optional[EntityType] = None,
        metrics: Optional[RequestMetrics] = None,
    ) -> List[EntityCandidate]:
        require_tenant(tenant_id)
        start = time.time()
        vector_hits, lexical_hits = self._query_indexes(slot_text, tenant_id, entity_type_hint, metrics)

        merged: Dict[str, Tuple[IndexedEntity, float, float]] = {}
        for hit in vector_hits:
            merged[hit.entity.id] = (hit.entity, hit.score, 0.0)
        for hit in lexical_hits:
            entity, vector_score, _ = merged.get(hit.entity.id, (hit.entity, 0.0, 0.0))
            merged[hit.entity.id] = (entity, vector_score, hit.score)

        now = self.clock()
        query = match_text(slot_text)
        candidates: List[EntityCandidate] = []
        for entity_id, (entity, vector_score, lexical_score) in merged.items():
            if entity.tenant_id != tenant_id:
                raise TenantIsolationViolation(f"Candidate {entity_id} belongs to another tenant")
            retrieval_score = max(vector_score, lexical_score)
            if vector_score > 0 and lexical_score > 0:
                retrieval_score += self.config.both_hit_bonus
            recency = recency_boost(entity.updated_at, now, self.config.recency_weight, self.config.recency_half_life_days)
            title = match_text(entity.title)
            exact = self.config.exact_match_boost if query and title and levenshtein_within_one(query, title) else 0.0
            candidates.append(
                EntityCandidate(
                    id=entity.id,
                    tenant_id=entity.tenant_id,
                    entity_type=entity.entity_type,
                    title=entity.title,
                    description=entity.description,
                    status=entity.status,
                    retrieval_score=retrieval_score,
                    recency_boost=recency,
                    exact_match_boost=exact,
                    final_score=min(1.0, max(0.0, retrieval_score + recency + exact)),
                    evidence=build_evidence(entity, now),
                )
            )

        candidates.sort(key=lambda c: (-c.final_score, c.id))
        candidates = candidates[: self.config.max_candidates]

        if metrics:
            metrics.retrieval_latency_ms = int((time.time() - start) * 1000)
            metrics.candidates_returned = len(candidates)
        logger.debug(
            "Candidates resolved",
            extra={
                "extra": {
                    "correlation_id": metrics.correlation_id if metrics else None,
                    "tenant_id": tenant_id,
                    "vector_hits": len(vector_hits),
                    "lexical_hits": len(lexical_hits),
                    "returned": len(candidates),
                }
            },
        )
        return candidates

    def _query_indexes(
        self,
        slot_text: str,
        tenant_id: str,
        entity_type_hint: Optional[EntityType],
        metrics: Optional[RequestMetrics],
    ) -> Tuple[List[SearchHit], List[SearchHit]]:
        vector_future = self._pool.submit(self.retrieval.vector_search, tenant_id, slot_text, entity_type_hint)
        lexical_future = self._pool.submit(self.retrieval.lexical_search, tenant_id, slot_text, entity_type_hint)
        done, not_done = wait([vector_future, lexical_future], timeout=self.config.retrieval_timeout)

        vector_hits: List[SearchHit] = []
        lexical_hits: List[SearchHit] = []
        for future in done:
            error = future.exception()
            if isinstance(error, TenantIsolationViolation):
                raise error
            source = "vector" if future is vector_future else "lexical"
            if error is not None:
                logger.warning(
                    "Index query failed",
                    extra={"extra": {"source": source, "error": str(error), "tenant_id": tenant_id}},
                )
                continue
            if future is vector_future:
                vector_hits, cache_hit = future.result()
                if metrics:
                    metrics.embedding_cache_hit = cache_hit
            else:
                lexical_hits = future.result()

        for future in not_done:
            future.cancel()
            logger.warning(
                "Index query timed out",
                extra={
                    "extra": {
                        "source": "vector" if future is vector_future else "lexical",
                        "timeout": self.config.retrieval_timeout,
                        "tenant_id": tenant_id,
                    }
                },
            )

        if metrics:
            metrics.vector_hits = len(vector_hits)
            metrics.lexical_hits = len(lexical_hits)
        return vector_hits, lexical_hits
