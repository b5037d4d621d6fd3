"""Per-(user, resource) token buckets with lazy refill and no queueing."""
from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol, Tuple

from config import RateLimitConfig
from errors import RateLimitExceeded
from locks import KeyedLock
from logging_utils import logger
from models import RateLimitBucket
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from storage import RateLimitBucketRow, session_scope

INTERPRET = "interpret"
ACT = "act"
RESOURCES = (INTERPRET, ACT)


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    remaining: float
    retry_after_seconds: float = 0.0


def take_token(bucket: RateLimitBucket, capacity: float, refill_rate: float, now: float) -> RateDecision:
    """
    Refill lazily from elapsed time, then take one token if available.

    Mutates ``bucket`` in place; tokens stay within [0, capacity].
    """
    bucket.capacity = capacity
    bucket.refill_rate = refill_rate
    elapsed = max(0.0, now - bucket.last_refill_at)
    bucket.tokens = min(capacity, bucket.tokens + elapsed * refill_rate)
    bucket.last_refill_at = now

    if bucket.tokens >= 1.0:
        bucket.tokens -= 1.0
        return RateDecision(allowed=True, remaining=bucket.tokens)

    retry_after = (1.0 - bucket.tokens) / refill_rate if refill_rate > 0 else math.inf
    return RateDecision(allowed=False, remaining=bucket.tokens, retry_after_seconds=retry_after)


class BucketStore(Protocol):
    def consume(self, user_id: str, resource: str, capacity: float, refill_rate: float, now: float) -> RateDecision: ...


class InMemoryBucketStore:
    def __init__(self) -> None:
        self._buckets: Dict[Tuple[str, str], RateLimitBucket] = {}
        self._locks = KeyedLock()

    def consume(self, user_id: str, resource: str, capacity: float, refill_rate: float, now: float) -> RateDecision:
        key = (user_id, resource)
        with self._locks.acquire(key):
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = RateLimitBucket(user_id, resource, capacity, capacity, refill_rate, now)
                self._buckets[key] = bucket
            return take_token(bucket, capacity, refill_rate, now)

    def snapshot(self, user_id: str, resource: str) -> Optional[RateLimitBucket]:
        return self._buckets.get((user_id, resource))


class SqlBucketStore:
    """
    Buckets persisted in ``rate_limit_buckets``.

    The row is read with SELECT ... FOR UPDATE. SQLite ignores row locks, so a
    process-level keyed lock serializes writers for the same key as well.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory
        self._locks = KeyedLock()

    def consume(self, user_id: str, resource: str, capacity: float, refill_rate: float, now: float) -> RateDecision:
        with self._locks.acquire((user_id, resource)):
            try:
                return self._consume(user_id, resource, capacity, refill_rate, now)
            except IntegrityError:
                # Another process inserted the row first; it exists now.
                return self._consume(user_id, resource, capacity, refill_rate, now)

    def _consume(self, user_id: str, resource: str, capacity: float, refill_rate: float, now: float) -> RateDecision:
        with session_scope(self.session_factory) as session:
            row = session.scalars(
                select(RateLimitBucketRow)
                .where(RateLimitBucketRow.user_id == user_id, RateLimitBucketRow.resource == resource)
                .with_for_update()
            ).first()
            if row is None:
                bucket = RateLimitBucket(user_id, resource, capacity, capacity, refill_rate, now)
                row = RateLimitBucketRow(user_id=user_id, resource=resource)
                session.add(row)
            else:
                bucket = RateLimitBucket(user_id, resource, row.tokens, row.capacity, row.refill_rate, row.last_refill_at)

            decision = take_token(bucket, capacity, refill_rate, now)
            row.tokens = bucket.tokens
            row.capacity = bucket.capacity
            row.refill_rate = bucket.refill_rate
            row.last_refill_at = bucket.last_refill_at
            session.flush()
        return decision


class RateLimiter:
    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        store: Optional[BucketStore] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or RateLimitConfig()
        self.store = store or InMemoryBucketStore()
        self.clock = clock

    def _limits(self, resource: str) -> Tuple[float, float]:
        if resource == INTERPRET:
            return self.config.interpret_capacity, self.config.interpret_refill_per_second
        if resource == ACT:
            return self.config.act_capacity, self.config.act_refill_per_second
        raise ValueError(f"Unknown rate-limited resource: {resource}")

    def try_consume(self, user_id: str, resource: str) -> RateDecision:
        capacity, refill_rate = self._limits(resource)
        return self.store.consume(user_id, resource, capacity, refill_rate, self.clock())

    def check(self, user_id: str, resource: str) -> RateDecision:
        """Consume a token or raise RateLimitExceeded immediately."""
        decision = self.try_consume(user_id, resource)
        if not decision.allowed:
            logger.warning(
                "Rate limit exceeded",
                extra={
                    "extra": {
                        "user_id": user_id,
                        "resource": resource,
                        "retry_after_seconds": decision.retry_after_seconds,
                    }
                },
            )
            raise RateLimitExceeded(resource, decision.retry_after_seconds)
        return decision
