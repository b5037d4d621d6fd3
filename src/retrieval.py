"""Tenant-scoped hybrid retrieval: embeddings, cosine vector index and BM25 lexical index."""
from __future__ import annotations

import hashlib
import json
import math
import threading
import uuid
from collections import Counter, OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

import numpy as np
import openai
from qdrant_client import QdrantClient
from qdrant_client.models import Distance, FieldCondition, Filter, MatchValue, PointStruct, VectorParams
from config import LLMConfig, RetrievalConfig
from errors import TenantIsolationViolation
from logging_utils import log_security_event, logger
from models import EntityType, utcnow
from security_utils import normalize_text

STOP_WORDS = frozenset(
    {
        "a", "an", "the", "task", "story", "ticket", "item", "sprint", "my", "our", "this", "that",
        "to", "of", "for", "on", "in", "with", "and", "i", "me", "it", "is", "please",
    }
)


def tokenize(text: str) -> List[str]:
    """Normalized match tokens with stop words removed."""
    return [token for token in normalize_text(text).split() if token not in STOP_WORDS]


def match_text(text: str) -> str:
    return " ".join(tokenize(text))


@dataclass
class IndexedEntity:
    """A story, task or sprint as known to the search indexes, with its linked artifacts."""

    id: str
    tenant_id: str
    entity_type: EntityType
    title: str
    description: Optional[str] = None
    status: Optional[str] = None
    updated_at: datetime = field(default_factory=utcnow)
    assignee: Optional[str] = None
    pull_requests: List[str] = field(default_factory=list)
    commits: List[str] = field(default_factory=list)
    mentions: List[str] = field(default_factory=list)

    @property
    def searchable_text(self) -> str:
        return f"{self.title} {self.description or ''}".strip()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> IndexedEntity:
        updated_at = data.get("updated_at")
        if isinstance(updated_at, str):
            updated_at = datetime.fromisoformat(updated_at.replace("Z", "+00:00"))
        if updated_at is not None and updated_at.tzinfo is None:
            updated_at = updated_at.replace(tzinfo=timezone.utc)
        return cls(
            id=str(data["id"]),
            tenant_id=str(data["tenant_id"]),
            entity_type=EntityType(data["entity_type"]),
            title=data["title"],
            description=data.get("description"),
            status=data.get("status"),
            updated_at=updated_at or utcnow(),
            assignee=data.get("assignee"),
            pull_requests=list(data.get("pull_requests") or []),
            commits=list(data.get("commits") or []),
            mentions=list(data.get("mentions") or []),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "entity_type": self.entity_type.value,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "updated_at": self.updated_at.isoformat(),
            "assignee": self.assignee,
            "pull_requests": list(self.pull_requests),
            "commits": list(self.commits),
            "mentions": list(self.mentions),
        }


@dataclass(frozen=True)
class SearchHit:
    entity: IndexedEntity
    score: float


class Embedder(Protocol):
    def embed(self, texts: List[str]) -> np.ndarray:
        ...


def _l2_normalize(matrix: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms


class OpenAIEmbedder:
    """Embeddings from the OpenAI embeddings endpoint, L2-normalized."""

    def __init__(self, config: Optional[LLMConfig] = None, dimensions: int = 256, client: Any = None) -> None:
        self.config = config or LLMConfig()
        self.dimensions = dimensions
        self.client = client or openai

    def embed(self, texts: List[str]) -> np.ndarray:
        response = self.client.embeddings.create(
            model=self.config.embedding_model,
            input=texts,
            dimensions=self.dimensions,
            timeout=self.config.timeout,
        )
        vectors = np.array([item.embedding for item in response.data], dtype=np.float32)
        return _l2_normalize(vectors)


class HashingEmbedder:
    """
    Deterministic feature-hashing embedder over word tokens and character trigrams.

    Used offline and in tests; similar spellings land close together.
    """

    def __init__(self, dimensions: int = 256) -> None:
        self.dimensions = dimensions

    def _features(self, text: str) -> Iterable[str]:
        tokens = tokenize(text)
        yield from tokens
        for token in tokens:
            padded = f"#{token}#"
            for i in range(len(padded) - 2):
                yield f"3:{padded[i:i + 3]}"

    def embed(self, texts: List[str]) -> np.ndarray:
        matrix = np.zeros((len(texts), self.dimensions), dtype=np.float32)
        for row, text in enumerate(texts):
            for feature in self._features(text):
                digest = hashlib.md5(feature.encode("utf-8")).digest()
                bucket = int.from_bytes(digest[:4], "little") % self.dimensions
                sign = 1.0 if digest[4] & 1 else -1.0
                matrix[row, bucket] += sign
        return _l2_normalize(matrix)


def create_embedder(retrieval_config: RetrievalConfig, llm_config: Optional[LLMConfig] = None) -> Embedder:
    if retrieval_config.embedder == "hashing":
        return HashingEmbedder(retrieval_config.embedding_dimensions)
    return OpenAIEmbedder(llm_config, dimensions=retrieval_config.embedding_dimensions)


class EmbeddingCache:
    """Query embeddings keyed by (tenant_id, normalized_text), evicting the least recently used."""

    def __init__(self, max_entries: int = 10_000) -> None:
        self.max_entries = max_entries
        self._lock = threading.Lock()
        self._entries: OrderedDict[Tuple[str, str], np.ndarray] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, tenant_id: str, text: str) -> Optional[np.ndarray]:
        with self._lock:
            vector = self._entries.get((tenant_id, text))
            if vector is None:
                self.misses += 1
            else:
                self.hits += 1
                self._entries.move_to_end((tenant_id, text))
            return vector

    def put(self, tenant_id: str, text: str, vector: np.ndarray) -> None:
        with self._lock:
            self._entries[(tenant_id, text)] = vector
            self._entries.move_to_end((tenant_id, text))
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {"entries": len(self._entries), "hits": self.hits, "misses": self.misses}


def point_id(tenant_id: str, entity_id: str) -> str:
    """Stable Qdrant point id for an entity; ids only need to be unique per tenant."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"{tenant_id}/{entity_id}"))


class VectorIndex:
    """
    Cosine index in a Qdrant collection.

    Each point carries the entity as payload. Queries always filter on the
    ``tenant_id`` payload and, when given, on ``entity_type``. Use
    ``location=":memory:"`` for the embedded local mode.
    """

    def __init__(
        self,
        location: str = ":memory:",
        collection: str = "sprint_entities",
        client: Optional[QdrantClient] = None,
    ) -> None:
        self.collection = collection
        self.client = client or (QdrantClient(location=location) if location == ":memory:" else QdrantClient(url=location))
        # The embedded local mode is not safe for concurrent use.
        self._lock = threading.Lock()

    def _ensure_collection(self, dimensions: int) -> None:
        if not self.client.collection_exists(self.collection):
            logger.info(
                "Creating vector collection",
                extra={"extra": {"collection": self.collection, "dimensions": dimensions}},
            )
            self.client.create_collection(
                collection_name=self.collection,
                vectors_config=VectorParams(size=dimensions, distance=Distance.COSINE),
            )

    def upsert_many(self, entities: List[IndexedEntity], vectors: np.ndarray) -> int:
        points = [
            PointStruct(id=point_id(entity.tenant_id, entity.id), vector=vector.tolist(), payload=entity.to_dict())
            for entity, vector in zip(entities, vectors)
            # Text made only of stop words has no direction to compare.
            if np.any(vector)
        ]
        if not points:
            return 0
        with self._lock:
            self._ensure_collection(len(points[0].vector))
            self.client.upsert(collection_name=self.collection, points=points, wait=True)
        return len(points)

    def query(
        self,
        tenant_id: str,
        vector: np.ndarray,
        top_k: int,
        entity_type: Optional[EntityType] = None,
    ) -> List[SearchHit]:
        if not np.any(vector):
            return []
        conditions = [FieldCondition(key="tenant_id", match=MatchValue(value=tenant_id))]
        if entity_type is not None:
            conditions.append(FieldCondition(key="entity_type", match=MatchValue(value=entity_type.value)))
        with self._lock:
            if not self.client.collection_exists(self.collection):
                return []
            response = self.client.query_points(
                collection_name=self.collection,
                query=vector.tolist(),
                query_filter=Filter(must=conditions),
                limit=top_k,
                with_payload=True,
            )
        return [
            SearchHit(entity=IndexedEntity.from_dict(point.payload or {}), score=float(min(1.0, point.score)))
            for point in response.points
            if point.score > 0
        ]

    def close(self) -> None:
        self.client.close()

    def __len__(self) -> int:
        with self._lock:
            if not self.client.collection_exists(self.collection):
                return 0
            return self.client.count(collection_name=self.collection, exact=True).count


class LexicalIndex:
    """BM25 over title and description tokens, scored per tenant universe."""

    def __init__(self, k1: float = 1.5, b: float = 0.75) -> None:
        self.k1 = k1
        self.b = b
        self._lock = threading.Lock()
        self._entities: Dict[Tuple[str, str], IndexedEntity] = {}
        self._terms: Dict[Tuple[str, str], Counter] = {}

    def upsert(self, entity: IndexedEntity) -> None:
        with self._lock:
            self._entities[(entity.tenant_id, entity.id)] = entity
            self._terms[(entity.tenant_id, entity.id)] = Counter(tokenize(entity.searchable_text))

    def query(
        self,
        tenant_id: str,
        text: str,
        top_k: int,
        entity_type: Optional[EntityType] = None,
    ) -> List[SearchHit]:
        query_terms = list(dict.fromkeys(tokenize(text)))
        if not query_terms:
            return []
        with self._lock:
            docs = [
                (self._entities[key], self._terms[key])
                for key, entity in self._entities.items()
                if entity.tenant_id == tenant_id and (entity_type is None or entity.entity_type is entity_type)
            ]
        if not docs:
            return []

        n_docs = len(docs)
        avg_len = sum(sum(terms.values()) for _, terms in docs) / n_docs or 1.0
        idf = {}
        for term in query_terms:
            df = sum(1 for _, terms in docs if term in terms)
            idf[term] = math.log(1 + (n_docs - df + 0.5) / (df + 0.5))
        # Upper bound of a document's score: every term saturated.
        ceiling = sum(idf[term] * (self.k1 + 1) for term in query_terms)

        scored: List[SearchHit] = []
        for entity, terms in docs:
            doc_len = sum(terms.values())
            score = 0.0
            for term in query_terms:
                tf = terms.get(term, 0)
                if tf == 0:
                    continue
                denom = tf + self.k1 * (1 - self.b + self.b * doc_len / avg_len)
                score += idf[term] * tf * (self.k1 + 1) / denom
            if score > 0:
                scored.append(SearchHit(entity=entity, score=min(1.0, score / ceiling)))

        scored.sort(key=lambda hit: (-hit.score, hit.entity.id))
        return scored[:top_k]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entities)


class RetrievalClient:
    """
    Tenant-scoped facade over both indexes.

    Every query requires a tenant id. Any hit belonging to another tenant is a
    TenantIsolationViolation and is raised, never filtered out.
    """

    def __init__(
        self,
        embedder: Embedder,
        config: Optional[RetrievalConfig] = None,
        vector_index: Optional[VectorIndex] = None,
        lexical_index: Optional[LexicalIndex] = None,
        cache: Optional[EmbeddingCache] = None,
    ) -> None:
        self.embedder = embedder
        self.config = config or RetrievalConfig()
        self.vector_index = vector_index or VectorIndex(self.config.vector_store_location, self.config.vector_collection)
        self.lexical_index = lexical_index or LexicalIndex()
        self.cache = cache or EmbeddingCache(self.config.embedding_cache_size)

    def index(self, entities: Iterable[IndexedEntity]) -> int:
        batch = list(entities)
        if not batch:
            return 0
        for entity in batch:
            require_tenant(entity.tenant_id)
        vectors = self.embedder.embed([match_text(entity.searchable_text) for entity in batch])
        points = self.vector_index.upsert_many(batch, vectors)
        for entity in batch:
            self.lexical_index.upsert(entity)
        logger.info("Indexed entities", extra={"extra": {"count": len(batch), "vector_points": points}})
        return len(batch)

    def embed_query(self, tenant_id: str, text: str) -> Tuple[np.ndarray, bool]:
        normalized = match_text(text)
        cached = self.cache.get(tenant_id, normalized)
        if cached is not None:
            return cached, True
        vector = self.embedder.embed([normalized])[0]
        self.cache.put(tenant_id, normalized, vector)
        return vector, False

    def vector_search(self, tenant_id: str, text: str, entity_type: Optional[EntityType] = None) -> Tuple[List[SearchHit], bool]:
        require_tenant(tenant_id)
        vector, cache_hit = self.embed_query(tenant_id, text)
        hits = self.vector_index.query(tenant_id, vector, self.config.vector_top_k, entity_type)
        _check_hits(tenant_id, hits, "vector")
        return hits, cache_hit

    def lexical_search(self, tenant_id: str, text: str, entity_type: Optional[EntityType] = None) -> List[SearchHit]:
        require_tenant(tenant_id)
        hits = self.lexical_index.query(tenant_id, text, self.config.lexical_top_k, entity_type)
        _check_hits(tenant_id, hits, "lexical")
        return hits

    def health_check(self) -> Dict[str, Any]:
        return {
            "indexed_entities": len(self.lexical_index),
            "vector_points": len(self.vector_index),
            "embedding_cache": self.cache.stats(),
        }

    def close(self) -> None:
        self.vector_index.close()


def require_tenant(tenant_id: Optional[str]) -> None:
    if not tenant_id or not tenant_id.strip():
        log_security_event("Retrieval attempted without tenant scope", {"tenant_id": tenant_id})
        raise TenantIsolationViolation("A tenant id is required for every retrieval")


def _check_hits(tenant_id: str, hits: List[SearchHit], source: str) -> None:
    foreign = [hit.entity.id for hit in hits if hit.entity.tenant_id != tenant_id]
    if foreign:
        log_security_event(
            "Cross-tenant retrieval hit",
            {"tenant_id": tenant_id, "source": source, "entity_ids": foreign},
        )
        raise TenantIsolationViolation(f"{source} index returned entities outside tenant {tenant_id}")


def load_entities(path: Path) -> List[IndexedEntity]:
    """Read a JSON list of entity records, e.g. a snapshot exported by the story/task services."""
    with path.open("r", encoding="utf-8") as entities_file:
        records = json.load(entities_file)
    return [IndexedEntity.from_dict(record) for record in records]
