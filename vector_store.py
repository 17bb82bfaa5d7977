"""
Vector memory store with two interchangeable backends.

- LocalMemoryStore: in-process list, exact cosine search, oldest-first eviction,
  optional JSON snapshot on disk
- QdrantMemoryStore: delegates to a Qdrant collection, provisioned lazily
- VectorStore: picks one of the two at construction time and serializes writes
"""

from __future__ import annotations

import asyncio
import math
import os
import sys
import tempfile
import time
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Sequence

import httpx
import numpy as np
from qdrant_client import AsyncQdrantClient
from qdrant_client import models as qm
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse

from models import (
    UNLIMITED_MAX_SIZE,
    VECTOR_DIM,
    BackendUnavailable,
    HealthStatus,
    MemoryRecord,
    SearchHit,
    SimilarityThresholds,
    Snapshot,
    ValidationError,
)

DEFAULT_COLLECTION = "agent_memories"
DEFAULT_MAX_MEMORY_SIZE = 1000
LOCAL_SENTINELS = frozenset({":memory:", "local"})

# Connection-level failures worth retrying; HTTP error responses are not.
TRANSPORT_ERRORS = (ResponseHandlingException, httpx.TransportError, ConnectionError, TimeoutError)


def now_ms() -> int:
    return int(time.time() * 1000)


def is_local_url(url: str | None) -> bool:
    """True when no remote endpoint is configured."""
    return not url or url.strip().lower() in LOCAL_SENTINELS


# =============================================================================
# Similarity
# =============================================================================


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two equal-length vectors; 0.0 if either has zero norm."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise ValidationError(f"Vector length mismatch: {va.shape[0]} vs {vb.shape[0]}")
    denom = np.linalg.norm(va) * np.linalg.norm(vb)
    if denom == 0:
        return 0.0
    return float(np.dot(va, vb) / denom)


# =============================================================================
# Snapshot Persistence
# =============================================================================


def build_snapshot(collection_name: str, records: list[MemoryRecord]) -> Snapshot:
    return Snapshot(
        collection_name=collection_name,
        saved_at=datetime.now(timezone.utc).isoformat(),
        count=len(records),
        memories=list(records),
    )


def save_snapshot(path: Path, snapshot: Snapshot) -> bool:
    """Write the snapshot atomically (temp file + rename). Never raises."""
    tmp_name = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        data = snapshot.model_dump_json(by_alias=True, indent=2)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(data)
        os.replace(tmp_name, path)
        return True
    except OSError as e:
        print(f"[memory-qdrant] Failed to save to disk: {e}", file=sys.stderr)
        if tmp_name is not None:
            Path(tmp_name).unlink(missing_ok=True)
        return False


def load_snapshot(path: Path) -> list[MemoryRecord]:
    """Read all records from a snapshot; a missing or broken file yields []."""
    if not path.exists():
        return []
    try:
        snapshot = Snapshot.model_validate_json(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        print(f"[memory-qdrant] Failed to load from disk: {e}", file=sys.stderr)
        return []
    return snapshot.memories


# =============================================================================
# Backends
# =============================================================================


class MemoryBackend(ABC):
    """Contract shared by the local and remote stores."""

    mode: str

    def __init__(self, collection_name: str, dim: int = VECTOR_DIM) -> None:
        self.collection_name = collection_name
        self.dim = dim
        self._last_ts = 0

    def _next_timestamp(self) -> int:
        # Never step backwards, even if the wall clock does.
        self._last_ts = max(now_ms(), self._last_ts)
        return self._last_ts

    async def ensure_ready(self) -> None:
        return None

    @abstractmethod
    async def store(
        self, text: str, vector: list[float], category: str, importance: float
    ) -> MemoryRecord: ...

    @abstractmethod
    async def search(self, vector: list[float], limit: int, min_score: float) -> list[SearchHit]: ...

    @abstractmethod
    async def delete(self, memory_id: str) -> bool: ...

    @abstractmethod
    async def count(self) -> int: ...

    @abstractmethod
    async def health_check(self) -> HealthStatus: ...

    async def close(self) -> None:
        return None


class LocalMemoryStore(MemoryBackend):
    """In-process store with brute-force search and oldest-first eviction."""

    mode = "local"

    def __init__(
        self,
        collection_name: str = DEFAULT_COLLECTION,
        max_size: int | None = DEFAULT_MAX_MEMORY_SIZE,
        persist_path: str | Path | None = None,
        dim: int = VECTOR_DIM,
    ) -> None:
        super().__init__(collection_name, dim)
        if max_size is not None and max_size < 1:
            raise ValueError(f"max_size must be positive, got {max_size}")
        self.max_size = max_size
        self.persist_path = Path(persist_path).expanduser() if persist_path else None
        self._records: list[MemoryRecord] = []
        if self.persist_path is not None:
            self._load()

    @property
    def unlimited(self) -> bool:
        return self.max_size is None or self.max_size >= UNLIMITED_MAX_SIZE

    def _load(self) -> None:
        records = load_snapshot(self.persist_path)
        bad = [r.id for r in records if len(r.vector) != self.dim]
        if bad:
            print(
                f"[memory-qdrant] Ignoring snapshot {self.persist_path}: "
                f"{len(bad)} records are not {self.dim}-dimensional",
                file=sys.stderr,
            )
            return
        if len({r.id for r in records}) != len(records):
            print(
                f"[memory-qdrant] Ignoring snapshot {self.persist_path}: duplicate memory ids",
                file=sys.stderr,
            )
            return
        self._records = records
        self._last_ts = max((r.created_at for r in records), default=0)
        if records:
            print(f"[memory-qdrant] Loaded {len(records)} memories from disk", file=sys.stderr)

    async def _persist(self) -> None:
        if self.persist_path is None:
            return
        snapshot = build_snapshot(self.collection_name, self._records)
        await asyncio.to_thread(save_snapshot, self.persist_path, snapshot)

    def _evict_oldest(self) -> MemoryRecord:
        # min() keeps the first of equal timestamps, i.e. the earliest inserted
        index = min(range(len(self._records)), key=lambda i: self._records[i].created_at)
        return self._records.pop(index)

    async def store(
        self, text: str, vector: list[float], category: str, importance: float
    ) -> MemoryRecord:
        if not self.unlimited:
            while self._records and len(self._records) >= self.max_size:
                self._evict_oldest()

        record = MemoryRecord(
            id=str(uuid.uuid4()),
            text=text,
            vector=list(vector),
            category=category,
            importance=importance,
            created_at=self._next_timestamp(),
        )
        self._records.append(record)
        await self._persist()
        return record

    async def search(
        self, vector: list[float], limit: int = 5, min_score: float = SimilarityThresholds.LOW
    ) -> list[SearchHit]:
        if limit <= 0 or not self._records:
            return []
        scored = []
        for record in self._records:
            score = cosine_similarity(vector, record.vector)
            if score >= min_score:
                scored.append((score, record))
        # Stable sort: equal score and timestamp keep insertion order
        scored.sort(key=lambda item: (-item[0], item[1].created_at))
        return [
            SearchHit(entry=record.without_vector(), score=score) for score, record in scored[:limit]
        ]

    async def delete(self, memory_id: str) -> bool:
        for index, record in enumerate(self._records):
            if record.id == memory_id:
                del self._records[index]
                await self._persist()
                return True
        return False

    async def count(self) -> int:
        return len(self._records)

    async def health_check(self) -> HealthStatus:
        return HealthStatus(healthy=True, mode=self.mode)


def _is_not_found(err: Exception) -> bool:
    if isinstance(err, UnexpectedResponse) and err.status_code == 404:
        return True
    return "not found" in str(err).lower()


def _is_point_id(value: str) -> bool:
    """Qdrant point ids are UUIDs or unsigned integers."""
    if value.isdigit():
        return True
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


class QdrantMemoryStore(MemoryBackend):
    """Remote store backed by a Qdrant collection."""

    mode = "remote"

    def __init__(
        self,
        url: str,
        collection_name: str = DEFAULT_COLLECTION,
        dim: int = VECTOR_DIM,
        timeout: int = 10,
        max_retries: int = 2,
        retry_base_delay: float = 0.5,
        client: Any | None = None,
    ) -> None:
        super().__init__(collection_name, dim)
        self.url = url
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.client = client if client is not None else AsyncQdrantClient(url=url, timeout=timeout)
        self._ready = False
        self._ready_lock = asyncio.Lock()

    async def _call(self, fn, *args, **kwargs):
        """Run a client call, retrying transport failures with exponential backoff."""
        attempt = 0
        while True:
            try:
                return await fn(*args, **kwargs)
            except TRANSPORT_ERRORS as e:
                if attempt >= self.max_retries:
                    raise BackendUnavailable(f"Qdrant at {self.url} unreachable: {e}") from e
                delay = self.retry_base_delay * (2**attempt)
                attempt += 1
                print(
                    f"[memory-qdrant] Qdrant call failed ({e}), retry {attempt}/{self.max_retries} in {delay:.1f}s",
                    file=sys.stderr,
                )
                await asyncio.sleep(delay)

    async def ensure_ready(self) -> None:
        """Create the collection on first use; later calls are no-ops."""
        if self._ready:
            return
        async with self._ready_lock:
            if self._ready:  # Double-check after acquiring lock
                return
            try:
                await self._call(self.client.get_collection, self.collection_name)
            except BackendUnavailable:
                raise
            except Exception as e:
                if not _is_not_found(e):
                    raise
                await self._call(
                    self.client.create_collection,
                    collection_name=self.collection_name,
                    vectors_config=qm.VectorParams(size=self.dim, distance=qm.Distance.COSINE),
                )
                print(f"[memory-qdrant] Created collection '{self.collection_name}'", file=sys.stderr)
            self._ready = True

    async def store(
        self, text: str, vector: list[float], category: str, importance: float
    ) -> MemoryRecord:
        await self.ensure_ready()
        record = MemoryRecord(
            id=str(uuid.uuid4()),
            text=text,
            vector=list(vector),
            category=category,
            importance=importance,
            created_at=self._next_timestamp(),
        )
        await self._call(
            self.client.upsert,
            collection_name=self.collection_name,
            points=[qm.PointStruct(id=record.id, vector=record.vector, payload=record.to_payload())],
        )
        return record

    async def search(
        self, vector: list[float], limit: int = 5, min_score: float = SimilarityThresholds.LOW
    ) -> list[SearchHit]:
        if limit <= 0:
            return []
        try:
            await self.ensure_ready()
            response = await self._call(
                self.client.query_points,
                collection_name=self.collection_name,
                query=list(vector),
                limit=limit,
                score_threshold=min_score,
                with_payload=True,
            )
        except Exception as e:
            print(f"[memory-qdrant] Qdrant search failed: {e}", file=sys.stderr)
            return []

        hits = [self._to_hit(point) for point in response.points]
        hits.sort(key=lambda hit: (-hit.score, hit.entry.created_at))
        return hits

    @staticmethod
    def _to_hit(point) -> SearchHit:
        payload = point.payload or {}
        entry = MemoryRecord(
            id=str(point.id),
            text=payload.get("text", ""),
            category=payload.get("category", "other"),
            importance=payload.get("importance", 0.0),
            created_at=int(payload.get("createdAt") or 0),
        )
        return SearchHit(entry=entry, score=point.score)

    async def delete(self, memory_id: str) -> bool:
        if not _is_point_id(memory_id):
            return False  # cannot exist in the collection
        await self.ensure_ready()
        await self._call(
            self.client.delete,
            collection_name=self.collection_name,
            points_selector=qm.PointIdsList(points=[memory_id]),
        )
        return True

    async def count(self) -> int:
        await self.ensure_ready()
        info = await self._call(self.client.get_collection, self.collection_name)
        return info.points_count or 0

    async def health_check(self) -> HealthStatus:
        try:
            await self.client.get_collections()
        except Exception as e:
            return HealthStatus(healthy=False, mode=self.mode, diagnostic=str(e) or type(e).__name__)
        return HealthStatus(healthy=True, mode=self.mode)

    async def close(self) -> None:
        await self.client.close()


# =============================================================================
# Facade
# =============================================================================


class VectorStore:
    """One memory store, local or Qdrant-backed, behind a single contract.

    All writes go through one lock so snapshot rewrites and the
    duplicate-check-then-store sequence never interleave.
    """

    def __init__(
        self,
        url: str | None = None,
        collection_name: str = DEFAULT_COLLECTION,
        max_size: int | None = DEFAULT_MAX_MEMORY_SIZE,
        persist_path: str | Path | None = None,
        dim: int = VECTOR_DIM,
        timeout: int = 10,
        max_retries: int = 2,
        client: Any | None = None,
    ) -> None:
        self.dim = dim
        if is_local_url(url):
            self.backend: MemoryBackend = LocalMemoryStore(collection_name, max_size, persist_path, dim)
        else:
            self.backend = QdrantMemoryStore(
                url, collection_name, dim, timeout=timeout, max_retries=max_retries, client=client
            )
        self._write_lock = asyncio.Lock()

    @property
    def mode(self) -> str:
        return self.backend.mode

    def describe(self) -> str:
        backend = self.backend
        if isinstance(backend, LocalMemoryStore):
            size_info = "unlimited" if backend.unlimited else f"max {backend.max_size} memories, LRU eviction"
            persist_info = (
                f", persisted to {backend.persist_path}"
                if backend.persist_path
                else ", volatile (cleared on restart)"
            )
            return f"using in-memory storage ({size_info}{persist_info})"
        return f"using Qdrant at {backend.url}"

    def _validate_vector(self, vector: Sequence[float]) -> list[float]:
        if isinstance(vector, (str, bytes)):
            raise ValidationError("Vector must be a sequence of numbers")
        try:
            values = np.asarray(vector, dtype=np.float64)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Vector must be a sequence of numbers: {e}") from e
        if values.ndim != 1 or values.shape[0] != self.dim:
            raise ValidationError(f"Vector must have {self.dim} dimensions, got shape {values.shape}")
        if not np.all(np.isfinite(values)):
            raise ValidationError("Vector contains NaN or infinite values")
        return values.tolist()

    @staticmethod
    def _validate_importance(importance: float) -> float:
        try:
            value = float(importance)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Importance must be a number: {e}") from e
        # NaN would be written to the snapshot as null and fail the next load
        if not math.isfinite(value):
            raise ValidationError(f"Importance must be finite, got {importance}")
        return value

    async def ensure_ready(self) -> None:
        await self.backend.ensure_ready()

    async def store(
        self, text: str, vector: Sequence[float], category: str = "other", importance: float = 0.7
    ) -> MemoryRecord:
        values = self._validate_vector(vector)
        importance = self._validate_importance(importance)
        async with self._write_lock:
            return await self.backend.store(text, values, category, importance)

    async def store_unique(
        self,
        text: str,
        vector: Sequence[float],
        category: str = "other",
        importance: float = 0.7,
        threshold: float = SimilarityThresholds.DUPLICATE,
    ) -> tuple[MemoryRecord | None, SearchHit | None]:
        """Store unless a neighbour scores >= threshold.

        Returns (record, None) when stored, (None, existing) when rejected.
        """
        values = self._validate_vector(vector)
        importance = self._validate_importance(importance)
        async with self._write_lock:
            existing = await self.backend.search(values, 1, threshold)
            if existing:
                return None, existing[0]
            return await self.backend.store(text, values, category, importance), None

    async def search(
        self,
        vector: Sequence[float],
        limit: int = 5,
        min_score: float = SimilarityThresholds.LOW,
    ) -> list[SearchHit]:
        values = self._validate_vector(vector)
        if limit < 0:
            raise ValidationError(f"limit must be >= 0, got {limit}")
        if not -1.0 <= min_score <= 1.0:
            raise ValidationError(f"min_score must be within [-1, 1], got {min_score}")
        return await self.backend.search(values, limit, min_score)

    async def delete(self, memory_id: str) -> bool:
        async with self._write_lock:
            return await self.backend.delete(memory_id)

    async def count(self) -> int:
        return await self.backend.count()

    async def health_check(self) -> HealthStatus:
        try:
            return await self.backend.health_check()
        except Exception as e:
            return HealthStatus(healthy=False, mode=self.mode, diagnostic=str(e))

    async def close(self) -> None:
        await self.backend.close()
