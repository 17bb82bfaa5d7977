"""Shared data models for memory-qdrant."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

# Configuration
VECTOR_DIM = 384  # all-MiniLM-L6-v2
SNAPSHOT_VERSION = "1.0"
UNLIMITED_MAX_SIZE = 999_999  # max sizes at or above this disable eviction

MEMORY_CATEGORIES = ("fact", "preference", "decision", "entity", "other")


class SimilarityThresholds:
    """Cosine cutoffs callers pass to search(); the store never hard-codes them."""

    DUPLICATE = 0.95  # reject near-duplicate stores
    HIGH = 0.70  # confident delete-by-query
    MEDIUM = 0.50
    LOW = 0.30  # default recall/search


# =============================================================================
# Records
# =============================================================================


class MemoryRecord(BaseModel):
    """A stored memory.

    Field names are snake_case in Python and camelCase on disk / in payloads,
    so snapshots stay readable by older plugin versions.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str
    text: str
    vector: list[float] = Field(default_factory=list)
    category: str = "other"
    importance: float = 0.7
    created_at: int = Field(alias="createdAt")  # epoch milliseconds

    def without_vector(self) -> MemoryRecord:
        return self.model_copy(update={"vector": []})

    def to_payload(self) -> dict:
        """Payload stored next to the vector in the remote collection."""
        return {
            "text": self.text,
            "category": self.category,
            "importance": self.importance,
            "createdAt": self.created_at,
        }


class SearchHit(BaseModel):
    entry: MemoryRecord
    score: float


class HealthStatus(BaseModel):
    healthy: bool
    mode: str  # local | remote
    diagnostic: str | None = None


class Snapshot(BaseModel):
    """On-disk document for a local store."""

    model_config = ConfigDict(populate_by_name=True)

    version: str = SNAPSHOT_VERSION
    collection_name: str = Field(default="", alias="collectionName")
    saved_at: str | None = Field(default=None, alias="savedAt")
    count: int = 0
    memories: list[MemoryRecord] = Field(default_factory=list)


# =============================================================================
# Errors
# =============================================================================


class MemoryStoreError(Exception):
    """Base class for memory store failures."""


class ValidationError(MemoryStoreError, ValueError):
    """Malformed vector or search bounds."""


class BackendUnavailable(MemoryStoreError):
    """Remote backend unreachable after the retry budget."""


class EmbeddingError(MemoryStoreError):
    """Embedding provider could not be initialized."""
