"""
Tests for the vector store core: similarity, snapshots, local backend, facade.

Run with: pytest test_vector_store.py -v
"""

import asyncio
import itertools
import json
import math

import pytest

import vector_store as vs_module
from models import MemoryRecord, SimilarityThresholds, Snapshot, ValidationError
from vector_store import (
    LocalMemoryStore,
    QdrantMemoryStore,
    VectorStore,
    build_snapshot,
    cosine_similarity,
    is_local_url,
    load_snapshot,
    save_snapshot,
)

DIM = 384


def unit(index: int, dim: int = DIM) -> list[float]:
    """Basis vector e_index."""
    vector = [0.0] * dim
    vector[index] = 1.0
    return vector


def blend(a: int, b: int, weight: float, dim: int = DIM) -> list[float]:
    """Vector between e_a and e_b; cosine to e_a falls as weight rises."""
    vector = [0.0] * dim
    vector[a] = 1.0 - weight
    vector[b] = weight
    return vector


@pytest.fixture
def ticking_clock(monkeypatch):
    """Make now_ms() return 1, 2, 3, ... so createdAt is predictable."""
    counter = itertools.count(1)
    monkeypatch.setattr(vs_module, "now_ms", lambda: next(counter))


# =============================================================================
# Similarity
# =============================================================================


class TestCosineSimilarity:
    def test_identical_vectors(self):
        assert cosine_similarity([0.3, -1.2, 4.0], [0.3, -1.2, 4.0]) == pytest.approx(1.0)

    def test_opposite_vectors(self):
        assert cosine_similarity([1.0, 2.0], [-1.0, -2.0]) == pytest.approx(-1.0)

    def test_orthogonal_vectors(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == 0.0

    def test_zero_vector_is_zero_not_nan(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 2.0]) == 0.0
        assert cosine_similarity([1.0, 2.0], [0.0, 0.0]) == 0.0

    def test_bounded(self):
        pairs = [([1, 2, 3], [4, -5, 6]), ([0.1, 0.1], [100, 0.1]), ([-3, 7], [2, 2])]
        for a, b in pairs:
            assert -1.0 <= cosine_similarity(a, b) <= 1.0

    def test_returns_python_float(self):
        assert type(cosine_similarity([1.0, 0.0], [1.0, 1.0])) is float

    def test_length_mismatch(self):
        with pytest.raises(ValidationError):
            cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0])


# =============================================================================
# Snapshot Persistence
# =============================================================================


class TestSnapshot:
    def test_round_trip_preserves_every_field(self, tmp_path):
        path = tmp_path / "snap.json"
        records = [
            MemoryRecord(id="a", text="first", vector=[0.1, 0.2, 0.30000000000000004], category="fact",
                         importance=0.25, created_at=1700000000001),
            MemoryRecord(id="b", text="second", vector=[-1.5e-7, 2.0, 3.0], category="decision",
                         importance=1.0, created_at=1700000000002),
        ]
        assert save_snapshot(path, build_snapshot("coll", records))
        assert load_snapshot(path) == records

    def test_file_format(self, tmp_path):
        path = tmp_path / "snap.json"
        record = MemoryRecord(id="a", text="t", vector=[1.0], category="other", importance=0.5, created_at=7)
        save_snapshot(path, build_snapshot("my_memories", [record]))

        data = json.loads(path.read_text())
        assert data["version"] == "1.0"
        assert data["collectionName"] == "my_memories"
        assert data["count"] == 1
        assert "savedAt" in data
        assert data["memories"][0] == {
            "id": "a",
            "text": "t",
            "vector": [1.0],
            "category": "other",
            "importance": 0.5,
            "createdAt": 7,
        }

    def test_creates_parent_directories(self, tmp_path):
        path = tmp_path / "nested" / "deeper" / "snap.json"
        assert save_snapshot(path, build_snapshot("c", []))
        assert path.exists()

    def test_no_temp_files_left_behind(self, tmp_path):
        path = tmp_path / "snap.json"
        save_snapshot(path, build_snapshot("c", []))
        save_snapshot(path, build_snapshot("c", []))
        assert [p.name for p in tmp_path.iterdir()] == ["snap.json"]

    def test_missing_file_is_empty(self, tmp_path):
        assert load_snapshot(tmp_path / "absent.json") == []

    def test_corrupt_file_is_empty_and_logged(self, tmp_path, capsys):
        path = tmp_path / "snap.json"
        path.write_text('{"version": "1.0", "memories": [')
        assert load_snapshot(path) == []
        assert "Failed to load from disk" in capsys.readouterr().err

    def test_schema_invalid_file_is_empty(self, tmp_path):
        path = tmp_path / "snap.json"
        path.write_text(json.dumps({"memories": [{"id": "x"}]}))
        assert load_snapshot(path) == []

    def test_unwritable_target_returns_false(self, tmp_path, capsys):
        blocker = tmp_path / "file.txt"
        blocker.write_text("not a directory")
        assert not save_snapshot(blocker / "snap.json", build_snapshot("c", []))
        assert "Failed to save to disk" in capsys.readouterr().err

    def test_legacy_snapshot_without_metadata(self, tmp_path):
        path = tmp_path / "snap.json"
        path.write_text(json.dumps({"memories": [
            {"id": "a", "text": "t", "vector": [1, 0], "category": "fact", "importance": 0.7, "createdAt": 5}
        ]}))
        [record] = load_snapshot(path)
        assert record.vector == [1.0, 0.0]
        assert record.created_at == 5


# =============================================================================
# Local Store
# =============================================================================


class TestLocalStore:
    async def test_store_assigns_id_and_timestamp(self):
        store = VectorStore()
        record = await store.store("hello", unit(0), "fact", 0.9)
        assert record.id
        assert record.created_at > 0
        assert record.text == "hello"
        assert record.category == "fact"
        assert record.importance == 0.9
        assert await store.count() == 1

    async def test_ids_are_unique(self):
        store = VectorStore(max_size=None)
        records = [await store.store(f"m{i}", unit(i), "other", 0.5) for i in range(20)]
        assert len({r.id for r in records}) == 20

    async def test_timestamps_are_monotonic(self):
        store = VectorStore(max_size=None)
        records = [await store.store(f"m{i}", unit(i), "other", 0.5) for i in range(10)]
        stamps = [r.created_at for r in records]
        assert stamps == sorted(stamps)

    async def test_search_returns_stored_record_first(self):
        store = VectorStore()
        await store.store("other", unit(1), "fact", 0.5)
        target = await store.store("target", unit(0), "fact", 0.5)
        results = await store.search(unit(0), limit=1, min_score=1.0)
        assert len(results) == 1
        assert results[0].entry.id == target.id
        assert results[0].score == pytest.approx(1.0)

    async def test_search_strips_vectors(self):
        store = VectorStore()
        await store.store("hello", unit(0), "fact", 0.5)
        [hit] = await store.search(unit(0))
        assert hit.entry.vector == []
        assert store.backend._records[0].vector == unit(0)

    async def test_search_filters_orders_and_limits(self):
        store = VectorStore()
        await store.store("far", blend(0, 1, 0.9), "other", 0.5)
        await store.store("exact", unit(0), "other", 0.5)
        await store.store("close", blend(0, 1, 0.2), "other", 0.5)
        await store.store("orthogonal", unit(5), "other", 0.5)

        results = await store.search(unit(0), limit=10, min_score=SimilarityThresholds.LOW)
        assert [r.entry.text for r in results] == ["exact", "close"]
        assert all(r.score >= SimilarityThresholds.LOW for r in results)
        assert results[0].score >= results[1].score

        assert len(await store.search(unit(0), limit=1, min_score=-1.0)) == 1
        assert await store.search(unit(0), limit=0) == []

    async def test_equal_scores_keep_oldest_first(self, ticking_clock):
        store = VectorStore()
        first = await store.store("first", unit(0), "other", 0.5)
        second = await store.store("second", unit(0), "other", 0.5)
        results = await store.search(unit(0), limit=2, min_score=0.5)
        assert [r.entry.id for r in results] == [first.id, second.id]

    async def test_empty_store_search(self):
        """Scenario B: empty store returns no results and no error."""
        store = VectorStore()
        assert await store.search(unit(3), limit=5, min_score=0.3) == []

    async def test_two_dimensional_exact_match(self):
        """Scenario C: store [1,0], search [1,0] at 0.9."""
        store = VectorStore(dim=2)
        record = await store.store("unit", [1.0, 0.0], "fact", 0.5)
        results = await store.search([1.0, 0.0], limit=1, min_score=0.9)
        assert [r.entry.id for r in results] == [record.id]
        assert results[0].score == 1.0

    async def test_delete_present_and_absent(self):
        store = VectorStore()
        keep = await store.store("keep", unit(0), "other", 0.5)
        drop = await store.store("drop", unit(1), "other", 0.5)

        assert await store.delete(drop.id) is True
        assert await store.count() == 1
        assert await store.delete(drop.id) is False
        assert await store.delete("never-existed") is False
        assert [r.id for r in store.backend._records] == [keep.id]

    async def test_health_check(self):
        health = await VectorStore().health_check()
        assert health.healthy is True
        assert health.mode == "local"
        assert health.diagnostic is None

    async def test_ensure_ready_is_noop(self):
        store = VectorStore()
        await store.ensure_ready()
        await store.ensure_ready()
        assert await store.count() == 0


class TestEviction:
    async def test_capacity_two_evicts_oldest(self, ticking_clock):
        """Scenario A: A, B, C into capacity 2 leaves B and C."""
        store = VectorStore(max_size=2)
        a = await store.store("A", unit(0), "other", 0.5)
        b = await store.store("B", unit(1), "other", 0.5)
        c = await store.store("C", unit(2), "other", 0.5)
        assert (a.created_at, b.created_at, c.created_at) == (1, 2, 3)
        assert {r.id for r in store.backend._records} == {b.id, c.id}
        assert await store.count() == 2

    async def test_count_never_exceeds_capacity(self):
        store = VectorStore(max_size=3)
        for i in range(10):
            await store.store(f"m{i}", unit(i), "other", 0.5)
            assert await store.count() <= 3

    async def test_equal_timestamps_evict_earliest_inserted(self, monkeypatch):
        monkeypatch.setattr(vs_module, "now_ms", lambda: 42)
        store = VectorStore(max_size=2)
        a = await store.store("A", unit(0), "other", 0.5)
        b = await store.store("B", unit(1), "other", 0.5)
        await store.store("C", unit(2), "other", 0.5)
        ids = {r.id for r in store.backend._records}
        assert a.id not in ids
        assert b.id in ids

    async def test_evicts_smallest_created_at_not_first_inserted(self, tmp_path):
        path = tmp_path / "mem.json"
        newer = MemoryRecord(id="newer", text="n", vector=unit(0), created_at=500)
        older = MemoryRecord(id="older", text="o", vector=unit(1), created_at=100)
        save_snapshot(path, build_snapshot("c", [newer, older]))

        store = VectorStore(max_size=2, persist_path=path)
        fresh = await store.store("fresh", unit(2), "other", 0.5)
        assert [r.id for r in store.backend._records] == ["newer", fresh.id]

    @pytest.mark.parametrize("max_size", [None, 999_999, 5_000_000])
    async def test_unlimited_never_evicts(self, max_size):
        store = VectorStore(max_size=max_size)
        assert store.backend.unlimited
        for i in range(25):
            await store.store(f"m{i}", unit(i), "other", 0.5)
        assert await store.count() == 25

    def test_rejects_non_positive_capacity(self):
        with pytest.raises(ValueError):
            LocalMemoryStore(max_size=0)


class TestLocalPersistence:
    async def test_restart_restores_records(self, tmp_path):
        """Scenario D: three records survive a restart with identical search output."""
        path = tmp_path / "store" / "memories.json"
        store = VectorStore(persist_path=path)
        await store.store("alpha", unit(0), "fact", 0.1)
        await store.store("beta", blend(0, 1, 0.3), "preference", 0.2)
        await store.store("gamma", unit(2), "decision", 0.3)
        before = await store.search(unit(0), limit=3, min_score=0.3)

        restarted = VectorStore(persist_path=path)
        assert await restarted.count() == 3
        after = await restarted.search(unit(0), limit=3, min_score=0.3)
        assert after == before
        assert restarted.backend._records == store.backend._records

    async def test_delete_is_persisted(self, tmp_path):
        path = tmp_path / "memories.json"
        store = VectorStore(persist_path=path)
        record = await store.store("gone", unit(0), "other", 0.5)
        await store.store("kept", unit(1), "other", 0.5)
        await store.delete(record.id)

        data = json.loads(path.read_text())
        assert data["count"] == 1
        assert [m["text"] for m in data["memories"]] == ["kept"]

    async def test_loaded_timestamps_stay_monotonic(self, tmp_path):
        path = tmp_path / "memories.json"
        future = MemoryRecord(id="f", text="f", vector=unit(0), created_at=10**15)
        save_snapshot(path, build_snapshot("c", [future]))

        store = VectorStore(persist_path=path)
        record = await store.store("now", unit(1), "other", 0.5)
        assert record.created_at >= future.created_at

    async def test_corrupt_snapshot_starts_empty(self, tmp_path):
        path = tmp_path / "memories.json"
        path.write_text("not json at all")
        store = VectorStore(persist_path=path)
        assert await store.count() == 0
        await store.store("fresh", unit(0), "other", 0.5)
        assert Snapshot.model_validate_json(path.read_text()).count == 1

    async def test_wrong_dimension_snapshot_starts_empty(self, tmp_path, capsys):
        path = tmp_path / "memories.json"
        save_snapshot(path, build_snapshot("c", [MemoryRecord(id="x", text="x", vector=[1.0, 0.0], created_at=1)]))
        store = VectorStore(persist_path=path)
        assert await store.count() == 0
        assert "not 384-dimensional" in capsys.readouterr().err

    async def test_duplicate_id_snapshot_starts_empty(self, tmp_path, capsys):
        path = tmp_path / "memories.json"
        twins = [
            MemoryRecord(id="same", text="one", vector=unit(0), created_at=1),
            MemoryRecord(id="same", text="two", vector=unit(1), created_at=2),
        ]
        save_snapshot(path, build_snapshot("c", twins))
        store = VectorStore(persist_path=path)
        assert await store.count() == 0
        assert "duplicate memory ids" in capsys.readouterr().err

    @pytest.mark.parametrize("importance", [math.nan, math.inf, -math.inf])
    async def test_non_finite_importance_rejected(self, tmp_path, importance):
        path = tmp_path / "memories.json"
        store = VectorStore(persist_path=path)
        await store.store("ok", unit(0), "fact", 0.5)
        with pytest.raises(ValidationError):
            await store.store("bad", unit(1), "fact", importance)
        with pytest.raises(ValidationError):
            await store.store_unique("bad", unit(2), "fact", importance)

        restarted = VectorStore(persist_path=path)
        assert await restarted.count() == 1
        assert (await restarted.search(unit(0)))[0].entry.text == "ok"

    async def test_save_failure_does_not_fail_store(self, tmp_path, capsys):
        blocker = tmp_path / "file.txt"
        blocker.write_text("x")
        store = VectorStore(persist_path=blocker / "memories.json")
        record = await store.store("still here", unit(0), "other", 0.5)
        assert await store.count() == 1
        assert (await store.search(unit(0)))[0].entry.id == record.id
        assert "Failed to save to disk" in capsys.readouterr().err

    async def test_concurrent_stores_all_persisted(self, tmp_path):
        path = tmp_path / "memories.json"
        store = VectorStore(persist_path=path, max_size=None)
        await asyncio.gather(*(store.store(f"m{i}", unit(i), "other", 0.5) for i in range(15)))

        restarted = VectorStore(persist_path=path, max_size=None)
        assert await restarted.count() == 15

    def test_tilde_path_is_expanded(self, tmp_path, monkeypatch):
        monkeypatch.setenv("HOME", str(tmp_path))
        store = LocalMemoryStore(persist_path="~/memories.json")
        assert store.persist_path == tmp_path / "memories.json"


# =============================================================================
# Facade
# =============================================================================


class TestVectorStoreFacade:
    @pytest.mark.parametrize("url", [None, "", ":memory:", "local", "  LOCAL "])
    def test_local_selection(self, url):
        store = VectorStore(url=url)
        assert isinstance(store.backend, LocalMemoryStore)
        assert store.mode == "local"
        assert is_local_url(url)

    def test_remote_selection(self):
        store = VectorStore(url="http://localhost:6333", client=object())
        assert isinstance(store.backend, QdrantMemoryStore)
        assert store.mode == "remote"
        assert store.describe() == "using Qdrant at http://localhost:6333"

    def test_describe_local(self, tmp_path):
        assert VectorStore(max_size=10).describe() == (
            "using in-memory storage (max 10 memories, LRU eviction, volatile (cleared on restart))"
        )
        path = tmp_path / "m.json"
        assert VectorStore(max_size=None, persist_path=path).describe() == (
            f"using in-memory storage (unlimited, persisted to {path})"
        )

    @pytest.mark.parametrize(
        "vector",
        [
            [1.0] * 383,
            [1.0] * 385,
            [],
            "not a vector",
            [[1.0] * DIM],
            [math.nan] + [0.0] * (DIM - 1),
            [math.inf] + [0.0] * (DIM - 1),
            ["a"] * DIM,
        ],
    )
    async def test_store_rejects_malformed_vectors(self, vector):
        store = VectorStore()
        with pytest.raises(ValidationError):
            await store.store("bad", vector, "other", 0.5)
        assert await store.count() == 0

    async def test_search_rejects_malformed_input(self):
        store = VectorStore()
        with pytest.raises(ValidationError):
            await store.search([1.0] * 10)
        with pytest.raises(ValidationError):
            await store.search(unit(0), limit=-1)
        with pytest.raises(ValidationError):
            await store.search(unit(0), min_score=1.5)

    async def test_validation_error_is_value_error(self):
        with pytest.raises(ValueError):
            await VectorStore().store("bad", [1.0], "other", 0.5)

    async def test_accepts_tuples_and_ints(self):
        store = VectorStore(dim=3)
        record = await store.store("ints", (1, 0, 0), "other", 0.5)
        assert record.vector == [1.0, 0.0, 0.0]

    async def test_store_unique_rejects_duplicates(self):
        store = VectorStore()
        record, existing = await store.store_unique("first", unit(0), "fact", 0.5)
        assert record is not None and existing is None

        record2, existing2 = await store.store_unique("again", unit(0), "fact", 0.5)
        assert record2 is None
        assert existing2.entry.id == record.id
        assert await store.count() == 1

    async def test_store_unique_allows_distinct(self):
        store = VectorStore()
        await store.store_unique("first", unit(0), "fact", 0.5)
        record, _ = await store.store_unique("second", blend(0, 1, 0.5), "fact", 0.5)
        assert record is not None
        assert await store.count() == 2

    async def test_concurrent_store_unique_stores_once(self):
        store = VectorStore()
        results = await asyncio.gather(
            *(store.store_unique(f"dup {i}", unit(7), "fact", 0.5) for i in range(5))
        )
        stored = [record for record, _ in results if record is not None]
        assert len(stored) == 1
        assert await store.count() == 1
