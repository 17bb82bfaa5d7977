#!/usr/bin/env python3
"""
Memory Qdrant MCP Server - long-term semantic memory for agents

Provides persistent memory with vector similarity search using:
- FastMCP for the tool surface (store / search / forget / stats / health)
- Qdrant as the remote vector database, or a local in-process store with
  JSON snapshots when no Qdrant URL is configured
- Ollama all-minilm (384-dim) embeddings, Google Gemini and hash fallbacks
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from mcp.server.fastmcp import FastMCP

from embeddings import Embeddings
from models import MEMORY_CATEGORIES, SimilarityThresholds
from utils import (
    DEFAULT_CAPTURE_MAX_CHARS,
    contains_pii,
    detect_category,
    format_relevant_memories_context,
    sanitize_input,
    should_capture,
)
from vector_store import DEFAULT_COLLECTION, DEFAULT_MAX_MEMORY_SIZE, VectorStore, is_local_url

# =============================================================================
# Configuration
# =============================================================================

MAX_TEXT_CHARS = 10_000
DEFAULT_IMPORTANCE = 0.7
REMEMBER_IMPORTANCE = 0.8
DEFAULT_SEARCH_LIMIT = 5
AUTO_RECALL_LIMIT = 3


def _env(name: str, default: str | None = None) -> str | None:
    value = os.environ.get(name)
    return value if value not in (None, "") else default


def _env_bool(name: str, default: bool) -> bool:
    value = _env(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True, slots=True)
class Config:
    """Server configuration, read from the environment at construction time."""

    qdrant_url: str | None = field(default_factory=lambda: _env("QDRANT_URL"))
    collection_name: str = field(default_factory=lambda: _env("MEMORY_COLLECTION", DEFAULT_COLLECTION))
    max_memory_size: int = field(
        default_factory=lambda: int(_env("MEMORY_MAX_SIZE", str(DEFAULT_MAX_MEMORY_SIZE)))
    )
    persist_to_disk: bool = field(default_factory=lambda: _env_bool("MEMORY_PERSIST", True))
    storage_path: Path = field(
        default_factory=lambda: Path(_env("MEMORY_STORAGE_PATH", str(Path.home() / ".memory-qdrant")))
    )
    capture_max_chars: int = field(
        default_factory=lambda: int(_env("MEMORY_CAPTURE_MAX_CHARS", str(DEFAULT_CAPTURE_MAX_CHARS)))
    )
    auto_recall: bool = field(default_factory=lambda: _env_bool("MEMORY_AUTO_RECALL", False))
    auto_capture: bool = field(default_factory=lambda: _env_bool("MEMORY_AUTO_CAPTURE", False))
    allow_pii_capture: bool = field(default_factory=lambda: _env_bool("MEMORY_ALLOW_PII", False))
    embedding_provider: str = field(default_factory=lambda: _env("EMBEDDING_PROVIDER", "ollama"))
    embedding_model: str | None = field(default_factory=lambda: _env("EMBEDDING_MODEL"))
    ollama_base_url: str = field(
        default_factory=lambda: _env("OLLAMA_BASE_URL", "http://localhost:11434")
    )
    embedding_max_attempts: int = field(default_factory=lambda: int(_env("EMBEDDING_MAX_ATTEMPTS", "3")))
    embedding_base_delay: float = field(
        default_factory=lambda: float(_env("EMBEDDING_BASE_DELAY", "1.0"))
    )
    embedding_multiplier: float = field(
        default_factory=lambda: float(_env("EMBEDDING_MULTIPLIER", "2.0"))
    )
    qdrant_timeout: int = field(default_factory=lambda: int(_env("QDRANT_TIMEOUT", "10")))
    qdrant_max_retries: int = field(default_factory=lambda: int(_env("QDRANT_MAX_RETRIES", "2")))

    @property
    def persist_path(self) -> Path | None:
        """Snapshot file for the local backend; None for Qdrant or when disabled."""
        if not self.persist_to_disk or not is_local_url(self.qdrant_url):
            return None
        return self.storage_path.expanduser() / f"{self.collection_name}.json"


def build_store(config: Config) -> VectorStore:
    return VectorStore(
        url=config.qdrant_url,
        collection_name=config.collection_name,
        max_size=config.max_memory_size,
        persist_path=config.persist_path,
        timeout=config.qdrant_timeout,
        max_retries=config.qdrant_max_retries,
    )


def build_embeddings(config: Config) -> Embeddings:
    return Embeddings(
        provider=config.embedding_provider,
        model=config.embedding_model,
        base_url=config.ollama_base_url,
        max_attempts=config.embedding_max_attempts,
        base_delay=config.embedding_base_delay,
        multiplier=config.embedding_multiplier,
    )


# =============================================================================
# Memory Service
# =============================================================================


class MemoryService:
    """Agent-facing memory operations on top of one store and one embedder.

    Results are plain dicts ({"success": ..., "message": ...}) so the MCP tools,
    the CLI and lifecycle hooks can report them without raising.
    """

    def __init__(self, config: Config, store: VectorStore, embeddings: Embeddings) -> None:
        self.config = config
        self.store = store
        self.embeddings = embeddings

    @classmethod
    def from_config(cls, config: Config) -> MemoryService:
        return cls(config, build_store(config), build_embeddings(config))

    async def startup_check(self) -> None:
        """Log the active backend; probe Qdrant without blocking startup on failure."""
        print(f"[memory-qdrant] {self.store.describe()}", file=sys.stderr)
        if self.store.mode != "remote":
            return
        health = await self.store.health_check()
        if health.healthy:
            print("[memory-qdrant] Qdrant connection verified", file=sys.stderr)
        else:
            print(f"[memory-qdrant] Qdrant health check failed: {health.diagnostic}", file=sys.stderr)

    async def store_memory(
        self,
        text: str,
        importance: float = DEFAULT_IMPORTANCE,
        category: str = "other",
        unique: bool = True,
    ) -> dict[str, Any]:
        """Validate and save one memory; with unique, near-duplicates are rejected."""
        cleaned = sanitize_input(text)
        if not cleaned or len(cleaned) > MAX_TEXT_CHARS:
            return {
                "success": False,
                "message": f"Text must be 1-{MAX_TEXT_CHARS} characters after sanitization",
            }
        if category not in MEMORY_CATEGORIES:
            return {
                "success": False,
                "message": f"Invalid category '{category}'. Valid: {list(MEMORY_CATEGORIES)}",
            }
        if not 0.0 <= importance <= 1.0:
            return {"success": False, "message": f"Importance must be within [0, 1], got {importance}"}

        try:
            vector = await self.embeddings.embed(cleaned)
            if unique:
                record, existing = await self.store.store_unique(
                    cleaned, vector, category, importance, SimilarityThresholds.DUPLICATE
                )
            else:
                record, existing = await self.store.store(cleaned, vector, category, importance), None
        except Exception as e:
            print(f"[memory-qdrant] Store failed: {e}", file=sys.stderr)
            return {"success": False, "message": f"Error: {e}"}

        if record is None:
            return {"success": False, "message": f'Similar memory already exists: "{existing.entry.text}"'}
        return {"success": True, "message": f'Saved: "{cleaned[:50]}..."', "id": record.id}

    async def search_memories(self, query: str, limit: int = DEFAULT_SEARCH_LIMIT) -> dict[str, Any]:
        if not query or not query.strip():
            return {"success": False, "message": "Error: query is required", "count": 0}
        if limit <= 0:
            return {"success": False, "message": f"Error: limit must be positive, got {limit}", "count": 0}

        try:
            vector = await self.embeddings.embed(query)
            results = await self.store.search(vector, limit, SimilarityThresholds.LOW)
        except Exception as e:
            print(f"[memory-qdrant] Search failed: {e}", file=sys.stderr)
            return {"success": False, "message": f"Error: {e}", "count": 0}

        if not results:
            return {"success": True, "message": "No relevant memories found", "count": 0, "memories": []}

        lines = [
            f"{i}. [{r.entry.category}] {r.entry.text} ({r.score * 100:.0f}%)"
            for i, r in enumerate(results, 1)
        ]
        return {
            "success": True,
            "message": f"Found {len(results)} memories:\n\n" + "\n".join(lines),
            "count": len(results),
            "memories": [
                {"id": r.entry.id, "text": r.entry.text, "category": r.entry.category, "score": r.score}
                for r in results
            ],
        }

    async def forget(self, query: str | None = None, memory_id: str | None = None) -> dict[str, Any]:
        """Delete by id, or by query when exactly one near-identical memory matches."""
        try:
            if memory_id:
                if await self.store.delete(memory_id):
                    return {"success": True, "message": f"Memory {memory_id} deleted"}
                return {"success": False, "message": f"Memory {memory_id} not found"}

            if not query:
                return {"success": False, "message": "Provide query or memoryId"}

            vector = await self.embeddings.embed(query)
            results = await self.store.search(vector, DEFAULT_SEARCH_LIMIT, SimilarityThresholds.HIGH)
            if not results:
                return {"success": False, "message": "No matching memories found"}

            if len(results) == 1 and results[0].score > SimilarityThresholds.DUPLICATE:
                await self.store.delete(results[0].entry.id)
                return {"success": True, "message": f'Deleted: "{results[0].entry.text}"'}
        except Exception as e:
            print(f"[memory-qdrant] Forget failed: {e}", file=sys.stderr)
            return {"success": False, "message": f"Error: {e}"}

        listing = "\n".join(f"- [{r.entry.id[:8]}] {r.entry.text[:60]}..." for r in results)
        return {
            "success": False,
            "message": f"Found {len(results)} candidates, specify memoryId:\n{listing}",
            "candidates": [{"id": r.entry.id, "text": r.entry.text, "score": r.score} for r in results],
        }

    async def remember(self, text: str) -> dict[str, Any]:
        """Manual save: category is detected from the text, duplicates are kept."""
        text = sanitize_input(text)
        if not text:
            return {"success": False, "message": "Provide something to remember"}
        category = detect_category(text)
        result = await self.store_memory(text, REMEMBER_IMPORTANCE, category, unique=False)
        result["category"] = category
        return result

    async def stats(self) -> dict[str, Any]:
        return {
            "mode": self.store.mode,
            "collection": self.config.collection_name,
            "count": await self.store.count(),
            "max_size": self.config.max_memory_size,
        }

    async def health(self) -> dict[str, Any]:
        return (await self.store.health_check()).model_dump()

    async def recall_context(self, prompt: str | None) -> str | None:
        """Relevant memories formatted for prepending to an agent prompt."""
        if not self.config.auto_recall or not prompt or len(prompt) < 5:
            return None
        try:
            vector = await self.embeddings.embed(prompt)
            results = await self.store.search(vector, AUTO_RECALL_LIMIT, SimilarityThresholds.LOW)
        except Exception as e:
            print(f"[memory-qdrant] Recall failed: {e}", file=sys.stderr)
            return None
        if not results:
            return None
        print(f"[memory-qdrant] Injecting {len(results)} memories", file=sys.stderr)
        return format_relevant_memories_context(
            [{"category": r.entry.category, "text": r.entry.text} for r in results]
        )

    async def capture(self, messages: list[Any]) -> int:
        """Store memory-worthy user messages from a finished agent run."""
        if not self.config.auto_capture or not messages:
            return 0

        texts = [
            text
            for text in _user_texts(messages)
            if should_capture(text, self.config.capture_max_chars)
        ]
        captured = 0
        try:
            for text in texts:
                if contains_pii(text) and not self.config.allow_pii_capture:
                    print(
                        f"[memory-qdrant] Skipping text with PII (set MEMORY_ALLOW_PII=1 to capture): {text[:30]}...",
                        file=sys.stderr,
                    )
                    continue
                vector = await self.embeddings.embed(text)
                category = detect_category(text)
                record, _ = await self.store.store_unique(
                    text, vector, category, DEFAULT_IMPORTANCE, SimilarityThresholds.DUPLICATE
                )
                if record is not None:
                    captured += 1
                    print(f"[memory-qdrant] Captured [{category}] {text[:50]}...", file=sys.stderr)
        except Exception as e:
            print(f"[memory-qdrant] Capture failed: {e}", file=sys.stderr)
        return captured

    async def close(self) -> None:
        await self.store.close()


def _user_texts(messages: list[Any]) -> list[str]:
    """Text of user-role messages; content may be a string or a list of blocks."""
    texts = []
    for msg in messages:
        if not isinstance(msg, dict) or msg.get("role") != "user":
            continue
        content = msg.get("content")
        if isinstance(content, str):
            texts.append(content)
        elif isinstance(content, list):
            texts.extend(
                block["text"]
                for block in content
                if isinstance(block, dict) and block.get("type") == "text" and block.get("text")
            )
    return texts


# =============================================================================
# FastMCP Server
# =============================================================================


def _dumps(result: dict[str, Any]) -> str:
    return json.dumps(result, ensure_ascii=False)


def create_server(service: MemoryService) -> FastMCP:
    """Build the MCP server with tools bound to one memory service."""
    mcp = FastMCP(
        "memory-qdrant",
        instructions="Long-term semantic memory: store preferences, facts and decisions; search and forget them",
    )

    @mcp.tool(
        annotations={
            "readOnlyHint": False,
            "destructiveHint": False,
            "idempotentHint": False,
        }
    )
    async def memory_store(text: str, importance: float = DEFAULT_IMPORTANCE, category: str = "other") -> str:
        """Save important information to long-term memory (preferences, facts, decisions).

        Args:
            text: Information to remember
            importance: Importance 0-1 (default 0.7)
            category: One of fact, preference, decision, entity, other
        """
        return _dumps(await service.store_memory(text, importance, category))

    @mcp.tool(
        annotations={
            "readOnlyHint": True,
            "destructiveHint": False,
            "idempotentHint": True,
        }
    )
    async def memory_search(query: str, limit: int = DEFAULT_SEARCH_LIMIT) -> str:
        """Search long-term memory (user preferences, past decisions, discussed topics).

        Args:
            query: Search query
            limit: Max results (default 5)
        """
        return _dumps(await service.search_memories(query, limit))

    @mcp.tool(
        annotations={
            "readOnlyHint": False,
            "destructiveHint": True,
            "idempotentHint": True,
        }
    )
    async def memory_forget(query: str | None = None, memoryId: str | None = None) -> str:  # noqa: N803
        """Delete a specific memory.

        Args:
            query: Search for the memory to delete
            memoryId: Memory ID
        """
        return _dumps(await service.forget(query=query, memory_id=memoryId))

    @mcp.tool(
        annotations={
            "readOnlyHint": True,
            "destructiveHint": False,
            "idempotentHint": True,
        }
    )
    async def memory_stats() -> str:
        """Get memory statistics - backend mode and total count."""
        try:
            return _dumps({"success": True, **await service.stats()})
        except Exception as e:
            return _dumps({"success": False, "message": f"Error: {e}"})

    @mcp.tool(
        annotations={
            "readOnlyHint": True,
            "destructiveHint": False,
            "idempotentHint": True,
        }
    )
    async def memory_health() -> str:
        """Get memory backend health status."""
        return _dumps(await service.health())

    return mcp


# =============================================================================
# Server Entry Point
# =============================================================================


async def run_server(service: MemoryService) -> None:
    """Run the MCP server over stdio."""
    await service.startup_check()
    mcp = create_server(service)
    try:
        await mcp.run_stdio_async()
    finally:
        await service.close()


def _read_event() -> dict[str, Any]:
    raw = sys.stdin.read()
    if not raw.strip():
        return {}
    try:
        event = json.loads(raw)
    except json.JSONDecodeError as e:
        print(f"[memory-qdrant] Invalid hook input: {e}", file=sys.stderr)
        return {}
    return event if isinstance(event, dict) else {}


async def _run_command(args: argparse.Namespace, service: MemoryService) -> int:
    try:
        if args.command == "stats":
            try:
                stats = await service.stats()
            except Exception as e:
                print(f"[memory-qdrant] Stats failed: {e}", file=sys.stderr)
                return 1
            print(f"Total memories: {stats['count']} ({stats['mode']})")
        elif args.command == "search":
            result = await service.search_memories(args.query, args.limit)
            print(json.dumps(result.get("memories", []), indent=2, ensure_ascii=False))
        elif args.command == "remember":
            result = await service.remember(args.text)
            print(result["message"])
            return 0 if result["success"] else 1
        elif args.command == "recall-hook":
            event = _read_event()
            context = await service.recall_context(event.get("prompt"))
            if context:
                print(json.dumps({"prependContext": context}, ensure_ascii=False))
        elif args.command == "capture-hook":
            event = _read_event()
            captured = 0
            if event.get("success"):
                captured = await service.capture(event.get("messages") or [])
            print(json.dumps({"captured": captured}))
    finally:
        await service.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="memory-qdrant", description="Qdrant-backed agent memory")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("serve", help="Run the MCP server over stdio (default)")
    sub.add_parser("stats", help="Show memory statistics")
    search = sub.add_parser("search", help="Search memories")
    search.add_argument("query")
    search.add_argument("--limit", type=int, default=DEFAULT_SEARCH_LIMIT)
    remember = sub.add_parser("remember", help="Save a memory manually")
    remember.add_argument("text")
    sub.add_parser("recall-hook", help="Print relevant memories for a {'prompt': ...} event on stdin")
    sub.add_parser("capture-hook", help="Capture user messages from an agent_end event on stdin")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Entry point."""
    args = build_parser().parse_args(argv)
    service = MemoryService.from_config(Config())
    if args.command in (None, "serve"):
        asyncio.run(run_server(service))
        return 0
    return asyncio.run(_run_command(args, service))


if __name__ == "__main__":
    sys.exit(main())
