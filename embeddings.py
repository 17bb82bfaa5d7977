"""
Text embeddings for memory-qdrant.

Providers, tried in order after the configured one fails:
- ollama: local Ollama server (all-minilm = all-MiniLM-L6-v2, 384-dim)
- google: Gemini embeddings with output_dimensionality
- hash: deterministic SHA-256 expansion, no semantic meaning
"""

from __future__ import annotations

import asyncio
import hashlib
import os
import sys
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np
import requests

from models import VECTOR_DIM, EmbeddingError

if TYPE_CHECKING:
    from google.genai import Client as GenAIClient

PROVIDERS = ("ollama", "google", "hash")
DEFAULT_MODELS = {"ollama": "all-minilm", "google": "gemini-embedding-001", "hash": "sha256"}


def _get_api_key() -> str:
    """Get API key from environment or secrets file."""
    key = os.environ.get("GOOGLE_API_KEY") or os.environ.get("GEMINI_API_KEY")
    if key:
        return key
    secrets_path = Path.home() / ".secrets" / "GOOGLE_API_KEY"
    if secrets_path.exists():
        return secrets_path.read_text().strip()
    raise ValueError(
        "GOOGLE_API_KEY not found. Set environment variable or create ~/.secrets/GOOGLE_API_KEY"
    )


def fit_dimension(values, dim: int) -> list[float]:
    """Truncate or zero-pad to dim, then L2-normalize."""
    embedding = np.asarray(values, dtype=np.float64)
    if len(embedding) > dim:
        embedding = embedding[:dim]
    elif len(embedding) < dim:
        embedding = np.concatenate([embedding, np.zeros(dim - len(embedding))])
    norm = np.linalg.norm(embedding)
    return (embedding / norm).tolist() if norm > 0 else embedding.tolist()


@lru_cache(maxsize=128)
def hash_embedding(text: str, dim: int = VECTOR_DIM) -> tuple[float, ...]:
    """
    Last-resort fallback: deterministic hash-based embedding.
    Not real semantic meaning, but identical texts map to identical vectors.
    """
    values: list[float] = []
    counter = 0
    while len(values) < dim:
        digest = hashlib.sha256(f"{text}|{counter}".encode()).digest()
        values.extend((b - 128) / 128.0 for b in digest)
        counter += 1
    return tuple(fit_dimension(values[:dim], dim))


class Embeddings:
    """Turns text into fixed-length, unit-norm vectors."""

    def __init__(
        self,
        provider: str = "ollama",
        model: str | None = None,
        dim: int = VECTOR_DIM,
        base_url: str = "http://localhost:11434",
        max_attempts: int = 3,
        base_delay: float = 1.0,
        multiplier: float = 2.0,
        request_timeout: float = 30,
    ) -> None:
        provider = provider.lower()
        if provider not in PROVIDERS:
            raise ValueError(f"Unknown embedding provider '{provider}'. Valid: {list(PROVIDERS)}")
        self.provider = provider
        self.model = model or DEFAULT_MODELS[provider]
        self.dim = dim
        self.base_url = base_url.rstrip("/")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.multiplier = multiplier
        self.request_timeout = request_timeout
        self.init_attempts = 0
        self._ready = False
        self._genai_client: GenAIClient | None = None

    # -------------------------------------------------------------------------
    # Providers (blocking; run in a worker thread)
    # -------------------------------------------------------------------------

    def _embed_ollama(self, text: str) -> list[float]:
        response = requests.post(
            f"{self.base_url}/api/embeddings",
            json={"model": self.model, "prompt": text},
            timeout=self.request_timeout,
        )
        response.raise_for_status()
        embedding = response.json().get("embedding") or []
        if not embedding:
            raise ValueError(f"Ollama returned no embedding for model '{self.model}'")
        return fit_dimension(embedding, self.dim)

    def _get_genai_client(self) -> GenAIClient:
        if self._genai_client is None:
            from google import genai

            self._genai_client = genai.Client(api_key=_get_api_key())
        return self._genai_client

    def _embed_google(self, text: str) -> list[float]:
        from google.genai import types

        response = self._get_genai_client().models.embed_content(
            model=self.model if self.provider == "google" else DEFAULT_MODELS["google"],
            contents=text,
            config=types.EmbedContentConfig(
                task_type="SEMANTIC_SIMILARITY", output_dimensionality=self.dim
            ),
        )
        return fit_dimension(response.embeddings[0].values, self.dim)

    def _embed_hash(self, text: str) -> list[float]:
        return list(hash_embedding(text, self.dim))

    def _embed_with(self, provider: str, text: str) -> list[float]:
        return getattr(self, f"_embed_{provider}")(text)

    def _embed_sync(self, text: str) -> list[float]:
        """Configured provider first, then the rest of the fallback chain."""
        chain = PROVIDERS[PROVIDERS.index(self.provider):]
        for provider in chain[:-1]:
            try:
                return self._embed_with(provider, text)
            except Exception as e:
                print(f"[memory-qdrant] {provider} embedding error: {e}", file=sys.stderr)
        if len(chain) > 1:
            print("[memory-qdrant] Using hash fallback embedding (poor semantic quality)", file=sys.stderr)
        return self._embed_with(chain[-1], text)

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def init(self) -> None:
        """Probe the configured provider, retrying with exponential backoff."""
        if self._ready:
            return
        for attempt in range(1, self.max_attempts + 1):
            try:
                await asyncio.to_thread(self._embed_with, self.provider, "warmup")
                self.init_attempts = attempt
                self._ready = True
                return
            except Exception as e:
                if attempt == self.max_attempts:
                    raise EmbeddingError(
                        f"Failed to initialize embeddings after {self.max_attempts} attempts: {e}"
                    ) from e
                delay = self.base_delay * self.multiplier ** (attempt - 1)
                print(
                    f"[memory-qdrant] Embedding init attempt {attempt} failed ({e}), retrying in {delay:.1f}s",
                    file=sys.stderr,
                )
                await asyncio.sleep(delay)

    async def embed(self, text: str) -> list[float]:
        await self.init()
        return await asyncio.to_thread(self._embed_sync, text)
