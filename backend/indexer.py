"""
Indexer module for Vaultlink.

Owns the in-memory chunk snapshot for the whole vault, keeps it current as
documents change, and persists it to a JSON cache.
"""

from __future__ import annotations

import asyncio
import json
import os
import re
import time
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set

from chunker import Chunker
from config import VaultlinkConfig
from embedder import EmbeddingProvider, create_embedder
from errors import ConfigurationError, OfflineError
from models import Chunk, Document, IndexStats, SearchHit
from storage import VaultStorage, title_from_path
from vector_math import SimilarityResult, top_k_similar

CACHE_VERSION = 1


class SemanticIndex:
    """Vault-wide (document, chunk, vector) records plus their persistence.

    Mutations (build, update, remove, clear) run one at a time under a single
    writer lock and swap in a new chunk list instead of editing the current
    one, so concurrent readers always see a complete snapshot.
    """

    def __init__(
        self,
        config: VaultlinkConfig,
        storage: Optional[VaultStorage] = None,
        embedder: Optional[EmbeddingProvider] = None,
        chunker: Optional[Chunker] = None,
    ):
        self.config = config
        self.storage = storage or VaultStorage(config.vault_dir, config.document_extensions)
        self.chunker = chunker or Chunker(config.chunk_size, config.chunk_overlap)
        self.cache_path = Path(config.cache_path)

        self._embedder = embedder
        self._chunks: List[Chunk] = []
        self._last_built: float = 0.0
        self._is_built = False

        self._write_lock = asyncio.Lock()
        # Serialises cache writes; each write snapshots the chunks it holds the lock for.
        self._save_lock = asyncio.Lock()
        self._pending_save: Optional[asyncio.TimerHandle] = None
        self._save_tasks: Set[asyncio.Task] = set()
        self._config_error_reported = False

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def embedder(self) -> EmbeddingProvider:
        """The provider, created on first use so configuration errors surface there."""
        if self._embedder is None:
            self._embedder = create_embedder(self.config)
        return self._embedder

    @property
    def is_built(self) -> bool:
        return self._is_built

    @property
    def last_built(self) -> float:
        return self._last_built

    @property
    def chunks(self) -> List[Chunk]:
        return list(self._chunks)

    @property
    def has_pending_save(self) -> bool:
        return self._pending_save is not None

    def chunks_for_document(self, path: str) -> List[Chunk]:
        return [chunk for chunk in self._chunks if chunk.path == path]

    def document_ids(self) -> List[str]:
        seen: Dict[str, None] = {}
        for chunk in self._chunks:
            seen.setdefault(chunk.path, None)
        return list(seen)

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------
    async def build(self, force_rebuild: bool = False) -> None:
        """Load the index from cache, or embed the whole vault from scratch."""
        if not self.config.enable_indexing:
            print("SemanticIndex: indexing disabled in settings")
            return

        async with self._write_lock:
            await self._build_locked(force_rebuild)

    async def _ensure_built(self) -> None:
        if self._is_built:
            return
        async with self._write_lock:
            if not self._is_built:
                print("SemanticIndex: index not built yet, building now...")
                await self._build_locked(False)

    async def _build_locked(self, force_rebuild: bool) -> None:
        if not force_rebuild and await self._load_cache():
            self._is_built = True
            print(f"SemanticIndex: loaded {len(self._chunks)} chunks from cache")
            return

        print("SemanticIndex: building index from scratch...")
        started = time.time()
        documents = await asyncio.to_thread(self.storage.list_documents)

        chunks: List[Chunk] = []
        batch_size = self.config.build_batch_size
        for offset in range(0, len(documents), batch_size):
            batch = documents[offset : offset + batch_size]
            chunks.extend(await self._embed_documents(batch))
            progress = min(offset + batch_size, len(documents))
            print(f"SemanticIndex: indexed {progress}/{len(documents)} documents")

        # The full save below supersedes any incremental save still waiting,
        # and must land after any incremental save already writing.
        self._cancel_pending_save()
        await self._wait_for_saves()
        self._chunks = chunks
        self._last_built = time.time()
        self._is_built = True

        duration_ms = int((time.time() - started) * 1000)
        print(
            f"SemanticIndex: built {len(chunks)} chunks from {len(documents)} documents "
            f"in {duration_ms}ms"
        )
        await self._save_cache()

    async def _embed_documents(self, documents: Sequence[Document]) -> List[Chunk]:
        """Chunk a batch of documents and embed all of their chunks in one call."""
        chunks: List[Chunk] = []
        for document in documents:
            chunks.extend(self.chunker.chunk(document.content, document.path, document.modified_at))

        if not chunks:
            return []

        vectors = await self.embedder.embed_batch([chunk.text for chunk in chunks])
        for chunk, vector in zip(chunks, vectors):
            chunk.embedding = vector
        return chunks

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    async def retrieve_context(self, text: str) -> List[str]:
        """Best-effort: ranked passages, at most one per document, never raises."""
        if not self.config.enable_indexing or not text or not text.strip():
            return []

        started = time.time()
        try:
            await self._ensure_built()
            if not self._chunks:
                return []
            query = await self.embedder.embed(text)
            results = self._rank(query, self._chunks, self.config.top_k)
        except ConfigurationError as exc:
            self._report_configuration_error(exc)
            return []
        except OfflineError:
            print("SemanticIndex: context retrieval skipped, offline")
            return []
        except Exception as exc:
            print(f"SemanticIndex: context retrieval failed: {exc}")
            return []

        seen_paths: Set[str] = set()
        passages: List[str] = []
        for result in results:
            chunk = result.item
            if chunk.path in seen_paths:
                continue
            seen_paths.add(chunk.path)
            passages.append(f'From "{chunk.path}":\n{chunk.text.strip()}')

        query_ms = int((time.time() - started) * 1000)
        print(f"SemanticIndex: retrieved {len(passages)} contexts in {query_ms}ms")
        return passages

    async def search_many(self, texts: Sequence[str], top_k: int) -> List[List[SearchHit]]:
        """Embed every text in one batch and return the top-K chunk hits for each.

        Unlike retrieve_context this propagates failures to the caller.
        """
        if not texts:
            return []
        if not self.config.enable_indexing:
            return [[] for _ in texts]

        await self._ensure_built()
        snapshot = self._chunks
        if not snapshot:
            return [[] for _ in texts]

        vectors = await self.embedder.embed_batch(list(texts))
        hits: List[List[SearchHit]] = []
        for vector in vectors:
            ranked = self._rank(vector, snapshot, top_k)
            hits.append(
                [
                    SearchHit(
                        path=result.item.path,
                        title=title_from_path(result.item.path),
                        text=result.item.text,
                        score=result.similarity,
                    )
                    for result in ranked
                ]
            )
        return hits

    def _rank(self, query, snapshot: Sequence[Chunk], k: int) -> List[SimilarityResult[Chunk]]:
        candidates = [(chunk.embedding, chunk) for chunk in snapshot if chunk.embedding is not None]
        return top_k_similar(query, candidates, k)

    # ------------------------------------------------------------------
    # Incremental updates
    # ------------------------------------------------------------------
    async def update_file(self, path: str, content: str, modified_at: float) -> bool:
        """Re-chunk and re-embed one document.

        Returns True when the snapshot changed. A timestamp no newer than the
        one recorded on the document's chunks is treated as unchanged.
        """
        async with self._write_lock:
            # Checked under the lock: a queued clear() may have run first.
            if not self.config.enable_indexing or not self._is_built:
                return False

            existing = self.chunks_for_document(path)
            if existing and modified_at <= existing[0].last_modified:
                return False

            document = Document(
                path=path, title=title_from_path(path), content=content, modified_at=modified_at
            )
            try:
                new_chunks = await self._embed_documents([document])
            except ConfigurationError as exc:
                self._report_configuration_error(exc)
                return False
            except Exception as exc:
                # Keep the previous chunk set; the next edit retries.
                print(f"SemanticIndex: failed to update index for {path}: {exc}")
                return False

            if not existing and not new_chunks:
                return False

            self._chunks = [chunk for chunk in self._chunks if chunk.path != path] + new_chunks
            self._schedule_save()
            print(f"SemanticIndex: updated index for {path} ({len(new_chunks)} chunks)")
            return True

    async def remove_file(self, path: str) -> int:
        """Drop every chunk of ``path``; returns how many were removed."""
        async with self._write_lock:
            if not self.config.enable_indexing or not self._is_built:
                return 0

            before = len(self._chunks)
            self._chunks = [chunk for chunk in self._chunks if chunk.path != path]
            removed = before - len(self._chunks)
            if removed:
                self._schedule_save()
                print(f"SemanticIndex: removed {removed} chunks for {path}")
            return removed

    async def clear(self) -> None:
        """Empty the snapshot, cancel pending saves and delete the cache file."""
        async with self._write_lock:
            self._cancel_pending_save()
            await self._wait_for_saves()

            self._chunks = []
            self._last_built = 0.0
            self._is_built = False

            try:
                await asyncio.to_thread(self._delete_cache_file)
                print("SemanticIndex: index cleared")
            except OSError as exc:
                print(f"SemanticIndex: failed to clear cache: {exc}")

    # ------------------------------------------------------------------
    # Stats and style
    # ------------------------------------------------------------------
    def get_stats(self) -> IndexStats:
        return IndexStats(
            total_chunks=len(self._chunks),
            total_documents=len({chunk.path for chunk in self._chunks}),
            is_built=self._is_built,
            provider_name=self._model_name(),
        )

    def analyze_style(self) -> str:
        """Describe the vault's typical note style from a sample of chunks."""
        snapshot = self._chunks
        if not self._is_built or not snapshot:
            return ""

        sample_size = min(10, len(snapshot))
        step = max(1, len(snapshot) // sample_size)
        samples = [chunk.text for chunk in snapshot[::step][:sample_size]]

        avg_length = sum(len(sample) for sample in samples) / len(samples)
        style_notes = []
        if avg_length < 300:
            style_notes.append("concise, brief notes")
        elif avg_length > 800:
            style_notes.append("detailed, comprehensive notes")
        if any(re.search(r"(?m)^[-*]\s", sample) for sample in samples):
            style_notes.append("uses bullet lists")
        if any(re.search(r"(?m)^#{1,6}\s", sample) for sample in samples):
            style_notes.append("uses headings for structure")

        if not style_notes:
            return ""
        return f"The user's typical note style: {', '.join(style_notes)}."

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    async def flush(self) -> None:
        """Run a pending debounced save now and wait for saves in flight."""
        if self._pending_save is not None:
            self._cancel_pending_save()
            await self._save_cache()
        await self._wait_for_saves()

    async def aclose(self) -> None:
        await self.flush()
        if self._embedder is not None:
            await self._embedder.aclose()

    def _schedule_save(self) -> None:
        """Write the cache once edits have been quiet for the debounce window."""
        self._cancel_pending_save()
        loop = asyncio.get_running_loop()
        self._pending_save = loop.call_later(
            self.config.save_debounce_seconds, self._start_debounced_save
        )

    def _start_debounced_save(self) -> None:
        self._pending_save = None
        task = asyncio.ensure_future(self._save_cache())
        self._save_tasks.add(task)
        task.add_done_callback(self._save_tasks.discard)

    def _cancel_pending_save(self) -> None:
        if self._pending_save is not None:
            self._pending_save.cancel()
            self._pending_save = None

    async def _wait_for_saves(self) -> None:
        if self._save_tasks:
            await asyncio.gather(*list(self._save_tasks), return_exceptions=True)

    async def _save_cache(self) -> bool:
        async with self._save_lock:
            payload = {
                "version": CACHE_VERSION,
                "model": self._model_name(),
                "last_built": self._last_built,
                "chunks": [chunk.to_dict() for chunk in self._chunks],
            }
            try:
                await asyncio.to_thread(self._write_cache_file, payload)
            except (OSError, TypeError, ValueError) as exc:
                print(f"SemanticIndex: failed to save cache: {exc}")
                return False
        print("SemanticIndex: index cached to disk")
        return True

    async def _load_cache(self) -> bool:
        if not self.cache_path.exists():
            return False

        try:
            payload = await asyncio.to_thread(self._read_cache_file)
        except (OSError, ValueError) as exc:
            print(f"SemanticIndex: failed to load cache: {exc}")
            return False

        if not isinstance(payload, dict) or payload.get("version") != CACHE_VERSION:
            print("SemanticIndex: cache version mismatch, rebuilding index")
            return False

        last_built = float(payload.get("last_built") or 0.0)
        if time.time() - last_built > self.config.cache_max_age_seconds:
            print("SemanticIndex: cache is stale, rebuilding index")
            return False

        model = payload.get("model")
        if model and model != self._model_name():
            print(f"SemanticIndex: cache built with {model}, rebuilding index")
            return False

        try:
            chunks = [Chunk.from_dict(item) for item in payload.get("chunks") or []]
        except (KeyError, TypeError, ValueError) as exc:
            print(f"SemanticIndex: cache is malformed: {exc}")
            return False

        self._chunks = chunks
        self._last_built = last_built
        return True

    def _write_cache_file(self, payload: Dict) -> None:
        self.cache_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.cache_path.with_name(self.cache_path.name + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(payload, f)
        os.replace(tmp_path, self.cache_path)

    def _read_cache_file(self) -> Dict:
        with open(self.cache_path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _delete_cache_file(self) -> None:
        if self.cache_path.exists():
            self.cache_path.unlink()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _model_name(self) -> str:
        if self._embedder is not None:
            return self._embedder.model_name()
        return self.config.embedding_model

    def _report_configuration_error(self, exc: ConfigurationError) -> None:
        if self._config_error_reported:
            return
        self._config_error_reported = True
        print(f"SemanticIndex: embedding provider is not configured: {exc}")
