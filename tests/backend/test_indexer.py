"""
Unit tests for the SemanticIndex module.
"""

import asyncio
import json
import os
import shutil
import sys
import tempfile
import time
from unittest.mock import AsyncMock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../backend"))

from config import VaultlinkConfig
from errors import EmbeddingError, OfflineError
from fakes import HashingEmbedder, write_note
from indexer import CACHE_VERSION, SemanticIndex
from storage import VaultStorage

NOTES = {
    "Gardening.md": "Tomatoes and peppers grow best in warm spring soil with compost.",
    "Rockets.md": "Rocket engines burn liquid oxygen and kerosene to produce thrust.",
    "Baking.md": "Sourdough bread needs flour, water, salt and a lively starter.",
}


class IndexTestCase:
    """Temporary vault with three notes and a hashing embedder."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.vault_dir = os.path.join(self.temp_dir, "vault")
        self.cache_path = os.path.join(self.temp_dir, "embeddings-cache.json")
        self.config = VaultlinkConfig(
            vault_dir=self.vault_dir,
            cache_path=self.cache_path,
            save_debounce_seconds=0.05,
        )
        self.storage = VaultStorage(self.vault_dir)
        for path, content in NOTES.items():
            write_note(self.storage, path, content)
        self.embedder = HashingEmbedder()
        self.index = self._make_index(self.embedder)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _make_index(self, embedder, **overrides):
        config = self.config.model_copy(update=overrides) if overrides else self.config
        return SemanticIndex(config, storage=self.storage, embedder=embedder)

    def _read_cache(self):
        with open(self.cache_path, "r", encoding="utf-8") as f:
            return json.load(f)


class TestBuild(IndexTestCase):
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_build_chunks_every_document(self):
        await self.index.build()

        stats = self.index.get_stats()
        assert stats.is_built is True
        assert stats.total_chunks == 3
        assert stats.total_documents == 3
        assert stats.provider_name == "fake-embedding"
        assert sorted(self.index.document_ids()) == sorted(NOTES)
        assert all(chunk.embedding is not None for chunk in self.index.chunks)
        assert self.index.last_built > 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_build_embeds_in_document_batches(self):
        index = self._make_index(self.embedder, build_batch_size=2)
        await index.build()

        assert len(self.embedder.batch_calls) == 2
        assert len(self.embedder.embedded_texts) == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_build_writes_cache(self):
        await self.index.build()

        payload = self._read_cache()
        assert payload["version"] == CACHE_VERSION
        assert payload["model"] == "fake-embedding"
        assert payload["last_built"] == pytest.approx(self.index.last_built)
        assert len(payload["chunks"]) == 3
        assert not os.path.exists(self.cache_path + ".tmp")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cache_round_trip_skips_embedding(self):
        await self.index.build()

        embedder = HashingEmbedder()
        reloaded = self._make_index(embedder)
        await reloaded.build()

        assert embedder.batch_calls == []
        assert reloaded.is_built
        assert [c.to_dict() for c in reloaded.chunks] == [c.to_dict() for c in self.index.chunks]

        passages = await reloaded.retrieve_context("liquid oxygen rocket thrust")
        assert passages[0].startswith('From "Rockets.md":')

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_force_rebuild_ignores_cache(self):
        await self.index.build()
        calls = len(self.embedder.batch_calls)

        await self.index.build(force_rebuild=True)

        assert len(self.embedder.batch_calls) == calls + 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stale_cache_is_rebuilt(self):
        await self.index.build()
        payload = self._read_cache()
        payload["last_built"] = time.time() - 8 * 24 * 60 * 60
        with open(self.cache_path, "w", encoding="utf-8") as f:
            json.dump(payload, f)

        embedder = HashingEmbedder()
        await self._make_index(embedder).build()

        assert len(embedder.batch_calls) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_version_mismatch_is_rebuilt(self):
        await self.index.build()
        payload = self._read_cache()
        payload["version"] = CACHE_VERSION + 1
        with open(self.cache_path, "w", encoding="utf-8") as f:
            json.dump(payload, f)

        embedder = HashingEmbedder()
        await self._make_index(embedder).build()

        assert len(embedder.batch_calls) == 1
        assert self._read_cache()["version"] == CACHE_VERSION

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_model_change_is_rebuilt(self):
        await self.index.build()

        embedder = HashingEmbedder(model="another-model")
        await self._make_index(embedder).build()

        assert len(embedder.batch_calls) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_corrupt_cache_is_rebuilt(self):
        with open(self.cache_path, "w", encoding="utf-8") as f:
            f.write("{not json")

        await self.index.build()

        assert len(self.embedder.batch_calls) == 1
        assert self.index.get_stats().total_chunks == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_concurrent_builds_embed_once(self):
        await asyncio.gather(self.index.build(), self.index.build(), self.index.build())

        assert len(self.embedder.batch_calls) == 1
        assert self.index.get_stats().total_chunks == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_build_propagates_provider_errors(self):
        self.embedder.error = EmbeddingError("server down")

        with pytest.raises(EmbeddingError):
            await self.index.build()
        assert self.index.is_built is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_disabled_indexing_is_a_no_op(self):
        index = self._make_index(self.embedder, enable_indexing=False)

        await index.build()
        passages = await index.retrieve_context("rocket engines")

        assert index.is_built is False
        assert passages == []
        assert self.embedder.batch_calls == []


class TestRetrieveContext(IndexTestCase):
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_best_match_ranks_first(self):
        await self.index.build()

        passages = await self.index.retrieve_context("How do rocket engines produce thrust?")

        assert len(passages) == 3
        assert passages[0] == f'From "Rockets.md":\n{NOTES["Rockets.md"]}'

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_builds_on_first_query(self):
        passages = await self.index.retrieve_context("sourdough starter flour")

        assert self.index.is_built
        assert passages[0].startswith('From "Baking.md":')

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_one_passage_per_document(self):
        long_note = " ".join(f"Orbital mechanics sentence {i} about rockets." for i in range(40))
        write_note(self.storage, "Orbits.md", long_note)
        index = self._make_index(self.embedder, chunk_size=40, chunk_overlap=5, top_k=5)
        await index.build()
        assert len(index.chunks_for_document("Orbits.md")) > 1

        passages = await index.retrieve_context("orbital mechanics rockets sentence")

        sources = [passage.split("\n", 1)[0] for passage in passages]
        assert len(sources) == len(set(sources))
        assert sources[0] == 'From "Orbits.md":'

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_blank_query(self):
        assert await self.index.retrieve_context("   ") == []
        assert self.embedder.batch_calls == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_offline_degrades_to_empty(self):
        await self.index.build()
        self.embedder.error = OfflineError()

        assert await self.index.retrieve_context("rocket") == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_configuration_degrades_to_empty(self):
        config = self.config.model_copy(update={"openai_api_key": "", "llm_provider": "openai"})
        index = SemanticIndex(config, storage=self.storage)

        assert await index.retrieve_context("rocket") == []
        assert await index.retrieve_context("rocket again") == []
        assert index.is_built is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_search_many_uses_one_batch(self):
        await self.index.build()
        calls = len(self.embedder.batch_calls)

        hits = await self.index.search_many(["rocket thrust", "sourdough bread"], 2)

        assert len(self.embedder.batch_calls) == calls + 1
        assert len(hits) == 2
        assert hits[0][0].title == "Rockets"
        assert hits[1][0].title == "Baking"
        assert all(len(row) == 2 for row in hits)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_search_many_propagates_errors(self):
        await self.index.build()
        self.embedder.error = OfflineError()

        with pytest.raises(OfflineError):
            await self.index.search_many(["rocket"], 2)


class TestIncrementalUpdates(IndexTestCase):
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_update_before_build_is_ignored(self):
        assert await self.index.update_file("Rockets.md", "New text.", time.time()) is False
        assert self.embedder.batch_calls == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unchanged_timestamp_is_a_no_op(self):
        await self.index.build()
        recorded = self.index.chunks_for_document("Rockets.md")[0].last_modified
        calls = len(self.embedder.batch_calls)

        updated = await self.index.update_file("Rockets.md", "Changed text.", recorded)

        assert updated is False
        assert len(self.embedder.batch_calls) == calls
        assert self.index.has_pending_save is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_update_replaces_document_chunks(self):
        await self.index.build()
        recorded = self.index.chunks_for_document("Rockets.md")[0].last_modified

        updated = await self.index.update_file(
            "Rockets.md", "Ion thrusters accelerate xenon.", recorded + 10
        )

        assert updated is True
        chunks = self.index.chunks_for_document("Rockets.md")
        assert [c.text for c in chunks] == ["Ion thrusters accelerate xenon."]
        assert chunks[0].last_modified == recorded + 10
        assert self.index.get_stats().total_chunks == 3

        passages = await self.index.retrieve_context("xenon ion thrusters")
        assert passages[0] == 'From "Rockets.md":\nIon thrusters accelerate xenon.'

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_update_adds_new_document(self):
        await self.index.build()

        assert await self.index.update_file("Knitting.md", "Wool socks and scarves.", time.time())
        assert self.index.get_stats().total_documents == 4

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_embedding_keeps_previous_chunks(self):
        await self.index.build()
        before = [c.to_dict() for c in self.index.chunks_for_document("Rockets.md")]
        self.embedder.error = EmbeddingError("server down")

        updated = await self.index.update_file("Rockets.md", "Replacement.", time.time() + 100)

        assert updated is False
        assert [c.to_dict() for c in self.index.chunks_for_document("Rockets.md")] == before

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_content_removes_chunks(self):
        await self.index.build()

        assert await self.index.update_file("Rockets.md", "  ", time.time() + 100)
        assert self.index.chunks_for_document("Rockets.md") == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_remove_file(self):
        await self.index.build()

        removed = await self.index.remove_file("Rockets.md")
        passages = await self.index.retrieve_context("rocket engines thrust kerosene")

        assert removed == 1
        assert all('"Rockets.md"' not in passage for passage in passages)
        assert await self.index.remove_file("Rockets.md") == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_debounced_saves_coalesce(self):
        await self.index.build()
        self.index._save_cache = AsyncMock(return_value=True)
        now = time.time() + 100

        for offset in range(3):
            await self.index.update_file("Rockets.md", f"Revision {offset}.", now + offset)
        assert self.index.has_pending_save

        await asyncio.sleep(0.2)

        self.index._save_cache.assert_awaited_once()
        assert self.index.has_pending_save is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_debounced_save_persists_update_and_keeps_last_built(self):
        await self.index.build()
        last_built = self.index.last_built

        await self.index.update_file("Rockets.md", "Solid rocket boosters.", time.time() + 100)
        await asyncio.sleep(0.2)
        await self.index.flush()

        payload = self._read_cache()
        texts = [chunk["text"] for chunk in payload["chunks"]]
        assert "Solid rocket boosters." in texts
        assert payload["last_built"] == pytest.approx(last_built)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_full_build_save_lands_after_running_debounced_save(self):
        await self.index.build()
        original_write = self.index._write_cache_file
        writes = []

        def slow_first_write(payload):
            writes.append(payload)
            if len(writes) == 1:
                time.sleep(0.3)
            original_write(payload)

        self.index._write_cache_file = slow_first_write

        await self.index.update_file("Draft.md", "Unsaved lunar draft.", time.time())
        await asyncio.sleep(0.1)
        assert len(writes) == 1

        await self.index.build(force_rebuild=True)
        await self.index.flush()

        payload = self._read_cache()
        assert sorted(chunk["path"] for chunk in payload["chunks"]) == sorted(NOTES)
        assert payload["last_built"] == pytest.approx(self.index.last_built)
        assert self.index.chunks_for_document("Draft.md") == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_mutations_queued_behind_clear_are_dropped(self):
        await self.index.build()

        _, _, updated, removed = await asyncio.gather(
            self.index.build(force_rebuild=True),
            self.index.clear(),
            self.index.update_file("Draft.md", "Queued edit.", time.time()),
            self.index.remove_file("Rockets.md"),
        )
        await asyncio.sleep(0.1)

        assert updated is False
        assert removed == 0
        assert self.index.is_built is False
        assert self.index.chunks == []
        assert self.index.has_pending_save is False
        assert not os.path.exists(self.cache_path)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_flush_writes_pending_save(self):
        index = self._make_index(self.embedder, save_debounce_seconds=60)
        await index.build()
        await index.remove_file("Baking.md")
        assert index.has_pending_save

        await index.flush()

        assert index.has_pending_save is False
        assert len(self._read_cache()["chunks"]) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_clear(self):
        await self.index.build()
        await self.index.remove_file("Baking.md")

        await self.index.clear()

        assert self.index.is_built is False
        assert self.index.get_stats().total_chunks == 0
        assert self.index.has_pending_save is False
        assert not os.path.exists(self.cache_path)

        await asyncio.sleep(0.1)
        assert not os.path.exists(self.cache_path)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_aclose_flushes_and_closes_provider(self):
        await self.index.build()
        await self.index.remove_file("Baking.md")

        await self.index.aclose()

        assert self.embedder.closed
        assert len(self._read_cache()["chunks"]) == 2


class TestAnalyzeStyle(IndexTestCase):
    @pytest.mark.unit
    def test_empty_index_has_no_style(self):
        assert self.index.analyze_style() == ""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_style_summary(self):
        write_note(self.storage, "List.md", "# Groceries\n- eggs\n- milk\n")
        await self.index.build()

        style = self.index.analyze_style()

        assert style.startswith("The user's typical note style:")
        assert "concise, brief notes" in style
        assert "uses bullet lists" in style
        assert "uses headings for structure" in style
