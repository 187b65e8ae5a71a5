"""Service layer coordinating the vault index, linking and link resolution."""

from __future__ import annotations

import asyncio
from typing import List, Optional

from config import VaultlinkConfig
from indexer import SemanticIndex
from link_resolver import resolve_existing_links, suggest_folder
from linker import ContextLinker
from models import IndexStats, LinkResult
from storage import VaultStorage


class VaultService:
    """The operations collaborators call with plain text and document ids."""

    def __init__(
        self,
        config: VaultlinkConfig | None = None,
        storage: VaultStorage | None = None,
        index: SemanticIndex | None = None,
        linker: ContextLinker | None = None,
    ):
        self.config = config or VaultlinkConfig.from_env()
        self.storage = storage or VaultStorage(
            self.config.vault_dir, self.config.document_extensions
        )
        self.index = index or SemanticIndex(self.config, storage=self.storage)
        self.linker = linker or ContextLinker(self.config, self.index, storage=self.storage)

    # Index -------------------------------------------------------------
    async def build_index(self, force_rebuild: bool = False) -> None:
        await self.index.build(force_rebuild)

    async def retrieve_context(self, text: str) -> List[str]:
        return await self.index.retrieve_context(text)

    async def update_file(self, document_id: str, content: str, modified_at: float) -> bool:
        is_new = not self.index.chunks_for_document(document_id)
        updated = await self.index.update_file(document_id, content, modified_at)
        if is_new:
            self.linker.mark_dirty()
        return updated

    async def remove_file(self, document_id: str) -> int:
        removed = await self.index.remove_file(document_id)
        self.linker.mark_dirty()
        return removed

    async def rename_file(
        self, old_id: str, new_id: str, content: str, modified_at: float
    ) -> bool:
        await self.index.remove_file(old_id)
        self.linker.mark_dirty()
        return await self.index.update_file(new_id, content, modified_at)

    async def clear_index(self) -> None:
        await self.index.clear()

    def get_stats(self) -> IndexStats:
        return self.index.get_stats()

    def analyze_style(self) -> str:
        return self.index.analyze_style()

    # Links -------------------------------------------------------------
    async def apply_context_links(self, text: str) -> LinkResult:
        return await self.linker.apply_context_links(text)

    def mark_dirty(self) -> None:
        self.linker.mark_dirty()

    async def resolve_links(self, text: str, auto_link_first_match: bool = False) -> str:
        try:
            paths = await asyncio.to_thread(self.storage.list_paths)
            return resolve_existing_links(text, paths, auto_link_first_match)
        except Exception as exc:
            print(f"VaultService: failed to resolve links: {exc}")
            return text

    async def suggest_folder(self, text: str) -> Optional[str]:
        try:
            paths = await asyncio.to_thread(self.storage.list_paths)
            return suggest_folder(text, paths)
        except Exception as exc:
            print(f"VaultService: folder suggestion failed: {exc}")
            return None

    async def aclose(self) -> None:
        await self.index.aclose()
