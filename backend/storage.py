"""Filesystem-backed document source for the vault."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, List, Optional

from models import Document


def title_from_path(path: str) -> str:
    """Display name of a document: its file name without extension."""
    name = path.rstrip("/").rsplit("/", 1)[-1]
    stem, dot, _ = name.rpartition(".")
    return stem if dot and stem else name


class VaultStorage:
    """Reads notes from a directory tree; ids are POSIX paths relative to the root."""

    def __init__(self, root: Optional[Path] = None, extensions: Iterable[str] = (".md",)):
        base_dir = Path(root) if root else Path(__file__).resolve().parent / "storage" / "vault"
        base_dir.mkdir(parents=True, exist_ok=True)
        self.root = base_dir
        self.extensions = tuple(ext.lower() for ext in extensions)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def list_paths(self) -> List[str]:
        paths = []
        for file_path in sorted(self.root.rglob("*")):
            if not file_path.is_file() or file_path.suffix.lower() not in self.extensions:
                continue
            relative = file_path.relative_to(self.root)
            if any(part.startswith(".") for part in relative.parts):
                continue
            paths.append(relative.as_posix())
        return paths

    def list_documents(self) -> List[Document]:
        """Every document with its content; unreadable files are skipped."""
        documents = []
        for path in self.list_paths():
            try:
                documents.append(self.read_document(path))
            except (OSError, UnicodeDecodeError) as exc:
                print(f"VaultStorage: failed to read {path}: {exc}")
        return documents

    def read_document(self, path: str) -> Document:
        file_path = self._resolve(path)
        if not file_path.is_file():
            raise FileNotFoundError(f"Document not found: {path}")
        content = file_path.read_text(encoding="utf-8")
        return Document(
            path=self._normalize_id(path),
            title=title_from_path(path),
            content=content,
            modified_at=file_path.stat().st_mtime,
        )

    def list_titles(self) -> List[str]:
        return [title_from_path(path) for path in self.list_paths()]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _normalize_id(self, path: str) -> str:
        return path.replace("\\", "/").strip().strip("/")

    def _resolve(self, path: str) -> Path:
        normalized = self._normalize_id(path)
        candidate = (self.root / normalized).resolve()
        if candidate != self.root.resolve() and self.root.resolve() not in candidate.parents:
            raise ValueError(f"Document path escapes the vault: {path}")
        return candidate
