"""
Test doubles shared by the backend tests.
"""

import os
import re
import sys
import zlib
from typing import List, Optional, Sequence

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../backend"))

from embedder import EmbeddingProvider
from models import EmbeddingVector

_WORD_RE = re.compile(r"\w+")


class HashingEmbedder(EmbeddingProvider):
    """Bag-of-words vectors hashed into a fixed number of buckets.

    Texts sharing words get similar vectors, so ranking is predictable and no
    network is touched. Every batch is recorded in ``batch_calls``.
    """

    def __init__(self, dims: int = 512, model: str = "fake-embedding"):
        self.dims = dims
        self.model = model
        self.batch_calls: List[List[str]] = []
        self.error: Optional[Exception] = None
        self.closed = False

    def vector_for(self, text: str) -> EmbeddingVector:
        values = [0.0] * self.dims
        for word in _WORD_RE.findall(text.lower()):
            values[zlib.crc32(word.encode("utf-8")) % self.dims] += 1.0
        return EmbeddingVector(values=values)

    async def embed_batch(self, texts: Sequence[str]) -> List[EmbeddingVector]:
        self.batch_calls.append(list(texts))
        if self.error is not None:
            raise self.error
        return [self.vector_for(text) for text in texts]

    def model_name(self) -> str:
        return self.model

    def dimensions(self) -> Optional[int]:
        return self.dims

    async def aclose(self) -> None:
        self.closed = True

    @property
    def embedded_texts(self) -> List[str]:
        return [text for batch in self.batch_calls for text in batch]


def write_note(storage, path: str, content: str) -> None:
    """Create ``path`` under the vault root, parents included."""
    file_path = storage.root / path
    file_path.parent.mkdir(parents=True, exist_ok=True)
    file_path.write_text(content, encoding="utf-8")
