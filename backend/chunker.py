"""
Text chunking module for Vaultlink.

Splits notes into overlapping, sentence-respecting chunks sized for an
embedding model's context window.
"""

import math
import re
from typing import List, Tuple

from models import Chunk

CHARS_PER_TOKEN = 4

# A run of terminators counts as a boundary only when followed by whitespace or the end.
_SENTENCE_END_RE = re.compile(r"[.!?]+(?=\s|$)")


def sentence_spans(text: str) -> List[Tuple[int, int]]:
    """Split ``text`` into contiguous ``(start, end)`` sentence spans.

    Spans cover the whole text with no gaps; leading whitespace belongs to the
    sentence that follows it. Text without any boundary is a single span.
    """
    if not text:
        return []

    spans: List[Tuple[int, int]] = []
    start = 0
    for match in _SENTENCE_END_RE.finditer(text):
        end = match.end()
        if not text[start:end].strip():
            continue
        spans.append((start, end))
        start = end

    if start < len(text):
        if spans and not text[start:].strip():
            spans[-1] = (spans[-1][0], len(text))
        else:
            spans.append((start, len(text)))

    return spans


def estimate_tokens(text: str) -> int:
    """Rough token estimate: 1 token ~ 4 characters."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


class Chunker:
    """Handles splitting text into overlapping chunks for embedding."""

    def __init__(self, chunk_size: int = 500, overlap: int = 50):
        """
        Initialize the chunker.

        Args:
            chunk_size: Target chunk size in approximate tokens
            overlap: Overlap carried into the next chunk, in approximate tokens
        """
        self.validate_options(chunk_size, overlap)
        self.chunk_size = chunk_size
        self.overlap = overlap

    @staticmethod
    def validate_options(chunk_size: int, overlap: int) -> None:
        if chunk_size <= 0:
            raise ValueError("Chunk size must be positive")
        if overlap <= 0:
            raise ValueError("Overlap must be positive")
        if overlap >= chunk_size:
            raise ValueError("Overlap must be less than chunk size")

    @property
    def max_chars(self) -> int:
        return self.chunk_size * CHARS_PER_TOKEN

    @property
    def overlap_chars(self) -> int:
        return self.overlap * CHARS_PER_TOKEN

    def chunk(self, text: str, path: str, last_modified: float = 0.0) -> List[Chunk]:
        """
        Split text into chunks for embedding.

        Args:
            text: The document text
            path: Identifier of the source document
            last_modified: Modification time of the document at chunking time

        Returns:
            Ordered chunks covering the whole text. Every chunk after the first
            starts with an overlap copied from the tail of the previous one.
        """
        if not text or not text.strip():
            return []

        chunks: List[Chunk] = []
        for index, (start, end) in enumerate(self._chunk_bounds(text)):
            chunk_text = text[start:end]
            chunks.append(
                Chunk(
                    path=path,
                    chunk_index=index,
                    text=chunk_text,
                    tokens=estimate_tokens(chunk_text),
                    start_char=start,
                    end_char=end,
                    last_modified=last_modified,
                )
            )
        return chunks

    def _chunk_bounds(self, text: str) -> List[Tuple[int, int]]:
        spans = sentence_spans(text)
        sentence_starts = [start for start, _ in spans]

        bounds: List[Tuple[int, int]] = []
        chunk_start = 0
        chunk_end = 0
        # Offset where the chunk's own (non-overlap) text begins.
        body_start = 0

        for span_start, span_end in spans:
            too_big = span_end - chunk_start > self.max_chars
            if too_big and chunk_end > body_start:
                bounds.append((chunk_start, chunk_end))
                chunk_start = self._overlap_start(text, chunk_start, chunk_end, sentence_starts)
                body_start = chunk_end
            chunk_end = span_end

        bounds.append((chunk_start, chunk_end))
        return bounds

    def _overlap_start(
        self, text: str, chunk_start: int, chunk_end: int, sentence_starts: List[int]
    ) -> int:
        """Where the next chunk begins: inside the tail of the closed chunk."""
        if chunk_end - chunk_start <= self.overlap_chars:
            return chunk_start

        window_start = chunk_end - self.overlap_chars
        boundaries = [s for s in sentence_starts if window_start <= s < chunk_end]
        if boundaries:
            return max(boundaries)

        # No sentence starts in the window; at least avoid cutting a word.
        for pos in range(window_start, chunk_end):
            if text[pos].isspace():
                return pos
        return window_start
