"""Automatic [[wikilink]] insertion for Vaultlink.

Two passes run in a fixed order over a block of text:

1. Semantic linking: every sentence is matched against the vault index and
   strong candidates get an anchor span wrapped in a link to their note.
2. Exact-title linking: case-insensitive, whole-word occurrences of note titles
   are wrapped, longest title first.

Both passes leave existing links, code and markdown links untouched.
"""

from __future__ import annotations

import asyncio
import re
import time
from typing import List, Optional, Sequence, Set, Tuple

from chunker import sentence_spans
from config import VaultlinkConfig
from indexer import SemanticIndex
from models import LinkCandidate, LinkResult, NoteTitleEntry, SearchHit
from storage import VaultStorage

MIN_TITLE_LENGTH = 3
MIN_TITLE_TOKEN_LENGTH = 3
MIN_CONTENT_TOKEN_LENGTH = 5

_WIKILINK_RE = re.compile(r"\[\[[^\[\]]*\]\]")
_CODE_FENCE_RE = re.compile(r"(?s)```.*?```")
_INLINE_CODE_RE = re.compile(r"`[^`\n]+`")
_MARKDOWN_LINK_RE = re.compile(r"\[[^\[\]]*\]\([^)\s]*\)")
_WORD_RE = re.compile(r"\w+(?:['-]\w+)*")
_LINK_UNSAFE_RE = re.compile(r"[\[\]|\r\n]")
_LINE_RE = re.compile(r"[^\r\n]+")
# Heading, list, numbered-list and quote markers at the start of a line.
_LINE_MARKER_RE = re.compile(r"[ \t]*(?:(?:#{1,6}|[-*+]|\d+[.)]|>)[ \t]+)*")

_STOPWORDS: Set[str] = {
    "a",
    "about",
    "after",
    "all",
    "also",
    "an",
    "and",
    "are",
    "as",
    "at",
    "be",
    "because",
    "before",
    "been",
    "being",
    "but",
    "by",
    "could",
    "for",
    "from",
    "has",
    "have",
    "into",
    "its",
    "not",
    "of",
    "on",
    "or",
    "other",
    "should",
    "that",
    "the",
    "their",
    "there",
    "these",
    "they",
    "this",
    "those",
    "through",
    "was",
    "were",
    "what",
    "when",
    "where",
    "which",
    "while",
    "with",
    "would",
}

Span = Tuple[int, int]


def normalize_title(value: str) -> str:
    return re.sub(r"[^a-z0-9]", "", (value or "").lower())


def protected_ranges(text: str) -> List[Span]:
    """Spans no link may touch: wikilinks, code and markdown links."""
    ranges: List[Span] = []
    for pattern in (_WIKILINK_RE, _CODE_FENCE_RE, _INLINE_CODE_RE, _MARKDOWN_LINK_RE):
        ranges.extend((m.start(), m.end()) for m in pattern.finditer(text))
    return ranges


def _overlaps(start: int, end: int, ranges: Sequence[Span]) -> bool:
    return any(start < b and end > a for a, b in ranges)


def _trim_span(text: str, start: int, end: int) -> Span:
    while start < end and text[start].isspace():
        start += 1
    while end > start and text[end - 1].isspace():
        end -= 1
    return start, end


def link_spans(text: str) -> List[Span]:
    """Sentence spans cut at line breaks, without leading markdown markers.

    A wikilink cannot cross a line, and wrapping a heading or list marker
    would change the line's markdown structure.
    """
    spans: List[Span] = []
    for line in _LINE_RE.finditer(text):
        body_start = _LINE_MARKER_RE.match(text, line.start(), line.end()).end()
        for rel_start, rel_end in sentence_spans(text[body_start : line.end()]):
            start, end = _trim_span(text, body_start + rel_start, body_start + rel_end)
            if start < end:
                spans.append((start, end))
    return spans


def make_link(title: str, surface: str) -> str:
    """Link markup that keeps ``surface`` visible when it differs from the title."""
    if surface == title:
        return f"[[{title}]]"
    return f"[[{title}|{surface}]]"


def _title_pattern(title: str) -> "re.Pattern[str]":
    return re.compile(rf"(?<!\w){re.escape(title)}(?!\w)", re.IGNORECASE)


def _keywords(text: str, min_length: int) -> Set[str]:
    tokens = {token.lower() for token in _WORD_RE.findall(text or "")}
    return {token for token in tokens if len(token) >= min_length and token not in _STOPWORDS}


def locate_anchor(sentence: str, title: str, chunk_text: str) -> Span:
    """Pick the span of ``sentence`` a candidate note should be linked from.

    The note title itself wins, then the longest keyword shared with the
    title or the matched chunk, and finally the whole sentence.
    """
    match = _title_pattern(title).search(sentence) if title else None
    if match:
        return match.start(), match.end()

    title_tokens = _keywords(title, MIN_TITLE_TOKEN_LENGTH)
    content_tokens = _keywords(chunk_text, MIN_CONTENT_TOKEN_LENGTH)

    best: Optional[Span] = None
    best_rank = (0, 0)
    for token_match in _WORD_RE.finditer(sentence):
        token = token_match.group(0).lower()
        from_title = token in title_tokens
        if not from_title and token not in content_tokens:
            continue
        rank = (len(token), 1 if from_title else 0)
        if rank > best_rank:
            best, best_rank = (token_match.start(), token_match.end()), rank

    if best is not None:
        return best
    return 0, len(sentence)


def apply_candidates(text: str, candidates: Sequence[LinkCandidate]) -> str:
    """Apply non-overlapping replacements from the highest offset down."""
    output = text
    for candidate in sorted(candidates, key=lambda c: c.start, reverse=True):
        output = output[: candidate.start] + candidate.replacement + output[candidate.end :]
    return output


def apply_title_links(text: str, entries: Sequence[NoteTitleEntry]) -> Tuple[str, int]:
    """Wrap every unlinked whole-word occurrence of each title, longest first."""
    usable = [
        entry
        for entry in entries
        if len(entry.title) >= MIN_TITLE_LENGTH and not _LINK_UNSAFE_RE.search(entry.title)
    ]
    usable.sort(key=lambda entry: len(entry.title), reverse=True)

    output = text
    matches = 0
    for entry in usable:
        protected = protected_ranges(output)
        candidates = [
            LinkCandidate(
                start=match.start(),
                end=match.end(),
                replacement=make_link(entry.title, match.group(0)),
            )
            for match in _title_pattern(entry.title).finditer(output)
            if not _overlaps(match.start(), match.end(), protected)
        ]
        if candidates:
            output = apply_candidates(output, candidates)
            matches += len(candidates)

    return output, matches


class ContextLinker:
    """Rewrites text with links to semantically related and exactly named notes."""

    def __init__(
        self,
        config: VaultlinkConfig,
        index: SemanticIndex,
        storage: Optional[VaultStorage] = None,
    ):
        self.config = config
        self.index = index
        self.storage = storage or index.storage

        self._titles: List[NoteTitleEntry] = []
        self._is_dirty = True
        self._last_built = 0.0

    def mark_dirty(self) -> None:
        """Force the title index to be rebuilt on the next linking pass."""
        self._is_dirty = True

    def _should_rebuild(self) -> bool:
        age = time.time() - self._last_built
        return self._is_dirty or age > self.config.title_index_max_age_seconds

    async def title_entries(self) -> List[NoteTitleEntry]:
        if self._should_rebuild():
            titles = await asyncio.to_thread(self.storage.list_titles)
            seen: Set[str] = set()
            entries: List[NoteTitleEntry] = []
            for title in titles:
                normalized = normalize_title(title)
                if not normalized or normalized in seen:
                    continue
                seen.add(normalized)
                entries.append(NoteTitleEntry(title=title, normalized=normalized))
            self._titles = entries
            self._last_built = time.time()
            self._is_dirty = False
        return list(self._titles)

    async def apply_context_links(self, text: str) -> LinkResult:
        if not text or not text.strip():
            return LinkResult(text=text, match_count=0)

        output, semantic_count = await self._apply_semantic_links(text)
        entries = await self.title_entries()
        output, exact_count = apply_title_links(output, entries)
        return LinkResult(text=output, match_count=semantic_count + exact_count)

    async def _apply_semantic_links(self, text: str) -> Tuple[str, int]:
        if not self.config.enable_semantic_links or not self.config.enable_indexing:
            return text, 0

        spans = link_spans(text)
        if not spans:
            return text, 0

        try:
            hits = await self.index.search_many(
                [text[start:end] for start, end in spans],
                self.config.semantic_candidates_per_sentence,
            )
        except Exception as exc:
            print(f"ContextLinker: semantic linking skipped: {exc}")
            return text, 0

        candidates = self.plan_semantic_links(text, spans, hits)
        return apply_candidates(text, candidates), len(candidates)

    def plan_semantic_links(
        self,
        text: str,
        spans: Sequence[Span],
        hits: Sequence[Sequence[SearchHit]],
    ) -> List[LinkCandidate]:
        """Choose anchors for each sentence's candidates without any overlap."""
        threshold = self.config.semantic_link_threshold
        max_links = self.config.max_links_per_sentence
        protected = protected_ranges(text)
        claimed: List[Span] = []
        accepted: List[LinkCandidate] = []

        for (sentence_start, sentence_end), sentence_hits in zip(spans, hits):
            sentence = text[sentence_start:sentence_end]
            linked_targets: Set[str] = set()
            links = 0

            for hit in sorted(sentence_hits, key=lambda h: h.score, reverse=True):
                if links >= max_links:
                    break
                if hit.score < threshold:
                    continue
                target_key = normalize_title(hit.title)
                if not target_key or target_key in linked_targets:
                    continue
                if _LINK_UNSAFE_RE.search(hit.title):
                    continue

                rel_start, rel_end = locate_anchor(sentence, hit.title, hit.text)
                start, end = _trim_span(
                    text, sentence_start + rel_start, sentence_start + rel_end
                )
                if start >= end:
                    continue
                if _overlaps(start, end, protected) or _overlaps(start, end, claimed):
                    continue
                surface = text[start:end]
                if _LINK_UNSAFE_RE.search(surface):
                    continue

                accepted.append(
                    LinkCandidate(
                        start=start,
                        end=end,
                        replacement=make_link(hit.title, surface),
                    )
                )
                claimed.append((start, end))
                linked_targets.add(target_key)
                links += 1

        return accepted
