"""Point hand-written wikilinks at notes that actually exist."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from linker import make_link, normalize_title
from storage import title_from_path

_WIKILINK_RE = re.compile(r"\[\[([^\]|]+)(\|([^\]]+))?\]\]")
_EXISTING_LINK_RE = re.compile(r"\[\[[^\]]+\]\]")


@dataclass(frozen=True)
class _NoteRef:
    title: str
    normalized: str
    folder: str
    pattern: "re.Pattern[str]"


def _folder_of(path: str) -> str:
    return path.rsplit("/", 1)[0] if "/" in path else ""


def _build_refs(paths: Sequence[str]) -> List[_NoteRef]:
    seen = set()
    refs: List[_NoteRef] = []
    for path in paths:
        title = title_from_path(path)
        normalized = normalize_title(title)
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        escaped = r"\s+".join(re.escape(part) for part in title.split())
        refs.append(
            _NoteRef(
                title=title,
                normalized=normalized,
                folder=_folder_of(path),
                pattern=re.compile(rf"\b{escaped}\b", re.IGNORECASE),
            )
        )
    return refs


def find_canonical_title(target: str, refs: Sequence[_NoteRef]) -> Optional[str]:
    """Exact normalized match first, then containment in either direction."""
    normalized = normalize_title(target)
    if not normalized:
        return None
    for ref in refs:
        if ref.normalized == normalized:
            return ref.title
    for ref in refs:
        if normalized in ref.normalized or ref.normalized in normalized:
            return ref.title
    return None


def _existing_link_ranges(text: str) -> List[Tuple[int, int]]:
    return [(m.start(), m.end()) for m in _EXISTING_LINK_RE.finditer(text)]


def _inside(index: int, ranges: Sequence[Tuple[int, int]]) -> bool:
    return any(start <= index <= end for start, end in ranges)


def _first_unlinked_match(text: str, refs: Sequence[_NoteRef]):
    ranges = _existing_link_ranges(text)
    best = None
    for ref in refs:
        match = next(
            (m for m in ref.pattern.finditer(text) if not _inside(m.start(), ranges)), None
        )
        if match is None:
            continue
        if best is None or match.start() < best[1].start():
            best = (ref, match)
    return best


def resolve_existing_links(
    text: str, paths: Sequence[str], auto_link_first_match: bool = False
) -> str:
    """Rewrite ``[[target]]`` links to canonical note titles, keeping aliases.

    Unknown targets are left alone. With ``auto_link_first_match`` the earliest
    unlinked mention of any note is linked as well.
    """
    refs = _build_refs(paths)
    if not refs or not text:
        return text

    def replace(match: "re.Match[str]") -> str:
        canonical = find_canonical_title(match.group(1), refs)
        if not canonical:
            return match.group(0)
        alias = match.group(3)
        if alias:
            return f"[[{canonical}|{alias.strip()}]]"
        return f"[[{canonical}]]"

    output = _WIKILINK_RE.sub(replace, text)

    if auto_link_first_match:
        best = _first_unlinked_match(output, refs)
        if best is not None:
            ref, match = best
            link = make_link(ref.title, match.group(0))
            output = output[: match.start()] + link + output[match.end() :]

    return output


def suggest_folder(text: str, paths: Sequence[str]) -> Optional[str]:
    """Folder of the note mentioned earliest in ``text``, if it has one."""
    if not text or not text.strip():
        return None
    best = _first_unlinked_match(text, _build_refs(paths))
    if best is None:
        return None
    return best[0].folder or None
