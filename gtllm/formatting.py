"""
Markdown segmentation for chat messages.

Turns raw assistant text into a flat list of typed block segments, then a
grouping pass coalesces consecutive list items into one ListGroup so the UI
renders a single list. Inline markup (bold, italic, links, code spans) is
parsed separately by parse_inline() when a text block is rendered.

Block detection, first match wins:
  1. fenced code block  ```lang ... ```
  2. horizontal rule    ---  ***  ___
  3. header             # .. ######
  4. blockquote         > text
  5. list item          - text  * text  + text  1. text
  6. paragraph text     (inline code spans split out)

Streaming means the same message is re-segmented many times per second
while tokens arrive, so segment() goes through a small process-wide cache.
"""

from __future__ import annotations

import asyncio
import hashlib
import re
import threading
from collections import OrderedDict
from dataclasses import dataclass, field


CACHE_CAPACITY = 256


# ---------------------------------------------------------------------------
# Segment types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Text:
    text: str


@dataclass(frozen=True)
class InlineCode:
    code: str


@dataclass(frozen=True)
class CodeBlock:
    language: str
    code: str


@dataclass(frozen=True)
class Header:
    level: int
    text: str


@dataclass(frozen=True)
class ListItem:
    text: str
    ordered: bool = False


@dataclass(frozen=True)
class Blockquote:
    text: str


@dataclass(frozen=True)
class HorizontalRule:
    pass


Segment = Text | InlineCode | CodeBlock | Header | ListItem | Blockquote | HorizontalRule


@dataclass(frozen=True)
class ListGroup:
    items: tuple[ListItem, ...]
    ordered: bool = False


Block = Segment | ListGroup


# Inline segments

@dataclass(frozen=True)
class InlineText:
    text: str


@dataclass(frozen=True)
class InlineCodeSpan:
    code: str


@dataclass(frozen=True)
class Link:
    text: str
    url: str


@dataclass(frozen=True)
class Italic:
    text: str


@dataclass(frozen=True)
class Bold:
    text: str
    # Links and code spans found inside the bold run
    children: tuple[InlineText | Link | InlineCodeSpan, ...] = field(default=())


InlineSegment = InlineText | Bold | Italic | Link | InlineCodeSpan


# ---------------------------------------------------------------------------
# Block parsing
# ---------------------------------------------------------------------------

_FENCE = "```"
_HEADER_RE = re.compile(r"^(#{1,6})\s+(.+)$")
_LIST_RE = re.compile(r"^[-*+]\s+(.+)$")
_ORDERED_LIST_RE = re.compile(r"^\d+\.\s+(.+)$")
_RULES = ("---", "***", "___")
_CODE_SPAN_RE = re.compile(r"`([^`]+)`")


def _split_lines(text: str) -> list[str]:
    lines = [line.rstrip("\r") for line in text.split("\n")]
    if lines and lines[-1] == "":
        lines.pop()
    return lines


def _extract_code_block(text: str) -> tuple[str, CodeBlock, int] | None:
    """Find the first fence. Returns (prefix, block, end offset) or None."""
    start = text.find(_FENCE)
    if start < 0:
        return None
    prefix = text[:start]
    after = text[start + len(_FENCE):]
    offset = start + len(_FENCE)

    newline = after.find("\n")
    closing = after.find(_FENCE)
    if closing >= 0 and (newline < 0 or closing < newline):
        # ```code``` on a single line
        code = after[:closing].strip()
        return prefix, CodeBlock("", code), offset + closing + len(_FENCE)

    if newline < 0:
        # Opening fence still streaming in
        return prefix, CodeBlock(after.strip(), ""), len(text)

    language = after[:newline].strip()
    body = after[newline + 1:]
    closing = body.find(_FENCE)
    if closing < 0:
        # Unclosed fence: everything so far is code
        return prefix, CodeBlock(language, body.strip("\n")), len(text)
    code = body[:closing].strip("\n")
    end = offset + newline + 1 + closing + len(_FENCE)
    return prefix, CodeBlock(language, code), end


def _split_code_spans(text: str) -> list[Segment]:
    segments: list[Segment] = []
    pos = 0
    for m in _CODE_SPAN_RE.finditer(text):
        if m.start() > pos:
            segments.append(Text(text[pos:m.start()]))
        segments.append(InlineCode(m.group(1)))
        pos = m.end()
    if pos < len(text):
        segments.append(Text(text[pos:]))
    return segments


def _parse_text_block(text: str) -> list[Segment]:
    segments: list[Segment] = []
    paragraph: list[str] = []

    def flush_paragraph():
        if paragraph:
            segments.extend(_split_code_spans(" ".join(paragraph)))
            paragraph.clear()

    for line in _split_lines(text):
        trimmed = line.strip()

        if trimmed in _RULES:
            flush_paragraph()
            segments.append(HorizontalRule())
            continue

        m = _HEADER_RE.match(trimmed)
        if m:
            flush_paragraph()
            segments.append(Header(len(m.group(1)), m.group(2).strip()))
            continue

        if trimmed.startswith(">"):
            flush_paragraph()
            quote = trimmed[1:].strip()
            if quote:
                segments.append(Blockquote(quote))
            continue

        m = _LIST_RE.match(trimmed)
        if m:
            flush_paragraph()
            segments.append(ListItem(m.group(1).strip()))
            continue
        m = _ORDERED_LIST_RE.match(trimmed)
        if m:
            flush_paragraph()
            segments.append(ListItem(m.group(1).strip(), ordered=True))
            continue

        if trimmed:
            paragraph.append(trimmed)
        else:
            flush_paragraph()
            segments.append(Text("\n"))

    flush_paragraph()
    return segments


def parse_message_content(text: str) -> list[Segment]:
    """Split raw message text into block segments. Pure and deterministic."""
    segments: list[Segment] = []
    remaining = text
    while remaining:
        found = _extract_code_block(remaining)
        if found is None:
            segments.extend(_parse_text_block(remaining))
            break
        prefix, block, end = found
        if prefix:
            segments.extend(_parse_text_block(prefix))
        segments.append(block)
        remaining = remaining[end:]
    return segments


def group_segments(segments: list[Segment]) -> list[Block]:
    """Coalesce runs of list items (of the same kind) into ListGroup blocks."""
    blocks: list[Block] = []
    run: list[ListItem] = []

    def close_run():
        if run:
            blocks.append(ListGroup(tuple(run), run[0].ordered))
            run.clear()

    for seg in segments:
        if isinstance(seg, ListItem):
            if run and run[0].ordered != seg.ordered:
                close_run()
            run.append(seg)
        else:
            close_run()
            blocks.append(seg)
    close_run()
    return blocks


# ---------------------------------------------------------------------------
# Inline parsing
# ---------------------------------------------------------------------------

_LINK_RE = re.compile(r"\[([^\]]+)\]\(([^)\s]+)\)")
_BOLD_RE = re.compile(r"\*\*(.+?)\*\*|__(.+?)__", re.DOTALL)
_ITALIC_RE = re.compile(r"(?<!\*)\*([^*\n]+?)\*(?!\*)|(?<![\w_])_([^_\n]+?)_(?![\w_])")

# Priority order when two patterns start at the same offset
_INLINE_PATTERNS = (
    ("code", _CODE_SPAN_RE),
    ("link", _LINK_RE),
    ("bold", _BOLD_RE),
    ("italic", _ITALIC_RE),
)
_BOLD_INNER = ("code", "link")


def _first_group(m: re.Match) -> str:
    return next(g for g in m.groups() if g is not None)


def _scan_inline(text: str, kinds: tuple[str, ...]) -> list[InlineSegment]:
    patterns = [(kind, rx) for kind, rx in _INLINE_PATTERNS if kind in kinds]
    out: list[InlineSegment] = []
    pos = 0
    while pos < len(text):
        best: tuple[str, re.Match] | None = None
        for kind, rx in patterns:
            m = rx.search(text, pos)
            if m and (best is None or m.start() < best[1].start()):
                best = (kind, m)
        if best is None:
            break
        kind, m = best
        if m.start() > pos:
            out.append(InlineText(text[pos:m.start()]))
        if kind == "code":
            out.append(InlineCodeSpan(m.group(1)))
        elif kind == "link":
            out.append(Link(m.group(1), m.group(2)))
        elif kind == "bold":
            inner = _first_group(m)
            out.append(Bold(inner, tuple(_scan_inline(inner, _BOLD_INNER))))
        else:
            out.append(Italic(_first_group(m)))
        pos = m.end()
    if pos < len(text):
        out.append(InlineText(text[pos:]))
    return out


def parse_inline(text: str) -> list[InlineSegment]:
    """
    Parse **bold**, *italic*, [text](url) and `code` spans.
    Inside bold only links and code spans are recognised.
    """
    return _scan_inline(text, tuple(kind for kind, _ in _INLINE_PATTERNS))


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

class SegmentCache:
    """
    Bounded cache of parsed messages.
    Thread-safe, FIFO eviction on insert, keyed by a 64-bit hash of the source.
    """

    def __init__(self, capacity: int = CACHE_CAPACITY):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._entries: OrderedDict[int, tuple[str, tuple[Block, ...]]] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def key_for(text: str) -> int:
        digest = hashlib.blake2b(text.encode("utf-8", "surrogatepass"), digest_size=8).digest()
        return int.from_bytes(digest, "big")

    def get(self, text: str) -> tuple[Block, ...] | None:
        key = self.key_for(text)
        with self._lock:
            entry = self._entries.get(key)
            # Same hash, different source: a collision, treat as a miss
            if entry is None or entry[0] != text:
                self.misses += 1
                return None
            self.hits += 1
            return entry[1]

    def put(self, text: str, blocks: tuple[Block, ...]) -> None:
        key = self.key_for(text)
        with self._lock:
            if key in self._entries:
                self._entries[key] = (text, blocks)
                return
            while len(self._entries) >= self.capacity:
                self._entries.popitem(last=False)
            self._entries[key] = (text, blocks)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self.hits = 0
            self.misses = 0

    def stats(self) -> dict:
        with self._lock:
            return {
                "size": len(self._entries),
                "capacity": self.capacity,
                "hits": self.hits,
                "misses": self.misses,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


_cache: SegmentCache | None = None
_cache_lock = threading.Lock()


def get_cache() -> SegmentCache:
    """Return the process-wide cache, creating it on first use."""
    global _cache
    with _cache_lock:
        if _cache is None:
            _cache = SegmentCache()
        return _cache


def set_cache(cache: SegmentCache | None) -> None:
    """Swap the process-wide cache (tests). None resets to a fresh one on next use."""
    global _cache
    with _cache_lock:
        _cache = cache


def segment(text: str) -> list[Block]:
    """Parse and group text, going through the cache."""
    cache = get_cache()
    cached = cache.get(text)
    if cached is not None:
        return list(cached)
    blocks = tuple(group_segments(parse_message_content(text)))
    cache.put(text, blocks)
    return list(blocks)


async def segment_async(text: str) -> list[Block]:
    """segment() on a worker thread so long messages never stall the event loop."""
    return await asyncio.to_thread(segment, text)
