"""Markdown to Telegram HTML rendering with per-message budget splitting.

Agent output is parsed into text lines and fenced code blocks. Text lines get a
small inline markdown subset (code spans, bold, links); code blocks become
``<pre><code>`` elements. Rendered pieces are packed into chunks whose HTML never
exceeds the budget, and every chunk keeps the raw markdown slice it came from so
that joining the raw slices reproduces the input exactly.
"""

from __future__ import annotations

import html
import re
from dataclasses import dataclass
from typing import Callable, Optional

from .constants import RENDER_BUDGET_BYTES

WrapFn = Callable[[str], str]

_LANGUAGE_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_+#.-]{0,31}$")
_INLINE_RE = re.compile(
    r"`(?P<code>[^`\n]+)`"
    r"|\*\*(?P<bold>[^*\n]+?)\*\*"
    r"|\[(?P<label>[^\]\n]+)\]\((?P<url>https?://[^\s()]+)\)"
)

BLOCK_TEXT = "text"
BLOCK_CODE = "code"


@dataclass(frozen=True)
class RenderedChunk:
    text: str
    raw: str
    blank: bool = False


@dataclass(frozen=True)
class MarkdownBlock:
    kind: str
    content: str
    opening: str = ""
    closing: str = ""
    language: Optional[str] = None

    @property
    def raw(self) -> str:
        return f"{self.opening}{self.content}{self.closing}"


def _escape(text: str) -> str:
    return html.escape(text, quote=False)


def _utf8_len(text: str) -> int:
    return len(text.encode("utf-8"))


def _parse_fence_line(line: str) -> Optional[str]:
    stripped = line.strip()
    if not stripped.startswith("```"):
        return None
    return stripped[3:].strip()


def parse_blocks(text: str) -> list[MarkdownBlock]:
    """Split markdown into one block per text line and one per fenced code block."""
    blocks: list[MarkdownBlock] = []
    code_lines: Optional[list[str]] = None
    opening = ""
    language: Optional[str] = None
    for line in text.splitlines(keepends=True):
        info = _parse_fence_line(line)
        if code_lines is None:
            if info is None:
                blocks.append(MarkdownBlock(kind=BLOCK_TEXT, content=line))
                continue
            code_lines = []
            opening = line
            language = info or None
            continue
        if info == "":
            blocks.append(
                MarkdownBlock(
                    kind=BLOCK_CODE,
                    content="".join(code_lines),
                    opening=opening,
                    closing=line,
                    language=language,
                )
            )
            code_lines = None
            continue
        code_lines.append(line)
    if code_lines is not None:
        # Unterminated fence: the rest of the document is code.
        blocks.append(
            MarkdownBlock(
                kind=BLOCK_CODE,
                content="".join(code_lines),
                opening=opening,
                language=language,
            )
        )
    return blocks


def render_inline(text: str) -> str:
    """Render code spans, bold and links; everything else is escaped literally."""
    out: list[str] = []
    pos = 0
    for match in _INLINE_RE.finditer(text):
        out.append(_escape(text[pos : match.start()]))
        if match.group("code") is not None:
            out.append(f"<code>{_escape(match.group('code'))}</code>")
        elif match.group("bold") is not None:
            out.append(f"<b>{_escape(match.group('bold'))}</b>")
        else:
            url = html.escape(match.group("url"), quote=True)
            out.append(f'<a href="{url}">{_escape(match.group("label"))}</a>')
        pos = match.end()
    out.append(_escape(text[pos:]))
    return "".join(out)


def safe_language(language: Optional[str]) -> Optional[str]:
    if language and _LANGUAGE_RE.match(language):
        return language
    return None


def wrap_code(body: str, language: Optional[str] = None) -> str:
    if body.endswith("\n"):
        body = body[:-1]
    language = safe_language(language)
    if language:
        return f'<pre><code class="language-{language}">{_escape(body)}</code></pre>'
    return f"<pre><code>{_escape(body)}</code></pre>"


class MarkdownRenderer:
    def __init__(
        self,
        *,
        budget: int = RENDER_BUDGET_BYTES,
        measure: Callable[[str], int] = _utf8_len,
    ) -> None:
        if budget <= 0:
            raise ValueError("budget must be positive")
        self._budget = budget
        self._measure = measure

    @property
    def budget(self) -> int:
        return self._budget

    def fits(self, rendered: str) -> bool:
        return self._measure(rendered) <= self._budget

    def render(self, markdown: str) -> list[RenderedChunk]:
        chunks: list[RenderedChunk] = []
        pending_text: list[str] = []
        pending_raw: list[str] = []
        pending_size = 0

        def flush() -> None:
            nonlocal pending_size
            if not pending_raw:
                return
            raw = "".join(pending_raw)
            chunks.append(
                RenderedChunk(
                    text="".join(pending_text), raw=raw, blank=not raw.strip()
                )
            )
            pending_text.clear()
            pending_raw.clear()
            pending_size = 0

        for block in parse_blocks(markdown):
            if block.kind == BLOCK_CODE:
                flush()
                chunks.extend(self._render_code(block))
                continue
            rendered = render_inline(block.content)
            size = self._measure(rendered)
            if pending_size + size <= self._budget:
                pending_text.append(rendered)
                pending_raw.append(block.content)
                pending_size += size
                continue
            flush()
            if size <= self._budget:
                pending_text.append(rendered)
                pending_raw.append(block.content)
                pending_size = size
                continue
            pieces = self.split_to_budget(block.content, render_inline)
            for piece_raw, piece_text in pieces[:-1]:
                chunks.append(
                    RenderedChunk(
                        text=piece_text, raw=piece_raw, blank=not piece_raw.strip()
                    )
                )
            last_raw, last_text = pieces[-1]
            pending_text.append(last_text)
            pending_raw.append(last_raw)
            pending_size = self._measure(last_text)
        flush()
        return chunks

    def _render_code(self, block: MarkdownBlock) -> list[RenderedChunk]:
        language = safe_language(block.language)
        if not block.content.strip():
            return [RenderedChunk(text="", raw=block.raw, blank=True)]

        def wrap(body: str) -> str:
            return wrap_code(body, language)

        pieces = self.split_to_budget(block.content, wrap)
        chunks: list[RenderedChunk] = []
        last = len(pieces) - 1
        for index, (piece_raw, piece_text) in enumerate(pieces):
            raw = piece_raw
            if index == 0:
                raw = block.opening + raw
            if index == last:
                raw = raw + block.closing
            chunks.append(
                RenderedChunk(text=piece_text, raw=raw, blank=not piece_raw.strip())
            )
        return chunks

    def split_to_budget(self, content: str, wrap: WrapFn) -> list[tuple[str, str]]:
        """Cut content into (raw, wrapped) pieces whose wrapped form fits."""
        pieces: list[tuple[str, str]] = []
        remaining = content
        while remaining:
            cut = self._fit_prefix(remaining, wrap)
            piece = remaining[:cut]
            pieces.append((piece, wrap(piece)))
            remaining = remaining[cut:]
        return pieces

    def _fit_prefix(self, content: str, wrap: WrapFn) -> int:
        if self.fits(wrap(content)):
            return len(content)
        lo, hi = 1, len(content) - 1
        best = 0
        while lo <= hi:
            mid = (lo + hi) // 2
            if self.fits(wrap(content[:mid])):
                best = mid
                lo = mid + 1
            else:
                hi = mid - 1
        if best == 0:
            raise ValueError("render budget cannot fit a single character")
        newline = content.rfind("\n", 0, best)
        if newline > 0:
            cut = newline + 1
            if cut < best and self.fits(wrap(content[:cut])):
                return cut
        return best


def render_markdown(
    markdown: str, *, budget: int = RENDER_BUDGET_BYTES
) -> list[RenderedChunk]:
    return MarkdownRenderer(budget=budget).render(markdown)
