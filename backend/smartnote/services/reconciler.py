"""
Content reconciliation between editable note markup and generation payloads.

- to_segments(): flattens markup into ordered text runs and inline images
- apply_highlight() / strip_highlight(): transient search-highlight overlay
- markdown_to_markup(): renders generated markdown into the note's markup dialect
- generation separators: appended before every generated block, and used to
  recover the user's own input from a note that has been generated on
"""

from __future__ import annotations

import html
import re
from datetime import datetime
from typing import List, Optional

from ..config import Config
from .markup import (
    RAW_TEXT_ELEMENTS,
    ElementNode,
    Node,
    TextNode,
    iter_text,
    normalize,
    parse_markup,
    render_markup,
)
from .models import AttachmentKind, BinarySegment, Segment, TextSegment

HIGHLIGHT_CLASS = "search-highlight"
SEPARATOR_CLASS = "generation-separator"

BLOCK_ELEMENTS = frozenset(
    {
        "p", "div", "br", "li", "ul", "ol", "blockquote", "pre", "hr", "table", "tr",
        "h1", "h2", "h3", "h4", "h5", "h6",
    }
)
# Elements whose content never reaches the generation request
SKIPPED_ELEMENTS = frozenset({"script", "style", "template", "head", "title"})

_DATA_URL = re.compile(
    r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)(?:;[^,;]*)*;base64,(?P<data>.*)$", re.S | re.I
)
# Line breaks written in front of the rule belong to the separator
_SEPARATOR_PATTERN = re.compile(
    r"(?:<br\s*/?>\s*)*<hr\b[^>]*\b" + SEPARATOR_CLASS + r"\b[^>]*>", re.I
)


# ============================================================================
# FLATTENING
# ============================================================================


class _Flattener:
    """Walks a markup tree in document order, accumulating text runs."""

    def __init__(self):
        self.segments: List[Segment] = []
        self._run: List[str] = []

    def visit(self, node: Node) -> None:
        if isinstance(node, TextNode):
            self._run.append(node.text)
            return
        if not isinstance(node, ElementNode) or node.tag in SKIPPED_ELEMENTS:
            return

        if node.tag == "img":
            self._image(node)
            return
        if node.tag in BLOCK_ELEMENTS:
            self._run.append("\n")

        for child in node.children:
            self.visit(child)

        if node.tag == "a":
            self._link(node)

    def _image(self, node: ElementNode) -> None:
        src = node.attrs.get("src", "").strip()
        match = _DATA_URL.match(src)
        if match and match.group("mime").lower().startswith("image/"):
            self.flush()
            self.segments.append(
                BinarySegment(
                    mime_type=match.group("mime").lower(),
                    data=re.sub(r"\s+", "", match.group("data")),
                    kind=AttachmentKind.IMAGE,
                )
            )
        elif src and not src.startswith("data:"):
            self._run.append(f"[image: {src}]")

    def _link(self, node: ElementNode) -> None:
        href = node.attrs.get("href", "").strip()
        if not href or href.startswith("#") or href.lower().startswith("javascript:"):
            return
        label = "".join(iter_text(node)).strip()
        if label != href:
            self._run.append(f" (link: {href})")

    def flush(self) -> None:
        text = "".join(self._run)
        self._run = []
        if text.strip():
            self.segments.append(TextSegment(text=text))


def to_segments(content: str) -> List[Segment]:
    """
    Flatten note markup into the ordered segments a generation request needs.

    Text is accumulated into runs; each inline base64 image closes the current
    run and becomes a binary segment. Block elements contribute a line break,
    hyperlink targets are appended to the run as ``(link: URL)``. Runs with no
    non-whitespace text are dropped.
    """
    flattener = _Flattener()
    for child in parse_markup(content).children:
        flattener.visit(child)
    flattener.flush()
    return flattener.segments


# ============================================================================
# SEARCH HIGHLIGHTS
# ============================================================================


def _is_highlight(node: Node) -> bool:
    return isinstance(node, ElementNode) and node.tag == "span" and node.has_class(HIGHLIGHT_CLASS)


def _unwrap_highlights(node: ElementNode) -> ElementNode:
    children: List[Node] = []
    for child in node.children:
        if isinstance(child, ElementNode):
            _unwrap_highlights(child)
            if _is_highlight(child):
                children.extend(child.children)
                continue
        children.append(child)
    node.children = children
    return node


def strip_highlight(content: str) -> str:
    """Remove every search-highlight wrapper, keeping the wrapped text."""
    if not content:
        return content
    root = _unwrap_highlights(parse_markup(content))
    return render_markup(normalize(root))


def _highlight_node(node: ElementNode, pattern: re.Pattern) -> None:
    children: List[Node] = []
    for child in node.children:
        if isinstance(child, TextNode):
            children.extend(_split_matches(child.text, pattern))
            continue
        if not _is_highlight(child) and child.tag not in RAW_TEXT_ELEMENTS:
            _highlight_node(child, pattern)
        children.append(child)
    node.children = children


def _split_matches(text: str, pattern: re.Pattern) -> List[Node]:
    pieces: List[Node] = []
    last = 0
    for match in pattern.finditer(text):
        if match.start() > last:
            pieces.append(TextNode(text=text[last:match.start()]))
        pieces.append(
            ElementNode(tag="span", attrs={"class": HIGHLIGHT_CLASS}, children=[TextNode(match.group(0))])
        )
        last = match.end()
    if last < len(text):
        pieces.append(TextNode(text=text[last:]))
    return pieces


def apply_highlight(content: str, query: str, min_length: Optional[int] = None) -> str:
    """
    Wrap every case-insensitive occurrence of each query token in a highlight span.

    Queries shorter than ``min_length`` once trimmed leave content untouched.
    Tokens are applied in query order and a token never matches inside text
    an earlier token already highlighted (first token wins on overlap).
    """
    threshold = Config.HIGHLIGHT_MIN_QUERY_LENGTH if min_length is None else min_length
    if not query or len(query.strip()) < max(threshold, 1):
        return content

    root = _unwrap_highlights(parse_markup(content))
    normalize(root)
    for token in query.split():
        _highlight_node(root, re.compile(re.escape(token), re.IGNORECASE))
    return render_markup(root)


# ============================================================================
# GENERATED CONTENT
# ============================================================================


_HEADING = re.compile(r"^(#{1,6})\s+(.*)$")
_BULLET = re.compile(r"^\s*[-*+]\s+(.*)$")
_ORDERED = re.compile(r"^\s*\d+[.)]\s+(.*)$")
_QUOTE = re.compile(r"^\s*>\s?(.*)$")
_RULE = re.compile(r"^\s*(-{3,}|\*{3,}|_{3,})\s*$")
_FENCE = re.compile(r"^\s*```")

_INLINE_CODE = re.compile(r"`([^`]+)`")
_LINK = re.compile(r"\[([^\]]+)\]\(([^)\s]+)\)")
_BOLD = re.compile(r"\*\*(.+?)\*\*|__(.+?)__")
_ITALIC = re.compile(r"(?<![*\w])\*(?!\s)(.+?)(?<!\s)\*(?!\*)|(?<!\w)_(?!\s)(.+?)(?<!\s)_(?!\w)")


def _format_inline(text: str) -> str:
    out = []
    for i, part in enumerate(_INLINE_CODE.split(text)):
        escaped = html.escape(part, quote=False)
        if i % 2:
            out.append(f"<code>{escaped}</code>")
            continue
        escaped = _LINK.sub(
            lambda m: f'<a href="{m.group(2).replace(chr(34), "&quot;")}">{m.group(1)}</a>', escaped
        )
        escaped = _BOLD.sub(lambda m: f"<strong>{m.group(1) or m.group(2)}</strong>", escaped)
        escaped = _ITALIC.sub(lambda m: f"<em>{m.group(1) or m.group(2)}</em>", escaped)
        out.append(escaped)
    return "".join(out)


def markdown_to_markup(markdown: str) -> str:
    """
    Render generated markdown into note markup.

    Supported: headings, bold, italic, inline code, fenced code, links,
    bullet/numbered lists, blockquotes, horizontal rules and paragraphs.
    """
    blocks: List[str] = []
    paragraph: List[str] = []
    quote: List[str] = []
    list_tag: Optional[str] = None
    items: List[str] = []
    code: Optional[List[str]] = None

    def close_open_blocks():
        nonlocal list_tag
        if paragraph:
            blocks.append("<p>" + "<br>".join(paragraph) + "</p>")
            paragraph.clear()
        if quote:
            blocks.append("<blockquote>" + "<br>".join(quote) + "</blockquote>")
            quote.clear()
        if list_tag:
            blocks.append(f"<{list_tag}>" + "".join(f"<li>{i}</li>" for i in items) + f"</{list_tag}>")
            items.clear()
            list_tag = None

    for raw_line in (markdown or "").splitlines():
        line = raw_line.rstrip()

        if code is not None:
            if _FENCE.match(line):
                blocks.append("<pre><code>" + html.escape("\n".join(code), quote=False) + "</code></pre>")
                code = None
            else:
                code.append(raw_line)
            continue
        if _FENCE.match(line):
            close_open_blocks()
            code = []
            continue

        if not line.strip():
            close_open_blocks()
            continue
        if _RULE.match(line):
            close_open_blocks()
            blocks.append("<hr>")
            continue

        heading = _HEADING.match(line)
        if heading:
            close_open_blocks()
            level = len(heading.group(1))
            blocks.append(f"<h{level}>{_format_inline(heading.group(2))}</h{level}>")
            continue

        bullet = _BULLET.match(line)
        ordered = None if bullet else _ORDERED.match(line)
        if bullet or ordered:
            tag = "ul" if bullet else "ol"
            if list_tag != tag:
                close_open_blocks()
                list_tag = tag
            items.append(_format_inline((bullet or ordered).group(1)))
            continue

        quoted = _QUOTE.match(line)
        if quoted:
            if not quote:
                close_open_blocks()
            quote.append(_format_inline(quoted.group(1)))
            continue

        if list_tag or quote:
            close_open_blocks()
        paragraph.append(_format_inline(line.strip()))

    if code is not None:
        blocks.append("<pre><code>" + html.escape("\n".join(code), quote=False) + "</code></pre>")
    close_open_blocks()
    return "".join(blocks)


def generation_separator(at: datetime) -> str:
    return (
        f'<br><br><hr class="{SEPARATOR_CLASS}">'
        f'<h2 class="generation-heading">✨ Smart Note Update ({at:%H:%M})</h2><br>'
    )


def append_generation(content: str, generated_markup: str, at: datetime) -> str:
    """Append a generated block behind a timestamped separator. Never replaces."""
    return (
        strip_highlight(content)
        + generation_separator(at)
        + f'<div class="generated-note">{generated_markup}</div>'
    )


def original_input(content: str) -> str:
    """The part of ``content`` before the first generation separator."""
    match = _SEPARATOR_PATTERN.search(content or "")
    return content[: match.start()] if match else (content or "")


def default_content(now: datetime) -> str:
    """Template content of a brand new session: a date line and an empty paragraph."""
    return f'<p class="note-date">📅 {now:%Y-%m-%d %H:%M:%S}</p><p><br></p>'
