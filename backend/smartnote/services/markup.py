"""
Minimal document tree for note markup.

Note content is an HTML fragment. We parse it into a small, library-neutral
tree (text nodes and element nodes) so the reconciler can flatten it, and
add or remove search highlights, without depending on a rendering library.
BeautifulSoup is only used at the parse boundary.
"""

from __future__ import annotations

import html
from dataclasses import dataclass, field
from typing import Iterator, Union

from bs4 import BeautifulSoup
from bs4.element import NavigableString, PreformattedString, Tag

VOID_ELEMENTS = frozenset(
    {
        "area", "base", "br", "col", "embed", "hr", "img", "input",
        "link", "meta", "param", "source", "track", "wbr",
    }
)

# Content of these elements is not escaped by the HTML parser
RAW_TEXT_ELEMENTS = frozenset({"script", "style"})


@dataclass
class TextNode:
    text: str


@dataclass
class ElementNode:
    tag: str
    attrs: dict[str, str] = field(default_factory=dict)
    children: list["Node"] = field(default_factory=list)

    def classes(self) -> list[str]:
        return self.attrs.get("class", "").split()

    def has_class(self, name: str) -> bool:
        return name in self.classes()


Node = Union[TextNode, ElementNode]

# Tag name used for the synthetic root of a parsed fragment
FRAGMENT = ""

# The soup root is listed so no whitespace run is collapsed anywhere
PRESERVE_WHITESPACE = frozenset({BeautifulSoup.ROOT_TAG_NAME, "pre", "textarea"})


def parse_markup(markup: str) -> ElementNode:
    """Parse an HTML fragment into a normalized tree rooted at a fragment node."""
    root = ElementNode(tag=FRAGMENT)
    if not markup:
        return root
    soup = BeautifulSoup(
        markup,
        "html.parser",
        multi_valued_attributes=None,
        preserve_whitespace_tags=PRESERVE_WHITESPACE,
    )
    root.children = _convert_children(soup)
    return normalize(root)


def _convert_children(parent: Tag) -> list[Node]:
    nodes: list[Node] = []
    for child in parent.children:
        if isinstance(child, Tag):
            attrs = {
                str(k): "" if v is None else (" ".join(v) if isinstance(v, list) else str(v))
                for k, v in child.attrs.items()
            }
            nodes.append(
                ElementNode(tag=child.name.lower(), attrs=attrs, children=_convert_children(child))
            )
        elif isinstance(child, PreformattedString):
            # comments, doctypes, CDATA, processing instructions
            continue
        elif isinstance(child, NavigableString):
            nodes.append(TextNode(text=str(child)))
    return nodes


def normalize(node: ElementNode) -> ElementNode:
    """Merge adjacent text nodes and drop empty ones, recursively (in place)."""
    merged: list[Node] = []
    for child in node.children:
        if isinstance(child, TextNode):
            if not child.text:
                continue
            if merged and isinstance(merged[-1], TextNode):
                merged[-1] = TextNode(text=merged[-1].text + child.text)
                continue
            merged.append(child)
        else:
            merged.append(normalize(child))
    node.children = merged
    return node


def render_markup(root: ElementNode) -> str:
    """Serialize a tree back to markup. Deterministic for a given tree."""
    return "".join(_render(child, raw=root.tag in RAW_TEXT_ELEMENTS) for child in root.children)


def _render(node: Node, raw: bool = False) -> str:
    if isinstance(node, TextNode):
        return node.text if raw else html.escape(node.text, quote=False)

    attrs = "".join(
        f' {name}="{html.escape(value, quote=True)}"' for name, value in node.attrs.items()
    )
    if node.tag in VOID_ELEMENTS:
        return f"<{node.tag}{attrs}>"
    inner_raw = node.tag in RAW_TEXT_ELEMENTS
    inner = "".join(_render(child, raw=inner_raw) for child in node.children)
    return f"<{node.tag}{attrs}>{inner}</{node.tag}>"


def iter_text(node: Node) -> Iterator[str]:
    """Yield text content in document order."""
    if isinstance(node, TextNode):
        yield node.text
        return
    for child in node.children:
        yield from iter_text(child)
