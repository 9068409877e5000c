"""
Tests for content reconciliation in smartnote/services/reconciler.py.

Covers flattening markup into generation segments, the search-highlight
overlay, markdown rendering of generated notes and generation separators.
"""
from __future__ import annotations

from datetime import datetime

import pytest

from smartnote.services.models import AttachmentKind, BinarySegment, TextSegment
from smartnote.services.reconciler import (
    HIGHLIGHT_CLASS,
    append_generation,
    apply_highlight,
    default_content,
    markdown_to_markup,
    original_input,
    strip_highlight,
    to_segments,
)

HL_OPEN = f'<span class="{HIGHLIGHT_CLASS}">'


# ============================================================================
# Flattening Tests
# ============================================================================


def test_to_segments_splits_text_runs_at_inline_images():
    """An inline base64 image closes the current text run and becomes a binary segment."""
    content = (
        "<p>Hello <b>world</b></p>"
        '<img src="data:image/png;base64,AAAA">'
        "<p>after</p>"
    )

    segments = to_segments(content)

    assert [type(s) for s in segments] == [TextSegment, BinarySegment, TextSegment]
    assert segments[0].text.strip() == "Hello world"
    assert segments[1].mime_type == "image/png"
    assert segments[1].data == "AAAA"
    assert segments[1].kind == AttachmentKind.IMAGE
    assert segments[2].text.strip() == "after"


def test_to_segments_keeps_document_order_for_multiple_images():
    """Images and text alternate exactly as they appear in the note."""
    content = (
        '<img src="data:image/jpeg;base64,Zm9v">'
        "<p>between</p>"
        '<img src="data:image/gif;base64,YmFy">'
    )

    segments = to_segments(content)

    assert [getattr(s, "mime_type", None) for s in segments] == ["image/jpeg", None, "image/gif"]


def test_to_segments_annotates_links():
    """Hyperlink targets are appended after the anchor text."""
    segments = to_segments('<p>See <a href="https://example.com/docs">the docs</a> now</p>')

    assert len(segments) == 1
    assert "the docs (link: https://example.com/docs) now" in segments[0].text


def test_to_segments_skips_link_annotation_when_text_is_url():
    """A bare URL link is not annotated twice."""
    segments = to_segments('<p><a href="https://example.com">https://example.com</a></p>')

    assert "(link:" not in segments[0].text


def test_to_segments_describes_remote_images():
    """Images that are not inline data become a textual reference."""
    segments = to_segments('<p>pic: <img src="https://example.com/a.png"></p>')

    assert segments == [TextSegment(text="\npic: [image: https://example.com/a.png]")]


def test_to_segments_drops_whitespace_only_runs():
    """Empty paragraphs and line breaks produce no segments."""
    assert to_segments("<p> </p><p><br></p>") == []
    assert to_segments("") == []


def test_to_segments_ignores_script_and_style():
    """Script and style content never reaches the generation request."""
    segments = to_segments("<style>p { color: red }</style><p>text</p><script>alert(1)</script>")

    assert len(segments) == 1
    assert "color" not in segments[0].text
    assert "alert" not in segments[0].text


def test_to_segments_ignores_non_image_data_urls():
    """A data URL that is not an image is neither a binary segment nor text."""
    segments = to_segments('<p>x</p><img src="data:application/pdf;base64,AAAA">')

    assert segments == [TextSegment(text="\nx")]


# ============================================================================
# Highlight Tests
# ============================================================================


def test_apply_highlight_wraps_case_insensitive_matches():
    """Every occurrence is wrapped and the original casing is kept."""
    result = apply_highlight("<p>World of world</p>", "WORLD")

    assert result == f"<p>{HL_OPEN}World</span> of {HL_OPEN}world</span></p>"


def test_apply_highlight_ignores_short_queries():
    """Queries below the minimum length leave content untouched."""
    content = "<p>a cat</p>"

    assert apply_highlight(content, "a") == content
    assert apply_highlight(content, "  a  ") == content
    assert apply_highlight(content, "") == content


def test_apply_highlight_threshold_is_configurable():
    """An explicit min_length overrides the configured threshold."""
    assert HL_OPEN in apply_highlight("<p>a cat</p>", "a", min_length=1)
    assert apply_highlight("<p>a cat</p>", "cat", min_length=4) == "<p>a cat</p>"


def test_apply_highlight_first_token_wins_on_overlap():
    """A later token never matches inside text an earlier token highlighted."""
    result = apply_highlight("<p>abcdef</p>", "abcd cde")

    assert result == f"<p>{HL_OPEN}abcd</span>ef</p>"


def test_apply_highlight_does_not_cross_element_boundaries():
    """Matching is confined to single text nodes."""
    assert apply_highlight("<p>hel<b>lo</b></p>", "hello") == "<p>hel<b>lo</b></p>"


def test_apply_highlight_does_not_touch_attributes():
    """Attribute values are not text and are never highlighted."""
    result = apply_highlight('<p><a href="https://cats.example">cats</a></p>', "cats")

    assert 'href="https://cats.example"' in result
    assert result.count(HL_OPEN) == 1


def test_apply_highlight_is_not_cumulative():
    """Highlighting twice gives the same markup as highlighting once."""
    once = apply_highlight("<p>note about notes</p>", "note")

    assert apply_highlight(once, "note") == once


@pytest.mark.parametrize(
    "content,query",
    [
        ("<p>Hello world</p>", "world"),
        ("<p>a &amp; b &lt; c</p>", "b &"),
        ('<p>xy<img src="data:image/png;base64,AAAA">yx</p>', "xy"),
        ("<ul><li>one</li><li>two one</li></ul>", "one two"),
        ("<p>Émile écrit</p>", "écr"),
        ("<p>Meeting notes</p>\n<!-- pasted from mail -->\n<p>Budget review</p>", "budget"),
        (" </p> ", "budget"),
        ("<p>a  a</p>", "a"),
    ],
)
def test_strip_highlight_restores_content(content, query):
    """Stripping an applied highlight restores the original markup."""
    assert strip_highlight(apply_highlight(content, query)) == strip_highlight(content)


def test_strip_highlight_is_idempotent():
    """Stripping twice is the same as stripping once."""
    content = f"<p>{HL_OPEN}keep</span> me</p>"

    once = strip_highlight(content)

    assert once == "<p>keep me</p>"
    assert strip_highlight(once) == once


@pytest.mark.parametrize(
    "content",
    [
        "<p>Meeting notes</p>\n<!-- pasted from mail -->\n<p>Budget review</p>",
        " </p> ",
        "<p>one</p>\n\n  <p>two</p>",
        "<pre>  indented\n    code</pre>",
    ],
)
def test_strip_highlight_is_stable_across_whitespace(content):
    """Whitespace runs survive a strip and reparse unchanged."""
    once = strip_highlight(content)

    assert strip_highlight(once) == once


def test_strip_highlight_keeps_other_spans():
    """Only highlight spans are unwrapped."""
    content = '<p><span class="mention">@bob</span></p>'

    assert strip_highlight(content) == content


# ============================================================================
# Markdown Rendering Tests
# ============================================================================


def test_markdown_to_markup_renders_blocks():
    """Headings, paragraphs with inline formatting, and lists are rendered."""
    markdown = "# Title\n\nSome **bold** and *it*\n\n- one\n- two\n\n1. first\n2. second"

    assert markdown_to_markup(markdown) == (
        "<h1>Title</h1>"
        "<p>Some <strong>bold</strong> and <em>it</em></p>"
        "<ul><li>one</li><li>two</li></ul>"
        "<ol><li>first</li><li>second</li></ol>"
    )


def test_markdown_to_markup_escapes_text():
    """Generated text cannot inject markup."""
    assert markdown_to_markup("a < b & <script>") == "<p>a &lt; b &amp; &lt;script&gt;</p>"


def test_markdown_to_markup_renders_links_and_code():
    """Links become anchors; code is escaped and left unformatted."""
    assert markdown_to_markup("[Doc](https://example.com)") == '<p><a href="https://example.com">Doc</a></p>'
    assert markdown_to_markup("use `a**b**`") == "<p>use <code>a**b**</code></p>"
    assert markdown_to_markup("```\nx < 1\n```") == "<pre><code>x &lt; 1</code></pre>"


def test_markdown_to_markup_renders_rules_and_quotes():
    """Horizontal rules and block quotes are rendered."""
    assert markdown_to_markup("> quoted\n\n---") == "<blockquote>quoted</blockquote><hr>"


# ============================================================================
# Generation Separator Tests
# ============================================================================


def test_append_generation_keeps_existing_content():
    """Generated content is appended behind a timestamped separator."""
    at = datetime(2024, 5, 6, 14, 30)

    merged = append_generation("<p>mine</p>", "<p>generated</p>", at)

    assert merged.startswith("<p>mine</p>")
    assert "Smart Note Update (14:30)" in merged
    assert merged.endswith('<div class="generated-note"><p>generated</p></div>')


def test_append_generation_removes_highlights():
    """Transient highlight markup never ends up in merged content."""
    merged = append_generation(f"<p>{HL_OPEN}mine</span></p>", "<p>gen</p>", datetime(2024, 1, 1))

    assert HIGHLIGHT_CLASS not in merged


def test_original_input_stops_at_first_separator():
    """Only the user's own input before any generation pass is returned."""
    first = append_generation("<p>mine</p>", "<p>gen 1</p>", datetime(2024, 5, 6, 9, 0))
    second = append_generation(first, "<p>gen 2</p>", datetime(2024, 5, 6, 10, 0))

    assert second.count("generation-separator") == 2
    assert original_input(second) == "<p>mine</p>"
    assert original_input("<p>no generation yet</p>") == "<p>no generation yet</p>"


def test_original_input_survives_highlight_round_trip():
    """The separator is still found after content was re-serialized."""
    merged = append_generation("<p>mine</p>", "<p>gen</p>", datetime(2024, 5, 6, 9, 0))

    assert original_input(strip_highlight(apply_highlight(merged, "gen"))) == "<p>mine</p>"


def test_default_content_has_date_line():
    """A new session starts with a date line and an empty paragraph."""
    assert default_content(datetime(2024, 5, 6, 9, 5, 3)) == (
        '<p class="note-date">📅 2024-05-06 09:05:03</p><p><br></p>'
    )
