"""
Tests for attachment classification and display handles in smartnote/services/attachments.py.
"""
from __future__ import annotations

import pytest

from smartnote.services.attachments import HANDLE_PREFIX, AttachmentRegistry, classify
from smartnote.services.models import AttachmentKind


# ============================================================================
# Classification Tests
# ============================================================================


@pytest.mark.parametrize(
    "filename,mime_type,expected",
    [
        ("scan.pdf", "application/pdf", AttachmentKind.PDF),
        ("scan.PDF", "application/octet-stream", AttachmentKind.PDF),
        ("memo.m4a", "audio/mp4", AttachmentKind.AUDIO),
        ("photo.heic", "image/heic", AttachmentKind.IMAGE),
        ("spec.docx", "", AttachmentKind.DOCUMENT),
        ("data.csv", "text/csv", AttachmentKind.SPREADSHEET),
        ("deck.pptx", "application/vnd.ms-powerpoint", AttachmentKind.PRESENTATION),
        ("readme.md", "", AttachmentKind.TEXT),
        ("log", "text/plain; charset=utf-8", AttachmentKind.TEXT),
        ("blob.bin", "application/octet-stream", AttachmentKind.UNKNOWN),
    ],
)
def test_classify(filename, mime_type, expected):
    """Kind is derived from the MIME type first, then the file extension."""
    assert classify(filename, mime_type) == expected


# ============================================================================
# Handle Lifecycle Tests
# ============================================================================


def test_create_attachment_has_live_handle():
    registry = AttachmentRegistry()

    attachment = registry.create_attachment("a.png", "image/png; name=a.png", b"data")

    assert attachment.display_handle.startswith(HANDLE_PREFIX)
    assert attachment.mime_type == "image/png"
    assert attachment.kind == AttachmentKind.IMAGE
    assert registry.resolve(attachment.display_handle) == (b"data", "image/png")


def test_revoke_releases_handle():
    registry = AttachmentRegistry()
    attachment = registry.create_attachment("a.png", "image/png", b"data")

    registry.revoke(attachment.display_handle)

    assert not registry.is_live(attachment.display_handle)
    assert registry.resolve(attachment.display_handle) is None
    assert registry.live_count() == 0


def test_revoke_is_tolerant_of_unknown_handles():
    registry = AttachmentRegistry()

    registry.revoke(None)
    registry.revoke(f"{HANDLE_PREFIX}unknown")

    assert registry.live_count() == 0


def test_rehydrate_creates_new_handles():
    """Rehydrated attachments get distinct handles over the same payload."""
    registry = AttachmentRegistry()
    original = registry.create_attachment("a.txt", "text/plain", b"abc")

    (copy,) = registry.rehydrate([original])

    assert copy.display_handle != original.display_handle
    assert copy.id == original.id
    assert registry.resolve(copy.display_handle) == (b"abc", "text/plain")
    assert registry.live_count() == 2
