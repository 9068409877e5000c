"""
Attachment lifecycle helpers.

We keep this module small and focused:
- classification of attached files by kind
- transient display handles (revocable references used only for rendering)

Display handles behave like browser object URLs: every handle handed out must be
revoked once the attachment is no longer reachable from an in-memory session.
"""

from __future__ import annotations

import logging
from pathlib import PurePath
from typing import Iterable
from uuid import uuid4

from .models import AttachmentKind, AttachmentRef

logger = logging.getLogger(__name__)

HANDLE_PREFIX = "blob:smartnote/"

_EXT_TO_KIND: dict[str, AttachmentKind] = {
    ".doc": AttachmentKind.DOCUMENT,
    ".docx": AttachmentKind.DOCUMENT,
    ".xls": AttachmentKind.SPREADSHEET,
    ".xlsx": AttachmentKind.SPREADSHEET,
    ".csv": AttachmentKind.SPREADSHEET,
    ".ppt": AttachmentKind.PRESENTATION,
    ".pptx": AttachmentKind.PRESENTATION,
    ".potx": AttachmentKind.PRESENTATION,
    ".txt": AttachmentKind.TEXT,
    ".md": AttachmentKind.TEXT,
}


def _base_mime(mime_type: str) -> str:
    return (mime_type or "").split(";")[0].strip().lower()


def classify(filename: str, mime_type: str) -> AttachmentKind:
    """Derive the attachment kind from MIME type first, then file extension."""
    mime = _base_mime(mime_type)
    if mime == "application/pdf":
        return AttachmentKind.PDF
    if mime.startswith("audio/"):
        return AttachmentKind.AUDIO
    if mime.startswith("image/"):
        return AttachmentKind.IMAGE

    ext = PurePath(filename or "").suffix.lower()
    if ext in _EXT_TO_KIND:
        return _EXT_TO_KIND[ext]
    if ext == ".pdf":
        return AttachmentKind.PDF
    if mime.startswith("text/"):
        return AttachmentKind.TEXT
    return AttachmentKind.UNKNOWN


class AttachmentRegistry:
    """
    Handle table for attachment display handles.

    Maps each live handle to the payload it renders. Handles are opaque strings
    (``blob:smartnote/<uuid>``) and are only valid until revoked.
    """

    def __init__(self):
        self._handles: dict[str, tuple[bytes, str]] = {}

    def create_attachment(self, filename: str, mime_type: str, data: bytes) -> AttachmentRef:
        """Build a new AttachmentRef that owns ``data`` and has a live handle."""
        mime = _base_mime(mime_type) or "application/octet-stream"
        attachment = AttachmentRef(
            filename=filename,
            mime_type=mime,
            kind=classify(filename, mime),
            data=data,
        )
        return self.attach_handle(attachment)

    def attach_handle(self, attachment: AttachmentRef) -> AttachmentRef:
        """Return a copy of ``attachment`` carrying a freshly created handle."""
        handle = f"{HANDLE_PREFIX}{uuid4()}"
        self._handles[handle] = (attachment.data, attachment.mime_type)
        return attachment.model_copy(update={"display_handle": handle})

    def rehydrate(self, attachments: Iterable[AttachmentRef]) -> list[AttachmentRef]:
        """Regenerate display handles (after load or duplication)."""
        return [self.attach_handle(a) for a in attachments]

    def revoke(self, handle: str | None) -> None:
        if handle is None:
            return
        if self._handles.pop(handle, None) is None:
            logger.debug("Revoking unknown display handle %s", handle)

    def revoke_all(self, attachments: Iterable[AttachmentRef]) -> None:
        for attachment in attachments:
            self.revoke(attachment.display_handle)

    def resolve(self, handle: str) -> tuple[bytes, str] | None:
        """Payload and MIME type behind a live handle, or None if revoked."""
        return self._handles.get(handle)

    def is_live(self, handle: str | None) -> bool:
        return handle is not None and handle in self._handles

    def live_count(self) -> int:
        return len(self._handles)

    def clear(self) -> None:
        self._handles.clear()
