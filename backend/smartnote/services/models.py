"""
Data models for note sessions.

Uses Pydantic for validation and serialization.
"""

from datetime import datetime
from enum import Enum
from typing import List, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, Field

UNTITLED_NOTE = "Untitled Note"


def generate_id() -> str:
    return str(uuid4())


class NoteStatus(str, Enum):
    """Generation status of a session"""
    IDLE = "idle"
    PROCESSING = "processing"
    SUCCESS = "success"
    ERROR = "error"


class NoteMode(str, Enum):
    """Selects which generation configuration is used for a session"""
    GENERAL = "general"
    TECHNICAL = "technical"
    RESEARCH = "research"  # search-grounded, returns citations
    WEEKLY = "weekly"  # reserved for synthetic weekly summaries


DEFAULT_MODE = NoteMode.GENERAL


class AttachmentKind(str, Enum):
    IMAGE = "image"
    PDF = "pdf"
    AUDIO = "audio"
    DOCUMENT = "document"
    SPREADSHEET = "spreadsheet"
    PRESENTATION = "presentation"
    TEXT = "text"
    UNKNOWN = "unknown"


class SaveStatus(str, Enum):
    """Process-wide persistence indicator"""
    SAVED = "saved"
    SAVING = "saving"
    ERROR = "error"


class AttachmentRef(BaseModel):
    """A non-inline file attached to a session.

    ``data`` is the owned binary payload. ``display_handle`` is a transient,
    revocable reference handed out by the AttachmentRegistry and is never
    persisted.
    """
    id: str = Field(default_factory=generate_id)
    filename: str
    mime_type: str = "application/octet-stream"
    kind: AttachmentKind = AttachmentKind.UNKNOWN
    data: bytes = Field(repr=False)
    display_handle: Optional[str] = None


class Citation(BaseModel):
    uri: str
    title: str = ""


class GenerationResult(BaseModel):
    """Last generation record for a session"""
    generated_text: str
    generated_at: datetime = Field(default_factory=datetime.now)
    citations: List[Citation] = Field(default_factory=list)


class ChatMessage(BaseModel):
    """One turn of the side conversation attached to a session"""
    id: str = Field(default_factory=generate_id)
    speaker: Literal["user", "model"]
    text: str
    timestamp: datetime = Field(default_factory=datetime.now)
    is_error: bool = False


class NoteSession(BaseModel):
    """Complete note session with all fields"""
    id: str = Field(default_factory=generate_id)
    title: str = ""
    content: str = ""  # markup with inline base64 images and links
    attachments: List[AttachmentRef] = Field(default_factory=list)
    result: Optional[GenerationResult] = None
    status: NoteStatus = NoteStatus.IDLE
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)
    mode: NoteMode = DEFAULT_MODE
    conversation_history: List[ChatMessage] = Field(default_factory=list)

    @property
    def display_title(self) -> str:
        return self.title or UNTITLED_NOTE


class TextSegment(BaseModel):
    """A run of plain text in a generation request"""
    type: Literal["text"] = "text"
    text: str


class BinarySegment(BaseModel):
    """Inline binary payload (base64) in a generation request"""
    type: Literal["binary"] = "binary"
    mime_type: str
    data: str  # base64
    filename: Optional[str] = None
    kind: AttachmentKind = AttachmentKind.IMAGE


Segment = Union[TextSegment, BinarySegment]


class GenerationRequest(BaseModel):
    """Multi-part payload handed to the generation collaborator"""
    content_segments: List[Segment] = Field(default_factory=list)
    attachment_segments: List[BinarySegment] = Field(default_factory=list)
    mode: NoteMode = DEFAULT_MODE


class GenerationResponse(BaseModel):
    generated_text: str
    citations: List[Citation] = Field(default_factory=list)


class WeeklySummaryOutcome(BaseModel):
    """What happened when a weekly summary was requested"""
    status: Literal["nothing_to_summarize", "generated", "failed"]
    session_id: Optional[str] = None
    source_count: int = 0
    error: Optional[str] = None
