"""
Generation service: turns flattened note content + attachments into a note.

This is the only module that talks to OpenAI. It converts a GenerationRequest
into a multi-part chat completion and returns the generated markdown together
with any url citations the model attached.
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import List, Optional

from openai import AsyncOpenAI

from .models import (
    AttachmentKind,
    BinarySegment,
    ChatMessage,
    Citation,
    GenerationRequest,
    GenerationResponse,
    NoteMode,
    TextSegment,
)
from .openai_provider import chat_model, get_openai_client, search_model

logger = logging.getLogger(__name__)

FALLBACK_TEXT = "Please analyze the provided context."
EMPTY_REPLY = "No content generated."

_AUDIO_FORMATS = {
    "audio/wav": "wav",
    "audio/wave": "wav",
    "audio/x-wav": "wav",
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
}

_FILE_KINDS = {
    AttachmentKind.PDF,
    AttachmentKind.DOCUMENT,
    AttachmentKind.SPREADSHEET,
    AttachmentKind.PRESENTATION,
}

_BASE_PROMPT = (
    "You are a smart note-taking assistant. Turn the user's fragmentary input "
    "(draft text, images, documents, recordings) into a well-structured note. "
    "Use standard Markdown: a title, a short summary, key points, an optional "
    "deep-dive section with useful background, action items when present, and "
    "3-5 suggested tags. If an attachment cannot be read, say so at the end."
)


@dataclass(frozen=True)
class ModeConfig:
    system_prompt: str
    model: str
    temperature: Optional[float] = 0.4


def mode_config(mode: NoteMode) -> ModeConfig:
    """Collaborator configuration for a session mode."""
    if mode == NoteMode.TECHNICAL:
        return ModeConfig(
            system_prompt=_BASE_PROMPT
            + " Focus on technical accuracy: keep terminology, interfaces and "
            "requirements precise and use code blocks for code.",
            model=chat_model(),
            temperature=0.2,
        )
    if mode == NoteMode.RESEARCH:
        # Search models reject sampling parameters
        return ModeConfig(
            system_prompt=_BASE_PROMPT
            + " Ground the deep-dive section in current web sources and cite them.",
            model=search_model(),
            temperature=None,
        )
    if mode == NoteMode.WEEKLY:
        return ModeConfig(
            system_prompt=(
                "You are an executive assistant. The input is every note the user "
                "wrote this work week. Write a weekly report in Markdown: highlights, "
                "progress per topic, open issues, and next week's action items."
            ),
            model=chat_model(),
            temperature=0.3,
        )
    return ModeConfig(system_prompt=_BASE_PROMPT, model=chat_model())


def _data_url(segment: BinarySegment) -> str:
    return f"data:{segment.mime_type};base64,{segment.data}"


def segment_to_part(segment) -> dict:
    """Convert one request segment into a chat-completions content part."""
    if isinstance(segment, TextSegment):
        return {"type": "text", "text": segment.text}

    if segment.kind == AttachmentKind.IMAGE or segment.mime_type.startswith("image/"):
        return {"type": "image_url", "image_url": {"url": _data_url(segment)}}

    if segment.kind == AttachmentKind.AUDIO and segment.mime_type in _AUDIO_FORMATS:
        return {
            "type": "input_audio",
            "input_audio": {"data": segment.data, "format": _AUDIO_FORMATS[segment.mime_type]},
        }

    if segment.kind == AttachmentKind.TEXT:
        text = base64.b64decode(segment.data).decode("utf-8", errors="replace")
        return {"type": "text", "text": f"Attached file {segment.filename or ''}:\n{text}"}

    if segment.kind in _FILE_KINDS:
        return {
            "type": "file",
            "file": {"filename": segment.filename or "attachment", "file_data": _data_url(segment)},
        }

    return {
        "type": "text",
        "text": f"[Attachment {segment.filename or ''} ({segment.mime_type}) could not be included]",
    }


def build_content_parts(request: GenerationRequest) -> List[dict]:
    """Ordered content parts: note segments first, then attachments. Never empty."""
    parts = [segment_to_part(s) for s in request.content_segments]
    parts.extend(segment_to_part(s) for s in request.attachment_segments)
    if not parts:
        parts.append({"type": "text", "text": FALLBACK_TEXT})
    return parts


def extract_citations(message) -> List[Citation]:
    """Unique url citations from a chat completion message, in order."""
    citations: List[Citation] = []
    seen = set()
    for annotation in getattr(message, "annotations", None) or []:
        if getattr(annotation, "type", None) != "url_citation":
            continue
        cite = getattr(annotation, "url_citation", None)
        url = getattr(cite, "url", None)
        if not url or url in seen:
            continue
        seen.add(url)
        citations.append(Citation(uri=url, title=getattr(cite, "title", None) or ""))
    return citations


class GenerationService:
    def __init__(
        self,
        api_key: str | None = None,
        client: AsyncOpenAI | None = None,
    ):
        self._client = client or (AsyncOpenAI(api_key=api_key) if api_key else None)

    def _get_client(self) -> AsyncOpenAI:
        # Resolved lazily so a missing key surfaces per generation, before any network call
        return self._client or get_openai_client()

    async def generate(self, request: GenerationRequest) -> GenerationResponse:
        """
        Generate a structured note.

        Raises:
            GenerationConfigError: if no API key is configured
            OpenAIError: on transport or authorization failures
        """
        client = self._get_client()
        config = mode_config(request.mode)

        kwargs = {}
        if config.temperature is not None:
            kwargs["temperature"] = config.temperature

        completion = await client.chat.completions.create(
            model=config.model,
            messages=[
                {"role": "system", "content": config.system_prompt},
                {"role": "user", "content": build_content_parts(request)},
            ],
            **kwargs,
        )
        message = completion.choices[0].message
        text = message.content or EMPTY_REPLY
        citations = extract_citations(message)
        logger.info(
            "Generated %d chars (mode=%s, citations=%d)", len(text), request.mode.value, len(citations)
        )
        return GenerationResponse(generated_text=text, citations=citations)

    async def chat(
        self,
        request: GenerationRequest,
        history: List[ChatMessage],
        message: str,
    ) -> str:
        """Answer a question about a note, given the prior conversation."""
        if not message or not message.strip():
            raise ValueError("Message cannot be empty")

        client = self._get_client()
        config = mode_config(request.mode)

        messages = [
            {
                "role": "system",
                "content": config.system_prompt
                + "\n\nYou are now answering follow-up questions about the note "
                "provided in the first user message. Answer only from that note "
                "and its attachments, and say so when information is missing.",
            },
            {"role": "user", "content": build_content_parts(request)},
        ]
        for turn in history:
            if turn.is_error:
                continue
            messages.append(
                {"role": "user" if turn.speaker == "user" else "assistant", "content": turn.text}
            )
        messages.append({"role": "user", "content": message})

        completion = await client.chat.completions.create(model=config.model, messages=messages)
        return completion.choices[0].message.content or ""
