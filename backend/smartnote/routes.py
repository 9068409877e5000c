"""
REST API routes for the Smart Note backend.

Organized into logical groups:
- Sessions: CRUD, duplication, active session, search
- Attachments: upload, removal, display handles
- Generation: note generation and the per-note conversation
- Weekly summary and persistence

Handlers run on Flask worker threads and reach the session store only through
the core runtime, which executes the work on its event loop.
"""

from flask import Blueprint, Response, jsonify, request
from pydantic import ValidationError

from .services.container import get_services
from .services.models import NoteMode, NoteSession
from .services.reconciler import apply_highlight

bp = Blueprint("api", __name__)

# Fields a client may change through PATCH /sessions/<id>
EDITABLE_FIELDS = {"title", "content", "mode"}


def _json_error(message: str, status: int = 400):
    return jsonify({"error": message}), status


def _invalid_fields(error: ValidationError):
    names = sorted({str(err["loc"][0]) for err in error.errors() if err["loc"]})
    return _json_error(f"Invalid value for: {', '.join(names)}")


def _attachment_payload(attachment) -> dict:
    return {
        "id": attachment.id,
        "filename": attachment.filename,
        "mime_type": attachment.mime_type,
        "kind": attachment.kind.value,
        "size": len(attachment.data),
        "display_handle": attachment.display_handle,
    }


def _session_payload(session: NoteSession, full: bool = True) -> dict:
    payload = {
        "id": session.id,
        "title": session.title,
        "display_title": session.display_title,
        "status": session.status.value,
        "error": session.error,
        "mode": session.mode.value,
        "created_at": session.created_at.isoformat(),
        "attachment_count": len(session.attachments),
    }
    if full:
        payload.update(
            content=session.content,
            attachments=[_attachment_payload(a) for a in session.attachments],
            result=session.result.model_dump(mode="json") if session.result else None,
            conversation_history=[m.model_dump(mode="json") for m in session.conversation_history],
        )
    return payload


def _parse_mode(value):
    if value is None:
        return None
    try:
        return NoteMode(value)
    except ValueError:
        raise ValueError(f"Unknown mode: {value}")


# ============================================================================
# SESSION ENDPOINTS
# ============================================================================


@bp.get("/sessions")
def list_sessions():
    """
    List sessions in collection order (newest first), optionally filtered.

    Query params:
        q: whitespace-separated keywords, all of which must match

    Returns:
        JSON: {"sessions": [...], "active_id": str, "save_status": str}
    """
    svc = get_services()
    query = request.args.get("q", "")

    def _list():
        return {
            "sessions": [_session_payload(s, full=False) for s in svc.store.search(query)],
            "active_id": svc.store.active_id,
            "save_status": svc.autosave.status.value,
        }

    return jsonify(svc.runtime.call(_list))


@bp.post("/sessions")
def create_session():
    svc = get_services()
    data = request.get_json(silent=True) or {}
    try:
        mode = _parse_mode(data.get("mode"))
    except ValueError as e:
        return _json_error(str(e))

    def _create():
        kwargs = {"title": data.get("title") or ""}
        if mode is not None:
            kwargs["mode"] = mode
        session_id = svc.store.create(**kwargs)
        return _session_payload(svc.store.get(session_id))

    try:
        payload = svc.runtime.call(_create)
    except ValidationError as e:
        return _invalid_fields(e)
    return jsonify(payload), 201


@bp.get("/sessions/<session_id>")
def get_session(session_id: str):
    svc = get_services()
    session = svc.runtime.call(svc.store.get, session_id)
    if session is None:
        return _json_error("Session not found", 404)
    return jsonify(_session_payload(session))


@bp.patch("/sessions/<session_id>")
def update_session(session_id: str):
    """
    Partially update a session.

    Accepts JSON with any of: title, content, mode. Content is stored without
    search highlight markup.
    """
    svc = get_services()
    data = request.get_json(silent=True)
    if not isinstance(data, dict) or not data:
        return _json_error("Request body must be a non-empty JSON object")

    unknown = set(data) - EDITABLE_FIELDS
    if unknown:
        return _json_error(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

    fields = dict(data)
    try:
        if "mode" in fields:
            fields["mode"] = _parse_mode(fields["mode"])
    except ValueError as e:
        return _json_error(str(e))
    if "title" in fields:
        fields["title"] = fields["title"] or ""
    if "content" in fields:
        fields["content"] = fields["content"] or ""

    def _update():
        if not svc.store.update(session_id, **fields):
            return None
        return _session_payload(svc.store.get(session_id))

    try:
        payload = svc.runtime.call(_update)
    except ValidationError as e:
        return _invalid_fields(e)
    except ValueError as e:
        return _json_error(str(e))
    if payload is None:
        return _json_error("Session not found", 404)
    return jsonify(payload)


@bp.delete("/sessions/<session_id>")
def delete_session(session_id: str):
    svc = get_services()

    def _delete():
        if not svc.store.delete(session_id):
            return None
        return {"deleted": session_id, "active_id": svc.store.active_id}

    payload = svc.runtime.call(_delete)
    if payload is None:
        return _json_error("Session not found", 404)
    return jsonify(payload)


@bp.post("/sessions/<session_id>/duplicate")
def duplicate_session(session_id: str):
    svc = get_services()

    def _duplicate():
        clone_id = svc.store.duplicate(session_id)
        return _session_payload(svc.store.get(clone_id)) if clone_id else None

    payload = svc.runtime.call(_duplicate)
    if payload is None:
        return _json_error("Session not found", 404)
    return jsonify(payload), 201


@bp.post("/sessions/<session_id>/activate")
def activate_session(session_id: str):
    svc = get_services()
    if not svc.runtime.call(svc.store.set_active, session_id):
        return _json_error("Session not found", 404)
    return jsonify({"active_id": session_id})


@bp.post("/sessions/<session_id>/reset")
def reset_session_result(session_id: str):
    svc = get_services()
    if not svc.runtime.call(svc.store.reset_result, session_id):
        return _json_error("Session not found", 404)
    return jsonify(_session_payload(svc.runtime.call(svc.store.get, session_id)))


@bp.post("/sessions/<session_id>/dismiss-error")
def dismiss_session_error(session_id: str):
    svc = get_services()
    if not svc.runtime.call(svc.store.dismiss_error, session_id):
        return _json_error("Session not found", 404)
    return jsonify({"id": session_id, "error": None})


@bp.get("/sessions/<session_id>/highlighted")
def highlighted_content(session_id: str):
    """
    Session content with search-highlight markup for display only.

    Query params:
        q: highlight query (ignored when shorter than the minimum length)
    """
    svc = get_services()
    session = svc.runtime.call(svc.store.get, session_id)
    if session is None:
        return _json_error("Session not found", 404)
    return jsonify({"id": session_id, "content": apply_highlight(session.content, request.args.get("q", ""))})


# ============================================================================
# ATTACHMENT ENDPOINTS
# ============================================================================


@bp.post("/sessions/<session_id>/attachments")
def upload_attachments(session_id: str):
    """Attach one or more files (multipart field ``files``) to a session."""
    svc = get_services()
    uploads = request.files.getlist("files") or request.files.getlist("file")
    if not uploads:
        return _json_error("No files provided")

    files = [
        (f.filename or "attachment", f.mimetype or "application/octet-stream", f.read())
        for f in uploads
    ]
    if svc.runtime.call(svc.store.get, session_id) is None:
        return _json_error("Session not found", 404)

    added = svc.runtime.call(svc.store.add_attachments, session_id, files)
    return jsonify({"attachments": [_attachment_payload(a) for a in added]}), 201


@bp.delete("/sessions/<session_id>/attachments/<int:index>")
def remove_attachment(session_id: str, index: int):
    svc = get_services()
    if not svc.runtime.call(svc.store.remove_attachment, session_id, index):
        return _json_error("Attachment not found", 404)
    return jsonify({"removed": index})


@bp.get("/attachments/<path:handle>")
def serve_attachment(handle: str):
    """Serve an attachment payload by its display handle."""
    svc = get_services()
    resolved = svc.runtime.call(svc.attachments.resolve, handle)
    if resolved is None:
        return _json_error("Attachment handle not found", 404)
    data, mime_type = resolved
    return Response(data, mimetype=mime_type)


# ============================================================================
# GENERATION ENDPOINTS
# ============================================================================


@bp.post("/sessions/<session_id>/generate")
def generate_note(session_id: str):
    """
    Start note generation for a session.

    Generation runs in the background; poll GET /sessions/<id> for the status.

    Returns:
        202 with {"id": str, "status": "processing"}
        409 if a generation is already in flight for the session
    """
    svc = get_services()

    def _check():
        session = svc.store.get(session_id)
        if session is None:
            return None
        return svc.orchestrator.is_generating(session_id) or session.status.value == "processing"

    busy = svc.runtime.call(_check)
    if busy is None:
        return _json_error("Session not found", 404)
    if busy:
        return _json_error("Generation already in progress", 409)

    svc.runtime.submit(svc.orchestrator.generate(session_id))
    return jsonify({"id": session_id, "status": "processing"}), 202


@bp.post("/sessions/<session_id>/chat")
def send_chat_message(session_id: str):
    svc = get_services()
    data = request.get_json(silent=True) or {}
    message = data.get("message")
    if not message or not str(message).strip():
        return _json_error("Message cannot be empty")

    reply = svc.runtime.submit(svc.orchestrator.send_chat_message(session_id, str(message))).result()
    if reply is None:
        return _json_error("Session not found", 404)
    return jsonify(reply.model_dump(mode="json"))


@bp.delete("/sessions/<session_id>/chat")
def clear_chat(session_id: str):
    svc = get_services()
    if not svc.runtime.call(svc.orchestrator.clear_conversation, session_id):
        return _json_error("Session not found", 404)
    return jsonify({"id": session_id, "conversation_history": []})


# ============================================================================
# WEEKLY SUMMARY + PERSISTENCE ENDPOINTS
# ============================================================================


@bp.post("/weekly-summary")
def weekly_summary():
    """
    Summarize this work week's notes into a new session.

    Returns:
        JSON outcome: {"status": "nothing_to_summarize" | "generated" | "failed",
                       "session_id", "source_count", "error"}
    """
    svc = get_services()
    outcome = svc.runtime.submit(svc.weekly.summarize()).result()
    status = 500 if outcome.status == "failed" else 200
    return jsonify(outcome.model_dump()), status


@bp.post("/save")
def save_now():
    svc = get_services()
    ok = svc.runtime.submit(svc.autosave.save_now()).result()
    return jsonify({"saved": ok, "save_status": svc.autosave.status.value}), 200 if ok else 500


@bp.get("/health")
def health():
    svc = get_services()
    return jsonify({"status": "ok", "running": svc.runtime.running})
