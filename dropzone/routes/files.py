"""File lifecycle API routes for dropzone"""

import json
import threading
import time
from collections import deque
from collections.abc import Generator
from typing import Any

from flask import Blueprint, Response, current_app, jsonify, request

from dropzone.services.event_loop import BackgroundLoop
from dropzone.services.lifecycle_manager import FileLifecycleManager
from dropzone.services.log_service import get_log_service
from dropzone.services.raw_file import MemoryFile, guess_mime_type

files_bp = Blueprint("files", __name__)

# Store for SSE clients
_sse_queues: list[deque[dict[str, Any]]] = []
_sse_lock = threading.Lock()


def send_sse_event(data: dict[str, Any]) -> None:
    """Send an SSE event to every connected client."""
    with _sse_lock:
        for q in _sse_queues:
            q.append(data)


def _manager() -> FileLifecycleManager:
    return current_app.config["FILE_MANAGER"]


def _loop() -> BackgroundLoop:
    return current_app.config["EVENT_LOOP"]


def _files_payload() -> list[dict[str, Any]]:
    manager = _manager()
    return [f.to_dict() for f in _loop().call(lambda: manager.files)]


def _file_response(file_id: int) -> tuple[Response, int]:
    manager = _manager()
    snapshot = _loop().call(manager.get, file_id)
    if snapshot is None:
        return jsonify({"error": "File not found"}), 404
    return jsonify({"success": True, "file": snapshot.to_dict()}), 200


@files_bp.route("", methods=["GET"])
def list_files() -> tuple[Response, int]:
    """List retained files with the active options."""
    manager = _manager()
    return jsonify(
        {
            "options": manager.options.to_dict(),
            "is_upload": manager.is_upload,
            "files": _files_payload(),
        }
    ), 200


@files_bp.route("", methods=["POST"])
def accept_files() -> tuple[Response, int]:
    """Accept files sent as multipart/form-data under the ``files`` field.

    Files go through their pipelines in the background; progress is pushed
    on /api/files/events.

    Returns:
        JSON response with the retained files (202 Accepted)
    """
    uploaded = [f for f in request.files.getlist("files") if f.filename]
    if not uploaded:
        return jsonify({"error": "No files provided"}), 400

    raw_files = [
        MemoryFile(
            name=f.filename,
            content=f.read(),
            type=f.mimetype or guess_mime_type(f.filename),
        )
        for f in uploaded
    ]

    manager = _manager()
    tasks = _loop().call(manager.accept, raw_files)

    return jsonify(
        {
            "received": len(raw_files),
            "processing": len(tasks),
            "files": _files_payload(),
        }
    ), 202


@files_bp.route("/<int:file_id>", methods=["GET"])
def get_file(file_id: int) -> tuple[Response, int]:
    """Get one file's current state."""
    return _file_response(file_id)


@files_bp.route("/<int:file_id>/history", methods=["GET"])
def get_file_history(file_id: int) -> tuple[Response, int]:
    """Get the logged lifecycle events of one retained file, oldest first."""
    manager = _manager()
    snapshot = _loop().call(manager.get, file_id)
    if snapshot is None:
        return jsonify({"error": "File not found"}), 404

    events = get_log_service().file_history(file_id, since=snapshot.meta["uploaded_date"])
    return jsonify({"file_id": file_id, "events": events}), 200


@files_bp.route("/<int:file_id>/cancel", methods=["POST"])
def cancel_file(file_id: int) -> tuple[Response, int]:
    """Abort a file's upload."""
    manager = _manager()
    if not manager.options.can_cancel:
        return jsonify({"error": "Cancelling is disabled"}), 403
    if _loop().call(manager.get, file_id) is None:
        return jsonify({"error": "File not found"}), 404

    cancelled = _loop().call(manager.cancel, file_id)
    response, _ = _file_response(file_id)
    return jsonify({**response.get_json(), "cancelled": cancelled}), 200


@files_bp.route("/<int:file_id>/restart", methods=["POST"])
def restart_file(file_id: int) -> tuple[Response, int]:
    """Start a fresh upload for a file."""
    manager = _manager()
    if not manager.options.can_restart:
        return jsonify({"error": "Restarting is disabled"}), 403
    if _loop().call(manager.get, file_id) is None:
        return jsonify({"error": "File not found"}), 404

    if not _loop().call(manager.restart, file_id):
        return jsonify({"error": "Uploads are not configured"}), 409
    return _file_response(file_id)


@files_bp.route("/<int:file_id>/upload", methods=["POST"])
def trigger_file_upload(file_id: int) -> tuple[Response, int]:
    """Start a deferred upload."""
    manager = _manager()
    if _loop().call(manager.get, file_id) is None:
        return jsonify({"error": "File not found"}), 404

    if not _loop().call(manager.trigger_upload, file_id):
        return jsonify({"error": "Upload is not awaiting a trigger"}), 409
    return _file_response(file_id)


@files_bp.route("/<int:file_id>", methods=["DELETE"])
def remove_file(file_id: int) -> tuple[Response, int]:
    """Remove a file from the list."""
    manager = _manager()
    if not manager.options.can_remove:
        return jsonify({"error": "Removing is disabled"}), 403

    if not _loop().call(manager.remove, file_id):
        return jsonify({"error": "File not found"}), 404
    return jsonify({"success": True, "file_id": file_id}), 200


@files_bp.route("/submit", methods=["POST"])
def submit_files() -> tuple[Response, int]:
    """Hand the retained files to the submit hook."""
    manager = _manager()
    submitted = _loop().call(manager.submit)
    return jsonify(
        {"success": True, "submitted": len(submitted), "files": [f.to_dict() for f in submitted]}
    ), 200


@files_bp.route("/events", methods=["GET"])
def stream_events() -> Response:
    """Stream refresh events via Server-Sent Events.

    Returns:
        SSE stream; the first event carries the current file list
    """
    initial = {"type": "refresh", "files": _files_payload()}

    def generate() -> Generator[str, None, None]:
        queue: deque[dict[str, Any]] = deque()
        with _sse_lock:
            _sse_queues.append(queue)

        try:
            yield f"data: {json.dumps(initial)}\n\n"

            while True:
                while queue:
                    data = queue.popleft()
                    yield f"data: {json.dumps(data, default=str)}\n\n"

                # Small delay to prevent busy waiting
                time.sleep(0.1)
        finally:
            with _sse_lock:
                if queue in _sse_queues:
                    _sse_queues.remove(queue)

    return Response(
        generate(),
        mimetype="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
