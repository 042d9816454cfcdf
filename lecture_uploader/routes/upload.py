"""Upload API routes for lecture_uploader"""

import json
from collections.abc import Generator
from typing import Any

from flask import Blueprint, Response, current_app, jsonify, request

from lecture_uploader import get_services

upload_bp = Blueprint("upload", __name__)

# Seconds between SSE keep-alive comments while no progress arrives
KEEPALIVE_SECONDS = 15.0


def _json_body() -> dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _bad_request(message: str) -> tuple[Response, int]:
    return jsonify({"error": message, "code": "bad_request"}), 400


@upload_bp.route("/start", methods=["POST"])
def start_upload() -> tuple[Response, int]:
    """Start uploading a local file.

    Request body:
        path: Local file path
        metadata: Optional remote metadata (name, mime_type, folder_id)
        label: Optional display label

    Returns:
        JSON with operation_id (202 Accepted); bytes move in the background
    """
    data = _json_body()
    path = data.get("path")
    if not path:
        return _bad_request("No file path provided")

    engine = get_services(current_app).engine
    operation_id = engine.start(path, data.get("metadata") or {}, label=data.get("label", ""))
    return jsonify(
        {"operation_id": operation_id, "resource_id": engine.resource_id(path)}
    ), 202


@upload_bp.route("/pause", methods=["POST"])
def pause_upload() -> tuple[Response, int]:
    """Pause the running upload of a resource."""
    resource_id = _json_body().get("resource_id")
    if not resource_id:
        return _bad_request("No resource_id provided")

    operation_id = get_services(current_app).engine.pause(resource_id)
    return jsonify({"success": True, "operation_id": operation_id}), 200


@upload_bp.route("/resume", methods=["POST"])
def resume_upload() -> tuple[Response, int]:
    """Resume an interrupted upload from the remote's confirmed offset."""
    resource_id = _json_body().get("resource_id")
    if not resource_id:
        return _bad_request("No resource_id provided")

    operation_id = get_services(current_app).engine.resume(resource_id)
    return jsonify({"operation_id": operation_id, "resource_id": resource_id}), 202


@upload_bp.route("/session", methods=["GET"])
def get_session() -> tuple[Response, int]:
    """Get the stored session for a resource."""
    resource_id = request.args.get("resource_id")
    if not resource_id:
        return _bad_request("No resource_id provided")

    session = get_services(current_app).engine.get_session(resource_id)
    if session is None:
        return jsonify({"error": "No interrupted upload found", "code": "not_found"}), 404
    return jsonify(session.to_dict()), 200


@upload_bp.route("/interrupted", methods=["GET"])
def list_interrupted() -> tuple[Response, int]:
    """List stored sessions that can be resumed."""
    sessions = get_services(current_app).engine.interrupted_sessions()
    return jsonify(
        {"sessions": [dict(s.to_dict(), percent=s.percent) for s in sessions]}
    ), 200


@upload_bp.route("/active", methods=["GET"])
def list_active() -> tuple[Response, int]:
    """List uploads currently transferring (for state restoration on page refresh)."""
    uploads = get_services(current_app).engine.active_uploads()
    return jsonify({"uploads": [p.to_dict() for p in uploads]}), 200


@upload_bp.route("/status/<operation_id>", methods=["GET"])
def get_status(operation_id: str) -> tuple[Response, int]:
    """Get the latest progress of an operation (non-streaming)."""
    progress = get_services(current_app).engine.get_progress(operation_id)
    if progress is None:
        return jsonify({"error": "Operation not found", "code": "not_found"}), 404
    return jsonify(progress.to_dict()), 200


@upload_bp.route("/progress/<operation_id>", methods=["GET"])
def stream_progress(operation_id: str) -> Response | tuple[Response, int]:
    """Stream progress updates for an operation via Server-Sent Events.

    The stream ends after the terminal event (complete, error or paused).
    """
    engine = get_services(current_app).engine
    if engine.get_progress(operation_id) is None:
        return jsonify({"error": "Operation not found", "code": "not_found"}), 404

    def generate() -> Generator[str, None, None]:
        subscription = engine.subscribe(operation_id)
        try:
            while True:
                progress = subscription.get(timeout=KEEPALIVE_SECONDS)
                if progress is None:
                    if subscription.closed:
                        return
                    yield ": keepalive\n\n"
                    continue

                yield f"data: {json.dumps(progress.to_dict())}\n\n"
                if progress.status.is_terminal:
                    return
        finally:
            subscription.close()

    return Response(
        generate(),
        mimetype="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
