"""Media analysis API routes for lecture_uploader"""

import threading
from typing import Any

from flask import Blueprint, Response, current_app, jsonify, request

from lecture_uploader import get_services

analysis_bp = Blueprint("analysis", __name__)


def _json_body() -> dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


@analysis_bp.route("/analyze", methods=["POST"])
def analyze_file() -> tuple[Response, int]:
    """Analyze one media file, reusing a cached result when it is still valid.

    Request body:
        path: Local file path
        force: Re-run the external tools even on a valid cache entry
    """
    data = _json_body()
    path = data.get("path")
    if not path:
        return jsonify({"error": "No file path provided", "code": "bad_request"}), 400

    pipeline = get_services(current_app).pipeline
    result = pipeline.analyze(path, force=bool(data.get("force", False)))
    return jsonify({"path": path, "result": result.to_dict()}), 200


@analysis_bp.route("/sweep", methods=["POST"])
def sweep_files() -> tuple[Response, int]:
    """Analyze a batch of files in the background.

    Returns immediately (202 Accepted); results land in the cache.
    """
    paths = _json_body().get("paths")
    if not isinstance(paths, list) or not paths:
        return jsonify({"error": "No file paths provided", "code": "bad_request"}), 400

    pipeline = get_services(current_app).pipeline
    thread = threading.Thread(target=pipeline.analyze_many, args=(paths,), daemon=True)
    thread.start()

    return jsonify({"status": "analyzing", "total_files": len(paths)}), 202


@analysis_bp.route("/manual-flag", methods=["PUT"])
def set_manual_flag() -> tuple[Response, int]:
    """Mark or unmark a file as already time-compressed."""
    data = _json_body()
    path = data.get("path")
    if not path or "flagged" not in data:
        return jsonify({"error": "path and flagged are required", "code": "bad_request"}), 400

    pipeline = get_services(current_app).pipeline
    pipeline.set_manual_flag(path, bool(data["flagged"]))
    return jsonify({"success": True, "path": path, "flagged": bool(data["flagged"])}), 200


@analysis_bp.route("/limiter", methods=["GET"])
def limiter_status() -> tuple[Response, int]:
    """Current load on the analysis tools."""
    return jsonify(get_services(current_app).pipeline.limiter_status()), 200


@analysis_bp.route("/cache", methods=["GET"])
def cache_stats() -> tuple[Response, int]:
    """Get analysis cache statistics."""
    return jsonify(get_services(current_app).pipeline.cache.get_cache_stats()), 200
