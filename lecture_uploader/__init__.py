"""Flask application factory for the lecture uploader."""

import logging
import os
from dataclasses import dataclass

from flask import Flask, Response, jsonify

from lecture_uploader.config import Settings, get_package_version, get_settings
from lecture_uploader.services.analysis_pipeline import MANUAL_FLAGS_FILE, AnalysisPipeline
from lecture_uploader.services.cache_service import FingerprintCache
from lecture_uploader.services.concurrency import ConcurrencyLimiter
from lecture_uploader.services.errors import UploaderError
from lecture_uploader.services.log_service import LogService, get_log_service
from lecture_uploader.services.media_service import MediaTools
from lecture_uploader.services.progress import ProgressBroadcaster
from lecture_uploader.services.remote_storage import ResumableUploadClient, TokenFileCredentials
from lecture_uploader.services.session_store import SqliteSessionStore
from lecture_uploader.services.upload_engine import UploadEngine

logger = logging.getLogger(__name__)

EXTENSION_KEY = "lecture_uploader"

# HTTP status returned for each error code at the web boundary
ERROR_STATUS = {
    "not_found": 404,
    "not_configured": 503,
    "session_expired": 410,
    "transient_network": 503,
    "unparseable_media": 422,
    "upload_in_progress": 409,
}


@dataclass
class Services:
    """The long-lived service instances one application works with."""

    engine: UploadEngine
    pipeline: AnalysisPipeline
    log: LogService


def build_services(settings: Settings | None = None) -> Services:
    """Wire the production services from settings."""
    settings = settings or get_settings()
    data_dir = settings.data_directory
    data_dir.mkdir(parents=True, exist_ok=True)
    log = get_log_service()

    remote = ResumableUploadClient(
        TokenFileCredentials(settings.token_file),
        timeout=settings.chunk_timeout_seconds,
        folder_id=settings.drive_folder_id,
        chunk_size=settings.upload_chunk_size,
    )
    engine = UploadEngine(
        remote,
        SqliteSessionStore(data_dir / "upload_sessions.db"),
        ProgressBroadcaster(),
        progress_interval=settings.progress_interval_seconds,
        log_service=log,
    )
    pipeline = AnalysisPipeline(
        FingerprintCache(data_dir / FingerprintCache.CACHE_FILE, settings.fingerprint_bytes),
        MediaTools(),
        ConcurrencyLimiter(settings.analysis_concurrency),
        log_service=log,
        flags_path=data_dir / MANUAL_FLAGS_FILE,
        year_range=settings.timestamp_year_range,
    )
    return Services(engine=engine, pipeline=pipeline, log=log)


def get_services(app: Flask) -> Services:
    services: Services = app.extensions[EXTENSION_KEY]
    return services


def create_app(services: Services | None = None) -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)
    app.config["SECRET_KEY"] = os.environ.get("SECRET_KEY", "dev-secret-key-change-in-production")

    services = services or build_services()
    app.extensions[EXTENSION_KEY] = services

    @app.errorhandler(UploaderError)
    def handle_uploader_error(error: UploaderError) -> tuple[Response, int]:
        return jsonify(error.to_dict()), ERROR_STATUS.get(error.code, 500)

    # Register blueprints
    from lecture_uploader.routes.analysis import analysis_bp
    from lecture_uploader.routes.logs import logs_bp
    from lecture_uploader.routes.upload import upload_bp

    app.register_blueprint(upload_bp, url_prefix="/api/upload")
    app.register_blueprint(analysis_bp, url_prefix="/api/analysis")
    app.register_blueprint(logs_bp, url_prefix="/api/logs")

    # Log application startup
    try:
        services.log.info(
            "app",
            "app_started",
            f"Application started (v{get_package_version()})",
            {"version": get_package_version()},
        )
    except OSError:
        logger.warning("Failed to write startup event", exc_info=True)

    return app
