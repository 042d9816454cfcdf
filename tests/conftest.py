"""Pytest configuration and fixtures for the lecture_uploader tests."""

from collections.abc import Generator
from pathlib import Path

import pytest
from fakes import FakeRemote, FakeTools
from flask import Flask
from flask.testing import FlaskClient

from lecture_uploader import Services, create_app
from lecture_uploader.services.analysis_pipeline import AnalysisPipeline
from lecture_uploader.services.cache_service import FingerprintCache
from lecture_uploader.services.concurrency import ConcurrencyLimiter
from lecture_uploader.services.log_service import LogService
from lecture_uploader.services.session_store import JsonSessionStore
from lecture_uploader.services.upload_engine import UploadEngine


@pytest.fixture
def log_service(tmp_path: Path) -> LogService:
    """Create a log service writing under a temporary directory."""
    return LogService(log_dir=tmp_path / "logs")


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def session_store(tmp_path: Path) -> JsonSessionStore:
    return JsonSessionStore(tmp_path / "data" / "sessions.json")


@pytest.fixture
def engine(
    remote: FakeRemote, session_store: JsonSessionStore, log_service: LogService
) -> Generator[UploadEngine, None, None]:
    """Upload engine that persists and publishes on every chunk."""
    engine = UploadEngine(
        remote,
        session_store,
        progress_interval=0.0,
        retention_seconds=60.0,
        interrupted_retention_seconds=60.0,
        retry_delay=0.01,
        log_service=log_service,
    )
    yield engine
    remote.release.set()
    engine.shutdown(timeout=5)


@pytest.fixture
def tools() -> FakeTools:
    return FakeTools(
        start_texts={0: "2024-03-05 14:22:10"},
        end_text="2024-03-05 14:35:02",
    )


@pytest.fixture
def cache(tmp_path: Path) -> Generator[FingerprintCache, None, None]:
    cache = FingerprintCache(tmp_path / "data" / "analysis_cache.db")
    yield cache
    cache.close()


@pytest.fixture
def pipeline(
    cache: FingerprintCache, tools: FakeTools, log_service: LogService, tmp_path: Path
) -> AnalysisPipeline:
    return AnalysisPipeline(
        cache,
        tools,  # type: ignore[arg-type]
        ConcurrencyLimiter(2),
        log_service=log_service,
        flags_path=tmp_path / "data" / "manual-flags.json",
    )


@pytest.fixture
def media_file(tmp_path: Path) -> Path:
    """Create a small file standing in for a lecture recording."""
    path = tmp_path / "media" / "lecture_01.mp4"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"\x00\x00\x00\x18ftypmp42" + bytes(range(256)) * 4)
    return path


@pytest.fixture
def sparse_file(tmp_path: Path) -> Path:
    """Create a 25 MiB sparse file (26,214,400 bytes, five 5 MiB chunks)."""
    path = tmp_path / "media" / "lecture_full.mp4"
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        f.truncate(26_214_400)
    return path


@pytest.fixture
def app(
    engine: UploadEngine, pipeline: AnalysisPipeline, log_service: LogService
) -> Flask:
    """Create application for testing."""
    app = create_app(Services(engine=engine, pipeline=pipeline, log=log_service))
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app: Flask) -> FlaskClient:
    """Create test client."""
    return app.test_client()
