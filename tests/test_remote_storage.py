"""Tests for the resumable upload client, with requests mocked."""

import json
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import requests

from lecture_uploader.services.concurrency import CancellationToken, OperationCancelled
from lecture_uploader.services.errors import (
    NotConfiguredError,
    SessionExpiredError,
    TransientNetworkError,
)
from lecture_uploader.services.remote_storage import (
    CHUNK_GRANULARITY,
    DRIVE_UPLOAD_URL,
    ENV_ACCESS_TOKEN,
    ResumableUploadClient,
    TokenFileCredentials,
    _CancellableBody,
    format_content_range,
    parse_range_header,
)

HANDLE = "https://www.googleapis.com/upload/drive/v3/files?uploadType=resumable&upload_id=xyz"


def _response(status: int, headers: dict | None = None, body: dict | None = None) -> MagicMock:
    response = MagicMock(spec=requests.Response)
    response.status_code = status
    response.headers = headers or {}
    response.reason = "reason"
    if body is None:
        response.json.side_effect = ValueError("no json")
    else:
        response.json.return_value = body
    return response


@pytest.fixture
def token_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.delenv(ENV_ACCESS_TOKEN, raising=False)
    path = tmp_path / "token.json"
    path.write_text(json.dumps({"access_token": "ya29.test-token"}))
    return path


@pytest.fixture
def http() -> MagicMock:
    return MagicMock(spec=requests.Session)


@pytest.fixture
def client(token_file: Path, http: MagicMock) -> ResumableUploadClient:
    return ResumableUploadClient(TokenFileCredentials(token_file), session=http, folder_id="folder-1")


class TestHeaders:
    """Tests for Content-Range and Range helpers."""

    def test_content_range(self) -> None:
        assert format_content_range(0, 5_242_880, 26_214_400) == "bytes 0-5242879/26214400"
        assert (
            format_content_range(20_971_520, 26_214_400, 26_214_400)
            == "bytes 20971520-26214399/26214400"
        )

    def test_empty_range_is_status_form(self) -> None:
        assert format_content_range(0, 0, 26_214_400) == "bytes */26214400"

    def test_parse_range(self) -> None:
        assert parse_range_header("bytes=0-10485759") == 10_485_760
        assert parse_range_header(None) == 0
        assert parse_range_header("garbage") == 0


class TestCredentials:
    """Tests for token lookup."""

    def test_reads_token_file(self, token_file: Path) -> None:
        assert TokenFileCredentials(token_file).access_token() == "ya29.test-token"

    def test_environment_wins(self, token_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv(ENV_ACCESS_TOKEN, "from-env")
        assert TokenFileCredentials(token_file).access_token() == "from-env"

    def test_missing_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv(ENV_ACCESS_TOKEN, raising=False)
        assert TokenFileCredentials(tmp_path / "none.json").access_token() is None

    def test_corrupt_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv(ENV_ACCESS_TOKEN, raising=False)
        path = tmp_path / "token.json"
        path.write_text("{broken")
        assert TokenFileCredentials(path).access_token() is None


class TestCancellableBody:
    """Tests for the token-aware request body."""

    def test_length_and_blocks(self) -> None:
        body = _CancellableBody(b"x" * (_CancellableBody.BLOCK_SIZE + 10), None)

        assert len(body) == _CancellableBody.BLOCK_SIZE + 10
        assert len(body.read(10**9)) == _CancellableBody.BLOCK_SIZE
        assert body.read(8192) == b"x" * 10
        assert body.read(8192) == b""

    def test_cancelled_token_stops_reads(self) -> None:
        token = CancellationToken()
        body = _CancellableBody(b"data", token)
        token.cancel("paused")

        with pytest.raises(OperationCancelled):
            body.read(2)


class TestResumableUploadClient:
    """Tests for the protocol calls."""

    def test_chunk_size_must_be_aligned(self, token_file: Path) -> None:
        with pytest.raises(ValueError):
            ResumableUploadClient(TokenFileCredentials(token_file), chunk_size=CHUNK_GRANULARITY + 1)

    def test_not_configured_without_token(
        self, tmp_path: Path, http: MagicMock, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.delenv(ENV_ACCESS_TOKEN, raising=False)
        client = ResumableUploadClient(TokenFileCredentials(tmp_path / "none.json"), session=http)

        assert client.is_configured() is False
        with pytest.raises(NotConfiguredError):
            client.initiate({"name": "a.mp4"}, 10)
        http.post.assert_not_called()

    def test_initiate_returns_location(self, client: ResumableUploadClient, http: MagicMock) -> None:
        http.post.return_value = _response(200, {"Location": HANDLE})

        assert client.initiate({"name": "lecture_01.mp4"}, 26_214_400) == HANDLE

        args, kwargs = http.post.call_args
        assert args[0] == DRIVE_UPLOAD_URL
        assert kwargs["json"] == {
            "name": "lecture_01.mp4",
            "mimeType": "video/mp4",
            "parents": ["folder-1"],
        }
        assert kwargs["headers"]["Authorization"] == "Bearer ya29.test-token"
        assert kwargs["headers"]["X-Upload-Content-Length"] == "26214400"

    def test_initiate_rejected_credentials(
        self, client: ResumableUploadClient, http: MagicMock
    ) -> None:
        http.post.return_value = _response(401)
        with pytest.raises(NotConfiguredError):
            client.initiate({"name": "a.mp4"}, 10)

    def test_initiate_without_location(self, client: ResumableUploadClient, http: MagicMock) -> None:
        http.post.return_value = _response(200)
        with pytest.raises(TransientNetworkError):
            client.initiate({"name": "a.mp4"}, 10)

    def test_put_chunk_incomplete(self, client: ResumableUploadClient, http: MagicMock) -> None:
        """Test that a 308 reply reports the remote's confirmed offset."""
        http.put.return_value = _response(308, {"Range": "bytes=0-5242879"})

        result = client.put_chunk(HANDLE, b"\x00" * 16, 5_242_864, 26_214_400)

        assert result.complete is False
        assert result.offset == 5_242_880
        headers = http.put.call_args.kwargs["headers"]
        assert headers["Content-Range"] == "bytes 5242864-5242879/26214400"
        assert len(http.put.call_args.kwargs["data"]) == 16

    def test_put_chunk_without_range_means_zero(
        self, client: ResumableUploadClient, http: MagicMock
    ) -> None:
        http.put.return_value = _response(308)
        assert client.put_chunk(HANDLE, b"abc", 0, 10).offset == 0

    @pytest.mark.parametrize("status", [200, 201])
    def test_put_chunk_complete(
        self, client: ResumableUploadClient, http: MagicMock, status: int
    ) -> None:
        http.put.return_value = _response(status, body={"id": "file-1", "name": "a.mp4"})

        result = client.put_chunk(HANDLE, b"abc", 7, 10)

        assert result.complete is True
        assert result.metadata == {"id": "file-1", "name": "a.mp4"}

    @pytest.mark.parametrize("status", [404, 410])
    def test_put_chunk_expired(
        self, client: ResumableUploadClient, http: MagicMock, status: int
    ) -> None:
        http.put.return_value = _response(status)
        with pytest.raises(SessionExpiredError):
            client.put_chunk(HANDLE, b"abc", 0, 10)

    def test_put_chunk_server_error_is_transient(
        self, client: ResumableUploadClient, http: MagicMock
    ) -> None:
        http.put.return_value = _response(503)
        with pytest.raises(TransientNetworkError):
            client.put_chunk(HANDLE, b"abc", 0, 10)

    def test_put_chunk_timeout(self, client: ResumableUploadClient, http: MagicMock) -> None:
        http.put.side_effect = requests.Timeout("read timed out")
        with pytest.raises(TransientNetworkError, match="timed out"):
            client.put_chunk(HANDLE, b"abc", 0, 10)
        assert http.put.call_args.kwargs["timeout"] == (10.0, 10.0)

    def test_put_chunk_aborted_by_token(
        self, client: ResumableUploadClient, http: MagicMock
    ) -> None:
        """Test that cancelling mid-body aborts the request."""
        token = CancellationToken()

        def send(url, data, headers, timeout):
            data.read(2)
            token.cancel("paused")
            data.read(2)

        http.put.side_effect = send
        with pytest.raises(TransientNetworkError, match="aborted"):
            client.put_chunk(HANDLE, b"abcdef", 0, 10, token)

    def test_query_offset(self, client: ResumableUploadClient, http: MagicMock) -> None:
        """Test the zero-length status probe."""
        http.put.return_value = _response(308, {"Range": "bytes=0-10485759"})

        result = client.query_offset(HANDLE, 26_214_400)

        assert result.offset == 10_485_760
        kwargs = http.put.call_args.kwargs
        assert kwargs["data"] == b""
        assert kwargs["headers"]["Content-Range"] == "bytes */26214400"
        assert kwargs["headers"]["Content-Length"] == "0"

    def test_query_offset_expired(self, client: ResumableUploadClient, http: MagicMock) -> None:
        http.put.return_value = _response(
            404, body={"error": {"message": "Upload session not found"}}
        )
        with pytest.raises(SessionExpiredError, match="Upload session not found"):
            client.query_offset(HANDLE, 26_214_400)

    def test_query_offset_unexpected_status(
        self, client: ResumableUploadClient, http: MagicMock
    ) -> None:
        http.put.return_value = _response(500)
        with pytest.raises(TransientNetworkError):
            client.query_offset(HANDLE, 26_214_400)

    def test_query_offset_connection_error(
        self, client: ResumableUploadClient, http: MagicMock
    ) -> None:
        http.put.side_effect = requests.ConnectionError("connection reset")
        with pytest.raises(TransientNetworkError):
            client.query_offset(HANDLE, 26_214_400)
