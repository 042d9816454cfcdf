"""Client for the remote resumable-upload protocol.

The protocol (Google Drive v3 resumable uploads):

1. ``POST`` the file metadata to the upload endpoint; the ``Location`` header
   of the reply is the resumable session handle.
2. ``PUT`` byte ranges to the handle with ``Content-Range: bytes a-b/total``.
   ``308`` means "incomplete" and carries ``Range: bytes=0-N`` with the last
   byte the remote holds; ``200``/``201`` means the object is complete.
3. A zero-length ``PUT`` with ``Content-Range: bytes */total`` asks for the
   received offset without sending data.
4. ``404``/``410`` mean the session handle has expired.
"""

import json
import logging
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import requests

from lecture_uploader.services.concurrency import CancellationToken, OperationCancelled
from lecture_uploader.services.errors import (
    NotConfiguredError,
    SessionExpiredError,
    TransientNetworkError,
)

logger = logging.getLogger(__name__)

DRIVE_UPLOAD_URL = "https://www.googleapis.com/upload/drive/v3/files?uploadType=resumable"

# Chunk sizes must be a multiple of this, except for the final chunk
CHUNK_GRANULARITY = 256 * 1024
DEFAULT_CHUNK_SIZE = 20 * CHUNK_GRANULARITY  # 5 MiB

ENV_ACCESS_TOKEN = "LECTURE_UPLOADER_ACCESS_TOKEN"

_RANGE_HEADER = re.compile(r"bytes=0-(\d+)")


def format_content_range(start: int, end: int, total: int) -> str:
    """Content-Range for the half-open byte range ``[start, end)``.

    An empty range carries no bytes and becomes the status form ``bytes */total``.
    """
    if end <= start:
        return f"bytes */{total}"
    return f"bytes {start}-{end - 1}/{total}"


def parse_range_header(value: str | None) -> int:
    """Number of bytes the remote confirms from a ``Range: bytes=0-N`` header.

    A missing header on an incomplete reply means nothing was persisted.
    """
    if not value:
        return 0
    match = _RANGE_HEADER.search(value)
    if not match:
        return 0
    return int(match.group(1)) + 1


@dataclass
class ChunkResult:
    """The remote's answer to a chunk or a status probe."""

    complete: bool
    offset: int
    metadata: dict[str, Any] = field(default_factory=dict)


class RemoteStorageClient(ABC):
    """What the upload engine needs from a resumable remote."""

    recommended_chunk_size: int = DEFAULT_CHUNK_SIZE

    @abstractmethod
    def is_configured(self) -> bool:
        """Whether credentials are available."""

    @abstractmethod
    def initiate(self, metadata: dict[str, Any], total_bytes: int) -> str:
        """Open a resumable session and return its handle."""

    @abstractmethod
    def put_chunk(
        self,
        handle: str,
        data: bytes,
        start: int,
        total_bytes: int,
        token: CancellationToken | None = None,
    ) -> ChunkResult:
        """Send ``data`` as the bytes starting at ``start``.

        Raises:
            SessionExpiredError: The handle is no longer valid
            TransientNetworkError: Timeout, abort, or unexpected reply
        """

    @abstractmethod
    def query_offset(self, handle: str, total_bytes: int) -> ChunkResult:
        """Ask the remote how many bytes it holds for ``handle``."""


class TokenFileCredentials:
    """Bearer token read from the environment or a JSON token file.

    The file is re-read on every request so an externally refreshed token is
    picked up without a restart.
    """

    def __init__(self, token_file: Path | str | None = None) -> None:
        self.token_file = Path(token_file) if token_file else None

    def access_token(self) -> str | None:
        env_token = os.environ.get(ENV_ACCESS_TOKEN)
        if env_token:
            return env_token
        if self.token_file is None or not self.token_file.exists():
            return None
        try:
            with open(self.token_file, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError):
            logger.warning("Unreadable token file: %s", self.token_file, exc_info=True)
            return None
        token = data.get("access_token") if isinstance(data, dict) else None
        return str(token) if token else None


class _CancellableBody:
    """File-like request body that stops mid-send once the token is cancelled."""

    BLOCK_SIZE = 64 * 1024

    def __init__(self, data: bytes, token: CancellationToken | None) -> None:
        self._view = memoryview(data)
        self._pos = 0
        self._token = token

    def __len__(self) -> int:
        return len(self._view)

    def read(self, size: int = -1) -> bytes:
        if self._token is not None:
            self._token.raise_if_cancelled()
        if size is None or size < 0:
            size = self.BLOCK_SIZE
        block = self._view[self._pos : self._pos + min(size, self.BLOCK_SIZE)]
        self._pos += len(block)
        return block.tobytes()


class ResumableUploadClient(RemoteStorageClient):
    """requests-based client for Drive resumable uploads."""

    def __init__(
        self,
        credentials: TokenFileCredentials,
        session: requests.Session | None = None,
        timeout: float = 10.0,
        connect_timeout: float = 10.0,
        upload_url: str = DRIVE_UPLOAD_URL,
        folder_id: str = "",
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        if chunk_size % CHUNK_GRANULARITY:
            raise ValueError(f"Chunk size must be a multiple of {CHUNK_GRANULARITY} bytes")
        self.credentials = credentials
        self.session = session or requests.Session()
        self.timeout = timeout
        self.connect_timeout = connect_timeout
        self.upload_url = upload_url
        self.folder_id = folder_id
        self.recommended_chunk_size = chunk_size

    def is_configured(self) -> bool:
        return bool(self.credentials.access_token())

    def _auth_headers(self) -> dict[str, str]:
        token = self.credentials.access_token()
        if not token:
            raise NotConfiguredError("Remote storage is not configured: no access token")
        return {"Authorization": f"Bearer {token}"}

    def initiate(self, metadata: dict[str, Any], total_bytes: int) -> str:
        body = {
            "name": metadata["name"],
            "mimeType": metadata.get("mime_type", "video/mp4"),
        }
        folder_id = metadata.get("folder_id") or self.folder_id
        if folder_id:
            body["parents"] = [folder_id]

        headers = self._auth_headers()
        headers["X-Upload-Content-Length"] = str(total_bytes)
        headers["X-Upload-Content-Type"] = body["mimeType"]

        try:
            response = self.session.post(
                self.upload_url,
                json=body,
                headers=headers,
                timeout=(self.connect_timeout, self.timeout),
            )
        except requests.RequestException as e:
            raise TransientNetworkError(f"Failed to open upload session: {e}") from e

        if response.status_code in (401, 403):
            raise NotConfiguredError(
                f"Remote storage rejected the credentials ({response.status_code})"
            )
        handle = response.headers.get("Location")
        if response.status_code != 200 or not handle:
            raise TransientNetworkError(
                f"Failed to get upload URL (status {response.status_code})"
            )
        return handle

    def put_chunk(
        self,
        handle: str,
        data: bytes,
        start: int,
        total_bytes: int,
        token: CancellationToken | None = None,
    ) -> ChunkResult:
        end = start + len(data)
        headers = self._auth_headers()
        headers["Content-Range"] = format_content_range(start, end, total_bytes)

        try:
            response = self.session.put(
                handle,
                data=_CancellableBody(data, token),
                headers=headers,
                timeout=(self.connect_timeout, self.timeout),
            )
        except OperationCancelled as e:
            raise TransientNetworkError(f"Chunk request aborted ({e})") from e
        except requests.Timeout as e:
            raise TransientNetworkError(f"Chunk request timed out after {self.timeout}s") from e
        except requests.RequestException as e:
            if token is not None and token.cancelled:
                raise TransientNetworkError(f"Chunk request aborted ({token.reason})") from e
            raise TransientNetworkError(f"Chunk request failed: {e}") from e

        return self._interpret(response)

    def query_offset(self, handle: str, total_bytes: int) -> ChunkResult:
        headers = self._auth_headers()
        headers["Content-Length"] = "0"
        headers["Content-Range"] = format_content_range(0, 0, total_bytes)

        try:
            response = self.session.put(
                handle,
                data=b"",
                headers=headers,
                timeout=(self.connect_timeout, self.timeout),
            )
        except requests.RequestException as e:
            raise TransientNetworkError(f"Upload status query failed: {e}") from e

        return self._interpret(response)

    @staticmethod
    def _interpret(response: requests.Response) -> ChunkResult:
        status = response.status_code
        if status in (200, 201):
            try:
                metadata = response.json()
            except ValueError:
                metadata = {}
            return ChunkResult(complete=True, offset=-1, metadata=metadata)
        if status == 308:
            return ChunkResult(complete=False, offset=parse_range_header(response.headers.get("Range")))
        if status in (404, 410):
            detail = ""
            try:
                detail = response.json().get("error", {}).get("message", "")
            except (ValueError, AttributeError):
                detail = response.reason or ""
            message = f"Upload session expired ({status})"
            raise SessionExpiredError(f"{message}: {detail}" if detail else message)
        raise TransientNetworkError(f"Unexpected response from remote storage ({status})")
