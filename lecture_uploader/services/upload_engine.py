"""Upload engine driving resumable chunked transfers.

One background thread per resource runs the transfer loop. The loop owns the
in-memory progress for its operation, publishes it through the broadcaster at
a throttled cadence, and persists a session snapshot alongside so the upload
can continue after a pause, an error, or a process restart.
"""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from lecture_uploader.services.concurrency import CancellationToken, OperationCancelled
from lecture_uploader.services.errors import (
    NotConfiguredError,
    NotFoundError,
    SessionExpiredError,
    TransientNetworkError,
    UploaderError,
    UploadInProgressError,
)
from lecture_uploader.services.log_service import LogService, get_log_service
from lecture_uploader.services.progress import (
    ProgressBroadcaster,
    Subscription,
    UploadProgress,
    UploadStatus,
)
from lecture_uploader.services.remote_storage import ChunkResult, RemoteStorageClient
from lecture_uploader.services.session_store import SessionStore, UploadSession
from lecture_uploader.services.utils import format_file_size, new_operation_id

logger = logging.getLogger(__name__)

CompletionHook = Callable[[UploadProgress, dict[str, Any]], None]


@dataclass
class _Transfer:
    """Book-keeping for one running (or just finished) operation."""

    operation_id: str
    resource_id: str
    path: Path
    progress: UploadProgress
    token: CancellationToken = field(default_factory=CancellationToken)
    done: threading.Event = field(default_factory=threading.Event)
    session: UploadSession | None = None
    thread: threading.Thread | None = None
    last_emit: float = 0.0


class UploadEngine:
    """Starts, pauses and resumes uploads of local files to a resumable remote."""

    def __init__(
        self,
        remote: RemoteStorageClient,
        store: SessionStore,
        broadcaster: ProgressBroadcaster | None = None,
        chunk_size: int | None = None,
        progress_interval: float = 1.0,
        retention_seconds: float = 5.0,
        interrupted_retention_seconds: float = 2.0,
        max_chunk_retries: int = 3,
        retry_delay: float = 1.0,
        log_service: LogService | None = None,
    ) -> None:
        self.remote = remote
        self.store = store
        self.broadcaster = broadcaster or ProgressBroadcaster()
        self.chunk_size = chunk_size or remote.recommended_chunk_size
        self.progress_interval = progress_interval
        self.retention_seconds = retention_seconds
        self.interrupted_retention_seconds = interrupted_retention_seconds
        self.max_chunk_retries = max_chunk_retries
        self.retry_delay = retry_delay
        self.log = log_service or get_log_service()

        self._lock = threading.Lock()
        self._active: dict[str, _Transfer] = {}
        self._operations: dict[str, _Transfer] = {}
        self._hooks: list[CompletionHook] = []

    @staticmethod
    def resource_id(resource: Path | str) -> str:
        return str(Path(resource).absolute())

    def add_completion_hook(self, hook: CompletionHook) -> None:
        """Register a callable run after every successful upload.

        Hooks receive the final progress and the remote's object metadata.
        A failing hook is logged and does not affect the upload.
        """
        self._hooks.append(hook)

    # ------------------------------------------------------------------
    # Control surface
    # ------------------------------------------------------------------

    def start(
        self,
        resource: Path | str,
        metadata: dict[str, Any] | None = None,
        label: str = "",
    ) -> str:
        """Begin uploading a file and return the operation id.

        Returns once the remote session exists; bytes move in a background
        thread.

        Raises:
            NotFoundError: If the file does not exist
            NotConfiguredError: If remote credentials are missing
            UploadInProgressError: If this file is already uploading
        """
        path = Path(resource)
        if not path.is_file():
            raise NotFoundError(f"File not found: {path}")
        if not self.remote.is_configured():
            raise NotConfiguredError("Remote storage is not configured")

        resource_id = self.resource_id(path)
        total = path.stat().st_size
        transfer = self._reserve(resource_id, path, total, label or path.name)

        try:
            handle = self.remote.initiate({"name": path.name, **(metadata or {})}, total)
        except BaseException:
            self._unreserve(transfer)
            raise

        session = UploadSession(
            resource_id=resource_id,
            remote_session_handle=handle,
            bytes_transferred=0,
            bytes_total=total,
            label=transfer.progress.label,
        )
        session.touch()
        self.store.save(resource_id, session)

        self.log.info(
            "upload",
            "upload_started",
            f"Started upload of {path.name} ({format_file_size(total)})",
            {"operation_id": transfer.operation_id, "resource_id": resource_id, "bytes_total": total},
        )

        self._launch(transfer, session, offset=0)
        return transfer.operation_id

    def pause(self, resource: Path | str) -> str:
        """Ask the running transfer for a resource to stop.

        The in-flight chunk request is aborted and the loop exits as paused
        with its session kept.

        Returns:
            The operation id that was signalled

        Raises:
            NotFoundError: If no transfer is running for the resource
        """
        resource_id = self.resource_id(resource)
        with self._lock:
            transfer = self._active.get(resource_id)
        if transfer is None:
            raise NotFoundError(f"No active upload for {Path(resource_id).name}")
        transfer.token.cancel("paused")
        logger.debug("Pause requested for %s", resource_id)
        return transfer.operation_id

    def resume(self, resource: Path | str) -> str:
        """Continue an interrupted upload from the offset the remote confirms.

        Raises:
            NotFoundError: If there is no stored session or the file is gone
            NotConfiguredError: If remote credentials are missing
            UploadInProgressError: If this file is already uploading
            SessionExpiredError: If the remote no longer knows the session,
                which is then deleted
            TransientNetworkError: If the remote could not be asked; the
                session is kept
        """
        resource_id = self.resource_id(resource)
        session = self.store.get(resource_id)
        if session is None:
            raise NotFoundError("No interrupted upload found")

        path = Path(resource_id)
        if not path.is_file():
            raise NotFoundError(f"File not found: {path}")
        if not self.remote.is_configured():
            raise NotConfiguredError("Remote storage is not configured")

        transfer = self._reserve(resource_id, path, session.bytes_total, session.label or path.name)
        try:
            result = self.remote.query_offset(session.remote_session_handle, session.bytes_total)
        except SessionExpiredError as e:
            self.store.delete(resource_id)
            self._unreserve(transfer)
            self.log.warning(
                "upload",
                "upload_session_expired",
                f"Upload session for {path.name} expired; it must be restarted",
                {"resource_id": resource_id, "error": str(e)},
            )
            raise
        except BaseException:
            self._unreserve(transfer)
            raise

        self.log.info(
            "upload",
            "upload_resumed",
            f"Resuming {path.name}",
            {
                "operation_id": transfer.operation_id,
                "resource_id": resource_id,
                "local_offset": session.bytes_transferred,
                "remote_offset": session.bytes_total if result.complete else result.offset,
            },
        )

        if result.complete:
            transfer.session = session
            transfer.progress.bytes_transferred = session.bytes_total
            self._finish(transfer, UploadStatus.COMPLETE, metadata=result.metadata)
            return transfer.operation_id

        self._launch(transfer, session, offset=result.offset)
        return transfer.operation_id

    def get_session(self, resource: Path | str) -> UploadSession | None:
        return self.store.get(self.resource_id(resource))

    def interrupted_sessions(self) -> list[UploadSession]:
        """Stored sessions with no transfer currently running."""
        with self._lock:
            active = set(self._active)
        return [s for s in self.store.list_sessions() if s.resource_id not in active]

    def active_uploads(self) -> list[UploadProgress]:
        with self._lock:
            return [t.progress.snapshot() for t in self._active.values()]

    def get_progress(self, operation_id: str) -> UploadProgress | None:
        return self.broadcaster.latest(operation_id)

    def subscribe(self, operation_id: str) -> Subscription:
        return self.broadcaster.subscribe(operation_id)

    def wait(self, operation_id: str, timeout: float | None = None) -> UploadProgress | None:
        """Block until an operation reaches a terminal status.

        Returns:
            The final progress, the current one if ``timeout`` elapsed first,
            or None for an unknown (or already discarded) operation
        """
        with self._lock:
            transfer = self._operations.get(operation_id)
        if transfer is None:
            return self.broadcaster.latest(operation_id)
        transfer.done.wait(timeout)
        return transfer.progress.snapshot()

    def shutdown(self, timeout: float | None = 10.0) -> None:
        """Pause every running transfer and wait for the loops to exit."""
        with self._lock:
            transfers = list(self._active.values())
        for transfer in transfers:
            transfer.token.cancel("shutdown")
        for transfer in transfers:
            if transfer.thread is not None:
                transfer.thread.join(timeout)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _reserve(self, resource_id: str, path: Path, total: int, label: str) -> _Transfer:
        operation_id = new_operation_id()
        transfer = _Transfer(
            operation_id=operation_id,
            resource_id=resource_id,
            path=path,
            progress=UploadProgress(
                operation_id=operation_id,
                resource_id=resource_id,
                bytes_transferred=0,
                bytes_total=total,
                label=label,
            ),
        )
        with self._lock:
            if resource_id in self._active:
                raise UploadInProgressError(f"An upload is already running for {path.name}")
            self._active[resource_id] = transfer
            self._operations[transfer.operation_id] = transfer
        return transfer

    def _unreserve(self, transfer: _Transfer) -> None:
        with self._lock:
            if self._active.get(transfer.resource_id) is transfer:
                del self._active[transfer.resource_id]
            self._operations.pop(transfer.operation_id, None)

    def _launch(self, transfer: _Transfer, session: UploadSession, offset: int) -> None:
        transfer.session = session
        transfer.progress.bytes_transferred = offset
        self._emit(transfer, force=True)
        transfer.thread = threading.Thread(
            target=self._run,
            args=(transfer,),
            name=f"upload-{transfer.operation_id[-8:]}",
            daemon=True,
        )
        transfer.thread.start()

    def _run(self, transfer: _Transfer) -> None:
        try:
            metadata = self._transfer_loop(transfer)
        except OperationCancelled:
            self._finish(transfer, UploadStatus.PAUSED)
        except SessionExpiredError as e:
            self._finish(transfer, UploadStatus.ERROR, error=e, expired=True)
        except (UploaderError, OSError) as e:
            self._finish(transfer, UploadStatus.ERROR, error=e)
        except Exception as e:
            logger.exception("Upload loop crashed for %s", transfer.resource_id)
            self._finish(transfer, UploadStatus.ERROR, error=e)
        else:
            self._finish(transfer, UploadStatus.COMPLETE, metadata=metadata)

    def _transfer_loop(self, transfer: _Transfer) -> dict[str, Any]:
        """Send chunks from the current offset until the remote reports completion.

        Returns:
            The remote's metadata for the finished object
        """
        session = transfer.session
        assert session is not None
        total = session.bytes_total
        offset = transfer.progress.bytes_transferred
        stalls = 0

        with open(transfer.path, "rb") as f:
            while True:
                transfer.token.raise_if_cancelled()

                end = min(offset + self.chunk_size, total)
                f.seek(offset)
                data = f.read(end - offset)
                if len(data) != end - offset:
                    raise TransientNetworkError(
                        f"{transfer.path.name} is shorter than the {total} bytes being uploaded"
                    )

                result = self._send_chunk(transfer, session.remote_session_handle, data, offset, total)
                if result.complete:
                    transfer.progress.bytes_transferred = total
                    return result.metadata

                if result.offset <= offset:
                    stalls += 1
                    if stalls > self.max_chunk_retries:
                        raise TransientNetworkError(
                            f"Remote stopped accepting data at byte {result.offset}"
                        )
                else:
                    stalls = 0
                if result.offset >= total:
                    raise TransientNetworkError("Remote holds every byte but did not finish the upload")

                # The remote's offset wins over what was sent
                offset = result.offset
                transfer.progress.bytes_transferred = offset
                self._emit(transfer)

    def _send_chunk(
        self,
        transfer: _Transfer,
        handle: str,
        data: bytes,
        offset: int,
        total: int,
    ) -> ChunkResult:
        attempt = 0
        while True:
            try:
                return self.remote.put_chunk(handle, data, offset, total, transfer.token)
            except TransientNetworkError as e:
                if transfer.token.cancelled:
                    raise OperationCancelled(transfer.token.reason) from e
                attempt += 1
                if attempt > self.max_chunk_retries:
                    raise
                logger.warning(
                    "Chunk at byte %d of %s failed (attempt %d/%d): %s",
                    offset,
                    transfer.path.name,
                    attempt,
                    self.max_chunk_retries,
                    e,
                )
                if transfer.token.wait(self.retry_delay * attempt):
                    raise OperationCancelled(transfer.token.reason) from e

    def _emit(self, transfer: _Transfer, force: bool = False) -> None:
        """Publish progress and persist a snapshot, at most once per interval."""
        now = time.monotonic()
        if not force and now - transfer.last_emit < self.progress_interval:
            return
        transfer.last_emit = now
        self._save_snapshot(transfer, UploadStatus.TRANSFERRING)
        self.broadcaster.publish(transfer.operation_id, transfer.progress)

    def _save_snapshot(self, transfer: _Transfer, status: UploadStatus) -> None:
        session = transfer.session
        if session is None:
            return
        session.bytes_transferred = transfer.progress.bytes_transferred
        session.status = status.value
        session.touch()
        self.store.save(transfer.resource_id, session)

    def _finish(
        self,
        transfer: _Transfer,
        status: UploadStatus,
        error: BaseException | None = None,
        expired: bool = False,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        progress = transfer.progress
        progress.status = status
        if error is not None:
            progress.error = str(error)
            progress.error_code = getattr(error, "code", "error")

        try:
            if status is UploadStatus.COMPLETE or expired:
                self.store.delete(transfer.resource_id)
            else:
                self._save_snapshot(transfer, status)
        except Exception:
            logger.warning("Failed to update session for %s", transfer.resource_id, exc_info=True)

        # Free the resource before announcing the outcome so observers can resume at once
        with self._lock:
            if self._active.get(transfer.resource_id) is transfer:
                del self._active[transfer.resource_id]

        self.broadcaster.publish(transfer.operation_id, progress)
        self._log_outcome(transfer, status, expired)

        if status is UploadStatus.COMPLETE:
            for hook in list(self._hooks):
                try:
                    hook(progress.snapshot(), metadata or {})
                except Exception:
                    logger.warning("Completion hook failed for %s", transfer.resource_id, exc_info=True)

        transfer.done.set()

        retention = (
            self.retention_seconds
            if status is UploadStatus.COMPLETE
            else self.interrupted_retention_seconds
        )
        timer = threading.Timer(retention, self._discard, args=(transfer.operation_id,))
        timer.daemon = True
        timer.start()

    def _discard(self, operation_id: str) -> None:
        self.broadcaster.discard(operation_id)
        with self._lock:
            self._operations.pop(operation_id, None)

    def _log_outcome(self, transfer: _Transfer, status: UploadStatus, expired: bool) -> None:
        progress = transfer.progress
        metadata = {
            "operation_id": transfer.operation_id,
            "resource_id": transfer.resource_id,
            "bytes_transferred": progress.bytes_transferred,
            "bytes_total": progress.bytes_total,
        }
        name = transfer.path.name
        try:
            if status is UploadStatus.COMPLETE:
                self.log.info("upload", "upload_completed", f"Uploaded {name}", metadata)
            elif status is UploadStatus.PAUSED:
                self.log.info(
                    "upload", "upload_paused", f"Paused {name} at {progress.percent}%", metadata
                )
            else:
                metadata["error"] = progress.error
                metadata["error_code"] = progress.error_code
                event = "upload_session_expired" if expired else "upload_failed"
                self.log.error("upload", event, f"Upload of {name} failed: {progress.error}", metadata)
        except Exception:
            logger.warning("Failed to write upload event log", exc_info=True)
