"""Error types shared by the upload engine and the analysis pipeline."""


class UploaderError(Exception):
    """Base class for errors surfaced to collaborators.

    Each subclass carries a stable ``code`` so callers can tell a retryable
    failure apart from one that will never succeed.
    """

    code = "error"

    def to_dict(self) -> dict[str, str]:
        """Convert to dictionary for JSON serialization."""
        return {"error": str(self), "code": self.code}


class NotFoundError(UploaderError):
    """The local resource (or the upload state for it) does not exist."""

    code = "not_found"


class NotConfiguredError(UploaderError):
    """Remote credentials are missing."""

    code = "not_configured"


class SessionExpiredError(UploaderError):
    """The remote no longer recognizes the resumable session handle."""

    code = "session_expired"


class TransientNetworkError(UploaderError):
    """A chunk request timed out, was aborted, or got an unexpected reply.

    The persisted session is kept, so the upload can be resumed later.
    """

    code = "transient_network"


class UnparseableMediaError(UploaderError):
    """An analysis tool failed or produced output that could not be parsed."""

    code = "unparseable_media"


class UploadInProgressError(UploaderError):
    """A transfer loop is already running for the resource."""

    code = "upload_in_progress"
