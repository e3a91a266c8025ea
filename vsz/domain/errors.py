"""Error taxonomy for the compression core.

Every failure a job can end with is a `CompressionError` subclass. The class
carries a stable numeric code, a `kind` label used in events and logs, and
whether the job queue may offer a retry path for it.

`Cancelled` is part of the hierarchy so it can travel through the same
`except` clauses, but it is never recorded as a job failure.
"""

import errno
from typing import Optional


class CompressionError(Exception):
    """Base class for all errors raised by the compression core."""

    code = 1999
    kind = "unknown"
    retryable = True
    summary = "Unknown error"

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or ""
        super().__init__(self.message)

    @property
    def message(self) -> str:
        if self.detail:
            return f"{self.summary}: {self.detail}"
        return self.summary


class EncoderNotFound(CompressionError):
    code = 1001
    kind = "encoder_not_found"
    retryable = False
    summary = "FFmpeg binary not found"


class CompressionFailed(CompressionError):
    code = 1003
    kind = "compression_failed"
    summary = "Compression failed"


class NotFound(CompressionError):
    code = 1004
    kind = "not_found"
    summary = "File not found"


class InsufficientSpace(CompressionError):
    code = 1005
    kind = "insufficient_space"
    summary = "Not enough disk space for the compressed file"


class Cancelled(CompressionError):
    code = 1006
    kind = "cancelled"
    retryable = False
    summary = "Operation cancelled"


class InvalidInput(CompressionError):
    code = 1007
    kind = "invalid_input"
    retryable = False
    summary = "Invalid input file"


class OutputPathError(CompressionError):
    code = 1008
    kind = "output_path_error"
    summary = "Cannot create output file"


class PermissionDenied(CompressionError):
    code = 1009
    kind = "permission_denied"
    summary = "Permission denied"


class UnknownError(CompressionError):
    code = 1999
    kind = "unknown"
    summary = "Unknown error"


_ERRNO_MAP = {
    errno.ENOENT: NotFound,
    errno.EACCES: PermissionDenied,
    errno.EPERM: PermissionDenied,
    errno.EROFS: PermissionDenied,
    errno.ENOSPC: InsufficientSpace,
    errno.ENOTDIR: OutputPathError,
    errno.EISDIR: OutputPathError,
}
if hasattr(errno, "EDQUOT"):
    _ERRNO_MAP[errno.EDQUOT] = InsufficientSpace


def map_exception(exc: BaseException) -> CompressionError:
    """Normalizes any exception into the taxonomy."""
    if isinstance(exc, CompressionError):
        return exc
    if isinstance(exc, OSError):
        error_cls = _ERRNO_MAP.get(exc.errno, UnknownError)
        detail = exc.filename if exc.filename and error_cls is not UnknownError else str(exc)
        return error_cls(str(detail))
    return UnknownError(str(exc) or exc.__class__.__name__)
