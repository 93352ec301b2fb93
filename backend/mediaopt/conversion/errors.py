"""Error taxonomy for probing, encoding, external jobs and webhooks."""
import errno
import subprocess
from typing import Optional

from PIL import UnidentifiedImageError

from mediaopt.conversion.models import ConversionFailure

# OS errors worth retrying later (disk, transient IO)
TRANSIENT_ERRNOS = {errno.ENOSPC, errno.EDQUOT, errno.EIO, errno.EAGAIN, errno.EMFILE, errno.ENFILE, errno.EBUSY}


class MediaOptError(Exception):
    code = "error"


class ProbeFailure(MediaOptError):
    """A capability probe could not run. Always degraded to "unsupported"."""

    code = "probe_failed"


class UnsupportedFormat(MediaOptError):
    code = "unsupported_format"


class EncodeFailure(MediaOptError):
    retryable = False

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        if code:
            self.code = code


class TransientEncodeFailure(EncodeFailure):
    code = "transient_failure"
    retryable = True


class PermanentEncodeFailure(EncodeFailure):
    code = "permanent_failure"
    retryable = False


class NetworkFailure(MediaOptError):
    code = "network_failure"


class WebhookError(MediaOptError):
    """Validation, authorization or internal failure while reconciling a callback."""

    status_code = 400

    def __init__(self, message: str, code: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.code = code
        if status_code is not None:
            self.status_code = status_code


class AuthorizationMismatch(WebhookError):
    status_code = 403

    def __init__(self, message: str = "Invalid account_id", code: str = "invalid_account_id"):
        super().__init__(message, code)


def classify_exception(exc: BaseException, fmt: str, backend: Optional[str] = None) -> ConversionFailure:
    """Map an exception raised while encoding to a typed, retry-aware failure."""
    if isinstance(exc, EncodeFailure):
        return ConversionFailure(fmt, exc.code, str(exc), exc.retryable, backend)
    if isinstance(exc, UnsupportedFormat):
        return ConversionFailure(fmt, exc.code, str(exc), False, backend)
    if isinstance(exc, subprocess.TimeoutExpired):
        return ConversionFailure(fmt, "encoder_timeout", f"Encoder timed out after {exc.timeout}s", True, backend)
    if isinstance(exc, UnidentifiedImageError):
        return ConversionFailure(fmt, "corrupt_source", str(exc), False, backend)
    if isinstance(exc, FileNotFoundError):
        return ConversionFailure(fmt, "source_unreadable", str(exc), False, backend)
    if isinstance(exc, PermissionError):
        return ConversionFailure(fmt, "destination_unwritable", str(exc), False, backend)
    if isinstance(exc, OSError) and exc.errno in TRANSIENT_ERRNOS:
        code = "disk_full" if exc.errno in (errno.ENOSPC, errno.EDQUOT) else "io_error"
        return ConversionFailure(fmt, code, str(exc), True, backend)
    if isinstance(exc, (ValueError, KeyError)):
        return ConversionFailure(fmt, "unsupported_pixel_format", str(exc), False, backend)
    return ConversionFailure(fmt, "encode_failed", str(exc) or exc.__class__.__name__, False, backend)
