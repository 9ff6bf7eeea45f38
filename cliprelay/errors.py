"""Exception taxonomy for capture, encoding and upload failures."""

from __future__ import annotations


class ClipRelayError(Exception):
    """Base class for all cliprelay errors."""


class ClipNotFound(ClipRelayError):
    """Raised when a clip id has no stored record."""


class DeviceUnavailable(ClipRelayError):
    """Raised when the audio input device cannot be opened."""


class StoreWriteFailed(ClipRelayError):
    """Raised when a segment or frame could not be persisted."""


class EncodeFailed(ClipRelayError):
    """Raised when an encoding session ends without a completion event."""


class UploadError(ClipRelayError):
    """Base class for upload failures; carries the progress reached."""

    def __init__(
        self,
        message: str,
        *,
        offset: int = 0,
        total: int = 0,
        status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.offset = offset
        self.total = total
        self.status = status

    def __str__(self) -> str:
        base = super().__str__()
        if self.total:
            return f"{base} (offset {self.offset}/{self.total})"
        return base


class UploadRejected(UploadError):
    """The target refused the upload; retrying will not help."""


class UploadUnauthorized(UploadError):
    """The target rejected our credentials; the device must be re-paired."""


class NetworkTransient(UploadError):
    """A transient network failure outlasted the retry budget."""


class UploadInProgress(UploadError):
    """Another transfer already holds the checkpoint for this clip and target."""


__all__ = [
    "ClipNotFound",
    "ClipRelayError",
    "DeviceUnavailable",
    "EncodeFailed",
    "NetworkTransient",
    "StoreWriteFailed",
    "UploadError",
    "UploadInProgress",
    "UploadRejected",
    "UploadUnauthorized",
]
