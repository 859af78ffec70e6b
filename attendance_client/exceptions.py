class AttendanceError(Exception):
    """Base exception for the attendance client."""


class CameraError(AttendanceError):
    """Raised when the camera cannot be opened or read."""


class EmbeddingProviderError(AttendanceError):
    """Raised when the face model cannot be loaded or fails on a frame."""


class SyncError(AttendanceError):
    """Raised when the server rejects a request in a way the caller must see."""


class QueueError(AttendanceError):
    """Raised when the offline queue store cannot be read or written."""
