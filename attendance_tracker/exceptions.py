class AttendanceError(Exception):
    """Base exception for the attendance tracker."""


class CameraError(AttendanceError):
    """Raised when webcam access fails."""


class FaceEngineError(AttendanceError):
    """Raised when face detection or embedding generation fails."""


class StorageError(AttendanceError):
    """Raised when the attendance document store cannot be read or written."""


class RosterError(AttendanceError):
    """Raised when the roster store cannot list names or save a reference image."""


class EnrollmentError(AttendanceError):
    """Raised when an enrollment cannot be submitted."""


class EnrollmentInputError(EnrollmentError):
    """Raised when the operator submits an invalid enrollment name."""


class EnrollmentSubmitError(EnrollmentError):
    """Raised when the roster store rejects or fails to save an enrollment."""
