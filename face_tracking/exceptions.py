class FaceTrackingError(Exception):
    """Base exception for the face tracking system."""


class FatalInitError(FaceTrackingError):
    """Raised when the pipeline cannot finish initialization. Never retried."""


class CapabilityError(FatalInitError):
    """Raised when the detection capability never becomes available."""


class ModelLoadError(FatalInitError):
    """Raised when model weights fail to load."""


class CameraError(FatalInitError):
    """Raised when webcam access fails."""


class FaceEngineError(FaceTrackingError):
    """Raised when face detection or embedding generation fails."""


class StoreError(FaceTrackingError):
    """Raised when object store operations fail."""


class EnrollmentError(FaceTrackingError):
    """Raised when an enrollment request is invalid or no face is found."""
