"""
Error types raised by the recognition pipeline and the stores
"""


class DoorbellError(Exception):
    """Base class for doorbell errors"""


class NoFaceDetected(DoorbellError):
    """No face was found in a frame; callers skip the frame"""


class ModelUnavailable(DoorbellError):
    """The extraction/embedding backend could not be initialized"""


class CameraUnavailable(DoorbellError):
    """The video source could not be acquired"""


class ExtractionTimeout(DoorbellError):
    """A single extraction call exceeded its time limit"""


class EmptyInput(DoorbellError, ValueError):
    """Aggregation was asked to reduce zero descriptors"""


class DimensionMismatch(DoorbellError, ValueError):
    """Descriptor length differs from the rest of the gallery"""


class NoUsableSamples(DoorbellError):
    """Every enrollment frame failed extraction"""


class GalleryWriteFailed(DoorbellError):
    pass


class HistoryWriteFailed(DoorbellError):
    pass


class SessionStateError(DoorbellError):
    """Command not valid in the session's current state"""
