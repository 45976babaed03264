"""Error taxonomy shared by every pipeline stage.

Stage-local failures (overflow, backpressure, a failed chunk or segment)
are logged and reported as events by the stage that hit them.  Only
``OrderingViolation``, ``SessionStateError`` and ``NotFoundError`` are
meant to reach the caller of an operation.
"""


class SidecarError(RuntimeError):
    pass


class CaptureOverflow(SidecarError):
    """Capture buffer exceeded its hard cap and dropped the oldest samples."""


class ChunkQueueFull(SidecarError):
    """The chunk queue between scheduler and worker has no free slot."""


class TranscriptionFailed(SidecarError):
    """ASR inference failed for one chunk; the chunk is dropped."""


class ModelUnavailable(SidecarError):
    """An ASR or embedding backend is not loaded."""


class OrderingViolation(SidecarError):
    """A segment append would overlap or precede the stored transcript."""


class EmbeddingFailed(SidecarError):
    """Embedding one segment failed; it is retried on a later pass."""


class SessionStateError(SidecarError):
    """An operation is not legal in the current lifecycle state."""


class NotFoundError(SidecarError):
    pass
