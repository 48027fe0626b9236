"""
Error taxonomy for the frame extraction worker.

Every error raised across component boundaries derives from
FrameWorkerError so callers (HTTP layer, worker loop) can map it to a
status code or a job outcome without inspecting backend exceptions.
"""


class FrameWorkerError(Exception):
    """Base class for all frame worker errors"""

    retryable = True


class ValidationError(FrameWorkerError):
    """Malformed request options; raised before any state is created"""

    retryable = False


class NotFoundError(FrameWorkerError):
    """Unknown video, job, or empty frame set"""

    retryable = False


class ConflictError(FrameWorkerError):
    """Operation not allowed in the job's current state"""

    retryable = False


class SourceMediaError(FrameWorkerError):
    """Probe or decode failure, including sources over the duration cap"""

    retryable = False


class StorageError(FrameWorkerError):
    """Object store upload/download/delete failure"""


class TransientQueueError(FrameWorkerError):
    """Dispatch or claim failure that may succeed on retry"""


class JobStateError(FrameWorkerError):
    """The ledger refused a status transition for a job"""

    retryable = False


class AttemptsExhaustedError(FrameWorkerError):
    """A work item was reclaimed from a stalled worker with no attempts left"""

    retryable = False
