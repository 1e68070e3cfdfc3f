"""
Error taxonomy for the topic sync service.

Nothing here is fatal to the process: the refresh loop logs and isolates
failures per topic, and the HTTP layer maps them onto status codes.
"""


class TopicSyncError(Exception):
    """Base class for all topic sync errors."""
    pass


class FetchFailure(TopicSyncError):
    """The remote network could not be reached or answered with an error."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class DecodeFailure(FetchFailure):
    """The remote payload was malformed or missing required fields."""
    pass


class PersistFailure(TopicSyncError):
    """The durable store rejected a write."""
    pass


class InvalidLadder(TopicSyncError):
    """A confidence ladder is empty, mismatched, or not parseable."""
    pass


class SchedulerAlreadyRunning(TopicSyncError):
    """start() was called on a scheduler that is already running."""
    pass


class SchedulerNotRunning(TopicSyncError):
    """stop() was called on a scheduler that is not running."""
    pass
