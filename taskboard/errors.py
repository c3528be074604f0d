"""Error taxonomy for the task engine.

Every failure a mutation can end in is one of these classes, so callers
can branch on the type instead of parsing messages.
"""


class TaskBoardError(Exception):
    """Base class for all task engine errors."""

    #: Text safe to show to the user.
    user_message: str = "Something went wrong"

    def __init__(self, message: str, user_message: str | None = None) -> None:
        super().__init__(message)
        if user_message is not None:
            self.user_message = user_message


class ValidationError(TaskBoardError):
    """Malformed input, caught before anything is applied."""

    user_message = "Invalid task data"


class TransportError(TaskBoardError):
    """The remote call failed: network error, timeout or a 5xx response."""

    user_message = "Could not reach the server"

    def __init__(
        self,
        message: str,
        user_message: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, user_message)
        self.status_code = status_code


class ConflictError(TaskBoardError):
    """The server rejected the operation for domain reasons.

    ``user_message`` holds the server's own message verbatim when it
    provided one.
    """

    user_message = "The server rejected the change"

    def __init__(
        self,
        message: str,
        user_message: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, user_message)
        self.status_code = status_code


class StaleContextError(TaskBoardError):
    """A write reached a store whose owning view was already disposed.

    Internal only: never surfaced to the user.
    """


class DuplicateTaskError(TaskBoardError):
    """Two distinct records claimed the same id."""
