"""Exception hierarchy shared by the client, state store, and engine.

The daemon distinguishes four failure classes:

* ``TransientIOError`` -- disk or network hiccup.  Logged and retried on the
  next reconciliation pass; never fatal.
* ``NotFoundError`` -- a remote document or local file vanished.  Callers
  interpret it as a deletion signal rather than a failure.
* ``CorruptStateError`` -- the persisted state file exists but cannot be
  parsed.  Fatal at startup.
* ``ConfigurationError`` -- required settings missing or out of range.
  Fatal at startup.
"""


class WikiDaemonError(Exception):
    """Base class for all daemon errors."""


class TransientIOError(WikiDaemonError):
    """Recoverable disk or network failure."""


class NotFoundError(WikiDaemonError):
    """The requested remote document or local file does not exist."""


class CorruptStateError(WikiDaemonError):
    """The persisted sync state exists but is unreadable or malformed."""


class ConfigurationError(WikiDaemonError, ValueError):
    """Missing or invalid configuration."""


class WikiApiError(WikiDaemonError):
    """Non-retryable error response from the wiki API.

    Args:
        message: Human-readable description.
        status_code: HTTP status code returned by the server, if any.
    """

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
