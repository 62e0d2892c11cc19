"""Exception hierarchy for chronoline."""


class ChronolineError(Exception):
    """Base exception for all application-specific errors."""


class ConfigError(ChronolineError):
    """Raised when the model registry or defaults cannot be loaded."""


class SessionClosedError(ChronolineError):
    """Raised when a model session is used or closed after it was closed."""


class BackendError(ChronolineError):
    """Raised when the model backend fails to open a session or generate.

    The message is short and human-readable; it is what the client sees
    in the terminal error frame.
    """
