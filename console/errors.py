"""
Broker Console - Error Taxonomy
=================================
Every failure a handler can report maps to one of these exception classes.
The app factory (main.py) registers a handler that renders any of them as
a JSON body of the form {"error": "<message>"} with the class status code.

    ValidationError      -> 400  malformed or missing request fields
    AuthenticationError  -> 401  bad credentials, bad or expired token
    AuthorizationError   -> 403  valid session, insufficient privilege
    NotFoundError        -> 404  unknown record or API path
    ConflictError        -> 409  duplicate listener id, already installed
    UnavailableError     -> 503  collaborator (e.g. storage) not wired
    InternalError        -> 500  persistence, bind or signing failure
"""


class ConsoleError(Exception):
    """Base class for errors rendered at the request boundary."""

    status_code = 500

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(ConsoleError):
    status_code = 400


class AuthenticationError(ConsoleError):
    status_code = 401


class AuthorizationError(ConsoleError):
    status_code = 403


class NotFoundError(ConsoleError):
    status_code = 404


class ConflictError(ConsoleError):
    status_code = 409


class UnavailableError(ConsoleError):
    status_code = 503


class InternalError(ConsoleError):
    status_code = 500


class ConfigError(Exception):
    """Raised at startup when the process configuration is unusable."""
