"""
Exceptions
==========

Error taxonomy shared by every layer of the perception core.

Handling rules:
    - ContextOverflowError: recovered by the session manager (one retry after
      a rebuild), surfaced only when the retry also fails
    - RequestValidationError: rejected before reaching the session, reported
      to the user, never retried
    - SessionInitializationError / RuntimeUnavailableError: fatal, the session
      stays in ERROR until initialization is retried explicitly
"""


class SightlineError(Exception):
    """Base class for all errors raised by the perception core."""
    pass


class ImageDecodeError(SightlineError):
    """Raised when image bytes cannot be decoded into pixels."""
    pass


class RequestValidationError(SightlineError):
    """Raised when a prompt or image fails validation."""
    pass


class ContextOverflowError(SightlineError):
    """Raised by a model runtime when the session context is exhausted."""
    pass


class RuntimeUnavailableError(SightlineError):
    """Raised when the model runtime cannot be loaded or a session opened."""
    pass


class SessionInitializationError(SightlineError):
    """Raised when the inference session cannot be brought to READY."""
    pass
