"""Error taxonomy for the access-control core.

Revoking an already inactive record is not an error; those operations
return ``False`` instead.
"""

INVALID_TOKEN_MESSAGE = "Invalid or expired emergency access code"


class AccessControlError(Exception):
    """Base class for all access-control errors."""


class ValidationError(AccessControlError):
    """Bad input supplied by the caller. Not retryable."""


class NotFoundError(AccessControlError):
    """Referenced grant, permission or token does not exist."""


class InvalidTokenError(AccessControlError):
    """Emergency code is absent, inactive or expired.

    The message shown to callers is always the same so that responses do not
    reveal which codes once existed. ``reason`` is for internal logging.
    """

    def __init__(self, reason: str = "invalid"):
        super().__init__(INVALID_TOKEN_MESSAGE)
        self.reason = reason


class ConflictError(InvalidTokenError):
    """Lost a redemption race: another responder consumed the code first."""

    def __init__(self, reason: str = "already_used"):
        super().__init__(reason)


class AccessDeniedError(AccessControlError):
    """Accessor lacks the permission level required for an operation."""


class StorageError(AccessControlError):
    """Underlying persistence failure. Always propagated."""


class DeadlineExceededError(StorageError):
    """Caller-supplied deadline elapsed; the operation had no effect."""
