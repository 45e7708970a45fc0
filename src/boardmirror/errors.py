"""
Exception hierarchy for the board mirror.

Configuration errors surface at construction time. Validation and
not-found errors belong to the call that raised them. Background
cycles log everything else and keep going.
"""

from __future__ import annotations


class MirrorError(Exception):
    """Base class for all board mirror errors."""


class ConfigurationError(MirrorError, ValueError):
    """Raised when the mirror is constructed with an invalid setup."""


class InvalidKeyError(ConfigurationError):
    """Raised when an encryption key has the wrong shape."""


class ItemValidationError(MirrorError, ValueError):
    """Raised when an item id or name fails validation."""


class NotFoundError(MirrorError, LookupError):
    """Raised when a board or item cannot be resolved."""


class DecryptionError(MirrorError):
    """Raised when an encrypted value cannot be decoded."""


class RemoteError(MirrorError):
    """Raised when the Monday API rejects or fails a request.

    Args:
        message: What went wrong.
        transient: True when the same request may succeed later
            (transport failure, rate limit, server error).
    """

    def __init__(self, message: str, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient
