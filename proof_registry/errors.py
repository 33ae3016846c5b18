"""
Error taxonomy for the proof registry.

Input validation errors surface to callers with a specific reason.
Source failures are recorded per source and never abort a cascade.
Concurrency conflicts are resolved internally by retry or no-op.
"""


class RegistryError(Exception):
    """Base class for registry errors."""


class InvalidInputError(RegistryError, ValueError):
    """Malformed hash, out-of-range batch number or missing required field."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class SigningKeyError(RegistryError):
    """No usable signing key. Fatal at startup and on the issuance path."""


class SourceUnavailableError(RegistryError):
    """A single backend timed out or returned a transport error."""

    def __init__(self, source: str, reason: str):
        super().__init__(f"{source}: {reason}")
        self.source = source
        self.reason = reason


class ConcurrencyConflict(RegistryError):
    """The batch cursor moved between read and compare-and-swap."""


class ArchivePublishError(RegistryError):
    """The permanent archive rejected or failed to confirm a transaction."""


class NotFoundError(RegistryError, LookupError):
    """A requested proof or snapshot batch does not exist."""
