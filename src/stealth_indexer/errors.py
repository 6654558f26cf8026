"""
Error types for the stealth indexer.

Every failure the service can report falls into one of four groups:
validation (bad caller input), configuration (a required setting is unset),
transport (RPC, relay or upstream indexer calls failing or timing out) and
decode (an upstream answered with something we cannot parse). The HTTP layer
maps each group to a status code.
"""


class StealthIndexerError(Exception):
    """Base class for all indexer errors."""


class ValidationError(StealthIndexerError, ValueError):
    """Caller supplied a malformed identifier, amount or missing parameter."""


class ConfigurationError(StealthIndexerError, ValueError):
    """A required endpoint or address is not configured."""


class TransportError(StealthIndexerError):
    """A chain RPC, relay or indexer request could not complete."""


class RequestTimeoutError(TransportError):
    """An outbound request exceeded its timeout and was aborted."""


class DecodeError(TransportError):
    """An upstream response was not valid JSON or lacked expected fields."""


class UpstreamError(TransportError):
    """A configured upstream indexer answered with a non-success status."""

    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code
