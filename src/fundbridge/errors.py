"""Error taxonomy.

Everything raised during a reconciliation cycle derives from ``FundBridgeError``
and is handled inside that cycle. ``KeyFileError`` and ``ConfigError`` only
occur at startup and are fatal.
"""


class FundBridgeError(Exception):
    """Base class for all fundbridge errors."""


class RequestServiceUnavailable(FundBridgeError):
    """Network or decode failure talking to the request service."""


class ChainUnavailable(FundBridgeError):
    """Network or decode failure talking to the chain node."""


class SubmissionRejected(FundBridgeError):
    """The chain node (or delegated tool) declined a transaction."""

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class StatusUpdateFailed(FundBridgeError):
    """Pushing a status back to the request service failed."""

    def __init__(self, request_id: int, status: str, reason: str) -> None:
        super().__init__(f"update of request {request_id} to '{status}' failed: {reason}")
        self.request_id = request_id
        self.status = status


class MalformedCandidate(FundBridgeError):
    """A request whose public key is not a 128 hex character string."""

    def __init__(self, request_id: int | None, reason: str) -> None:
        super().__init__(f"request {request_id}: {reason}")
        self.request_id = request_id


class KeyFileError(FundBridgeError):
    """Key file missing, unreadable, or not a valid key pair."""


class ConfigError(FundBridgeError):
    """Invalid configuration."""
