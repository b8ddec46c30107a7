"""
Error taxonomy for the settlement pipeline.

ValidationError and PreconditionError are raised at operation boundaries and
reported to the caller verbatim. ProviderError wraps failures of the external
settlement provider with the provider's machine-readable code preserved.
"""

from typing import Optional


class SettlementError(Exception):
    """Base class for all settlement pipeline errors."""
    pass


class ValidationError(SettlementError, ValueError):
    """Malformed input: the request itself is wrong. No state was mutated."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class PreconditionError(SettlementError):
    """Well-formed input, but a business rule blocks the operation right now."""
    pass


class NotFoundError(PreconditionError):
    """A referenced record does not exist."""
    pass


class InvalidTransition(PreconditionError):
    """Requested referral status change is not allowed from the current status."""

    def __init__(self, from_status: str, to_status: str, message: Optional[str] = None):
        super().__init__(
            message or f"Invalid referral transition: {from_status} -> {to_status}"
        )
        self.from_status = from_status
        self.to_status = to_status


class ProviderError(SettlementError):
    """
    Settlement provider call failed.

    Attributes:
        code: Provider error code (or a local code such as "timeout")
        detail: Human-readable detail from the provider
        status_code: HTTP status, or None when no response was received
        ambiguous: True when the provider may have accepted the request
            (timeouts, transport errors, 5xx)
    """

    def __init__(
        self,
        code: str,
        detail: str,
        status_code: Optional[int] = None,
        ambiguous: bool = False,
    ):
        super().__init__(f"Settlement provider error {code}: {detail}")
        self.code = code
        self.detail = detail
        self.status_code = status_code
        self.ambiguous = ambiguous
