"""Donation processing error taxonomy.

Every error raised by the services derives from :class:`DonationError`, and
the API blueprint maps each subclass to an HTTP status.
"""

from __future__ import annotations

from typing import Dict, List, Optional


class DonationError(Exception):
    """Base class for donation processing errors."""

    status_code = 400

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message


class ValidationError(DonationError):
    """User input failed required-field or format checks (field-keyed)."""

    status_code = 422

    def __init__(self, errors: Dict[str, List[str]]) -> None:
        super().__init__("Please correct the highlighted fields.")
        self.errors = {k: list(v) for k, v in errors.items()}

    @classmethod
    def single(cls, field: str, message: str) -> "ValidationError":
        return cls({field: [message]})


class GatewayError(DonationError):
    """External gateway API or network failure."""

    status_code = 502

    def __init__(self, message: str, *, status_code: Optional[int] = None, body: str = "") -> None:
        super().__init__(message)
        self.gateway_status = status_code
        self.body = body

    def __str__(self) -> str:
        if self.gateway_status is not None:
            return f"{self.message} (HTTP {self.gateway_status})"
        return self.message


class GatewayTimeoutError(GatewayError):
    """The gateway did not answer within the configured timeout."""

    status_code = 504


class PaymentDeclinedError(GatewayError):
    """The gateway answered but did not approve the charge."""

    status_code = 402


class NotFoundError(DonationError):
    status_code = 404


class SignatureError(DonationError):
    status_code = 401


class ReceiptNotificationError(DonationError):
    """Receipt delivery failed; never fails the triggering request."""

    status_code = 500


class ConfirmationRequired(DonationError):
    """A destructive action was requested without explicit confirmation."""

    status_code = 409


class IllegalTransitionError(DonationError):
    status_code = 409
