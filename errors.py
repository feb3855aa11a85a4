"""
Broker error taxonomy.

Every error carries the HTTP status the API layer answers with, so routes can
turn any BrokerError into a JSON response without a lookup table.
"""

from typing import Optional


class BrokerError(Exception):
    """Base exception for the sale broker."""

    status_code = 500

    def __init__(self, message: str, track_title: Optional[str] = None):
        self.track_title = track_title
        super().__init__(message)


class InvalidRequest(BrokerError):
    """Raised when a request body is missing fields or malformed."""

    status_code = 400


class NotFound(BrokerError):
    """Raised when a release, track or record does not exist."""

    status_code = 404


class Unavailable(BrokerError):
    """Raised when something cannot be sold: sold out, not listed, missing metadata."""

    status_code = 400


class LedgerTransactionFailed(BrokerError):
    """Raised when a mint, offer or payment transaction does not finalize with tesSUCCESS."""

    status_code = 502

    def __init__(self, message: str, result_code: Optional[str] = None, track_title: Optional[str] = None):
        self.result_code = result_code
        super().__init__(message, track_title=track_title)


class TokenExtractionFailed(BrokerError):
    """Raised when a mint succeeded but the new NFTokenID is not in the ledger delta."""

    status_code = 502


class ConfigurationError(BrokerError):
    """Raised when platform wallet credentials are absent."""

    status_code = 500


class CompensationError(BrokerError):
    """Raised when a rollback or refund itself fails. Logged, never retried."""

    status_code = 500


class ConfirmationMismatch(BrokerError):
    """Raised when a reported accept transaction does not transfer the token to the buyer."""

    status_code = 409


class PurchaseAborted(BrokerError):
    """
    Raised by the album purchase when a step failed and the attempt was compensated.

    ``refunded`` is True whenever a refund was attempted, whether or not the
    refund transaction itself went through.
    """

    def __init__(self, message: str, cause: Exception, track_title: Optional[str] = None,
                 attempt_id: Optional[str] = None, refund_tx_hash: Optional[str] = None):
        self.cause = cause
        self.attempt_id = attempt_id
        self.refund_tx_hash = refund_tx_hash
        self.refunded = True
        self.status_code = getattr(cause, 'status_code', 500)
        super().__init__(message, track_title=track_title)
