"""Exception hierarchy for the entitlements core."""
from typing import Optional


class EntitlementError(Exception):
    """Base class for errors raised by the entitlements core."""

    pass


class SignatureInvalid(EntitlementError):
    """Webhook payload failed signature verification or could not be parsed."""

    pass


class DownloadDenied(EntitlementError):
    """
    Base class for download refusals.

    Each subclass carries the HTTP status the download endpoints answer with.
    """

    status_code = 403
    reason = "denied"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.reason)


class TokenNotFound(DownloadDenied):
    status_code = 404
    reason = "token_not_found"


class TokenRevoked(DownloadDenied):
    status_code = 403
    reason = "token_revoked"


class TokenExpired(DownloadDenied):
    status_code = 410
    reason = "token_expired"


class TokenExhausted(DownloadDenied):
    status_code = 403
    reason = "token_exhausted"


class FileNotAvailable(DownloadDenied):
    """The token is valid but no matching file exists in the blob store."""

    status_code = 404
    reason = "file_not_available"


class RemoteServiceUnavailable(EntitlementError):
    """A call to the payment provider or the blob store failed after retries."""

    def __init__(
        self,
        service: str,
        message: str,
        original_error: Optional[Exception] = None,
    ) -> None:
        """
        Args:
            service: Name of the remote collaborator ("stripe", "blob_store", ...)
            message: Error message
            original_error: Underlying exception, if any
        """
        super().__init__(f"{service}: {message}")
        self.service = service
        self.original_error = original_error


class ProviderRequestRejected(EntitlementError):
    """The payment provider refused the request; retrying will not help."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.original_error = original_error


class OrderNotFound(EntitlementError):
    pass


class TransactionNotSettled(EntitlementError):
    """A provider transaction was asked to be imported but is not paid."""

    pass


class ReconciliationError(EntitlementError):
    """Raised when a reconciliation run cannot complete."""

    pass


class InvalidReconciliationWindow(ReconciliationError):
    pass
