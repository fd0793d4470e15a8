"""Typed payer adapter errors.

The broker branches on `code`: AUTH_FAILED counts against the credential,
RATE_LIMITED does not, MEMBER_NOT_FOUND is cached as a definitive negative.
"""

from typing import Any, Dict, Optional

from ..schemas import PayerError, PayerErrorCode


class PayerAdapterError(Exception):
    code: PayerErrorCode = PayerErrorCode.UNKNOWN_ERROR

    def __init__(
        self,
        message: str,
        payer_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.payer_code = payer_code
        self.details = details or {}

    def to_error(self) -> PayerError:
        return PayerError(code=self.code, message=self.message, details=self.details or None)


class PayerAuthenticationError(PayerAdapterError):
    code = PayerErrorCode.AUTH_FAILED


class PayerRateLimitError(PayerAdapterError):
    code = PayerErrorCode.RATE_LIMITED

    def __init__(
        self,
        message: str,
        payer_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        retry_after_seconds: Optional[float] = None,
    ):
        super().__init__(message, payer_code, details)
        self.retry_after_seconds = retry_after_seconds
        if retry_after_seconds is not None:
            self.details.setdefault("retry_after_seconds", retry_after_seconds)


class PayerServiceUnavailableError(PayerAdapterError):
    code = PayerErrorCode.SERVICE_UNAVAILABLE


class PayerInvalidRequestError(PayerAdapterError):
    code = PayerErrorCode.INVALID_REQUEST


class PayerMemberNotFoundError(PayerAdapterError):
    code = PayerErrorCode.MEMBER_NOT_FOUND

    def __init__(self, payer_code: str, member_id: Optional[str] = None):
        super().__init__(
            f"Member not found at {payer_code}",
            payer_code,
            {"member_id_suffix": member_id[-4:]} if member_id else None,
        )


def error_for_status(
    status_code: int,
    payer_code: str,
    message: str,
    retry_after: Optional[float] = None,
) -> PayerAdapterError:
    """Map an HTTP error status to the typed error the broker expects."""
    details = {"status": status_code}
    if status_code in (401, 403):
        return PayerAuthenticationError(message, payer_code, details)
    if status_code == 429:
        return PayerRateLimitError(message, payer_code, details, retry_after_seconds=retry_after)
    if status_code == 404:
        return PayerMemberNotFoundError(payer_code)
    if status_code >= 500:
        return PayerServiceUnavailableError(message, payer_code, details)
    return PayerInvalidRequestError(message, payer_code, details)
