"""Exception hierarchy for the vault, the authorization workflow and payer onboarding.

Payer adapter errors live in payer_broker.adapters.errors.
"""


class PayerBrokerError(Exception):
    """Base class for all broker errors."""


# Vault

class VaultError(PayerBrokerError):
    pass


class VaultConfigurationError(VaultError):
    """The encryption key is missing, malformed or not allowed here."""


class CredentialDecryptionError(VaultError):
    """Ciphertext failed authentication (tampered data or wrong key)."""


class InvalidCredentialPayloadError(CredentialDecryptionError):
    """Plaintext decrypted but is not one of the known credential shapes."""


# Authorization workflow

class AuthorizationError(PayerBrokerError):
    """Base for request rejections. `http_status` is what the API returns."""

    http_status = 400
    code = "AUTHORIZATION_ERROR"

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"error": self.message, "code": self.code}
        body.update(self.details)
        return body


class PatientNotFoundError(AuthorizationError):
    http_status = 404
    code = "PATIENT_NOT_FOUND"


class PracticeNotFoundError(AuthorizationError):
    http_status = 404
    code = "PRACTICE_NOT_FOUND"


class DeliveryChannelError(AuthorizationError):
    http_status = 400
    code = "DELIVERY_CHANNEL_UNAVAILABLE"


class RateLimitExceededError(AuthorizationError):
    http_status = 429
    code = "RATE_LIMIT_EXCEEDED"


class AuthorizationNotFoundError(AuthorizationError):
    http_status = 404
    code = "AUTHORIZATION_NOT_FOUND"


class TokenExpiredError(AuthorizationError):
    http_status = 410
    code = "TOKEN_EXPIRED"


class TokenAlreadyUsedError(AuthorizationError):
    http_status = 410
    code = "TOKEN_ALREADY_USED"


class TooManyLinkAttemptsError(AuthorizationError):
    http_status = 429
    code = "TOO_MANY_ATTEMPTS"


class InvalidDecisionError(AuthorizationError):
    http_status = 400
    code = "INVALID_DECISION"


class InvalidStatusTransitionError(AuthorizationError):
    http_status = 409
    code = "INVALID_STATUS"


class ResendLimitReachedError(AuthorizationError):
    http_status = 429
    code = "RESEND_LIMIT_REACHED"


# Payer onboarding

class PayerNotConfiguredError(AuthorizationError):
    http_status = 404
    code = "PAYER_NOT_CONFIGURED"
