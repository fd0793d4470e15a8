"""Operational constants for the Payer Data Broker.

This module defines the limits and defaults shared by the vault, the
authorization workflow, the broker and the payer adapters. Deployments
override the tunable ones through environment variables (see config.py).
"""

# Database version requirements
DATABASE_REQUIREMENTS = {
    "min_postgresql_version": "14.0",
    "required_extensions": [
        "pgcrypto",      # gen_random_uuid() for server-side defaults
    ],
}

# Consent scopes and adapter capabilities share one vocabulary
DATA_TYPES = ("eligibility", "benefits", "claims_history", "prior_auth")

# Credential vault
CREDENTIAL_KEY_HEX_LENGTH = 64   # 256-bit AES key, hex encoded
CREDENTIAL_NONCE_BYTES = 12      # GCM recommended nonce size
CREDENTIAL_TAG_BYTES = 16
MAX_CREDENTIAL_ERRORS = 5

# Insecure key used only when no key is configured outside production.
DEVELOPMENT_ENCRYPTION_KEY = "a" * CREDENTIAL_KEY_HEX_LENGTH

# Authorization workflow
AUTHORIZATION_TOKEN_BYTES = 32
AUTHORIZATION_TOKEN_TTL_DAYS = 7
AUTHORIZATION_GRANT_TTL_DAYS = 365
AUTHORIZATION_RATE_LIMIT = 3
AUTHORIZATION_RATE_WINDOW_HOURS = 24
MAX_RESENDS = 3
RESEND_TOKEN_REFRESH_HOURS = 24
MAX_LINK_ATTEMPTS = 5
TOKEN_PREVIEW_LENGTH = 8
DEFAULT_REVOKE_REASON = "Revoked by staff"
DEFAULT_CONSENT_SIGNATURE = "Electronic consent via web form"

# Cache
DEFAULT_CACHE_TTL_HOURS = 24

# Payer adapters
DEFAULT_ADAPTER_TIMEOUT_SECONDS = 30.0
DEFAULT_HEALTH_TIMEOUT_SECONDS = 10.0
ADAPTER_MAX_RETRIES = 3
ADAPTER_RETRY_BASE_DELAY_SECONDS = 1.0
TOKEN_EXPIRY_BUFFER_SECONDS = 300
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600

# Audit trail
GENESIS_HASH = "0" * 64

# Free-text insurance provider names -> payer code.
# Order matters: more specific aliases are listed before generic ones.
PAYER_ALIASES = {
    "medicare": "MEDICARE",
    "medicaid": "MEDICAID",
    "aetna": "AETNA",
    "anthem": "ANTHEM",
    "blue cross": "ANTHEM",
    "bcbs": "BCBS",
    "cigna": "CIGNA",
    "humana": "HUMANA",
    "kaiser": "KAISER",
    "unitedhealthcare": "UHC",
    "united": "UHC",
    "uhc": "UHC",
    "tricare": "TRICARE",
}
