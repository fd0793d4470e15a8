"""Encrypted storage of per-practice payer credentials.

Secret bundles are sealed with AES-256-GCM. The ciphertext is stored base64
encoded; nonce and authentication tag are stored hex encoded in their own
columns. Counter bookkeeping (usage, errors, deactivation) happens only
through `record_usage` and `record_error`.
"""
import base64
import binascii
import logging
import os
import secrets
import warnings
from datetime import datetime
from typing import Any, Dict, NamedTuple, Optional, Union
from uuid import UUID

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from pydantic import BaseModel, ValidationError

from .config import BrokerSettings
from .constants import (
    CREDENTIAL_KEY_HEX_LENGTH,
    CREDENTIAL_NONCE_BYTES,
    CREDENTIAL_TAG_BYTES,
    DEVELOPMENT_ENCRYPTION_KEY,
    MAX_CREDENTIAL_ERRORS,
)
from .exceptions import (
    CredentialDecryptionError,
    InvalidCredentialPayloadError,
    VaultConfigurationError,
)
from .key_provider import SecretKeyProvider
from .locks import KeyedLocks
from .schemas import (
    CredentialPayload,
    DecryptedCredential,
    PayerCredential,
    credential_payload_adapter,
)
from .storage.base import RecordStore
from .utils import Clock, ensure_aware, utcnow
from .validators import validate_encryption_key

logger = logging.getLogger(__name__)


class EncryptedPayload(NamedTuple):
    ciphertext: str
    iv: str
    tag: str


def generate_encryption_key() -> str:
    """Generate a fresh 256-bit vault key, hex encoded."""
    return secrets.token_hex(CREDENTIAL_KEY_HEX_LENGTH // 2)


def resolve_encryption_key(
    settings: BrokerSettings,
    key_provider: Optional[SecretKeyProvider] = None,
) -> str:
    """Find the vault key for this process.

    Order: explicit setting, then the configured AWS secret, then the
    development key (never in production).

    Raises:
        VaultConfigurationError: If the key is malformed or production has none
    """
    key = settings.credential_encryption_key
    if not key and settings.credential_key_secret_arn:
        provider = key_provider or SecretKeyProvider()
        key = provider.get_secret(settings.credential_key_secret_arn)

    if not key:
        if settings.is_production:
            raise VaultConfigurationError(
                "PAYER_CREDENTIAL_ENCRYPTION_KEY must be configured in production"
            )
        message = (
            "PAYER_CREDENTIAL_ENCRYPTION_KEY is not set; using the insecure "
            "development key. Never run like this with real credentials."
        )
        warnings.warn(message, RuntimeWarning, stacklevel=2)
        logger.warning(message)
        return DEVELOPMENT_ENCRYPTION_KEY

    if not validate_encryption_key(key):
        raise VaultConfigurationError(
            f"Credential encryption key must be {CREDENTIAL_KEY_HEX_LENGTH} hex characters"
        )
    if settings.is_production and key.lower() == DEVELOPMENT_ENCRYPTION_KEY:
        raise VaultConfigurationError("The development encryption key is not allowed in production")
    return key


class CredentialVault:
    """Authenticated encryption plus lifecycle bookkeeping for payer credentials."""

    def __init__(
        self,
        store: RecordStore,
        key: str,
        clock: Clock = utcnow,
        max_errors: int = MAX_CREDENTIAL_ERRORS,
    ):
        if not validate_encryption_key(key):
            raise VaultConfigurationError(
                f"Credential encryption key must be {CREDENTIAL_KEY_HEX_LENGTH} hex characters"
            )
        self.store = store
        self.max_errors = max_errors
        self._aesgcm = AESGCM(bytes.fromhex(key))
        self._clock = clock
        self._locks = KeyedLocks()

    @classmethod
    def from_settings(
        cls,
        store: RecordStore,
        settings: BrokerSettings,
        key_provider: Optional[SecretKeyProvider] = None,
        clock: Clock = utcnow,
    ) -> "CredentialVault":
        return cls(store, resolve_encryption_key(settings, key_provider), clock=clock)

    # Encryption

    @staticmethod
    def _coerce(payload: Union[BaseModel, Dict[str, Any]]) -> CredentialPayload:
        if isinstance(payload, BaseModel):
            payload = payload.model_dump()
        try:
            return credential_payload_adapter.validate_python(payload)
        except ValidationError as e:
            raise InvalidCredentialPayloadError(f"Unsupported credential payload: {e}") from e

    def encrypt(self, payload: Union[BaseModel, Dict[str, Any]]) -> EncryptedPayload:
        """Seal a credential payload.

        Returns:
            EncryptedPayload with base64 ciphertext and hex nonce and tag
        """
        payload = self._coerce(payload)
        plaintext = payload.model_dump_json().encode("utf-8")
        nonce = os.urandom(CREDENTIAL_NONCE_BYTES)
        sealed = self._aesgcm.encrypt(nonce, plaintext, None)
        ciphertext, tag = sealed[:-CREDENTIAL_TAG_BYTES], sealed[-CREDENTIAL_TAG_BYTES:]
        return EncryptedPayload(
            ciphertext=base64.b64encode(ciphertext).decode("ascii"),
            iv=nonce.hex(),
            tag=tag.hex(),
        )

    def decrypt(self, ciphertext: str, iv: str, tag: str) -> CredentialPayload:
        """Open a sealed payload.

        Raises:
            CredentialDecryptionError: If the input is malformed or fails authentication
            InvalidCredentialPayloadError: If the plaintext is not a known credential shape
        """
        try:
            ciphertext_bytes = base64.b64decode(ciphertext, validate=True)
            nonce = bytes.fromhex(iv)
            tag_bytes = bytes.fromhex(tag)
        except (binascii.Error, ValueError, TypeError) as e:
            raise CredentialDecryptionError("Malformed credential ciphertext") from e

        if len(nonce) != CREDENTIAL_NONCE_BYTES or len(tag_bytes) != CREDENTIAL_TAG_BYTES:
            raise CredentialDecryptionError("Malformed credential nonce or tag")

        try:
            plaintext = self._aesgcm.decrypt(nonce, ciphertext_bytes + tag_bytes, None)
        except InvalidTag as e:
            raise CredentialDecryptionError("Credential authentication failed") from e

        try:
            return credential_payload_adapter.validate_json(plaintext)
        except ValidationError as e:
            raise InvalidCredentialPayloadError("Decrypted credential has an unknown shape") from e

    def decrypt_record(self, credential: PayerCredential) -> CredentialPayload:
        return self.decrypt(
            credential.encrypted_credentials,
            credential.credentials_iv,
            credential.credentials_tag,
        )

    # Lifecycle

    async def store_credentials(
        self,
        practice_id: UUID,
        payer_integration_id: UUID,
        payload: Union[BaseModel, Dict[str, Any]],
        expires_at: Optional[datetime] = None,
    ) -> PayerCredential:
        """Create or overwrite the credential for a (practice, payer) pair.

        Overwriting reactivates the row and resets its error bookkeeping.
        """
        payload = self._coerce(payload)
        sealed = self.encrypt(payload)

        async with self._locks.hold((practice_id, payer_integration_id)):
            now = self._clock()
            record = PayerCredential(
                practice_id=practice_id,
                payer_integration_id=payer_integration_id,
                credential_type=payload.type,
                encrypted_credentials=sealed.ciphertext,
                credentials_iv=sealed.iv,
                credentials_tag=sealed.tag,
                is_active=True,
                expires_at=expires_at,
                last_rotated=now,
                error_count=0,
                last_error=None,
                created_at=now,
            )
            saved = await self.store.upsert_credential(record)

        logger.info(
            f"Stored {payload.type} credentials for practice {practice_id}, "
            f"payer integration {payer_integration_id}"
        )
        return saved

    async def rotate_credentials(
        self,
        practice_id: UUID,
        payer_integration_id: UUID,
        payload: Union[BaseModel, Dict[str, Any]],
        expires_at: Optional[datetime] = None,
    ) -> PayerCredential:
        """Replace a credential. Same upsert semantics as store_credentials."""
        return await self.store_credentials(practice_id, payer_integration_id, payload, expires_at)

    async def get_credentials(
        self,
        practice_id: UUID,
        payer_integration_id: UUID,
    ) -> Optional[DecryptedCredential]:
        """Return the usable credential for a pair, or None.

        Expired rows are deactivated on read. Rows that fail to decrypt are
        counted as errors.
        """
        credential = await self.store.get_credential(practice_id, payer_integration_id)
        if credential is None:
            return None

        if not credential.is_active:
            logger.info(f"Credential {credential.id} is inactive")
            return None

        expires_at = ensure_aware(credential.expires_at)
        if expires_at is not None and expires_at <= self._clock():
            await self.store.update_credential(credential.id, is_active=False)
            logger.warning(f"Credential {credential.id} expired at {expires_at.isoformat()}; deactivated")
            return None

        try:
            payload = self.decrypt_record(credential)
        except CredentialDecryptionError as e:
            logger.error(f"Failed to decrypt credential {credential.id}: {e}")
            await self.record_error(credential.id, f"Decryption failed: {e}")
            return None

        return DecryptedCredential(credential=credential, payload=payload)

    async def record_usage(self, credential_id: UUID) -> Optional[PayerCredential]:
        """Mark a successful use; clears the error streak."""
        return await self.store.update_credential(
            credential_id,
            last_used=self._clock(),
            error_count=0,
            last_error=None,
        )

    async def record_error(self, credential_id: UUID, error: str) -> Optional[PayerCredential]:
        """Count a use-time failure, deactivating at the error threshold."""
        updated = await self.store.increment_credential_error(credential_id, error, self.max_errors)
        if updated is not None and not updated.is_active:
            logger.warning(
                f"Credential {credential_id} deactivated after {updated.error_count} consecutive errors"
            )
        return updated
