"""Payer onboarding: integration rows and per-practice credentials."""

import logging

from .adapters.registry import AdapterRegistry
from .audit import RESOURCE_PAYER_CREDENTIAL, RESOURCE_PAYER_INTEGRATION, AuditTrail
from .exceptions import PayerNotConfiguredError, PracticeNotFoundError
from .schemas import (
    Actor,
    AuditEventType,
    CredentialRequest,
    PayerCredential,
    PayerIntegration,
    PayerIntegrationRequest,
)
from .storage.base import RecordStore
from .utils import Clock, utcnow
from .validators import normalize_payer_code
from .vault import CredentialVault

logger = logging.getLogger(__name__)


class PayerAdministration:
    """Staff operations that make a payer usable by the broker.

    A fetch needs three things: an adapter in the registry, an active
    integration row for its payer code, and an active credential for the
    practice. The first ships with the code; this class manages the other two.
    """

    def __init__(
        self,
        store: RecordStore,
        vault: CredentialVault,
        registry: AdapterRegistry,
        audit: AuditTrail,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.vault = vault
        self.registry = registry
        self.audit = audit
        self._clock = clock

    async def configure_payer(self, request: PayerIntegrationRequest, actor: Actor) -> PayerIntegration:
        """Create or update the integration row for `request.payer_code`.

        Health fields are owned by the health checks and survive an update.
        """
        existing = await self.store.get_payer_integration(request.payer_code)
        record = PayerIntegration(**request.model_dump(), created_at=self._clock())
        if existing is not None:
            record.health_status = existing.health_status
            record.last_health_check = existing.last_health_check
        saved = await self.store.upsert_payer_integration(record)

        if self.registry.get_adapter(saved.payer_code) is None:
            logger.warning(f"Payer {saved.payer_code} configured but no adapter is registered for it")

        await self.audit.record(
            AuditEventType.PAYER_CONFIGURED,
            resource_type=RESOURCE_PAYER_INTEGRATION,
            resource_id=saved.id,
            actor=actor,
            details={
                "payer_code": saved.payer_code,
                "is_active": saved.is_active,
                "created": existing is None,
            },
        )
        logger.info(f"Payer integration {saved.payer_code} {'created' if existing is None else 'updated'}")
        return saved

    async def store_credentials(
        self, payer_code: str, request: CredentialRequest, actor: Actor
    ) -> PayerCredential:
        """Encrypt and store a practice's credentials for a configured payer.

        Replacing an existing credential is recorded as a rotation.

        Raises:
            PayerNotConfiguredError: No integration row for the payer code
            PracticeNotFoundError: Unknown practice
        """
        try:
            payer_code = normalize_payer_code(payer_code)
        except ValueError:
            raise PayerNotConfiguredError(f"Payer {payer_code} is not configured")

        integration = await self.store.get_payer_integration(payer_code)
        if integration is None:
            raise PayerNotConfiguredError(f"Payer {payer_code} is not configured")

        practice = await self.store.get_practice(request.practice_id)
        if practice is None:
            raise PracticeNotFoundError("Practice not found")

        existing = await self.store.get_credential(practice.id, integration.id)
        if existing is None:
            saved = await self.vault.store_credentials(
                practice.id, integration.id, request.credentials, request.expires_at
            )
            event_type = AuditEventType.CREDENTIALS_STORED
        else:
            saved = await self.vault.rotate_credentials(
                practice.id, integration.id, request.credentials, request.expires_at
            )
            event_type = AuditEventType.CREDENTIALS_ROTATED

        await self.audit.record(
            event_type,
            resource_type=RESOURCE_PAYER_CREDENTIAL,
            resource_id=saved.id,
            actor=actor,
            practice_id=practice.id,
            details={
                "payer_code": payer_code,
                "credential_type": saved.credential_type.value,
                "reactivated": existing is not None and not existing.is_active,
            },
        )
        return saved
