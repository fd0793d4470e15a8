"""Unit tests for payer onboarding."""
from uuid import uuid4

import pytest

from payer_broker.admin import PayerAdministration
from payer_broker.audit import RESOURCE_PAYER_CREDENTIAL, RESOURCE_PAYER_INTEGRATION
from payer_broker.exceptions import PayerNotConfiguredError, PracticeNotFoundError
from payer_broker.schemas import (
    Actor,
    ActorType,
    ApiKeyCredentials,
    AuditEventType,
    CredentialRequest,
    CredentialType,
    HealthStatus,
    PayerIntegrationRequest,
)

ADMIN = Actor(actor_type=ActorType.USER, actor_id="billing-admin")


@pytest.fixture
def admin(store, vault, registry, audit, clock):
    return PayerAdministration(store, vault, registry, audit, clock=clock)


def _payer(**fields):
    body = {"payer_code": "medicare", "payer_name": "Medicare", "supports_eligibility": True}
    body.update(fields)
    return PayerIntegrationRequest(**body)


class TestConfigurePayer:

    @pytest.mark.asyncio
    async def test_creates_integration(self, admin, store, clock):
        saved = await admin.configure_payer(_payer(), ADMIN)

        assert saved.payer_code == "MEDICARE"
        assert saved.created_at == clock()
        assert store.payer_integrations["MEDICARE"].supports_eligibility is True

        entry = store.audit_entries[-1]
        assert entry.event_type == AuditEventType.PAYER_CONFIGURED
        assert entry.resource_type == RESOURCE_PAYER_INTEGRATION
        assert entry.details == {"payer_code": "MEDICARE", "is_active": True, "created": True}

    @pytest.mark.asyncio
    async def test_update_keeps_id_and_health(self, admin, store, clock, integration):
        await store.update_payer_health("MEDICARE", HealthStatus.DEGRADED, clock())

        saved = await admin.configure_payer(_payer(is_active=False), ADMIN)

        assert saved.id == integration.id
        assert saved.is_active is False
        assert saved.health_status == HealthStatus.DEGRADED
        assert store.audit_entries[-1].details["created"] is False

    @pytest.mark.asyncio
    async def test_payer_without_adapter_still_saved(self, admin, store):
        saved = await admin.configure_payer(_payer(payer_code="aetna", payer_name="Aetna"), ADMIN)

        assert saved.payer_code == "AETNA"
        assert "AETNA" in store.payer_integrations

    def test_code_validated(self):
        with pytest.raises(ValueError):
            _payer(payer_code="x")


class TestStoreCredentials:

    @pytest.mark.asyncio
    async def test_store_then_rotate(self, admin, vault, store, practice, integration, oauth_payload):
        first = await admin.store_credentials(
            "medicare", CredentialRequest(practice_id=practice.id, credentials=oauth_payload), ADMIN
        )
        assert store.audit_entries[-1].event_type == AuditEventType.CREDENTIALS_STORED

        second = await admin.store_credentials(
            "MEDICARE",
            CredentialRequest(practice_id=practice.id, credentials=ApiKeyCredentials(api_key="new-key")),
            ADMIN,
        )

        assert second.id == first.id
        assert second.credential_type == CredentialType.API_KEY
        decrypted = await vault.get_credentials(practice.id, integration.id)
        assert decrypted.payload.api_key == "new-key"

        entry = store.audit_entries[-1]
        assert entry.event_type == AuditEventType.CREDENTIALS_ROTATED
        assert entry.resource_type == RESOURCE_PAYER_CREDENTIAL
        assert entry.practice_id == practice.id
        assert "new-key" not in str(entry.details)

    @pytest.mark.asyncio
    async def test_rotation_reactivates(self, admin, vault, store, practice, credential, oauth_payload):
        for _ in range(vault.max_errors):
            await vault.record_error(credential.id, "invalid_client")

        saved = await admin.store_credentials(
            "MEDICARE", CredentialRequest(practice_id=practice.id, credentials=oauth_payload), ADMIN
        )

        assert saved.is_active is True
        assert saved.error_count == 0
        assert store.audit_entries[-1].details["reactivated"] is True

    @pytest.mark.asyncio
    async def test_unconfigured_payer(self, admin, practice, oauth_payload):
        with pytest.raises(PayerNotConfiguredError):
            await admin.store_credentials(
                "AETNA", CredentialRequest(practice_id=practice.id, credentials=oauth_payload), ADMIN
            )

    @pytest.mark.asyncio
    async def test_malformed_payer_code(self, admin, practice, oauth_payload):
        with pytest.raises(PayerNotConfiguredError):
            await admin.store_credentials(
                "blue cross", CredentialRequest(practice_id=practice.id, credentials=oauth_payload), ADMIN
            )

    @pytest.mark.asyncio
    async def test_unknown_practice(self, admin, integration, oauth_payload):
        with pytest.raises(PracticeNotFoundError):
            await admin.store_credentials(
                "MEDICARE", CredentialRequest(practice_id=uuid4(), credentials=oauth_payload), ADMIN
            )
