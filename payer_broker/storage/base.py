"""Record storage interface used by every broker component.

Implementations return detached pydantic records; mutating a returned
record never changes stored state. Methods documented as atomic must be
safe under concurrent calls for the same key.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, List, Optional
from uuid import UUID

from ..schemas import (
    AuditLogEntry,
    AuditQuery,
    AuthorizationStatus,
    DataType,
    HealthStatus,
    InsuranceDataCacheEntry,
    Patient,
    PatientInsuranceAuthorization,
    PayerCredential,
    PayerIntegration,
    Practice,
)

AuditSealer = Callable[[Optional[AuditLogEntry]], AuditLogEntry]


class RecordStore(ABC):

    # Patients and practices

    @abstractmethod
    async def get_patient(self, patient_id: UUID) -> Optional[Patient]:
        ...

    @abstractmethod
    async def get_practice(self, practice_id: UUID) -> Optional[Practice]:
        ...

    # Payer integrations

    @abstractmethod
    async def get_payer_integration(self, payer_code: str) -> Optional[PayerIntegration]:
        ...

    @abstractmethod
    async def list_payer_integrations(self) -> List[PayerIntegration]:
        ...

    @abstractmethod
    async def upsert_payer_integration(self, integration: PayerIntegration) -> PayerIntegration:
        """Insert or replace the configuration row keyed by payer_code."""

    @abstractmethod
    async def update_payer_health(
        self, payer_code: str, status: HealthStatus, checked_at: datetime
    ) -> Optional[PayerIntegration]:
        ...

    # Credentials

    @abstractmethod
    async def get_credential(
        self, practice_id: UUID, payer_integration_id: UUID
    ) -> Optional[PayerCredential]:
        ...

    @abstractmethod
    async def upsert_credential(self, credential: PayerCredential) -> PayerCredential:
        """Insert, or overwrite the row for the same (practice, payer).

        An overwrite keeps the existing id, created_at and last_used.
        """

    @abstractmethod
    async def update_credential(self, credential_id: UUID, **fields) -> Optional[PayerCredential]:
        ...

    @abstractmethod
    async def increment_credential_error(
        self, credential_id: UUID, error: str, max_errors: int
    ) -> Optional[PayerCredential]:
        """Atomically add one error and deactivate once `max_errors` is reached."""

    # Authorizations

    @abstractmethod
    async def create_authorization(
        self, authorization: PatientInsuranceAuthorization
    ) -> PatientInsuranceAuthorization:
        ...

    @abstractmethod
    async def get_authorization(self, authorization_id: UUID) -> Optional[PatientInsuranceAuthorization]:
        ...

    @abstractmethod
    async def get_authorization_by_token(self, token: str) -> Optional[PatientInsuranceAuthorization]:
        ...

    @abstractmethod
    async def list_authorizations(
        self, patient_id: UUID, status: Optional[AuthorizationStatus] = None
    ) -> List[PatientInsuranceAuthorization]:
        """Authorizations for a patient, newest first."""

    @abstractmethod
    async def list_authorized_patient_ids(self) -> List[UUID]:
        ...

    @abstractmethod
    async def update_authorization(
        self, authorization_id: UUID, **fields
    ) -> Optional[PatientInsuranceAuthorization]:
        ...

    @abstractmethod
    async def transition_authorization(
        self,
        authorization_id: UUID,
        from_status: AuthorizationStatus,
        require_unused_token: bool = False,
        **fields,
    ) -> Optional[PatientInsuranceAuthorization]:
        """Compare-and-set update.

        Applies `fields` only if the row is still in `from_status` (and, when
        `require_unused_token`, has no token_used_at). Returns None otherwise.
        """

    @abstractmethod
    async def increment_link_attempts(self, authorization_id: UUID) -> Optional[PatientInsuranceAuthorization]:
        ...

    @abstractmethod
    async def increment_resend_count(
        self, authorization_id: UUID, **fields
    ) -> Optional[PatientInsuranceAuthorization]:
        ...

    # Cache

    @abstractmethod
    async def get_cache_entry(
        self, patient_id: UUID, data_type: DataType
    ) -> Optional[InsuranceDataCacheEntry]:
        ...

    @abstractmethod
    async def list_cache_entries(self, patient_id: UUID) -> List[InsuranceDataCacheEntry]:
        ...

    @abstractmethod
    async def put_cache_entry(self, entry: InsuranceDataCacheEntry) -> InsuranceDataCacheEntry:
        """Overwrite the single entry for (patient_id, data_type)."""

    @abstractmethod
    async def mark_patient_cache_stale(self, patient_id: UUID) -> int:
        """Flag every entry for the patient stale. Returns the number flagged."""

    # Audit

    @abstractmethod
    async def append_audit_entry(self, seal: AuditSealer) -> AuditLogEntry:
        """Append one entry under the chain lock.

        `seal` receives the current last entry (or None) and returns the
        complete entry to insert.
        """

    @abstractmethod
    async def list_audit_entries(
        self, after_sequence: int = 0, limit: Optional[int] = None
    ) -> List[AuditLogEntry]:
        """Entries in ascending sequence order."""

    @abstractmethod
    async def query_audit_entries(self, query: AuditQuery) -> List[AuditLogEntry]:
        """Filtered entries, newest first."""

    @abstractmethod
    async def audit_entries_for_resource(
        self, resource_type: str, resource_id: str
    ) -> List[AuditLogEntry]:
        """Entries touching one resource, newest first."""

    async def close(self) -> None:
        return None
