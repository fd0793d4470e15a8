"""In-process record store for development and tests."""

import asyncio
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple
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
from .base import AuditSealer, RecordStore

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _copy(record):
    return record.model_copy(deep=True) if record is not None else None


def _newest_first(entries: List[AuditLogEntry]) -> List[AuditLogEntry]:
    return sorted(entries, key=lambda entry: entry.sequence, reverse=True)


class InMemoryRecordStore(RecordStore):
    """Dict-backed store. Mutations are serialized by one asyncio.Lock."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self.patients: Dict[UUID, Patient] = {}
        self.practices: Dict[UUID, Practice] = {}
        self.payer_integrations: Dict[str, PayerIntegration] = {}
        self.credentials: Dict[UUID, PayerCredential] = {}
        self.authorizations: Dict[UUID, PatientInsuranceAuthorization] = {}
        self.cache_entries: Dict[Tuple[UUID, DataType], InsuranceDataCacheEntry] = {}
        self.audit_entries: List[AuditLogEntry] = []

    # Seeding helpers for the external record layer

    def add_practice(self, practice: Practice) -> Practice:
        self.practices[practice.id] = _copy(practice)
        return practice

    def add_patient(self, patient: Patient) -> Patient:
        self.patients[patient.id] = _copy(patient)
        return patient

    # Patients and practices

    async def get_patient(self, patient_id: UUID) -> Optional[Patient]:
        return _copy(self.patients.get(patient_id))

    async def get_practice(self, practice_id: UUID) -> Optional[Practice]:
        return _copy(self.practices.get(practice_id))

    # Payer integrations

    async def get_payer_integration(self, payer_code: str) -> Optional[PayerIntegration]:
        return _copy(self.payer_integrations.get(payer_code))

    async def list_payer_integrations(self) -> List[PayerIntegration]:
        return [_copy(row) for row in sorted(self.payer_integrations.values(), key=lambda r: r.payer_code)]

    async def upsert_payer_integration(self, integration: PayerIntegration) -> PayerIntegration:
        async with self._lock:
            existing = self.payer_integrations.get(integration.payer_code)
            record = _copy(integration)
            if existing is not None:
                record.id = existing.id
                record.created_at = existing.created_at
            self.payer_integrations[record.payer_code] = record
            return _copy(record)

    async def update_payer_health(
        self, payer_code: str, status: HealthStatus, checked_at: datetime
    ) -> Optional[PayerIntegration]:
        async with self._lock:
            row = self.payer_integrations.get(payer_code)
            if row is None:
                return None
            row.health_status = status
            row.last_health_check = checked_at
            return _copy(row)

    # Credentials

    def _find_credential(self, practice_id: UUID, payer_integration_id: UUID) -> Optional[PayerCredential]:
        for row in self.credentials.values():
            if row.practice_id == practice_id and row.payer_integration_id == payer_integration_id:
                return row
        return None

    async def get_credential(
        self, practice_id: UUID, payer_integration_id: UUID
    ) -> Optional[PayerCredential]:
        return _copy(self._find_credential(practice_id, payer_integration_id))

    async def upsert_credential(self, credential: PayerCredential) -> PayerCredential:
        async with self._lock:
            record = _copy(credential)
            existing = self._find_credential(credential.practice_id, credential.payer_integration_id)
            if existing is not None:
                record.id = existing.id
                record.created_at = existing.created_at
                record.last_used = existing.last_used
            self.credentials[record.id] = record
            return _copy(record)

    async def update_credential(self, credential_id: UUID, **fields) -> Optional[PayerCredential]:
        async with self._lock:
            row = self.credentials.get(credential_id)
            if row is None:
                return None
            self.credentials[credential_id] = row.model_copy(update=fields)
            return _copy(self.credentials[credential_id])

    async def increment_credential_error(
        self, credential_id: UUID, error: str, max_errors: int
    ) -> Optional[PayerCredential]:
        async with self._lock:
            row = self.credentials.get(credential_id)
            if row is None:
                return None
            row.error_count += 1
            row.last_error = error
            if row.error_count >= max_errors:
                row.is_active = False
            return _copy(row)

    # Authorizations

    async def create_authorization(
        self, authorization: PatientInsuranceAuthorization
    ) -> PatientInsuranceAuthorization:
        async with self._lock:
            self.authorizations[authorization.id] = _copy(authorization)
            return _copy(authorization)

    async def get_authorization(self, authorization_id: UUID) -> Optional[PatientInsuranceAuthorization]:
        return _copy(self.authorizations.get(authorization_id))

    async def get_authorization_by_token(self, token: str) -> Optional[PatientInsuranceAuthorization]:
        for row in self.authorizations.values():
            if row.token == token:
                return _copy(row)
        return None

    async def list_authorizations(
        self, patient_id: UUID, status: Optional[AuthorizationStatus] = None
    ) -> List[PatientInsuranceAuthorization]:
        rows = [
            row for row in self.authorizations.values()
            if row.patient_id == patient_id and (status is None or row.status == status)
        ]
        rows.sort(key=lambda row: row.created_at or _EPOCH, reverse=True)
        return [_copy(row) for row in rows]

    async def list_authorized_patient_ids(self) -> List[UUID]:
        seen: List[UUID] = []
        for row in self.authorizations.values():
            if row.status == AuthorizationStatus.AUTHORIZED and row.patient_id not in seen:
                seen.append(row.patient_id)
        return seen

    async def update_authorization(
        self, authorization_id: UUID, **fields
    ) -> Optional[PatientInsuranceAuthorization]:
        async with self._lock:
            row = self.authorizations.get(authorization_id)
            if row is None:
                return None
            self.authorizations[authorization_id] = row.model_copy(update=fields)
            return _copy(self.authorizations[authorization_id])

    async def transition_authorization(
        self,
        authorization_id: UUID,
        from_status: AuthorizationStatus,
        require_unused_token: bool = False,
        **fields,
    ) -> Optional[PatientInsuranceAuthorization]:
        async with self._lock:
            row = self.authorizations.get(authorization_id)
            if row is None or row.status != from_status:
                return None
            if require_unused_token and row.token_used_at is not None:
                return None
            self.authorizations[authorization_id] = row.model_copy(update=fields)
            return _copy(self.authorizations[authorization_id])

    async def increment_link_attempts(self, authorization_id: UUID) -> Optional[PatientInsuranceAuthorization]:
        async with self._lock:
            row = self.authorizations.get(authorization_id)
            if row is None:
                return None
            row.link_attempt_count += 1
            return _copy(row)

    async def increment_resend_count(
        self, authorization_id: UUID, **fields
    ) -> Optional[PatientInsuranceAuthorization]:
        async with self._lock:
            row = self.authorizations.get(authorization_id)
            if row is None:
                return None
            updated = row.model_copy(update=fields)
            updated.resend_count = row.resend_count + 1
            self.authorizations[authorization_id] = updated
            return _copy(updated)

    # Cache

    async def get_cache_entry(
        self, patient_id: UUID, data_type: DataType
    ) -> Optional[InsuranceDataCacheEntry]:
        return _copy(self.cache_entries.get((patient_id, DataType(data_type))))

    async def list_cache_entries(self, patient_id: UUID) -> List[InsuranceDataCacheEntry]:
        return [_copy(entry) for (pid, _), entry in self.cache_entries.items() if pid == patient_id]

    async def put_cache_entry(self, entry: InsuranceDataCacheEntry) -> InsuranceDataCacheEntry:
        async with self._lock:
            key = (entry.patient_id, DataType(entry.data_type))
            record = _copy(entry)
            existing = self.cache_entries.get(key)
            if existing is not None:
                record.id = existing.id
            self.cache_entries[key] = record
            return _copy(record)

    async def mark_patient_cache_stale(self, patient_id: UUID) -> int:
        async with self._lock:
            count = 0
            for (pid, _), entry in self.cache_entries.items():
                if pid == patient_id:
                    entry.is_stale = True
                    count += 1
            return count

    # Audit

    async def append_audit_entry(self, seal: AuditSealer) -> AuditLogEntry:
        async with self._lock:
            last = self.audit_entries[-1] if self.audit_entries else None
            entry = seal(_copy(last))
            self.audit_entries.append(_copy(entry))
            return _copy(entry)

    async def list_audit_entries(
        self, after_sequence: int = 0, limit: Optional[int] = None
    ) -> List[AuditLogEntry]:
        rows = [entry for entry in self.audit_entries if entry.sequence > after_sequence]
        rows.sort(key=lambda entry: entry.sequence)
        if limit is not None:
            rows = rows[:limit]
        return [_copy(entry) for entry in rows]

    async def query_audit_entries(self, query: AuditQuery) -> List[AuditLogEntry]:
        rows = []
        for entry in self.audit_entries:
            if query.practice_id and entry.practice_id != query.practice_id:
                continue
            if query.patient_id and entry.patient_id != query.patient_id:
                continue
            if query.authorization_id and entry.authorization_id != query.authorization_id:
                continue
            if query.event_type and entry.event_type != query.event_type:
                continue
            if query.start and entry.created_at < query.start:
                continue
            if query.end and entry.created_at > query.end:
                continue
            rows.append(entry)
        return [_copy(entry) for entry in _newest_first(rows)[:query.limit]]

    async def audit_entries_for_resource(
        self, resource_type: str, resource_id: str
    ) -> List[AuditLogEntry]:
        rows = [
            entry for entry in self.audit_entries
            if entry.resource_type == resource_type and entry.resource_id == resource_id
        ]
        return [_copy(entry) for entry in _newest_first(rows)]
