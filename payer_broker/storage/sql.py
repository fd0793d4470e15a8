"""PostgreSQL record store built on SQLAlchemy asyncio + asyncpg."""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy import case, select, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert

from .. import models
from ..database import DatabaseManager
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

logger = logging.getLogger(__name__)

# Advisory lock key serializing appends to the audit hash chain.
AUDIT_CHAIN_LOCK_KEY = 7_312_004_101


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, list):
        return [_plain(item) for item in value]
    return value


def _columns(record: BaseModel, exclude: Iterable[str] = ()) -> Dict[str, Any]:
    excluded = set(exclude)
    return {key: _plain(value) for key, value in record.model_dump().items() if key not in excluded}


def _fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {key: _plain(value) for key, value in fields.items()}


class SqlAlchemyRecordStore(RecordStore):
    """RecordStore over the tables in payer_broker.models."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    async def close(self) -> None:
        await self.db.close()

    async def _one(self, stmt, schema):
        async with self.db.get_session() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return schema.model_validate(row) if row is not None else None

    async def _many(self, stmt, schema) -> list:
        async with self.db.get_session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [schema.model_validate(row) for row in rows]

    # Patients and practices

    async def get_patient(self, patient_id: UUID) -> Optional[Patient]:
        return await self._one(select(models.Patient).where(models.Patient.id == patient_id), Patient)

    async def get_practice(self, practice_id: UUID) -> Optional[Practice]:
        return await self._one(select(models.Practice).where(models.Practice.id == practice_id), Practice)

    async def save_practice(self, practice: Practice) -> Practice:
        async with self.db.get_session() as session:
            await session.merge(models.Practice(**_columns(practice)))
        return practice

    async def save_patient(self, patient: Patient) -> Patient:
        async with self.db.get_session() as session:
            await session.merge(models.Patient(**_columns(patient)))
        return patient

    # Payer integrations

    async def get_payer_integration(self, payer_code: str) -> Optional[PayerIntegration]:
        table = models.PayerIntegration
        return await self._one(select(table).where(table.payer_code == payer_code), PayerIntegration)

    async def list_payer_integrations(self) -> List[PayerIntegration]:
        table = models.PayerIntegration
        return await self._many(select(table).order_by(table.payer_code), PayerIntegration)

    async def upsert_payer_integration(self, integration: PayerIntegration) -> PayerIntegration:
        table = models.PayerIntegration
        values = _columns(integration, exclude=("created_at",))
        stmt = pg_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.payer_code],
            set_={key: stmt.excluded[key] for key in values if key not in ("id", "payer_code")},
        ).returning(table)
        return await self._one(stmt, PayerIntegration)

    async def update_payer_health(
        self, payer_code: str, status: HealthStatus, checked_at: datetime
    ) -> Optional[PayerIntegration]:
        table = models.PayerIntegration
        stmt = (
            update(table)
            .where(table.payer_code == payer_code)
            .values(health_status=_plain(status), last_health_check=checked_at)
            .returning(table)
        )
        return await self._one(stmt, PayerIntegration)

    # Credentials

    async def get_credential(
        self, practice_id: UUID, payer_integration_id: UUID
    ) -> Optional[PayerCredential]:
        table = models.PayerCredential
        stmt = select(table).where(
            table.practice_id == practice_id,
            table.payer_integration_id == payer_integration_id,
        )
        return await self._one(stmt, PayerCredential)

    async def upsert_credential(self, credential: PayerCredential) -> PayerCredential:
        table = models.PayerCredential
        values = _columns(credential)
        preserved = ("id", "practice_id", "payer_integration_id", "created_at", "last_used")
        stmt = pg_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            constraint="uq_payer_credential_practice_payer",
            set_={key: stmt.excluded[key] for key in values if key not in preserved},
        ).returning(table)
        return await self._one(stmt, PayerCredential)

    async def update_credential(self, credential_id: UUID, **fields) -> Optional[PayerCredential]:
        table = models.PayerCredential
        stmt = update(table).where(table.id == credential_id).values(**_fields(fields)).returning(table)
        return await self._one(stmt, PayerCredential)

    async def increment_credential_error(
        self, credential_id: UUID, error: str, max_errors: int
    ) -> Optional[PayerCredential]:
        table = models.PayerCredential
        new_count = table.error_count + 1
        stmt = (
            update(table)
            .where(table.id == credential_id)
            .values(
                error_count=new_count,
                last_error=error,
                is_active=case((new_count >= max_errors, False), else_=table.is_active),
            )
            .returning(table)
        )
        return await self._one(stmt, PayerCredential)

    # Authorizations

    async def create_authorization(
        self, authorization: PatientInsuranceAuthorization
    ) -> PatientInsuranceAuthorization:
        async with self.db.get_session() as session:
            row = models.PatientInsuranceAuthorization(**_columns(authorization))
            session.add(row)
            await session.flush()
            return PatientInsuranceAuthorization.model_validate(row)

    async def get_authorization(self, authorization_id: UUID) -> Optional[PatientInsuranceAuthorization]:
        table = models.PatientInsuranceAuthorization
        return await self._one(select(table).where(table.id == authorization_id), PatientInsuranceAuthorization)

    async def get_authorization_by_token(self, token: str) -> Optional[PatientInsuranceAuthorization]:
        table = models.PatientInsuranceAuthorization
        return await self._one(select(table).where(table.token == token), PatientInsuranceAuthorization)

    async def list_authorizations(
        self, patient_id: UUID, status: Optional[AuthorizationStatus] = None
    ) -> List[PatientInsuranceAuthorization]:
        table = models.PatientInsuranceAuthorization
        stmt = select(table).where(table.patient_id == patient_id)
        if status is not None:
            stmt = stmt.where(table.status == _plain(status))
        stmt = stmt.order_by(table.created_at.desc())
        return await self._many(stmt, PatientInsuranceAuthorization)

    async def list_authorized_patient_ids(self) -> List[UUID]:
        table = models.PatientInsuranceAuthorization
        stmt = select(table.patient_id).where(table.status == "authorized").distinct()
        async with self.db.get_session() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def update_authorization(
        self, authorization_id: UUID, **fields
    ) -> Optional[PatientInsuranceAuthorization]:
        table = models.PatientInsuranceAuthorization
        stmt = update(table).where(table.id == authorization_id).values(**_fields(fields)).returning(table)
        return await self._one(stmt, PatientInsuranceAuthorization)

    async def transition_authorization(
        self,
        authorization_id: UUID,
        from_status: AuthorizationStatus,
        require_unused_token: bool = False,
        **fields,
    ) -> Optional[PatientInsuranceAuthorization]:
        table = models.PatientInsuranceAuthorization
        stmt = update(table).where(table.id == authorization_id, table.status == _plain(from_status))
        if require_unused_token:
            stmt = stmt.where(table.token_used_at.is_(None))
        stmt = stmt.values(**_fields(fields)).returning(table)
        return await self._one(stmt, PatientInsuranceAuthorization)

    async def increment_link_attempts(self, authorization_id: UUID) -> Optional[PatientInsuranceAuthorization]:
        table = models.PatientInsuranceAuthorization
        stmt = (
            update(table)
            .where(table.id == authorization_id)
            .values(link_attempt_count=table.link_attempt_count + 1)
            .returning(table)
        )
        return await self._one(stmt, PatientInsuranceAuthorization)

    async def increment_resend_count(
        self, authorization_id: UUID, **fields
    ) -> Optional[PatientInsuranceAuthorization]:
        table = models.PatientInsuranceAuthorization
        stmt = (
            update(table)
            .where(table.id == authorization_id)
            .values(resend_count=table.resend_count + 1, **_fields(fields))
            .returning(table)
        )
        return await self._one(stmt, PatientInsuranceAuthorization)

    # Cache

    async def get_cache_entry(
        self, patient_id: UUID, data_type: DataType
    ) -> Optional[InsuranceDataCacheEntry]:
        table = models.InsuranceDataCache
        stmt = select(table).where(table.patient_id == patient_id, table.data_type == _plain(DataType(data_type)))
        return await self._one(stmt, InsuranceDataCacheEntry)

    async def list_cache_entries(self, patient_id: UUID) -> List[InsuranceDataCacheEntry]:
        table = models.InsuranceDataCache
        return await self._many(select(table).where(table.patient_id == patient_id), InsuranceDataCacheEntry)

    async def put_cache_entry(self, entry: InsuranceDataCacheEntry) -> InsuranceDataCacheEntry:
        table = models.InsuranceDataCache
        values = _columns(entry)
        stmt = pg_insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            constraint="uq_insurance_cache_patient_type",
            set_={key: stmt.excluded[key] for key in values if key not in ("id", "patient_id", "data_type")},
        ).returning(table)
        return await self._one(stmt, InsuranceDataCacheEntry)

    async def mark_patient_cache_stale(self, patient_id: UUID) -> int:
        table = models.InsuranceDataCache
        stmt = update(table).where(table.patient_id == patient_id).values(is_stale=True)
        async with self.db.get_session() as session:
            result = await session.execute(stmt)
            return result.rowcount or 0

    # Audit

    async def append_audit_entry(self, seal: AuditSealer) -> AuditLogEntry:
        table = models.InsuranceAuditLog
        async with self.db.get_session() as session:
            await session.execute(
                text("SELECT pg_advisory_xact_lock(:key)"), {"key": AUDIT_CHAIN_LOCK_KEY}
            )
            last_row = (
                await session.execute(select(table).order_by(table.sequence.desc()).limit(1))
            ).scalar_one_or_none()
            last = AuditLogEntry.model_validate(last_row) if last_row is not None else None
            entry = seal(last)
            session.add(table(**_columns(entry)))
            await session.flush()
            return entry

    async def list_audit_entries(
        self, after_sequence: int = 0, limit: Optional[int] = None
    ) -> List[AuditLogEntry]:
        table = models.InsuranceAuditLog
        stmt = select(table).where(table.sequence > after_sequence).order_by(table.sequence)
        if limit is not None:
            stmt = stmt.limit(limit)
        return await self._many(stmt, AuditLogEntry)

    async def query_audit_entries(self, query: AuditQuery) -> List[AuditLogEntry]:
        table = models.InsuranceAuditLog
        stmt = select(table)
        if query.practice_id:
            stmt = stmt.where(table.practice_id == query.practice_id)
        if query.patient_id:
            stmt = stmt.where(table.patient_id == query.patient_id)
        if query.authorization_id:
            stmt = stmt.where(table.authorization_id == query.authorization_id)
        if query.event_type:
            stmt = stmt.where(table.event_type == _plain(query.event_type))
        if query.start:
            stmt = stmt.where(table.created_at >= query.start)
        if query.end:
            stmt = stmt.where(table.created_at <= query.end)
        stmt = stmt.order_by(table.sequence.desc()).limit(query.limit)
        return await self._many(stmt, AuditLogEntry)

    async def audit_entries_for_resource(
        self, resource_type: str, resource_id: str
    ) -> List[AuditLogEntry]:
        table = models.InsuranceAuditLog
        stmt = (
            select(table)
            .where(table.resource_type == resource_type, table.resource_id == resource_id)
            .order_by(table.sequence.desc())
        )
        return await self._many(stmt, AuditLogEntry)
