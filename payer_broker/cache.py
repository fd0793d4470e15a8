"""Latest-known payer data per (patient, data type).

There is no history: every write overwrites the previous entry for its key.
Writers hold `lock(patient_id, data_type)` across read-fetch-write so that
concurrent refreshes of the same key never interleave.
"""

import logging
from datetime import timedelta
from typing import Dict, Iterable, Optional
from uuid import UUID

from .constants import DEFAULT_CACHE_TTL_HOURS
from .locks import KeyedLocks
from .schemas import (
    CacheStatus,
    DataType,
    InsuranceDataCacheEntry,
    PatientInsuranceAuthorization,
    PayerErrorCode,
    PayerResponse,
)
from .storage.base import RecordStore
from .utils import Clock, ensure_aware, utcnow

logger = logging.getLogger(__name__)


class InsuranceDataCache:

    def __init__(
        self,
        store: RecordStore,
        clock: Clock = utcnow,
        default_ttl_hours: float = DEFAULT_CACHE_TTL_HOURS,
    ):
        self.store = store
        self.default_ttl_hours = default_ttl_hours
        self._clock = clock
        self._locks = KeyedLocks()

    def lock(self, patient_id: UUID, data_type: DataType):
        return self._locks.hold((patient_id, DataType(data_type)))

    async def get(self, patient_id: UUID, data_type: DataType) -> Optional[InsuranceDataCacheEntry]:
        return await self.store.get_cache_entry(patient_id, DataType(data_type))

    def _unexpired(self, entry: InsuranceDataCacheEntry) -> bool:
        return not entry.is_stale and ensure_aware(entry.expires_at) > self._clock()

    def is_fresh(self, entry: Optional[InsuranceDataCacheEntry]) -> bool:
        """A servable success: not stale and not past its TTL."""
        return entry is not None and entry.status == CacheStatus.SUCCESS and self._unexpired(entry)

    def is_definitive_negative(self, entry: Optional[InsuranceDataCacheEntry]) -> bool:
        """An unexpired MEMBER_NOT_FOUND, which is not worth asking the payer again."""
        return (
            entry is not None
            and entry.status == CacheStatus.ERROR
            and entry.error_code == PayerErrorCode.MEMBER_NOT_FOUND.value
            and self._unexpired(entry)
        )

    def _expiry(self, ttl_hours: Optional[float]):
        now = self._clock()
        hours = self.default_ttl_hours if ttl_hours is None else ttl_hours
        return now, now + timedelta(hours=hours)

    async def write_success(
        self,
        authorization: PatientInsuranceAuthorization,
        data_type: DataType,
        payer_integration_id: Optional[UUID],
        response: PayerResponse,
        ttl_hours: Optional[float] = None,
    ) -> InsuranceDataCacheEntry:
        fetched_at, expires_at = self._expiry(ttl_hours)
        entry = InsuranceDataCacheEntry(
            patient_id=authorization.patient_id,
            data_type=DataType(data_type),
            practice_id=authorization.practice_id,
            authorization_id=authorization.id,
            payer_integration_id=payer_integration_id,
            raw_response=response.raw_response,
            normalized_data=response.data,
            status=CacheStatus.SUCCESS,
            fetched_at=fetched_at,
            expires_at=expires_at,
            is_stale=False,
            request_id=response.request_id,
            response_time_ms=response.response_time_ms,
        )
        return await self.store.put_cache_entry(entry)

    async def write_error(
        self,
        authorization: PatientInsuranceAuthorization,
        data_type: DataType,
        payer_integration_id: Optional[UUID],
        error_code: str,
        error_message: str,
        request_id: Optional[str] = None,
        response_time_ms: Optional[int] = None,
        ttl_hours: Optional[float] = None,
    ) -> InsuranceDataCacheEntry:
        fetched_at, expires_at = self._expiry(ttl_hours)
        entry = InsuranceDataCacheEntry(
            patient_id=authorization.patient_id,
            data_type=DataType(data_type),
            practice_id=authorization.practice_id,
            authorization_id=authorization.id,
            payer_integration_id=payer_integration_id,
            status=CacheStatus.ERROR,
            error_code=error_code,
            error_message=error_message,
            fetched_at=fetched_at,
            expires_at=expires_at,
            is_stale=False,
            request_id=request_id,
            response_time_ms=response_time_ms,
        )
        return await self.store.put_cache_entry(entry)

    async def mark_patient_stale(self, patient_id: UUID) -> int:
        count = await self.store.mark_patient_cache_stale(patient_id)
        logger.info(f"Marked {count} cache entries stale for patient {patient_id}")
        return count

    async def get_patient_data(
        self,
        patient_id: UUID,
        data_types: Optional[Iterable[DataType]] = None,
    ) -> Dict[DataType, InsuranceDataCacheEntry]:
        """Successful entries for a patient, optionally limited to some data types."""
        wanted = {DataType(value) for value in data_types} if data_types is not None else None
        entries = await self.store.list_cache_entries(patient_id)
        return {
            entry.data_type: entry
            for entry in entries
            if entry.status == CacheStatus.SUCCESS and (wanted is None or entry.data_type in wanted)
        }
