"""Payer Data Broker: consent-gated fetching of insurance data.

`fetch_insurance_data` applies its checks in a fixed order and the first
failing check decides the outcome:

    1. authorization is active          -> AUTHORIZATION_NOT_ACTIVE
    2. data type is within its scopes   -> SCOPE_NOT_AUTHORIZED
    3. patient and practice exist       -> PATIENT_NOT_FOUND / PRACTICE_NOT_FOUND
    4. fresh cache entry (unless forced)   returned without calling the payer
    5. insurer name maps to a payer     -> UNSUPPORTED_PROVIDER
    6. adapter registered and capable   -> NO_ADAPTER / CAPABILITY_NOT_SUPPORTED
    7. payer integration configured     -> PAYER_NOT_CONFIGURED
    8. usable credentials in the vault  -> NO_VALID_CREDENTIALS
    9. adapter call, bounded by a timeout

Every outcome, including rejections and cache hits, is written to the audit
trail.
"""

import asyncio
import logging
import time
from typing import Dict, Iterable, Optional
from uuid import UUID, uuid4

from .adapters.base import PayerAdapter, PayerRequestContext
from .adapters.errors import PayerAdapterError
from .adapters.registry import AdapterRegistry
from .audit import RESOURCE_PATIENT, AuditTrail
from .cache import InsuranceDataCache
from .constants import DEFAULT_ADAPTER_TIMEOUT_SECONDS, DEFAULT_HEALTH_TIMEOUT_SECONDS
from .schemas import (
    Actor,
    AuditEventType,
    AuthorizationStatus,
    CacheStatus,
    DataType,
    FetchOptions,
    FetchResult,
    HealthCheckResult,
    HealthStatus,
    InsuranceDataCacheEntry,
    Patient,
    PatientInsuranceAuthorization,
    PayerError,
    PayerErrorCode,
    PayerResponse,
    Practice,
    RejectionReason,
)
from .storage.base import RecordStore
from .utils import Clock, ensure_aware, utcnow
from .vault import CredentialVault

logger = logging.getLogger(__name__)


class PayerDataBroker:

    def __init__(
        self,
        store: RecordStore,
        vault: CredentialVault,
        registry: AdapterRegistry,
        cache: InsuranceDataCache,
        audit: AuditTrail,
        adapter_timeout_seconds: float = DEFAULT_ADAPTER_TIMEOUT_SECONDS,
        health_timeout_seconds: float = DEFAULT_HEALTH_TIMEOUT_SECONDS,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.vault = vault
        self.registry = registry
        self.cache = cache
        self.audit = audit
        self.adapter_timeout_seconds = adapter_timeout_seconds
        self.health_timeout_seconds = health_timeout_seconds
        self._clock = clock

    async def fetch_insurance_data(
        self,
        authorization: PatientInsuranceAuthorization,
        data_type: DataType,
        options: Optional[FetchOptions] = None,
        actor: Optional[Actor] = None,
    ) -> FetchResult:
        """Fetch one data type for the patient behind `authorization`."""
        options = options or FetchOptions()
        actor = actor or Actor()
        data_type = DataType(data_type)

        # Re-read so a revocation since the caller loaded the grant is honored.
        authorization = await self.store.get_authorization(authorization.id) or authorization

        expires_at = ensure_aware(authorization.expires_at)
        if authorization.status != AuthorizationStatus.AUTHORIZED or (
            expires_at is not None and expires_at <= self._clock()
        ):
            return await self._reject(
                authorization, data_type, actor, RejectionReason.AUTHORIZATION_NOT_ACTIVE,
                "No active authorization for this patient",
            )

        if not authorization.has_scope(data_type):
            return await self._reject(
                authorization, data_type, actor, RejectionReason.SCOPE_NOT_AUTHORIZED,
                f"{data_type.value} is not within the authorized scopes",
            )

        patient = await self.store.get_patient(authorization.patient_id)
        if patient is None:
            return await self._reject(
                authorization, data_type, actor, RejectionReason.PATIENT_NOT_FOUND, "Patient not found"
            )
        practice = await self.store.get_practice(authorization.practice_id)
        if practice is None:
            return await self._reject(
                authorization, data_type, actor, RejectionReason.PRACTICE_NOT_FOUND, "Practice not found"
            )

        async with self.cache.lock(patient.id, data_type):
            return await self._fetch_locked(authorization, patient, practice, data_type, options, actor)

    async def _fetch_locked(
        self,
        authorization: PatientInsuranceAuthorization,
        patient: Patient,
        practice: Practice,
        data_type: DataType,
        options: FetchOptions,
        actor: Actor,
    ) -> FetchResult:
        if not options.force_refresh:
            entry = await self.cache.get(patient.id, data_type)
            if self.cache.is_fresh(entry) or self.cache.is_definitive_negative(entry):
                return await self._serve_cached(authorization, data_type, entry, actor)

        payer_code = self.registry.resolve_payer_code(patient.insurance_provider)
        if payer_code is None:
            return await self._reject(
                authorization, data_type, actor, RejectionReason.UNSUPPORTED_PROVIDER,
                f"Unsupported insurance provider: {patient.insurance_provider or 'none on file'}",
            )

        adapter = self.registry.get_adapter(payer_code)
        if adapter is None:
            return await self._reject(
                authorization, data_type, actor, RejectionReason.NO_ADAPTER,
                f"No adapter available for payer {payer_code}",
            )
        if not adapter.supports_capability(data_type):
            return await self._reject(
                authorization, data_type, actor, RejectionReason.CAPABILITY_NOT_SUPPORTED,
                f"{payer_code} does not support {data_type.value}",
            )

        integration = await self.store.get_payer_integration(payer_code)
        if integration is None or not integration.is_active:
            return await self._reject(
                authorization, data_type, actor, RejectionReason.PAYER_NOT_CONFIGURED,
                f"Payer integration not configured: {payer_code}",
            )

        credential = await self.vault.get_credentials(practice.id, integration.id)
        if credential is None:
            return await self._reject(
                authorization, data_type, actor, RejectionReason.NO_VALID_CREDENTIALS,
                f"No valid credentials for {payer_code}",
            )

        context = PayerRequestContext(
            request_id=str(uuid4()),
            practice_id=practice.id,
            patient_id=patient.id,
            member_id=patient.insurance_id or "",
            date_of_birth=patient.date_of_birth,
            first_name=patient.first_name,
            last_name=patient.last_name,
            group_number=patient.insurance_group_number,
            payer_integration=integration,
            credential=credential,
        )
        response = await self._dispatch(adapter, context, data_type, options)

        audit_details = {
            "payer_code": payer_code,
            "cached": False,
            "force_refresh": options.force_refresh,
            "request_id": response.request_id,
            "response_time_ms": response.response_time_ms,
        }

        if response.success:
            await self.vault.record_usage(credential.credential.id)
            entry = await self.cache.write_success(
                authorization, data_type, integration.id, response, options.cache_ttl_hours
            )
            await self._audit_access(authorization, data_type, actor, audit_details, success=True)
            return FetchResult(
                success=True,
                data_type=data_type,
                data=response.data,
                cached=False,
                cached_at=entry.fetched_at,
                response_time_ms=response.response_time_ms,
                request_id=response.request_id,
            )

        error = response.error or PayerError(
            code=PayerErrorCode.UNKNOWN_ERROR, message="Payer returned no error detail"
        )
        if error.code == PayerErrorCode.AUTH_FAILED:
            await self.vault.record_error(credential.credential.id, error.message)

        await self.cache.write_error(
            authorization, data_type, integration.id,
            error_code=error.code.value,
            error_message=error.message,
            request_id=response.request_id,
            response_time_ms=response.response_time_ms,
            ttl_hours=options.cache_ttl_hours,
        )
        audit_details["error_code"] = error.code.value
        await self._audit_access(
            authorization, data_type, actor, audit_details, success=False, error_message=error.message
        )
        logger.warning(
            f"{payer_code} {data_type.value} fetch failed for patient {patient.id}: "
            f"{error.code.value} {error.message}"
        )
        return FetchResult(
            success=False,
            data_type=data_type,
            error=error.message,
            error_code=error.code.value,
            response_time_ms=response.response_time_ms,
            request_id=response.request_id,
        )

    async def _dispatch(
        self,
        adapter: PayerAdapter,
        context: PayerRequestContext,
        data_type: DataType,
        options: FetchOptions,
    ) -> PayerResponse:
        """Call the adapter; timeouts and raised errors become error envelopes."""
        if data_type == DataType.ELIGIBILITY:
            call = adapter.check_eligibility(context)
        elif data_type == DataType.BENEFITS:
            call = adapter.get_benefits(context)
        elif data_type == DataType.CLAIMS_HISTORY:
            call = adapter.get_claims_history(context, options.date_range)
        else:
            call = adapter.check_prior_auth(context, options.service_code or "")

        start = time.monotonic()
        try:
            return await asyncio.wait_for(call, timeout=self.adapter_timeout_seconds)
        except asyncio.TimeoutError:
            error = PayerError(
                code=PayerErrorCode.SERVICE_UNAVAILABLE,
                message=f"{adapter.payer_code} did not respond within {self.adapter_timeout_seconds:g}s",
            )
        except PayerAdapterError as e:
            error = e.to_error()
        except Exception as e:
            logger.exception(f"Adapter {adapter.payer_code} raised unexpectedly")
            error = PayerError(code=PayerErrorCode.UNKNOWN_ERROR, message=str(e) or type(e).__name__)

        return PayerResponse(
            success=False,
            error=error,
            response_time_ms=int((time.monotonic() - start) * 1000),
            request_id=context.request_id,
        )

    async def _serve_cached(
        self,
        authorization: PatientInsuranceAuthorization,
        data_type: DataType,
        entry: InsuranceDataCacheEntry,
        actor: Actor,
    ) -> FetchResult:
        success = entry.status == CacheStatus.SUCCESS
        await self._audit_access(
            authorization, data_type, actor,
            {"cached": True, "request_id": entry.request_id, "error_code": entry.error_code},
            success=success,
            error_message=None if success else entry.error_message,
        )
        return FetchResult(
            success=success,
            data_type=data_type,
            data=entry.normalized_data if success else None,
            cached=True,
            cached_at=entry.fetched_at,
            error=None if success else entry.error_message,
            error_code=None if success else entry.error_code,
            response_time_ms=entry.response_time_ms,
            request_id=entry.request_id,
        )

    async def _reject(
        self,
        authorization: PatientInsuranceAuthorization,
        data_type: DataType,
        actor: Actor,
        reason: RejectionReason,
        message: str,
    ) -> FetchResult:
        await self._audit_access(
            authorization, data_type, actor, {"rejection": reason.value},
            success=False, error_message=message,
        )
        logger.info(f"Rejected {data_type.value} fetch for authorization {authorization.id}: {reason.value}")
        return FetchResult(
            success=False,
            data_type=data_type,
            error=message,
            error_code=reason.value,
            rejection=reason,
        )

    async def _audit_access(
        self,
        authorization: PatientInsuranceAuthorization,
        data_type: DataType,
        actor: Actor,
        details: Dict,
        success: bool,
        error_message: Optional[str] = None,
    ) -> None:
        await self.audit.record(
            AuditEventType.DATA_ACCESSED,
            resource_type=RESOURCE_PATIENT,
            resource_id=authorization.patient_id,
            actor=actor,
            practice_id=authorization.practice_id,
            patient_id=authorization.patient_id,
            authorization_id=authorization.id,
            data_type=data_type,
            details=details,
            success=success,
            error_message=error_message,
        )

    async def fetch_all_authorized_data(
        self,
        authorization: PatientInsuranceAuthorization,
        options: Optional[FetchOptions] = None,
        actor: Optional[Actor] = None,
    ) -> Dict[DataType, FetchResult]:
        """Fetch every scope concurrently. Each scope succeeds or fails on its own."""
        scopes = list(dict.fromkeys(authorization.scopes))
        outcomes = await asyncio.gather(
            *(self.fetch_insurance_data(authorization, scope, options, actor) for scope in scopes),
            return_exceptions=True,
        )

        results: Dict[DataType, FetchResult] = {}
        for scope, outcome in zip(scopes, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.error(f"Fetching {scope.value} for authorization {authorization.id} failed: {outcome}")
                outcome = FetchResult(
                    success=False,
                    data_type=scope,
                    error=str(outcome) or type(outcome).__name__,
                    error_code=PayerErrorCode.UNKNOWN_ERROR.value,
                )
            results[scope] = outcome
        return results

    async def refresh_stale_data(
        self, patient_id: UUID, actor: Optional[Actor] = None
    ) -> Dict[UUID, Dict[DataType, FetchResult]]:
        """Force-refresh every scope of every authorized grant for a patient."""
        options = FetchOptions(force_refresh=True)
        refreshed: Dict[UUID, Dict[DataType, FetchResult]] = {}
        for grant in await self.store.list_authorizations(patient_id, AuthorizationStatus.AUTHORIZED):
            results = await self.fetch_all_authorized_data(grant, options, actor)
            refreshed[grant.id] = results
            await self.audit.record(
                AuditEventType.DATA_REFRESHED,
                resource_type=RESOURCE_PATIENT,
                resource_id=patient_id,
                actor=actor,
                practice_id=grant.practice_id,
                patient_id=patient_id,
                authorization_id=grant.id,
                details={
                    "refreshed": sorted(scope.value for scope, result in results.items() if result.success),
                    "failed": sorted(scope.value for scope, result in results.items() if not result.success),
                },
                success=all(result.success for result in results.values()),
            )
        return refreshed

    async def get_cached_data_for_patient(
        self,
        patient_id: UUID,
        data_types: Optional[Iterable[DataType]] = None,
    ) -> Dict[DataType, InsuranceDataCacheEntry]:
        """Successful cache entries for a patient, without contacting any payer."""
        return await self.cache.get_patient_data(patient_id, data_types)

    async def check_payer_health(self, payer_code: str) -> Optional[HealthCheckResult]:
        """Health-check one registered adapter and persist the outcome.

        A check that raises or times out is reported as `down`. Returns None
        when no adapter is registered for the code.
        """
        adapter = self.registry.get_adapter(payer_code)
        if adapter is None:
            return None
        payer_code = payer_code.upper()

        try:
            result = await asyncio.wait_for(adapter.health_check(), timeout=self.health_timeout_seconds)
        except asyncio.TimeoutError:
            result = HealthCheckResult(
                payer_code=payer_code, status=HealthStatus.DOWN,
                message=f"Health check timed out after {self.health_timeout_seconds:g}s",
            )
        except Exception as e:
            logger.warning(f"Health check for {payer_code} raised: {e}")
            result = HealthCheckResult(
                payer_code=payer_code, status=HealthStatus.DOWN, message=str(e) or type(e).__name__,
            )

        checked_at = result.checked_at or self._clock()
        result = result.model_copy(update={"checked_at": checked_at})
        await self.store.update_payer_health(payer_code, result.status, checked_at)
        return result

    async def check_all_payer_health(self) -> Dict[str, HealthCheckResult]:
        """Health-check every registered adapter concurrently."""
        codes = self.registry.get_available_payers()
        results = await asyncio.gather(*(self.check_payer_health(code) for code in codes))
        return {result.payer_code: result for result in results}
