"""CMS Blue Button 2.0 (FHIR R4) adapter for Medicare beneficiaries."""

import logging
import time
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

import httpx

from ..constants import DEFAULT_TOKEN_LIFETIME_SECONDS
from ..schemas import (
    AccumulatorAmounts,
    ApiType,
    ClaimSummary,
    DataType,
    DateRange,
    DecryptedCredential,
    HealthCheckResult,
    HealthStatus,
    NormalizedBenefits,
    NormalizedClaimsHistory,
    NormalizedEligibility,
    OAuthClientCredentials,
    PayerResponse,
)
from .base import AccessToken, HttpPayerAdapter, PayerRequestContext, parse_amount
from .errors import PayerAuthenticationError, PayerMemberNotFoundError

logger = logging.getLogger(__name__)

SANDBOX_BASE_URL = "https://sandbox.bluebutton.cms.gov"
PRODUCTION_BASE_URL = "https://api.bluebutton.cms.gov"
TOKEN_PATH = "/v2/o/token/"
FHIR_HEADERS = {"Accept": "application/fhir+json"}

PLAN_TYPE_NAMES = {
    "PART-A": "Medicare Part A",
    "PART-B": "Medicare Part B",
    "PART-D": "Medicare Part D",
}

# Standard Part B figures; Blue Button does not expose plan accumulators.
PART_B_DEDUCTIBLE = 233
OUT_OF_POCKET_MAX = 8850
PART_B_COINSURANCE_PERCENT = 20


def _total(eob: Dict[str, Any], category: str) -> float:
    for total in eob.get("total") or []:
        codings = (total.get("category") or {}).get("coding") or [{}]
        if codings[0].get("code") == category:
            return parse_amount((total.get("amount") or {}).get("value"))
    return 0.0


class MedicareAdapter(HttpPayerAdapter):
    payer_code = "MEDICARE"
    payer_name = "Medicare (CMS Blue Button 2.0)"
    api_type = ApiType.FHIR_R4
    aliases = ("medicare", "cms")
    capabilities = frozenset({DataType.ELIGIBILITY, DataType.BENEFITS, DataType.CLAIMS_HISTORY})

    def __init__(self, use_sandbox: bool = True, **kwargs):
        super().__init__(SANDBOX_BASE_URL if use_sandbox else PRODUCTION_BASE_URL, **kwargs)
        self.use_sandbox = use_sandbox

    async def authenticate(self, credential: DecryptedCredential) -> AccessToken:
        """Client-credentials grant against the Blue Button token endpoint."""
        payload = credential.payload
        if not isinstance(payload, OAuthClientCredentials):
            raise PayerAuthenticationError(
                f"Invalid credential type for Medicare: {payload.type}", self.payer_code
            )

        response = await self.request(
            "POST",
            payload.token_endpoint or TOKEN_PATH,
            data={
                "grant_type": "client_credentials",
                "client_id": payload.client_id,
                "client_secret": payload.client_secret,
            },
        )
        if response.status_code == 429:
            self.raise_for_status(response, "Token request throttled")
        if not response.is_success:
            raise PayerAuthenticationError(
                f"Token request failed: HTTP {response.status_code}",
                self.payer_code,
                {"status": response.status_code},
            )

        body = response.json()
        token = body.get("access_token")
        if not token:
            raise PayerAuthenticationError("Token response did not include an access token", self.payer_code)

        expires_in = body.get("expires_in") or DEFAULT_TOKEN_LIFETIME_SECONDS
        return AccessToken(token=token, expires_at=self._clock() + timedelta(seconds=int(expires_in)))

    async def health_check(self) -> HealthCheckResult:
        start = time.monotonic()
        try:
            async with self.client(timeout=self.health_timeout_seconds) as client:
                response = await client.get("/health")
        except httpx.HTTPError as e:
            return HealthCheckResult(
                payer_code=self.payer_code,
                status=HealthStatus.DOWN,
                latency_ms=self._elapsed_ms(start),
                message=str(e) or type(e).__name__,
                checked_at=self._clock(),
            )

        latency_ms = self._elapsed_ms(start)
        if response.is_success:
            status, message = HealthStatus.HEALTHY, None
        elif response.status_code < 500:
            status, message = HealthStatus.DEGRADED, f"HTTP {response.status_code}"
        else:
            status, message = HealthStatus.DOWN, f"HTTP {response.status_code}"
        return HealthCheckResult(
            payer_code=self.payer_code,
            status=status,
            latency_ms=latency_ms,
            message=message,
            checked_at=self._clock(),
        )

    async def _headers(self, context: PayerRequestContext) -> Dict[str, str]:
        token = await self.ensure_token(context.credential)
        return {**FHIR_HEADERS, "Authorization": f"Bearer {token}"}

    async def check_eligibility(self, context: PayerRequestContext) -> PayerResponse:
        async def operation():
            headers = await self._headers(context)

            # Search by Medicare Beneficiary Identifier
            response = await self.request(
                "GET", "/v2/fhir/Patient", params={"identifier": context.member_id}, headers=headers
            )
            self.raise_for_status(response, "Patient search failed")
            entries = response.json().get("entry") or []
            if not entries:
                raise PayerMemberNotFoundError(self.payer_code, context.member_id)
            patient = entries[0].get("resource") or {}

            response = await self.request(
                "GET", "/v2/fhir/Coverage",
                params={"beneficiary": f"Patient/{patient.get('id')}"},
                headers=headers,
            )
            self.raise_for_status(response, "Coverage lookup failed")
            coverage_entries = response.json().get("entry") or []
            coverage = coverage_entries[0].get("resource") if coverage_entries else None

            return self.normalize_eligibility(patient, coverage), {"patient": patient, "coverage": coverage}

        return await self.execute(context, operation)

    async def get_benefits(self, context: PayerRequestContext) -> PayerResponse:
        async def operation():
            headers = await self._headers(context)
            response = await self.request(
                "GET", "/v2/fhir/ExplanationOfBenefit",
                params={"patient": context.member_id, "_count": "1"},
                headers=headers,
            )
            self.raise_for_status(response, "Benefits lookup failed")
            benefits = NormalizedBenefits(
                deductible=AccumulatorAmounts(individual=PART_B_DEDUCTIBLE, family=PART_B_DEDUCTIBLE),
                out_of_pocket_max=AccumulatorAmounts(individual=OUT_OF_POCKET_MAX, family=OUT_OF_POCKET_MAX),
                copay=0,
                coinsurance=PART_B_COINSURANCE_PERCENT,
                prior_auth_required=False,
                referral_required=False,
            )
            return benefits, response.json()

        return await self.execute(context, operation)

    async def get_claims_history(
        self, context: PayerRequestContext, date_range: Optional[DateRange] = None
    ) -> PayerResponse:
        async def operation():
            headers = await self._headers(context)
            params: List[tuple] = [("patient", context.member_id)]
            if date_range is not None and date_range.start:
                params.append(("service-date", f"ge{date_range.start.isoformat()}"))
            if date_range is not None and date_range.end:
                params.append(("service-date", f"le{date_range.end.isoformat()}"))

            response = await self.request(
                "GET", "/v2/fhir/ExplanationOfBenefit", params=params, headers=headers
            )
            self.raise_for_status(response, "Claims history lookup failed")
            bundle = response.json()
            return self.normalize_claims_history(bundle), bundle

        return await self.execute(context, operation)

    # Normalization

    def normalize_eligibility(
        self, patient: Dict[str, Any], coverage: Optional[Dict[str, Any]]
    ) -> NormalizedEligibility:
        today = self._clock().date()
        period = (coverage or {}).get("period") or {}
        start = period.get("start") or today.isoformat()
        end = period.get("end")

        plan_name = "Medicare"
        codings = ((coverage or {}).get("type") or {}).get("coding") or []
        if codings:
            plan_name = PLAN_TYPE_NAMES.get(codings[0].get("code"), plan_name)

        member_id = None
        for identifier in patient.get("identifier") or []:
            if "mbi" in (identifier.get("system") or ""):
                member_id = identifier.get("value")
                break

        return NormalizedEligibility(
            is_eligible=end is None or date.fromisoformat(end[:10]) > today,
            effective_date=start,
            termination_date=end,
            plan_name=plan_name,
            plan_type="Medicare",
            member_id=member_id,
            group_number=(coverage or {}).get("subscriberId"),
            coverage_level="individual",
            # Medicare has no provider networks
            network_status="in_network",
        )

    def normalize_claims_history(self, bundle: Dict[str, Any]) -> NormalizedClaimsHistory:
        claims = []
        for entry in bundle.get("entry") or []:
            eob = entry.get("resource") or {}
            billed = _total(eob, "submitted")
            allowed = _total(eob, "eligible")
            paid = _total(eob, "benefit")
            identifiers = eob.get("identifier") or [{}]
            service_codings = (eob.get("type") or {}).get("coding") or [{}]
            claims.append(ClaimSummary(
                claim_number=identifiers[0].get("value") or eob.get("id") or "unknown",
                date_of_service=(eob.get("billablePeriod") or {}).get("start") or eob.get("created"),
                provider=(eob.get("provider") or {}).get("display") or "Unknown Provider",
                service_type=service_codings[0].get("display") or "Medical Service",
                billed_amount=billed,
                allowed_amount=allowed,
                paid_amount=paid,
                patient_responsibility=allowed - paid,
                status=eob.get("status") or "unknown",
            ))

        return NormalizedClaimsHistory(
            claims=claims,
            total_claims=len(claims),
            total_paid=sum(claim.paid_amount for claim in claims),
        )
