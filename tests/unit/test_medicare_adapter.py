"""Unit tests for the Medicare Blue Button adapter."""
from datetime import date
from urllib.parse import parse_qs
from uuid import uuid4

import httpx
import pytest

from payer_broker.adapters.base import PayerRequestContext
from payer_broker.adapters.medicare import MedicareAdapter
from payer_broker.schemas import (
    ApiKeyCredentials,
    DataType,
    DateRange,
    DecryptedCredential,
    HealthStatus,
    OAuthClientCredentials,
    PayerCredential,
    PayerErrorCode,
    PayerIntegration,
)

PATIENT_BUNDLE = {
    "resourceType": "Bundle",
    "entry": [{
        "resource": {
            "resourceType": "Patient",
            "id": "-20140000008325",
            "identifier": [
                {"system": "http://hl7.org/fhir/sid/us-mbi", "value": "1EG4TE5MK73"},
            ],
        }
    }],
}

COVERAGE_BUNDLE = {
    "entry": [{
        "resource": {
            "resourceType": "Coverage",
            "period": {"start": "2016-01-01", "end": "2027-12-31"},
            "type": {"coding": [{"code": "PART-B"}]},
        }
    }],
}

EOB_BUNDLE = {
    "entry": [
        {"resource": {
            "id": "carrier--10045426206",
            "identifier": [{"value": "CLM-1"}],
            "status": "active",
            "billablePeriod": {"start": "2025-11-02"},
            "provider": {"display": "Lakeside Cardiology"},
            "type": {"coding": [{"display": "Carrier"}]},
            "total": [
                {"category": {"coding": [{"code": "submitted"}]}, "amount": {"value": 250.0}},
                {"category": {"coding": [{"code": "eligible"}]}, "amount": {"value": 180.0}},
                {"category": {"coding": [{"code": "benefit"}]}, "amount": {"value": 144.0}},
            ],
        }},
        {"resource": {
            "id": "outpatient--1",
            "total": [
                {"category": {"coding": [{"code": "benefit"}]}, "amount": {"value": "56.5"}},
            ],
        }},
    ],
}


class PayerRoutes:
    """httpx.MockTransport handler keyed by path, recording each request."""

    def __init__(self):
        self.routes = {}
        self.requests = []

    def add(self, path, *responses):
        self.routes[path] = list(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get(request.url.path)
        if not queue:
            return httpx.Response(404, json={"detail": "no route"})
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        return response

    def hits(self, path):
        return [r for r in self.requests if r.url.path == path]


@pytest.fixture
def routes():
    routes = PayerRoutes()
    routes.add("/v2/o/token/", httpx.Response(200, json={"access_token": "tok-1", "expires_in": 3600}))
    return routes


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def adapter(routes, sleeps, clock):
    async def fake_sleep(delay):
        sleeps.append(delay)

    return MedicareAdapter(
        use_sandbox=True,
        transport=httpx.MockTransport(routes),
        clock=clock,
        sleep=fake_sleep,
    )


def _context(payload=None):
    integration = PayerIntegration(payer_code="MEDICARE", payer_name="Medicare")
    credential = PayerCredential(
        practice_id=uuid4(),
        payer_integration_id=integration.id,
        credential_type="oauth_client",
        encrypted_credentials="x",
        credentials_iv="00",
        credentials_tag="00",
    )
    return PayerRequestContext(
        practice_id=credential.practice_id,
        patient_id=uuid4(),
        member_id="1EG4TE5MK73",
        date_of_birth=date(1951, 6, 14),
        first_name="Dana",
        last_name="Whitfield",
        payer_integration=integration,
        credential=DecryptedCredential(
            credential=credential,
            payload=payload or OAuthClientCredentials(client_id="cid", client_secret="csecret"),
        ),
    )


class TestAuthentication:
    """Test the client-credentials exchange and token cache."""

    @pytest.mark.asyncio
    async def test_token_request_and_reuse(self, adapter, routes):
        routes.add("/v2/fhir/ExplanationOfBenefit", httpx.Response(200, json={"entry": []}))
        context = _context()

        await adapter.get_benefits(context)
        await adapter.get_benefits(context)

        token_requests = routes.hits("/v2/o/token/")
        assert len(token_requests) == 1
        form = parse_qs(token_requests[0].content.decode())
        assert form == {"grant_type": ["client_credentials"], "client_id": ["cid"], "client_secret": ["csecret"]}

        data_request = routes.hits("/v2/fhir/ExplanationOfBenefit")[0]
        assert data_request.headers["Authorization"] == "Bearer tok-1"
        assert data_request.headers["Accept"] == "application/fhir+json"

    @pytest.mark.asyncio
    async def test_token_refreshed_inside_expiry_buffer(self, adapter, routes, clock):
        routes.add("/v2/fhir/ExplanationOfBenefit", httpx.Response(200, json={"entry": []}))
        context = _context()

        await adapter.get_benefits(context)
        clock.advance(seconds=3600 - 299)
        await adapter.get_benefits(context)

        assert len(routes.hits("/v2/o/token/")) == 2

    @pytest.mark.asyncio
    async def test_rejected_client_credentials(self, adapter, routes):
        routes.add("/v2/o/token/", httpx.Response(401, json={"error": "invalid_client"}))

        response = await adapter.check_eligibility(_context())

        assert response.success is False
        assert response.error.code == PayerErrorCode.AUTH_FAILED

    @pytest.mark.asyncio
    async def test_wrong_credential_type(self, adapter, routes):
        response = await adapter.check_eligibility(_context(ApiKeyCredentials(api_key="k")))

        assert response.error.code == PayerErrorCode.AUTH_FAILED
        assert routes.requests == []

    @pytest.mark.asyncio
    async def test_auth_failure_drops_cached_token(self, adapter, routes):
        routes.add(
            "/v2/fhir/ExplanationOfBenefit",
            httpx.Response(401),
            httpx.Response(200, json={"entry": []}),
        )
        context = _context()

        first = await adapter.get_benefits(context)
        second = await adapter.get_benefits(context)

        assert first.error.code == PayerErrorCode.AUTH_FAILED
        assert second.success is True
        assert len(routes.hits("/v2/o/token/")) == 2


class TestEligibility:
    """Test Patient + Coverage lookups and normalization."""

    @pytest.mark.asyncio
    async def test_eligible_member(self, adapter, routes):
        routes.add("/v2/fhir/Patient", httpx.Response(200, json=PATIENT_BUNDLE))
        routes.add("/v2/fhir/Coverage", httpx.Response(200, json=COVERAGE_BUNDLE))
        context = _context()

        response = await adapter.check_eligibility(context)

        assert response.success is True
        assert response.request_id == context.request_id
        assert response.data["is_eligible"] is True
        assert response.data["plan_name"] == "Medicare Part B"
        assert response.data["member_id"] == "1EG4TE5MK73"
        assert response.data["effective_date"] == "2016-01-01"
        assert response.data["network_status"] == "in_network"
        assert response.raw_response["patient"]["id"] == "-20140000008325"

        assert routes.hits("/v2/fhir/Patient")[0].url.params["identifier"] == "1EG4TE5MK73"
        assert routes.hits("/v2/fhir/Coverage")[0].url.params["beneficiary"] == "Patient/-20140000008325"

    @pytest.mark.asyncio
    async def test_terminated_coverage(self, adapter, routes):
        ended = {"entry": [{"resource": {"period": {"start": "2010-01-01", "end": "2025-06-30"}}}]}
        routes.add("/v2/fhir/Patient", httpx.Response(200, json=PATIENT_BUNDLE))
        routes.add("/v2/fhir/Coverage", httpx.Response(200, json=ended))

        response = await adapter.check_eligibility(_context())

        assert response.data["is_eligible"] is False
        assert response.data["plan_name"] == "Medicare"
        assert response.data["termination_date"] == "2025-06-30"

    @pytest.mark.asyncio
    async def test_member_not_found(self, adapter, routes):
        routes.add("/v2/fhir/Patient", httpx.Response(200, json={"entry": []}))

        response = await adapter.check_eligibility(_context())

        assert response.success is False
        assert response.error.code == PayerErrorCode.MEMBER_NOT_FOUND
        assert "1EG4TE5MK73" not in response.error.message


class TestRetries:
    """Test retry and error mapping on data calls."""

    @pytest.mark.asyncio
    async def test_server_errors_retried_with_backoff(self, adapter, routes, sleeps):
        routes.add("/v2/fhir/ExplanationOfBenefit", httpx.Response(503))

        response = await adapter.get_benefits(_context())

        assert response.error.code == PayerErrorCode.SERVICE_UNAVAILABLE
        assert len(routes.hits("/v2/fhir/ExplanationOfBenefit")) == 3
        assert sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failure(self, adapter, routes, sleeps):
        routes.add(
            "/v2/fhir/ExplanationOfBenefit",
            httpx.ConnectError("connection reset"),
            httpx.Response(200, json={"entry": []}),
        )

        response = await adapter.get_benefits(_context())

        assert response.success is True
        assert sleeps == [1.0]

    @pytest.mark.asyncio
    async def test_rate_limited_not_retried(self, adapter, routes, sleeps):
        routes.add("/v2/fhir/ExplanationOfBenefit", httpx.Response(429, headers={"Retry-After": "30"}))

        response = await adapter.get_benefits(_context())

        assert response.error.code == PayerErrorCode.RATE_LIMITED
        assert response.error.details["retry_after_seconds"] == 30.0
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_bad_request(self, adapter, routes):
        routes.add("/v2/fhir/ExplanationOfBenefit", httpx.Response(400))

        response = await adapter.get_benefits(_context())

        assert response.error.code == PayerErrorCode.INVALID_REQUEST


class TestBenefitsAndClaims:
    """Test benefits constants and claims normalization."""

    @pytest.mark.asyncio
    async def test_benefits(self, adapter, routes):
        routes.add("/v2/fhir/ExplanationOfBenefit", httpx.Response(200, json={"entry": []}))

        response = await adapter.get_benefits(_context())

        assert response.data["deductible"]["individual"] == 233
        assert response.data["out_of_pocket_max"]["individual"] == 8850
        assert response.data["copay"] == 0
        assert response.data["coinsurance"] == 20
        params = routes.hits("/v2/fhir/ExplanationOfBenefit")[0].url.params
        assert params["patient"] == "1EG4TE5MK73"
        assert params["_count"] == "1"

    @pytest.mark.asyncio
    async def test_claims_history(self, adapter, routes):
        routes.add("/v2/fhir/ExplanationOfBenefit", httpx.Response(200, json=EOB_BUNDLE))

        response = await adapter.get_claims_history(
            _context(), DateRange(start=date(2025, 1, 1), end=date(2025, 12, 31))
        )

        assert response.success is True
        assert response.data["total_claims"] == 2
        assert response.data["total_paid"] == pytest.approx(200.5)
        first = response.data["claims"][0]
        assert first["claim_number"] == "CLM-1"
        assert first["provider"] == "Lakeside Cardiology"
        assert first["patient_responsibility"] == pytest.approx(36.0)
        assert response.data["claims"][1]["claim_number"] == "outpatient--1"

        params = routes.hits("/v2/fhir/ExplanationOfBenefit")[0].url.params
        assert params.get_list("service-date") == ["ge2025-01-01", "le2025-12-31"]

    @pytest.mark.asyncio
    async def test_prior_auth_not_implemented(self, adapter, routes):
        assert adapter.supports_capability(DataType.PRIOR_AUTH) is False

        response = await adapter.check_prior_auth(_context(), "97110")

        assert response.error.code == PayerErrorCode.NOT_IMPLEMENTED
        assert routes.requests == []


class TestHealthCheck:
    """Test health check classification."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code, expected", [
        (200, HealthStatus.HEALTHY),
        (404, HealthStatus.DEGRADED),
        (503, HealthStatus.DOWN),
    ])
    async def test_status_mapping(self, adapter, routes, status_code, expected):
        routes.add("/health", httpx.Response(status_code))

        result = await adapter.health_check()

        assert result.payer_code == "MEDICARE"
        assert result.status == expected
        assert result.checked_at is not None

    @pytest.mark.asyncio
    async def test_unreachable(self, adapter, routes):
        routes.add("/health", httpx.ConnectError("no route to host"))

        result = await adapter.health_check()

        assert result.status == HealthStatus.DOWN
        assert "no route to host" in result.message
