"""Unit tests for Pydantic schemas."""
import pytest
from uuid import uuid4
from datetime import datetime, timedelta, timezone
from pydantic import ValidationError

from payer_broker.schemas import (
    # Credential payloads
    ApiKeyCredentials, CertificateCredentials, OAuthClientCredentials,
    UsernamePasswordCredentials, credential_payload_adapter,
    # Records
    PatientInsuranceAuthorization,
    # Requests and results
    AuditQuery, AuthorizationRequest, FetchOptions, FetchResult,
    # Normalized payer data
    NormalizedBenefits, NormalizedClaimsHistory, NormalizedEligibility,
    # Enums
    DataType, DeliveryMethod, RejectionReason,
)


class TestCredentialPayloads:
    """Test the discriminated credential union."""

    @pytest.mark.parametrize("raw, expected", [
        ({"type": "oauth_client", "client_id": "c", "client_secret": "s"}, OAuthClientCredentials),
        ({"type": "api_key", "api_key": "k"}, ApiKeyCredentials),
        ({"type": "username_password", "username": "u", "password": "p"}, UsernamePasswordCredentials),
        ({"type": "certificate", "certificate": "PEM", "private_key": "KEY"}, CertificateCredentials),
    ])
    def test_discriminator_selects_shape(self, raw, expected):
        payload = credential_payload_adapter.validate_python(raw)
        assert isinstance(payload, expected)

    def test_unknown_type_rejected(self):
        with pytest.raises(ValidationError):
            credential_payload_adapter.validate_python({"type": "kerberos", "ticket": "t"})

    def test_missing_field_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            credential_payload_adapter.validate_python({"type": "oauth_client", "client_id": "c"})

        errors = exc_info.value.errors()
        assert any("client_secret" in e['loc'] for e in errors)

    def test_extra_fields_rejected(self):
        with pytest.raises(ValidationError):
            OAuthClientCredentials(client_id="c", client_secret="s", password="leak")

    def test_json_round_trip_keeps_type(self):
        original = ApiKeyCredentials(api_key="k", api_key_header="X-Api-Key")
        restored = credential_payload_adapter.validate_json(original.model_dump_json())
        assert restored == original


class TestAuthorizationRequest:
    """Test staff authorization request validation."""

    def test_valid_request(self):
        request = AuthorizationRequest(
            practice_id=uuid4(),
            patient_id=uuid4(),
            scopes=["eligibility", "benefits", "eligibility"],
            delivery_method="both",
        )
        assert request.scopes == [DataType.ELIGIBILITY, DataType.BENEFITS]
        assert request.delivery_method == DeliveryMethod.BOTH

    def test_empty_scopes_rejected(self):
        with pytest.raises(ValidationError):
            AuthorizationRequest(practice_id=uuid4(), patient_id=uuid4(), scopes=[], delivery_method="email")

    def test_unknown_scope_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            AuthorizationRequest(
                practice_id=uuid4(), patient_id=uuid4(), scopes=["dental"], delivery_method="email"
            )
        assert "Unknown scope: dental" in str(exc_info.value)

    def test_unknown_delivery_method_rejected(self):
        with pytest.raises(ValidationError):
            AuthorizationRequest(
                practice_id=uuid4(), patient_id=uuid4(), scopes=["benefits"], delivery_method="fax"
            )


class TestPatientInsuranceAuthorization:

    def test_has_scope(self):
        now = datetime.now(timezone.utc)
        auth = PatientInsuranceAuthorization(
            practice_id=uuid4(),
            patient_id=uuid4(),
            scopes=[DataType.ELIGIBILITY],
            token="a" * 64,
            token_expires_at=now + timedelta(days=7),
            delivery_method=DeliveryMethod.EMAIL,
        )
        assert auth.has_scope("eligibility")
        assert not auth.has_scope(DataType.CLAIMS_HISTORY)


class TestNormalizedData:
    """Test the payer-neutral shapes adapters produce."""

    def test_eligibility_minimal(self):
        eligibility = NormalizedEligibility(is_eligible=False)
        assert eligibility.model_dump(exclude_none=True) == {"is_eligible": False}

    def test_benefits_defaults(self):
        benefits = NormalizedBenefits(
            deductible={"individual": 257, "individual_met": 100},
            out_of_pocket_max={},
        )
        assert benefits.deductible.family == 0
        assert benefits.out_of_pocket_max.individual == 0
        assert benefits.service_limitations == []
        assert benefits.prior_auth_required is False

    def test_claims_history_empty(self):
        history = NormalizedClaimsHistory()
        assert history.total_claims == 0
        assert history.claims == []


class TestFetchSchemas:

    def test_fetch_options_defaults(self):
        options = FetchOptions()
        assert options.force_refresh is False
        assert options.cache_ttl_hours is None
        assert options.date_range is None

    def test_fetch_result_rejection(self):
        result = FetchResult(
            success=False,
            data_type="benefits",
            error_code=RejectionReason.SCOPE_NOT_AUTHORIZED.value,
            rejection=RejectionReason.SCOPE_NOT_AUTHORIZED,
        )
        dumped = result.model_dump(mode="json")
        assert dumped["data_type"] == "benefits"
        assert dumped["rejection"] == "SCOPE_NOT_AUTHORIZED"

    @pytest.mark.parametrize("limit", [0, 1001])
    def test_audit_query_limit_bounds(self, limit):
        with pytest.raises(ValidationError):
            AuditQuery(limit=limit)
