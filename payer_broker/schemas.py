"""
Pydantic schemas for the Payer Data Broker
Domain records, credential payloads, normalized payer data and result envelopes
"""
from datetime import date, datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from .validators import normalize_payer_code, validate_scopes


# ============================================================================
# Enums
# ============================================================================

class DataType(str, Enum):
    ELIGIBILITY = "eligibility"
    BENEFITS = "benefits"
    CLAIMS_HISTORY = "claims_history"
    PRIOR_AUTH = "prior_auth"


class AuthorizationStatus(str, Enum):
    PENDING = "pending"
    AUTHORIZED = "authorized"
    DENIED = "denied"
    EXPIRED = "expired"
    REVOKED = "revoked"


class DeliveryMethod(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    BOTH = "both"


class CredentialType(str, Enum):
    OAUTH_CLIENT = "oauth_client"
    API_KEY = "api_key"
    USERNAME_PASSWORD = "username_password"
    CERTIFICATE = "certificate"


class ApiType(str, Enum):
    EDI_270 = "edi_270"
    FHIR_R4 = "fhir_r4"
    PROPRIETARY = "proprietary"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    DOWN = "down"
    UNKNOWN = "unknown"


class CacheStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


class ActorType(str, Enum):
    USER = "user"
    PATIENT = "patient"
    SYSTEM = "system"


class EventCategory(str, Enum):
    AUTHORIZATION = "authorization"
    DATA_ACCESS = "data_access"
    ADMIN = "admin"


class AuditEventType(str, Enum):
    AUTHORIZATION_REQUESTED = "authorization_requested"
    AUTHORIZATION_SENT = "authorization_sent"
    LINK_CLICKED = "link_clicked"
    CONSENT_GIVEN = "consent_given"
    CONSENT_DENIED = "consent_denied"
    AUTHORIZATION_EXPIRED = "authorization_expired"
    AUTHORIZATION_REVOKED = "authorization_revoked"
    DATA_ACCESSED = "data_accessed"
    DATA_REFRESHED = "data_refreshed"
    DISCLOSURES_VIEWED = "disclosures_viewed"
    PAYER_CONFIGURED = "payer_configured"
    CREDENTIALS_STORED = "credentials_stored"
    CREDENTIALS_ROTATED = "credentials_rotated"


class PayerErrorCode(str, Enum):
    AUTH_FAILED = "AUTH_FAILED"
    RATE_LIMITED = "RATE_LIMITED"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    INVALID_REQUEST = "INVALID_REQUEST"
    MEMBER_NOT_FOUND = "MEMBER_NOT_FOUND"
    NOT_IMPLEMENTED = "NOT_IMPLEMENTED"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class RejectionReason(str, Enum):
    """Broker-level refusals. None of these is retried automatically."""
    AUTHORIZATION_NOT_ACTIVE = "AUTHORIZATION_NOT_ACTIVE"
    SCOPE_NOT_AUTHORIZED = "SCOPE_NOT_AUTHORIZED"
    PATIENT_NOT_FOUND = "PATIENT_NOT_FOUND"
    PRACTICE_NOT_FOUND = "PRACTICE_NOT_FOUND"
    UNSUPPORTED_PROVIDER = "UNSUPPORTED_PROVIDER"
    NO_ADAPTER = "NO_ADAPTER"
    CAPABILITY_NOT_SUPPORTED = "CAPABILITY_NOT_SUPPORTED"
    PAYER_NOT_CONFIGURED = "PAYER_NOT_CONFIGURED"
    NO_VALID_CREDENTIALS = "NO_VALID_CREDENTIALS"


class Decision(str, Enum):
    AUTHORIZE = "authorize"
    DENY = "deny"


# ============================================================================
# Credential payloads (decrypted vault contents)
# ============================================================================

class _CredentialPayloadBase(BaseModel):
    model_config = ConfigDict(extra="forbid")


class OAuthClientCredentials(_CredentialPayloadBase):
    type: Literal["oauth_client"] = "oauth_client"
    client_id: str
    client_secret: str
    token_endpoint: Optional[str] = None
    scopes: Optional[List[str]] = None


class ApiKeyCredentials(_CredentialPayloadBase):
    type: Literal["api_key"] = "api_key"
    api_key: str
    api_key_header: Optional[str] = None


class UsernamePasswordCredentials(_CredentialPayloadBase):
    type: Literal["username_password"] = "username_password"
    username: str
    password: str


class CertificateCredentials(_CredentialPayloadBase):
    type: Literal["certificate"] = "certificate"
    certificate: str
    private_key: str
    passphrase: Optional[str] = None


CredentialPayload = Annotated[
    Union[
        OAuthClientCredentials,
        ApiKeyCredentials,
        UsernamePasswordCredentials,
        CertificateCredentials,
    ],
    Field(discriminator="type"),
]

credential_payload_adapter: TypeAdapter = TypeAdapter(CredentialPayload)


# ============================================================================
# External records (patient / practice lookups)
# ============================================================================

class _Record(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class Practice(_Record):
    id: UUID = Field(default_factory=uuid4)
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    brand_logo_url: Optional[str] = None
    brand_primary_color: Optional[str] = None
    brand_secondary_color: Optional[str] = None
    brand_privacy_policy_url: Optional[str] = None


class Patient(_Record):
    id: UUID = Field(default_factory=uuid4)
    practice_id: UUID
    first_name: str
    last_name: str
    date_of_birth: Optional[date] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    insurance_provider: Optional[str] = None
    insurance_id: Optional[str] = None
    insurance_group_number: Optional[str] = None


# ============================================================================
# Broker records
# ============================================================================

class PayerIntegration(_Record):
    id: UUID = Field(default_factory=uuid4)
    payer_code: str
    payer_name: str
    api_type: ApiType = ApiType.FHIR_R4
    base_url: Optional[str] = None
    auth_method: Optional[str] = None
    supports_eligibility: bool = False
    supports_benefits: bool = False
    supports_claims_history: bool = False
    supports_prior_auth: bool = False
    rate_limit_per_minute: Optional[int] = None
    is_active: bool = True
    health_status: HealthStatus = HealthStatus.UNKNOWN
    last_health_check: Optional[datetime] = None
    created_at: Optional[datetime] = None


class PayerCredential(_Record):
    """Stored credential row. The secret bundle stays encrypted here."""
    id: UUID = Field(default_factory=uuid4)
    practice_id: UUID
    payer_integration_id: UUID
    credential_type: CredentialType
    encrypted_credentials: str
    credentials_iv: str
    credentials_tag: str
    is_active: bool = True
    expires_at: Optional[datetime] = None
    last_used: Optional[datetime] = None
    last_rotated: Optional[datetime] = None
    error_count: int = 0
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None


class DecryptedCredential(BaseModel):
    """A credential row together with its decrypted payload."""
    credential: PayerCredential
    payload: CredentialPayload


class PatientInsuranceAuthorization(_Record):
    id: UUID = Field(default_factory=uuid4)
    practice_id: UUID
    patient_id: UUID
    requested_by_id: Optional[str] = None
    status: AuthorizationStatus = AuthorizationStatus.PENDING
    scopes: List[DataType]
    token: str
    token_expires_at: datetime
    token_used_at: Optional[datetime] = None
    delivery_method: DeliveryMethod
    delivery_email: Optional[str] = None
    delivery_phone: Optional[str] = None
    notification_sent: bool = False
    expires_at: Optional[datetime] = None
    consent_given_at: Optional[datetime] = None
    consent_signature: Optional[str] = None
    consent_ip_address: Optional[str] = None
    consent_user_agent: Optional[str] = None
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None
    resend_count: int = 0
    last_resend_at: Optional[datetime] = None
    link_attempt_count: int = 0
    created_at: Optional[datetime] = None

    def has_scope(self, data_type: DataType) -> bool:
        return DataType(data_type) in self.scopes


class InsuranceDataCacheEntry(_Record):
    id: UUID = Field(default_factory=uuid4)
    patient_id: UUID
    data_type: DataType
    practice_id: UUID
    authorization_id: Optional[UUID] = None
    payer_integration_id: Optional[UUID] = None
    raw_response: Optional[Any] = None
    normalized_data: Optional[Dict[str, Any]] = None
    status: CacheStatus
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    fetched_at: datetime
    expires_at: datetime
    is_stale: bool = False
    request_id: Optional[str] = None
    response_time_ms: Optional[int] = None


class AuditLogEntry(_Record):
    id: UUID = Field(default_factory=uuid4)
    sequence: int
    event_category: EventCategory
    event_type: AuditEventType
    resource_type: str
    resource_id: Optional[str] = None
    practice_id: Optional[UUID] = None
    patient_id: Optional[UUID] = None
    authorization_id: Optional[UUID] = None
    data_type: Optional[DataType] = None
    actor_type: ActorType
    actor_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    success: bool = True
    error_message: Optional[str] = None
    created_at: datetime
    prev_hash: str
    entry_hash: str


# ============================================================================
# Normalized payer data
# ============================================================================

class NormalizedEligibility(BaseModel):
    is_eligible: bool
    effective_date: Optional[str] = None
    termination_date: Optional[str] = None
    plan_name: Optional[str] = None
    plan_type: Optional[str] = None
    member_id: Optional[str] = None
    group_number: Optional[str] = None
    coverage_level: Optional[str] = None
    network_status: Optional[str] = None


class AccumulatorAmounts(BaseModel):
    individual: float = 0
    family: float = 0
    individual_met: float = 0
    family_met: float = 0


class NormalizedBenefits(BaseModel):
    deductible: AccumulatorAmounts
    out_of_pocket_max: AccumulatorAmounts
    copay: Optional[float] = None
    coinsurance: Optional[float] = None
    visits_allowed: Optional[int] = None
    visits_used: Optional[int] = None
    prior_auth_required: bool = False
    referral_required: bool = False
    service_limitations: List[str] = Field(default_factory=list)


class ClaimSummary(BaseModel):
    claim_number: str
    date_of_service: Optional[str] = None
    provider: Optional[str] = None
    service_type: Optional[str] = None
    billed_amount: float = 0
    allowed_amount: float = 0
    paid_amount: float = 0
    patient_responsibility: float = 0
    status: str = "unknown"


class NormalizedClaimsHistory(BaseModel):
    claims: List[ClaimSummary] = Field(default_factory=list)
    total_claims: int = 0
    total_paid: float = 0


class NormalizedPriorAuth(BaseModel):
    required: bool
    auth_number: Optional[str] = None
    status: Optional[str] = None
    valid_from: Optional[str] = None
    valid_to: Optional[str] = None
    approved_units: Optional[int] = None
    used_units: Optional[int] = None
    remaining_units: Optional[int] = None


# ============================================================================
# Adapter envelope
# ============================================================================

class PayerError(BaseModel):
    code: PayerErrorCode
    message: str
    details: Optional[Dict[str, Any]] = None


class PayerResponse(BaseModel):
    """Uniform result of every adapter data call."""
    success: bool
    data: Optional[Dict[str, Any]] = None
    raw_response: Optional[Any] = None
    error: Optional[PayerError] = None
    response_time_ms: int = 0
    request_id: str


class HealthCheckResult(BaseModel):
    payer_code: str
    status: HealthStatus
    latency_ms: int = 0
    message: Optional[str] = None
    checked_at: Optional[datetime] = None


# ============================================================================
# Broker requests and results
# ============================================================================

class DateRange(BaseModel):
    start: Optional[date] = None
    end: Optional[date] = None


class FetchOptions(BaseModel):
    force_refresh: bool = False
    cache_ttl_hours: Optional[float] = None
    date_range: Optional[DateRange] = None
    service_code: Optional[str] = None


class FetchResult(BaseModel):
    success: bool
    data_type: DataType
    data: Optional[Dict[str, Any]] = None
    cached: bool = False
    cached_at: Optional[datetime] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    rejection: Optional[RejectionReason] = None
    response_time_ms: Optional[int] = None
    request_id: Optional[str] = None


# ============================================================================
# Authorization workflow I/O
# ============================================================================

class Actor(BaseModel):
    actor_type: ActorType = ActorType.SYSTEM
    actor_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class AuthorizationRequest(BaseModel):
    practice_id: UUID
    patient_id: UUID
    scopes: List[DataType]
    delivery_method: DeliveryMethod
    delivery_email: Optional[str] = None
    delivery_phone: Optional[str] = None

    @field_validator("scopes", mode="before")
    @classmethod
    def _normalize_scopes(cls, value):
        return validate_scopes(value or [])


# ============================================================================
# Payer onboarding
# ============================================================================

class PayerIntegrationRequest(BaseModel):
    """Create or update a payer integration row, keyed by payer_code."""
    payer_code: str
    payer_name: str = Field(min_length=1)
    api_type: ApiType = ApiType.FHIR_R4
    base_url: Optional[str] = None
    auth_method: Optional[str] = None
    supports_eligibility: bool = False
    supports_benefits: bool = False
    supports_claims_history: bool = False
    supports_prior_auth: bool = False
    rate_limit_per_minute: Optional[int] = Field(default=None, gt=0)
    is_active: bool = True

    @field_validator("payer_code", mode="before")
    @classmethod
    def _normalize_code(cls, value):
        return normalize_payer_code(str(value or ""))


class CredentialRequest(BaseModel):
    """Credentials a practice holds for one payer. Stored encrypted."""
    practice_id: UUID
    credentials: CredentialPayload
    expires_at: Optional[datetime] = None


class CredentialSummary(BaseModel):
    """Credential metadata safe to return to staff; never the secret itself."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    practice_id: UUID
    payer_integration_id: UUID
    credential_type: CredentialType
    is_active: bool
    expires_at: Optional[datetime] = None
    last_used: Optional[datetime] = None
    last_rotated: Optional[datetime] = None
    error_count: int = 0


class AuthorizationSummary(BaseModel):
    """Staff-facing listing; the link token is never exposed in full."""
    id: UUID
    patient_id: UUID
    status: AuthorizationStatus
    scopes: List[DataType]
    token_preview: Optional[str] = None
    delivery_method: DeliveryMethod
    notification_sent: bool
    token_expires_at: datetime
    expires_at: Optional[datetime] = None
    consent_given_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None
    resend_count: int = 0
    created_at: Optional[datetime] = None


class AuthorizationView(BaseModel):
    """What the patient sees when opening an authorization link."""
    authorization_id: UUID
    practice_name: str
    practice_logo_url: Optional[str] = None
    practice_primary_color: Optional[str] = None
    practice_secondary_color: Optional[str] = None
    practice_privacy_policy_url: Optional[str] = None
    patient_first_name: str
    scopes: List[DataType]
    token_expires_at: datetime


class NotificationResult(BaseModel):
    success: bool
    error: Optional[str] = None


# ============================================================================
# Audit queries
# ============================================================================

class AuditQuery(BaseModel):
    practice_id: Optional[UUID] = None
    patient_id: Optional[UUID] = None
    authorization_id: Optional[UUID] = None
    event_type: Optional[AuditEventType] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    limit: int = Field(default=100, ge=1, le=1000)


class ChainBreak(BaseModel):
    sequence: int
    reason: str
    expected: Optional[str] = None
    actual: Optional[str] = None


class IntegrityReport(BaseModel):
    valid: bool
    entries_checked: int
    first_break: Optional[ChainBreak] = None
