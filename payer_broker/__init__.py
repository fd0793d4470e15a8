"""Payer Data Broker - consent-gated access to patient insurance data from payer APIs."""

from .constants import (
    DATABASE_REQUIREMENTS,
    DATA_TYPES,
    GENESIS_HASH,
    PAYER_ALIASES,
)

from .validators import (
    validate_postgresql_version_async,
    validate_extensions_async,
    validate_database_compatibility_async,
    validate_encryption_key,
    validate_scopes,
    validate_token_format,
)

from .schemas import (
    # Enums
    DataType,
    AuthorizationStatus,
    DeliveryMethod,
    CredentialType,
    ApiType,
    HealthStatus,
    CacheStatus,
    ActorType,
    AuditEventType,
    PayerErrorCode,
    RejectionReason,
    Decision,
    # Credential payloads
    OAuthClientCredentials,
    ApiKeyCredentials,
    UsernamePasswordCredentials,
    CertificateCredentials,
    # Records
    Practice,
    Patient,
    PayerIntegration,
    PayerCredential,
    PatientInsuranceAuthorization,
    InsuranceDataCacheEntry,
    AuditLogEntry,
    # Requests and results
    Actor,
    AuthorizationRequest,
    PayerIntegrationRequest,
    CredentialRequest,
    FetchOptions,
    FetchResult,
    DateRange,
    PayerResponse,
    HealthCheckResult,
    AuditQuery,
    IntegrityReport,
)

from .exceptions import (
    PayerBrokerError,
    VaultError,
    VaultConfigurationError,
    CredentialDecryptionError,
    InvalidCredentialPayloadError,
    AuthorizationError,
    PayerNotConfiguredError,
)

from .config import BrokerSettings
from .vault import CredentialVault, generate_encryption_key
from .audit import AuditTrail
from .cache import InsuranceDataCache
from .authorization import AuthorizationWorkflow
from .broker import PayerDataBroker
from .admin import PayerAdministration
from .runtime import ServiceLoop
from .adapters import AdapterRegistry, HttpPayerAdapter, MedicareAdapter, PayerAdapter
from .storage import InMemoryRecordStore, RecordStore

__version__ = "0.1.0"

__all__ = [
    # Constants
    "DATABASE_REQUIREMENTS",
    "DATA_TYPES",
    "GENESIS_HASH",
    "PAYER_ALIASES",
    # Validators
    "validate_postgresql_version_async",
    "validate_extensions_async",
    "validate_database_compatibility_async",
    "validate_encryption_key",
    "validate_scopes",
    "validate_token_format",
    # Enums
    "DataType",
    "AuthorizationStatus",
    "DeliveryMethod",
    "CredentialType",
    "ApiType",
    "HealthStatus",
    "CacheStatus",
    "ActorType",
    "AuditEventType",
    "PayerErrorCode",
    "RejectionReason",
    "Decision",
    # Credential payloads
    "OAuthClientCredentials",
    "ApiKeyCredentials",
    "UsernamePasswordCredentials",
    "CertificateCredentials",
    # Records
    "Practice",
    "Patient",
    "PayerIntegration",
    "PayerCredential",
    "PatientInsuranceAuthorization",
    "InsuranceDataCacheEntry",
    "AuditLogEntry",
    # Requests and results
    "Actor",
    "AuthorizationRequest",
    "PayerIntegrationRequest",
    "CredentialRequest",
    "FetchOptions",
    "FetchResult",
    "DateRange",
    "PayerResponse",
    "HealthCheckResult",
    "AuditQuery",
    "IntegrityReport",
    # Exceptions
    "PayerBrokerError",
    "VaultError",
    "VaultConfigurationError",
    "CredentialDecryptionError",
    "InvalidCredentialPayloadError",
    "AuthorizationError",
    "PayerNotConfiguredError",
    # Components
    "BrokerSettings",
    "CredentialVault",
    "generate_encryption_key",
    "AuditTrail",
    "InsuranceDataCache",
    "AuthorizationWorkflow",
    "PayerDataBroker",
    "PayerAdministration",
    "ServiceLoop",
    "AdapterRegistry",
    "HttpPayerAdapter",
    "MedicareAdapter",
    "PayerAdapter",
    "InMemoryRecordStore",
    "RecordStore",
]
