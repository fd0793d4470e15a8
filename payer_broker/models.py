"""SQLAlchemy ORM models for the Payer Data Broker.

Attribute names match the pydantic records in schemas.py so rows convert
with `Model.model_validate(row)`. Patient and practice tables are owned by
the surrounding application; only the columns the broker reads are mapped.
"""

from uuid import uuid4

from sqlalchemy import (
    BigInteger, Boolean, Column, Date, DateTime, Enum as SQLEnum, ForeignKey,
    Index, Integer, Text, UniqueConstraint, func,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, UUID as PostgreUUID
from sqlalchemy.orm import declarative_base

Base = declarative_base()

DATA_TYPE_ENUM = SQLEnum(
    'eligibility', 'benefits', 'claims_history', 'prior_auth', name='insurance_data_type'
)


class Practice(Base):
    """Practices (tenants) table."""
    __tablename__ = 'practice'

    id = Column(PostgreUUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(Text, nullable=False)
    email = Column(Text)
    phone = Column(Text)
    brand_logo_url = Column(Text)
    brand_primary_color = Column(Text)
    brand_secondary_color = Column(Text)
    brand_privacy_policy_url = Column(Text)


class Patient(Base):
    """Patients table (read-only from the broker's point of view)."""
    __tablename__ = 'patient'

    id = Column(PostgreUUID(as_uuid=True), primary_key=True, default=uuid4)
    practice_id = Column(PostgreUUID(as_uuid=True), ForeignKey('practice.id'), nullable=False)
    first_name = Column(Text, nullable=False)
    last_name = Column(Text, nullable=False)
    date_of_birth = Column(Date)
    email = Column(Text)
    phone = Column(Text)
    insurance_provider = Column(Text)
    insurance_id = Column(Text)
    insurance_group_number = Column(Text)


class PayerIntegration(Base):
    """One row per supported insurer."""
    __tablename__ = 'payer_integration'

    id = Column(PostgreUUID(as_uuid=True), primary_key=True, default=uuid4)
    payer_code = Column(Text, nullable=False, unique=True)
    payer_name = Column(Text, nullable=False)
    api_type = Column(SQLEnum('edi_270', 'fhir_r4', 'proprietary', name='payer_api_type'), nullable=False)
    base_url = Column(Text)
    auth_method = Column(Text)
    supports_eligibility = Column(Boolean, nullable=False, default=False)
    supports_benefits = Column(Boolean, nullable=False, default=False)
    supports_claims_history = Column(Boolean, nullable=False, default=False)
    supports_prior_auth = Column(Boolean, nullable=False, default=False)
    rate_limit_per_minute = Column(Integer)
    is_active = Column(Boolean, nullable=False, default=True)
    health_status = Column(
        SQLEnum('healthy', 'degraded', 'down', 'unknown', name='payer_health_status'),
        nullable=False, default='unknown'
    )
    last_health_check = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class PayerCredential(Base):
    """Encrypted credential bundle per (practice, payer)."""
    __tablename__ = 'payer_credential'

    id = Column(PostgreUUID(as_uuid=True), primary_key=True, default=uuid4)
    practice_id = Column(PostgreUUID(as_uuid=True), ForeignKey('practice.id'), nullable=False)
    payer_integration_id = Column(
        PostgreUUID(as_uuid=True), ForeignKey('payer_integration.id'), nullable=False
    )
    credential_type = Column(
        SQLEnum('oauth_client', 'api_key', 'username_password', 'certificate', name='payer_credential_type'),
        nullable=False
    )
    encrypted_credentials = Column(Text, nullable=False)
    credentials_iv = Column(Text, nullable=False)
    credentials_tag = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime(timezone=True))
    last_used = Column(DateTime(timezone=True))
    last_rotated = Column(DateTime(timezone=True))
    error_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint('practice_id', 'payer_integration_id', name='uq_payer_credential_practice_payer'),
    )


class PatientInsuranceAuthorization(Base):
    """Patient consent grants."""
    __tablename__ = 'patient_insurance_authorization'

    id = Column(PostgreUUID(as_uuid=True), primary_key=True, default=uuid4)
    practice_id = Column(PostgreUUID(as_uuid=True), ForeignKey('practice.id'), nullable=False)
    patient_id = Column(PostgreUUID(as_uuid=True), ForeignKey('patient.id'), nullable=False)
    requested_by_id = Column(Text)
    status = Column(
        SQLEnum('pending', 'authorized', 'denied', 'expired', 'revoked', name='insurance_authorization_status'),
        nullable=False, default='pending'
    )
    scopes = Column(ARRAY(Text), nullable=False)
    token = Column(Text, nullable=False, unique=True)
    token_expires_at = Column(DateTime(timezone=True), nullable=False)
    token_used_at = Column(DateTime(timezone=True))
    delivery_method = Column(SQLEnum('email', 'sms', 'both', name='authorization_delivery_method'), nullable=False)
    delivery_email = Column(Text)
    delivery_phone = Column(Text)
    notification_sent = Column(Boolean, nullable=False, default=False)
    expires_at = Column(DateTime(timezone=True))
    consent_given_at = Column(DateTime(timezone=True))
    consent_signature = Column(Text)
    consent_ip_address = Column(Text)
    consent_user_agent = Column(Text)
    revoked_at = Column(DateTime(timezone=True))
    revoked_reason = Column(Text)
    resend_count = Column(Integer, nullable=False, default=0)
    last_resend_at = Column(DateTime(timezone=True))
    link_attempt_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index('idx_insurance_authorization_patient', 'patient_id', 'status'),
    )


class InsuranceDataCache(Base):
    """Latest known payer result per (patient, data type)."""
    __tablename__ = 'insurance_data_cache'

    id = Column(PostgreUUID(as_uuid=True), primary_key=True, default=uuid4)
    patient_id = Column(PostgreUUID(as_uuid=True), ForeignKey('patient.id'), nullable=False)
    data_type = Column(DATA_TYPE_ENUM, nullable=False)
    practice_id = Column(PostgreUUID(as_uuid=True), ForeignKey('practice.id'), nullable=False)
    authorization_id = Column(
        PostgreUUID(as_uuid=True), ForeignKey('patient_insurance_authorization.id')
    )
    payer_integration_id = Column(PostgreUUID(as_uuid=True), ForeignKey('payer_integration.id'))
    raw_response = Column(JSONB)
    normalized_data = Column(JSONB)
    status = Column(SQLEnum('success', 'error', name='insurance_cache_status'), nullable=False)
    error_message = Column(Text)
    error_code = Column(Text)
    fetched_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    is_stale = Column(Boolean, nullable=False, default=False)
    request_id = Column(Text)
    response_time_ms = Column(Integer)

    __table_args__ = (
        UniqueConstraint('patient_id', 'data_type', name='uq_insurance_cache_patient_type'),
    )


class InsuranceAuditLog(Base):
    """Append-only, hash-chained audit trail. UPDATE/DELETE are blocked by trigger."""
    __tablename__ = 'insurance_audit_log'

    id = Column(PostgreUUID(as_uuid=True), primary_key=True, default=uuid4)
    sequence = Column(BigInteger, nullable=False, unique=True)
    event_category = Column(Text, nullable=False)
    event_type = Column(Text, nullable=False)
    resource_type = Column(Text, nullable=False)
    resource_id = Column(Text)
    practice_id = Column(PostgreUUID(as_uuid=True))
    patient_id = Column(PostgreUUID(as_uuid=True))
    authorization_id = Column(PostgreUUID(as_uuid=True))
    data_type = Column(Text)
    actor_type = Column(Text, nullable=False)
    actor_id = Column(Text)
    ip_address = Column(Text)
    user_agent = Column(Text)
    details = Column(JSONB, nullable=False, default=dict)
    success = Column(Boolean, nullable=False, default=True)
    error_message = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False)
    prev_hash = Column(Text, nullable=False)
    entry_hash = Column(Text, nullable=False)

    __table_args__ = (
        Index('idx_insurance_audit_resource', 'resource_type', 'resource_id'),
        Index('idx_insurance_audit_patient', 'patient_id', 'created_at'),
    )
