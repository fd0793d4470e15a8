"""Patient consent workflow for insurance data access.

Staff request an authorization; the patient receives a single-use link and
either authorizes or denies. Only an `authorized` grant lets the broker
fetch data, and staff can revoke it at any time.

    pending --authorize--> authorized --revoke--> revoked
    pending --deny-------> denied
    pending --token older than 7 days--> expired
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from .audit import RESOURCE_AUTHORIZATION, AuditTrail
from .cache import InsuranceDataCache
from .constants import (
    AUTHORIZATION_GRANT_TTL_DAYS,
    AUTHORIZATION_TOKEN_TTL_DAYS,
    DEFAULT_CONSENT_SIGNATURE,
    DEFAULT_REVOKE_REASON,
    MAX_LINK_ATTEMPTS,
    MAX_RESENDS,
    RESEND_TOKEN_REFRESH_HOURS,
)
from .exceptions import (
    AuthorizationNotFoundError,
    DeliveryChannelError,
    InvalidDecisionError,
    InvalidStatusTransitionError,
    PatientNotFoundError,
    PracticeNotFoundError,
    RateLimitExceededError,
    ResendLimitReachedError,
    TokenAlreadyUsedError,
    TokenExpiredError,
    TooManyLinkAttemptsError,
)
from .locks import KeyedLocks
from .notifications import (
    TEMPLATE_AUTHORIZATION_CONFIRMED,
    TEMPLATE_AUTHORIZATION_REMINDER,
    TEMPLATE_AUTHORIZATION_REQUEST,
    NotificationSender,
    deliver,
)
from .rate_limit import RateLimiter
from .schemas import (
    Actor,
    ActorType,
    AuditEventType,
    AuthorizationRequest,
    AuthorizationStatus,
    AuthorizationSummary,
    AuthorizationView,
    Decision,
    DeliveryMethod,
    NotificationResult,
    Patient,
    PatientInsuranceAuthorization,
    Practice,
)
from .storage.base import RecordStore
from .utils import Clock, ensure_aware, generate_token, mask_token, utcnow
from .validators import validate_token_format

logger = logging.getLogger(__name__)


class AuthorizationWorkflow:

    def __init__(
        self,
        store: RecordStore,
        audit: AuditTrail,
        cache: InsuranceDataCache,
        email_sender: Optional[NotificationSender] = None,
        sms_sender: Optional[NotificationSender] = None,
        rate_limiter: Optional[RateLimiter] = None,
        app_url: str = "http://localhost:5000",
        clock: Clock = utcnow,
    ):
        self.store = store
        self.audit = audit
        self.cache = cache
        self.email_sender = email_sender
        self.sms_sender = sms_sender
        self.rate_limiter = rate_limiter or RateLimiter(clock=clock)
        self.app_url = app_url.rstrip("/")
        self._clock = clock
        self._locks = KeyedLocks()

    def authorization_url(self, token: str) -> str:
        return f"{self.app_url}/authorize/{token}"

    # Staff side

    async def create_authorization(
        self, request: AuthorizationRequest, actor: Actor
    ) -> PatientInsuranceAuthorization:
        """Issue a pending authorization and send the patient its link.

        Raises:
            PatientNotFoundError: Unknown patient, or patient of another practice
            PracticeNotFoundError: Unknown practice
            DeliveryChannelError: No email/phone for the chosen delivery method
            RateLimitExceededError: Patient already had 3 requests in the window
        """
        patient = await self.store.get_patient(request.patient_id)
        if patient is None or patient.practice_id != request.practice_id:
            raise PatientNotFoundError("Patient not found")
        practice = await self.store.get_practice(request.practice_id)
        if practice is None:
            raise PracticeNotFoundError("Practice not found")

        email, phone = self._resolve_channels(request, patient)

        decision = await self.rate_limiter.hit(f"authorization:{patient.id}")
        if not decision.allowed:
            raise RateLimitExceededError(
                "Too many authorization requests for this patient. Please try again later.",
                reset_at=decision.reset_at.isoformat(),
            )

        now = self._clock()
        authorization = await self.store.create_authorization(PatientInsuranceAuthorization(
            practice_id=practice.id,
            patient_id=patient.id,
            requested_by_id=actor.actor_id,
            status=AuthorizationStatus.PENDING,
            scopes=request.scopes,
            token=generate_token(),
            token_expires_at=now + timedelta(days=AUTHORIZATION_TOKEN_TTL_DAYS),
            delivery_method=request.delivery_method,
            delivery_email=email,
            delivery_phone=phone,
            expires_at=now + timedelta(days=AUTHORIZATION_GRANT_TTL_DAYS),
            created_at=now,
        ))

        # Delivery failure keeps the record; staff can resend.
        sent, results = await self._send_link(authorization, patient, practice, TEMPLATE_AUTHORIZATION_REQUEST)
        if sent:
            authorization = await self.store.update_authorization(authorization.id, notification_sent=True)

        await self.audit.record(
            AuditEventType.AUTHORIZATION_REQUESTED,
            resource_type=RESOURCE_AUTHORIZATION,
            resource_id=authorization.id,
            actor=actor,
            practice_id=practice.id,
            patient_id=patient.id,
            authorization_id=authorization.id,
            details={
                "scopes": [scope.value for scope in authorization.scopes],
                "delivery_method": authorization.delivery_method.value,
                "notification_sent": sent,
                "delivery_errors": [r.error for r in results if not r.success],
            },
        )
        logger.info(
            f"Created authorization {authorization.id} for patient {patient.id} "
            f"(token {mask_token(authorization.token)}, notification_sent={sent})"
        )
        return authorization

    @staticmethod
    def summarize(auth: PatientInsuranceAuthorization) -> AuthorizationSummary:
        return AuthorizationSummary(
            id=auth.id,
            patient_id=auth.patient_id,
            status=auth.status,
            scopes=auth.scopes,
            token_preview=mask_token(auth.token),
            delivery_method=auth.delivery_method,
            notification_sent=auth.notification_sent,
            token_expires_at=auth.token_expires_at,
            expires_at=auth.expires_at,
            consent_given_at=auth.consent_given_at,
            revoked_at=auth.revoked_at,
            revoked_reason=auth.revoked_reason,
            resend_count=auth.resend_count,
            created_at=auth.created_at,
        )

    async def list_patient_authorizations(self, patient_id: UUID) -> List[AuthorizationSummary]:
        """A patient's authorizations, newest first, with masked tokens."""
        return [self.summarize(auth) for auth in await self.store.list_authorizations(patient_id)]

    async def get_active_authorization(self, patient_id: UUID) -> Optional[PatientInsuranceAuthorization]:
        """Newest authorized grant that has not passed its expiry."""
        now = self._clock()
        for auth in await self.store.list_authorizations(patient_id, AuthorizationStatus.AUTHORIZED):
            if auth.expires_at is None or ensure_aware(auth.expires_at) > now:
                return auth
        return None

    async def resend_authorization(
        self, authorization_id: UUID, actor: Actor
    ) -> PatientInsuranceAuthorization:
        """Send the link again, minting a new token when the old one is about to lapse.

        Raises:
            AuthorizationNotFoundError: Unknown authorization
            InvalidStatusTransitionError: Authorization is no longer pending
            ResendLimitReachedError: Already resent 3 times
        """
        async with self._locks.hold(authorization_id):
            authorization = await self.store.get_authorization(authorization_id)
            if authorization is None:
                raise AuthorizationNotFoundError("Authorization not found")
            if authorization.status != AuthorizationStatus.PENDING:
                raise InvalidStatusTransitionError(
                    f"Only pending authorizations can be resent (status: {authorization.status.value})"
                )
            if authorization.resend_count >= MAX_RESENDS:
                raise ResendLimitReachedError(f"Maximum of {MAX_RESENDS} resends reached")

            now = self._clock()
            fields: Dict[str, Any] = {"last_resend_at": now}
            token_refreshed = ensure_aware(authorization.token_expires_at) - now < timedelta(
                hours=RESEND_TOKEN_REFRESH_HOURS
            )
            if token_refreshed:
                fields["token"] = generate_token()
                fields["token_expires_at"] = now + timedelta(days=AUTHORIZATION_TOKEN_TTL_DAYS)

            authorization = await self.store.increment_resend_count(authorization_id, **fields)

        patient = await self.store.get_patient(authorization.patient_id)
        practice = await self.store.get_practice(authorization.practice_id)
        if patient is None or practice is None:
            raise PatientNotFoundError("Patient or practice no longer exists")

        sent, results = await self._send_link(authorization, patient, practice, TEMPLATE_AUTHORIZATION_REMINDER)
        if sent and not authorization.notification_sent:
            authorization = await self.store.update_authorization(authorization_id, notification_sent=True)

        await self.audit.record(
            AuditEventType.AUTHORIZATION_SENT,
            resource_type=RESOURCE_AUTHORIZATION,
            resource_id=authorization.id,
            actor=actor,
            practice_id=authorization.practice_id,
            patient_id=authorization.patient_id,
            authorization_id=authorization.id,
            details={
                "resend_count": authorization.resend_count,
                "token_refreshed": token_refreshed,
                "notification_sent": sent,
            },
            success=sent,
            error_message=None if sent else "; ".join(r.error or "unknown" for r in results if not r.success),
        )
        return authorization

    async def revoke_authorization(
        self,
        authorization_id: UUID,
        actor: Actor,
        reason: Optional[str] = None,
    ) -> PatientInsuranceAuthorization:
        """Revoke an authorized grant and mark the patient's cached data stale.

        Raises:
            AuthorizationNotFoundError: Unknown authorization
            InvalidStatusTransitionError: Authorization is not currently authorized
        """
        now = self._clock()
        revoked = await self.store.transition_authorization(
            authorization_id,
            AuthorizationStatus.AUTHORIZED,
            status=AuthorizationStatus.REVOKED,
            revoked_at=now,
            revoked_reason=reason or DEFAULT_REVOKE_REASON,
        )
        if revoked is None:
            existing = await self.store.get_authorization(authorization_id)
            if existing is None:
                raise AuthorizationNotFoundError("Authorization not found")
            raise InvalidStatusTransitionError(
                f"Only authorized grants can be revoked (status: {existing.status.value})"
            )

        stale = await self.cache.mark_patient_stale(revoked.patient_id)

        await self.audit.record(
            AuditEventType.AUTHORIZATION_REVOKED,
            resource_type=RESOURCE_AUTHORIZATION,
            resource_id=revoked.id,
            actor=actor,
            practice_id=revoked.practice_id,
            patient_id=revoked.patient_id,
            authorization_id=revoked.id,
            details={"reason": revoked.revoked_reason, "cache_entries_marked_stale": stale},
        )
        logger.info(f"Revoked authorization {revoked.id}: {revoked.revoked_reason}")
        return revoked

    # Patient side

    async def view_authorization(self, token: str, client: Actor) -> AuthorizationView:
        """Resolve a link token for display, counting the view.

        Raises:
            AuthorizationNotFoundError, TokenExpiredError, TokenAlreadyUsedError,
            TooManyLinkAttemptsError
        """
        authorization = await self._load_link(token, client)

        counted = await self.store.increment_link_attempts(authorization.id)
        if counted.link_attempt_count > MAX_LINK_ATTEMPTS:
            raise TooManyLinkAttemptsError("Too many attempts for this link. Please contact your provider.")

        patient = await self.store.get_patient(authorization.patient_id)
        practice = await self.store.get_practice(authorization.practice_id)
        if patient is None or practice is None:
            raise AuthorizationNotFoundError("Authorization not found")

        await self.audit.record(
            AuditEventType.LINK_CLICKED,
            resource_type=RESOURCE_AUTHORIZATION,
            resource_id=authorization.id,
            actor=self._patient_actor(authorization, client),
            practice_id=authorization.practice_id,
            patient_id=authorization.patient_id,
            authorization_id=authorization.id,
            details={"attempt": counted.link_attempt_count},
        )

        return AuthorizationView(
            authorization_id=authorization.id,
            practice_name=practice.name,
            practice_logo_url=practice.brand_logo_url,
            practice_primary_color=practice.brand_primary_color,
            practice_secondary_color=practice.brand_secondary_color,
            practice_privacy_policy_url=practice.brand_privacy_policy_url,
            patient_first_name=patient.first_name,
            scopes=authorization.scopes,
            token_expires_at=authorization.token_expires_at,
        )

    async def submit_decision(
        self,
        token: str,
        decision: str,
        client: Actor,
        signature: Optional[str] = None,
    ) -> PatientInsuranceAuthorization:
        """Record the patient's authorize/deny decision. Happens at most once per token.

        Raises:
            InvalidDecisionError: Decision is neither authorize nor deny
            AuthorizationNotFoundError, TokenExpiredError, TokenAlreadyUsedError
        """
        try:
            decision = Decision(decision)
        except ValueError:
            raise InvalidDecisionError("Decision must be 'authorize' or 'deny'")

        authorization = await self._load_link(token, client)
        now = self._clock()

        fields: Dict[str, Any] = {
            "token_used_at": now,
            "consent_ip_address": client.ip_address,
            "consent_user_agent": client.user_agent,
        }
        if decision == Decision.AUTHORIZE:
            fields.update(
                status=AuthorizationStatus.AUTHORIZED,
                consent_given_at=now,
                consent_signature=signature or DEFAULT_CONSENT_SIGNATURE,
            )
        else:
            fields.update(status=AuthorizationStatus.DENIED)

        updated = await self.store.transition_authorization(
            authorization.id, AuthorizationStatus.PENDING, require_unused_token=True, **fields
        )
        if updated is None:
            raise TokenAlreadyUsedError("This authorization link has already been used")

        patient_actor = self._patient_actor(updated, client)
        if decision == Decision.AUTHORIZE:
            patient = await self.store.get_patient(updated.patient_id)
            practice = await self.store.get_practice(updated.practice_id)
            if patient is not None and practice is not None:
                await self._notify(updated, TEMPLATE_AUTHORIZATION_CONFIRMED, {
                    "patient_first_name": patient.first_name,
                    "practice_name": practice.name,
                    "scopes": [scope.value for scope in updated.scopes],
                    "expires_at": updated.expires_at.isoformat() if updated.expires_at else None,
                })
            await self.audit.record(
                AuditEventType.CONSENT_GIVEN,
                resource_type=RESOURCE_AUTHORIZATION,
                resource_id=updated.id,
                actor=patient_actor,
                practice_id=updated.practice_id,
                patient_id=updated.patient_id,
                authorization_id=updated.id,
                details={
                    "scopes": [scope.value for scope in updated.scopes],
                    "consent_method": "signature" if signature else "checkbox",
                },
            )
        else:
            await self.audit.record(
                AuditEventType.CONSENT_DENIED,
                resource_type=RESOURCE_AUTHORIZATION,
                resource_id=updated.id,
                actor=patient_actor,
                practice_id=updated.practice_id,
                patient_id=updated.patient_id,
                authorization_id=updated.id,
            )

        logger.info(f"Authorization {updated.id} {updated.status.value} by patient")
        return updated

    # Internals

    async def _load_link(self, token: str, client: Actor) -> PatientInsuranceAuthorization:
        """Resolve a token and reject unknown, expired and used links, in that order."""
        authorization = None
        if validate_token_format(token):
            authorization = await self.store.get_authorization_by_token(token)
        if authorization is None:
            raise AuthorizationNotFoundError("Authorization link not found")

        if (
            authorization.status == AuthorizationStatus.EXPIRED
            or ensure_aware(authorization.token_expires_at) <= self._clock()
        ):
            await self._expire(authorization, client)
            raise TokenExpiredError("This authorization link has expired")

        if authorization.token_used_at is not None:
            raise TokenAlreadyUsedError("This authorization link has already been used")

        return authorization

    async def _expire(self, authorization: PatientInsuranceAuthorization, client: Actor) -> None:
        expired = await self.store.transition_authorization(
            authorization.id,
            AuthorizationStatus.PENDING,
            require_unused_token=True,
            status=AuthorizationStatus.EXPIRED,
        )
        if expired is None:
            return
        await self.audit.record(
            AuditEventType.AUTHORIZATION_EXPIRED,
            resource_type=RESOURCE_AUTHORIZATION,
            resource_id=expired.id,
            actor=self._patient_actor(expired, client),
            practice_id=expired.practice_id,
            patient_id=expired.patient_id,
            authorization_id=expired.id,
            details={"token_expires_at": expired.token_expires_at},
        )

    @staticmethod
    def _patient_actor(authorization: PatientInsuranceAuthorization, client: Actor) -> Actor:
        return Actor(
            actor_type=ActorType.PATIENT,
            actor_id=str(authorization.patient_id),
            ip_address=client.ip_address,
            user_agent=client.user_agent,
        )

    @staticmethod
    def _resolve_channels(
        request: AuthorizationRequest, patient: Patient
    ) -> Tuple[Optional[str], Optional[str]]:
        email = request.delivery_email or patient.email
        phone = request.delivery_phone or patient.phone
        if request.delivery_method == DeliveryMethod.EMAIL and not email:
            raise DeliveryChannelError("Patient email is required for email delivery")
        if request.delivery_method == DeliveryMethod.SMS and not phone:
            raise DeliveryChannelError("Patient phone number is required for SMS delivery")
        if request.delivery_method == DeliveryMethod.BOTH and not (email or phone):
            raise DeliveryChannelError("Patient email or phone number is required for delivery")
        return email, phone

    async def _notify(
        self,
        authorization: PatientInsuranceAuthorization,
        template: str,
        data: Dict[str, Any],
    ) -> List[NotificationResult]:
        # `both` only uses the channels the patient can be reached on.
        both = authorization.delivery_method == DeliveryMethod.BOTH
        results = []
        if authorization.delivery_method == DeliveryMethod.EMAIL or (both and authorization.delivery_email):
            results.append(await deliver(self.email_sender, authorization.delivery_email, template, data))
        if authorization.delivery_method == DeliveryMethod.SMS or (both and authorization.delivery_phone):
            results.append(await deliver(self.sms_sender, authorization.delivery_phone, template, data))
        for result in results:
            if not result.success:
                logger.warning(f"{template} for authorization {authorization.id} not delivered: {result.error}")
        return results

    async def _send_link(
        self,
        authorization: PatientInsuranceAuthorization,
        patient: Patient,
        practice: Practice,
        template: str,
    ) -> Tuple[bool, List[NotificationResult]]:
        """Deliver the authorization link. The first channel used (email, for `both`) decides success."""
        results = await self._notify(authorization, template, {
            "patient_first_name": patient.first_name,
            "practice_name": practice.name,
            "practice_logo_url": practice.brand_logo_url,
            "authorization_url": self.authorization_url(authorization.token),
            "scopes": [scope.value for scope in authorization.scopes],
            "expires_at": authorization.token_expires_at.isoformat(),
        })
        return bool(results) and results[0].success, results
