"""Append-only, hash-chained audit trail.

Every entry stores the digest of its predecessor (`prev_hash`) and its own
digest (`entry_hash`), computed over the canonical JSON of all its fields.
Editing, removing or reordering any historical entry breaks the chain at
that point, and `verify_integrity` reports where.
"""

import json
import logging
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from .constants import GENESIS_HASH
from .schemas import (
    Actor,
    AuditEventType,
    AuditLogEntry,
    AuditQuery,
    ChainBreak,
    DataType,
    EventCategory,
    IntegrityReport,
)
from .storage.base import RecordStore
from .utils import Clock, canonical_json, sha256_hex, utcnow

logger = logging.getLogger(__name__)

RESOURCE_PATIENT = "patient"
RESOURCE_AUTHORIZATION = "insurance_authorization"
RESOURCE_PAYER_INTEGRATION = "payer_integration"
RESOURCE_PAYER_CREDENTIAL = "payer_credential"

EVENT_CATEGORIES = {
    AuditEventType.AUTHORIZATION_REQUESTED: EventCategory.AUTHORIZATION,
    AuditEventType.AUTHORIZATION_SENT: EventCategory.AUTHORIZATION,
    AuditEventType.LINK_CLICKED: EventCategory.AUTHORIZATION,
    AuditEventType.CONSENT_GIVEN: EventCategory.AUTHORIZATION,
    AuditEventType.CONSENT_DENIED: EventCategory.AUTHORIZATION,
    AuditEventType.AUTHORIZATION_EXPIRED: EventCategory.AUTHORIZATION,
    AuditEventType.AUTHORIZATION_REVOKED: EventCategory.AUTHORIZATION,
    AuditEventType.DATA_ACCESSED: EventCategory.DATA_ACCESS,
    AuditEventType.DATA_REFRESHED: EventCategory.DATA_ACCESS,
    AuditEventType.DISCLOSURES_VIEWED: EventCategory.ADMIN,
    AuditEventType.PAYER_CONFIGURED: EventCategory.ADMIN,
    AuditEventType.CREDENTIALS_STORED: EventCategory.ADMIN,
    AuditEventType.CREDENTIALS_ROTATED: EventCategory.ADMIN,
}


def compute_entry_hash(entry: AuditLogEntry) -> str:
    """Digest of every field except the digest itself (prev_hash included)."""
    content = entry.model_dump(mode="json", exclude={"entry_hash"})
    return sha256_hex(canonical_json(content))


class AuditTrail:

    def __init__(self, store: RecordStore, clock: Clock = utcnow):
        self.store = store
        self._clock = clock

    async def record(
        self,
        event_type: AuditEventType,
        *,
        resource_type: str,
        resource_id: Optional[Any] = None,
        actor: Optional[Actor] = None,
        practice_id: Optional[UUID] = None,
        patient_id: Optional[UUID] = None,
        authorization_id: Optional[UUID] = None,
        data_type: Optional[DataType] = None,
        details: Optional[Dict[str, Any]] = None,
        success: bool = True,
        error_message: Optional[str] = None,
        event_category: Optional[EventCategory] = None,
    ) -> AuditLogEntry:
        """Append one event to the chain and return the sealed entry."""
        event_type = AuditEventType(event_type)
        actor = actor or Actor()
        # Round-trip details through canonical JSON so every store hashes identical content.
        normalized_details = json.loads(canonical_json(details or {}))
        created_at = self._clock()

        def seal(last: Optional[AuditLogEntry]) -> AuditLogEntry:
            entry = AuditLogEntry(
                id=uuid4(),
                sequence=last.sequence + 1 if last else 1,
                event_category=event_category or EVENT_CATEGORIES[event_type],
                event_type=event_type,
                resource_type=resource_type,
                resource_id=str(resource_id) if resource_id is not None else None,
                practice_id=practice_id,
                patient_id=patient_id,
                authorization_id=authorization_id,
                data_type=data_type,
                actor_type=actor.actor_type,
                actor_id=actor.actor_id,
                ip_address=actor.ip_address,
                user_agent=actor.user_agent,
                details=normalized_details,
                success=success,
                error_message=error_message,
                created_at=created_at,
                prev_hash=last.entry_hash if last else GENESIS_HASH,
                entry_hash="",
            )
            entry.entry_hash = compute_entry_hash(entry)
            return entry

        entry = await self.store.append_audit_entry(seal)
        logger.debug(
            f"Audit #{entry.sequence} {entry.event_type.value} {resource_type}:{entry.resource_id} "
            f"success={success}"
        )
        return entry

    async def verify_integrity(self, batch_size: int = 500) -> IntegrityReport:
        """Replay the chain from the start and report the first break, if any."""
        expected_prev = GENESIS_HASH
        expected_sequence = 1
        checked = 0

        while True:
            batch = await self.store.list_audit_entries(after_sequence=expected_sequence - 1, limit=batch_size)
            if not batch:
                break

            for entry in batch:
                problem = None
                if entry.sequence != expected_sequence:
                    problem = ChainBreak(
                        sequence=entry.sequence, reason="sequence_gap",
                        expected=str(expected_sequence), actual=str(entry.sequence),
                    )
                elif entry.prev_hash != expected_prev:
                    problem = ChainBreak(
                        sequence=entry.sequence, reason="prev_hash_mismatch",
                        expected=expected_prev, actual=entry.prev_hash,
                    )
                else:
                    recomputed = compute_entry_hash(entry)
                    if recomputed != entry.entry_hash:
                        problem = ChainBreak(
                            sequence=entry.sequence, reason="entry_hash_mismatch",
                            expected=recomputed, actual=entry.entry_hash,
                        )

                if problem is not None:
                    logger.warning(
                        f"Audit chain broken at sequence {problem.sequence}: {problem.reason}"
                    )
                    return IntegrityReport(valid=False, entries_checked=checked, first_break=problem)

                checked += 1
                expected_prev = entry.entry_hash
                expected_sequence += 1

        logger.info(f"Audit chain verified ({checked} entries)")
        return IntegrityReport(valid=True, entries_checked=checked)

    async def accounting_of_disclosures(
        self,
        resource_type: str,
        resource_id: Any,
        actor: Optional[Actor] = None,
        practice_id: Optional[UUID] = None,
    ) -> List[AuditLogEntry]:
        """Every event that touched one resource, newest first.

        The lookup itself is recorded after the result is read.
        """
        entries = await self.store.audit_entries_for_resource(resource_type, str(resource_id))
        await self.record(
            AuditEventType.DISCLOSURES_VIEWED,
            resource_type=resource_type,
            resource_id=resource_id,
            actor=actor,
            practice_id=practice_id,
            patient_id=resource_id if resource_type == RESOURCE_PATIENT and isinstance(resource_id, UUID) else None,
            details={"entries_returned": len(entries)},
        )
        return entries

    async def query(self, query: AuditQuery) -> List[AuditLogEntry]:
        return await self.store.query_audit_entries(query)
