"""Hash chain integrity verification for the access audit trail.

Each patient's events form an independent SHA-256 chain: every entry stores
the previous entry's hash, and its own hash covers its content plus that
link. Altering, removing or reordering a stored entry breaks the chain.
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID

import asyncpg

from ..storage import read_operation
from .models import AuditEvent


class IntegrityStatus(Enum):
    VALID = "valid"
    CHAIN_BROKEN = "chain_broken"
    HASH_MISMATCH = "hash_mismatch"


@dataclass
class IntegrityViolation:
    audit_id: int
    event_time: datetime
    status: IntegrityStatus
    expected_hash: str | None = None
    actual_hash: str | None = None
    message: str = ""


@dataclass
class IntegrityReport:
    patient_id: str
    total_entries: int
    verified_entries: int
    violations: list[IntegrityViolation] = field(default_factory=list)
    first_entry_hash: str | None = None
    last_entry_hash: str | None = None
    verification_time: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_valid(self) -> bool:
        return len(self.violations) == 0

    def to_dict(self) -> dict:
        return {
            "patient_id": self.patient_id,
            "total_entries": self.total_entries,
            "verified_entries": self.verified_entries,
            "is_valid": self.is_valid,
            "violation_count": len(self.violations),
            "violations": [
                {
                    "audit_id": v.audit_id,
                    "event_time": v.event_time.isoformat(),
                    "status": v.status.value,
                    "message": v.message,
                }
                for v in self.violations[:100]
            ],
            "first_entry_hash": self.first_entry_hash,
            "last_entry_hash": self.last_entry_hash,
            "verification_time": self.verification_time.isoformat(),
        }


class AuditIntegrity:
    GENESIS_HASH = "0" * 64

    def compute_entry_hash(
        self,
        event_id: UUID,
        event_time: datetime,
        actor_id: str | None,
        subject_patient_id: str,
        action: str,
        success: bool,
        metadata: dict[str, Any] | None,
        previous_hash: str | None,
    ) -> str:
        hash_input = {
            "event_id": str(event_id),
            "event_time": event_time.astimezone(UTC).isoformat(),
            "actor_id": actor_id,
            "subject_patient_id": subject_patient_id,
            "action": action,
            "success": success,
            "metadata": metadata or {},
            "previous_hash": previous_hash or self.GENESIS_HASH,
        }
        canonical = json.dumps(hash_input, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def compute_event_hash(self, event: AuditEvent, previous_hash: str | None) -> str:
        if event.timestamp is None:
            raise ValueError("Audit event must be timestamped before hashing")
        return self.compute_entry_hash(
            event_id=event.event_id,
            event_time=event.timestamp,
            actor_id=event.actor_id,
            subject_patient_id=event.subject_patient_id,
            action=event.action.value,
            success=event.success,
            metadata=event.sanitize_metadata(),
            previous_hash=previous_hash,
        )

    def verify_events(self, patient_id: str, events: list[AuditEvent]) -> IntegrityReport:
        """Verify a patient's chain given its events in insertion order."""
        report = IntegrityReport(
            patient_id=patient_id,
            total_entries=len(events),
            verified_entries=0,
        )
        expected_previous: str | None = None

        for event in events:
            if event.previous_hash != expected_previous:
                report.violations.append(
                    IntegrityViolation(
                        audit_id=event.audit_id,
                        event_time=event.timestamp,
                        status=IntegrityStatus.CHAIN_BROKEN,
                        expected_hash=expected_previous,
                        actual_hash=event.previous_hash,
                        message="previous_hash does not match preceding entry",
                    )
                )

            recomputed = self.compute_event_hash(event, event.previous_hash)
            if recomputed != event.entry_hash:
                report.violations.append(
                    IntegrityViolation(
                        audit_id=event.audit_id,
                        event_time=event.timestamp,
                        status=IntegrityStatus.HASH_MISMATCH,
                        expected_hash=recomputed,
                        actual_hash=event.entry_hash,
                        message="entry content does not match stored hash",
                    )
                )
            else:
                report.verified_entries += 1

            if report.first_entry_hash is None:
                report.first_entry_hash = event.entry_hash
            report.last_entry_hash = event.entry_hash
            expected_previous = event.entry_hash

        return report

    async def verify_patient_chain(
        self,
        conn: asyncpg.Connection,
        patient_id: str,
        *,
        timeout: float | None = None,
    ) -> IntegrityReport:
        async with read_operation("audit.verify_patient_chain", timeout):
            rows = await conn.fetch(
                """
                SELECT * FROM access_audit_log
                WHERE subject_patient_id = $1
                ORDER BY audit_id
                """,
                patient_id,
            )
        events = [AuditEvent.from_db_row(dict(row)) for row in rows]
        return self.verify_events(patient_id, events)
