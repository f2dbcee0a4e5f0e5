"""Audit event models for the access-control trail."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

# Clinical payload and contact fields must never land in the audit trail.
SENSITIVE_PATTERNS = [
    "blood",
    "allerg",
    "medication",
    "condition",
    "diagnos",
    "genotype",
    "dob",
    "birth",
    "ssn",
    "phone",
    "address",
    "email",
    "emergency_contact",
    "raw_token",
    "secret",
]

REDACTED = "[REDACTED]"


class AuditAction(Enum):
    GRANT = "grant"
    REVOKE = "revoke"
    EXPIRE = "expire"
    EMERGENCY_ISSUE = "emergency_issue"
    EMERGENCY_REDEEM = "emergency_redeem"
    EMERGENCY_REDEEM_DENIED = "emergency_redeem_denied"
    EMERGENCY_EXPIRE = "emergency_expire"


@dataclass
class AuditEvent:
    action: AuditAction
    subject_patient_id: str
    actor_id: str | None = None
    success: bool = True
    metadata: dict[str, Any] = field(default_factory=dict)
    event_id: UUID = field(default_factory=uuid4)
    timestamp: datetime | None = None
    previous_hash: str | None = None
    entry_hash: str | None = None
    audit_id: int | None = None

    def sanitize_metadata(self) -> dict[str, Any]:
        """Redact values whose keys look like clinical or contact data.

        The result is also normalised to plain JSON types so that the hash
        computed before insert matches the one recomputed from the stored row.
        """
        if not self.metadata:
            return {}
        return json.loads(json.dumps(_redact(self.metadata), default=str))

    def to_db_row(self) -> dict[str, Any]:
        """Convert to dict suitable for database insertion."""
        return {
            "event_id": self.event_id,
            "actor_id": self.actor_id,
            "subject_patient_id": self.subject_patient_id,
            "action": self.action.value,
            "success": self.success,
            "event_time": self.timestamp,
            "metadata": self.sanitize_metadata(),
            "previous_hash": self.previous_hash,
            "entry_hash": self.entry_hash,
        }

    @classmethod
    def from_db_row(cls, row: dict) -> "AuditEvent":
        metadata = row.get("metadata") or {}
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        return cls(
            action=AuditAction(row["action"]),
            subject_patient_id=row["subject_patient_id"],
            actor_id=row.get("actor_id"),
            success=row.get("success", True),
            metadata=metadata,
            event_id=row["event_id"],
            timestamp=row["event_time"],
            previous_hash=row.get("previous_hash"),
            entry_hash=row.get("entry_hash"),
            audit_id=row.get("audit_id"),
        )


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        result = {}
        for key, item in value.items():
            key_lower = str(key).lower()
            if any(pattern in key_lower for pattern in SENSITIVE_PATTERNS):
                result[key] = REDACTED
            else:
                result[key] = _redact(item)
        return result
    if isinstance(value, list | tuple):
        return [_redact(v) for v in value]
    return value
