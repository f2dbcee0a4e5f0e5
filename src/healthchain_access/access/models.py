"""Access-control domain models."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from functools import total_ordering
from uuid import UUID

from ..errors import ValidationError


@total_ordering
class PermissionLevel(Enum):
    VIEW_SUMMARY = "view_summary"
    VIEW_RECORDS = "view_records"
    EMERGENCY_ACCESS = "emergency_access"
    FULL_ACCESS = "full_access"

    @property
    def rank(self) -> int:
        return _LEVEL_ORDER.index(self)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, PermissionLevel):
            return NotImplemented
        return self.rank < other.rank

    @classmethod
    def parse(cls, value: "PermissionLevel | str") -> "PermissionLevel":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            valid = ", ".join(level.value for level in cls)
            raise ValidationError(
                f"Unknown permission level {value!r}; expected one of {valid}"
            ) from None


_LEVEL_ORDER = [
    PermissionLevel.VIEW_SUMMARY,
    PermissionLevel.VIEW_RECORDS,
    PermissionLevel.EMERGENCY_ACCESS,
    PermissionLevel.FULL_ACCESS,
]


class EntityType(Enum):
    HOSPITAL = "hospital"
    INDIVIDUAL = "individual"

    @classmethod
    def parse(cls, value: "EntityType | str") -> "EntityType":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(
                f"Unknown entity type {value!r}; expected 'hospital' or 'individual'"
            ) from None


class TemporaryScope(Enum):
    FULL = "full"
    PARTIAL = "partial"

    @property
    def level(self) -> PermissionLevel:
        if self is TemporaryScope.FULL:
            return PermissionLevel.FULL_ACCESS
        return PermissionLevel.VIEW_RECORDS

    @classmethod
    def parse(cls, value: "TemporaryScope | str") -> "TemporaryScope":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(
                f"Unknown temporary scope {value!r}; expected 'full' or 'partial'"
            ) from None


class PermissionSource(Enum):
    APPROVAL = "approval"
    EMERGENCY = "emergency"


class EmergencyLevel(Enum):
    CRITICAL = "critical"
    URGENT = "urgent"

    @classmethod
    def parse(cls, value: "EmergencyLevel | str") -> "EmergencyLevel":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(
                f"Unknown emergency level {value!r}; expected 'critical' or 'urgent'"
            ) from None


@dataclass
class AccessGrant:
    grant_id: UUID
    granter_id: str
    grantee_id: str
    entity_type: EntityType
    level: PermissionLevel
    created_at: datetime
    revoked_at: datetime | None = None
    revoked_by: str | None = None
    revoke_reason: str | None = None

    @classmethod
    def from_db_row(cls, row: dict) -> "AccessGrant":
        return cls(
            grant_id=row["grant_id"],
            granter_id=row["granter_id"],
            grantee_id=row["grantee_id"],
            entity_type=EntityType(row["entity_type"]),
            level=PermissionLevel(row["level"]),
            created_at=row["created_at"],
            revoked_at=row.get("revoked_at"),
            revoked_by=row.get("revoked_by"),
            revoke_reason=row.get("revoke_reason"),
        )

    @property
    def is_active(self) -> bool:
        return self.revoked_at is None


@dataclass
class TemporaryAccessPermission:
    permission_id: UUID
    patient_id: str
    accessor_id: str
    scope: TemporaryScope
    granted_at: datetime
    expires_at: datetime
    revoked_at: datetime | None = None
    granted_by: str | None = None
    source: PermissionSource = PermissionSource.APPROVAL
    revoked_by: str | None = None
    expired_at: datetime | None = None

    @classmethod
    def from_db_row(cls, row: dict) -> "TemporaryAccessPermission":
        return cls(
            permission_id=row["permission_id"],
            patient_id=row["patient_id"],
            accessor_id=row["accessor_id"],
            scope=TemporaryScope(row["scope"]),
            granted_at=row["granted_at"],
            expires_at=row["expires_at"],
            revoked_at=row.get("revoked_at"),
            granted_by=row.get("granted_by"),
            source=PermissionSource(row.get("source", "approval")),
            revoked_by=row.get("revoked_by"),
            expired_at=row.get("expired_at"),
        )

    def is_valid(self, now: datetime) -> bool:
        """Validity is always computed from ``expires_at``; ``expired_at`` is bookkeeping."""
        return self.revoked_at is None and now < self.expires_at

    @property
    def level(self) -> PermissionLevel:
        return self.scope.level


class TokenState(Enum):
    ISSUED = "issued"
    REDEEMED = "redeemed"
    REVOKED = "revoked"
    EXPIRED = "expired"


@dataclass
class EmergencyAccessToken:
    token_id: UUID
    patient_id: str
    issued_at: datetime
    expires_at: datetime
    is_active: bool = True
    used_at: datetime | None = None
    used_by: str | None = None
    issued_by: str | None = None
    revoked_at: datetime | None = None
    revoked_by: str | None = None
    # Length of the emergency session opened by redeeming this code.
    session_duration: timedelta | None = None
    # Plaintext code, populated only on the object returned by ``issue``.
    token: str | None = field(default=None, repr=False)

    @classmethod
    def from_db_row(cls, row: dict) -> "EmergencyAccessToken":
        return cls(
            token_id=row["token_id"],
            patient_id=row["patient_id"],
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            is_active=row.get("is_active", True),
            used_at=row.get("used_at"),
            used_by=row.get("used_by"),
            issued_by=row.get("issued_by"),
            revoked_at=row.get("revoked_at"),
            revoked_by=row.get("revoked_by"),
            session_duration=row.get("session_duration"),
        )

    def is_redeemable(self, now: datetime) -> bool:
        return self.is_active and now < self.expires_at

    def state(self, now: datetime) -> TokenState:
        if self.used_at is not None:
            return TokenState.REDEEMED
        if self.revoked_at is not None:
            return TokenState.REVOKED
        if not self.is_active or now >= self.expires_at:
            return TokenState.EXPIRED
        return TokenState.ISSUED

    def seconds_remaining(self, now: datetime) -> float:
        if not self.is_redeemable(now):
            return 0.0
        return max(0.0, (self.expires_at - now).total_seconds())


@dataclass
class EmergencyContact:
    name: str | None = None
    phone: str | None = None
    relationship: str | None = None


@dataclass
class EmergencyProfile:
    patient_id: str
    blood_type: str | None = None
    allergies: list[str] = field(default_factory=list)
    medications: list[str] = field(default_factory=list)
    conditions: list[str] = field(default_factory=list)
    emergency_contact: EmergencyContact | None = None


@dataclass
class ActorIdentity:
    actor_id: str
    display_name: str
    role: str


@dataclass(frozen=True)
class AccessDecision:
    level: PermissionLevel | None
    source: str | None = None

    @property
    def is_denied(self) -> bool:
        return self.level is None

    @property
    def allowed(self) -> bool:
        return self.level is not None

    def satisfies(self, minimum: PermissionLevel) -> bool:
        return self.level is not None and self.level >= minimum


DENIED = AccessDecision(level=None)


def parse_uuid(value: UUID | str, what: str = "identifier") -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        raise ValidationError(f"Malformed {what}: {value!r}") from None


def require_id(value: str, what: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{what} must be a non-empty string")
    return value
