"""Emergency (break-glass) access codes.

A patient, or the system on their behalf, issues a short-lived single-use
code. A responder redeems it once to obtain a full-scope temporary
permission for that patient. Token lifecycle::

    ISSUED --redeem--> REDEEMED   (terminal)
    ISSUED --revoke--> REVOKED    (terminal)
    ISSUED --time----> EXPIRED    (terminal, observed at read time)

Redemption is exactly-once. The claim is a single conditional ``UPDATE ...
WHERE is_active AND expires_at > now`` evaluated by PostgreSQL, never a read
followed by a write, so of any number of concurrent redeemers exactly one
sees a returned row. Everyone else gets ``ConflictError``.
"""

import logging
from datetime import datetime, timedelta
from uuid import UUID, uuid4

import asyncpg

from ..audit.models import AuditAction, AuditEvent
from ..audit.recorder import AuditRecorder
from ..clock import Clock, SystemClock
from ..config import AccessConfig
from ..errors import (
    AccessControlError,
    AccessDeniedError,
    ConflictError,
    InvalidTokenError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from ..storage import read_operation, storage_operation
from .collaborators import ActorDirectory, EmergencyProfileSource, describe_actor
from .models import (
    EmergencyAccessToken,
    EmergencyLevel,
    EmergencyProfile,
    PermissionSource,
    TemporaryAccessPermission,
    TemporaryScope,
    parse_uuid,
    require_id,
)
from .temporary import TemporaryPermissionManager
from .tokens import TokenGenerator, hash_token

logger = logging.getLogger(__name__)

MAX_GENERATION_ATTEMPTS = 5


class EmergencySummaryHandle:
    """Right to read a patient's emergency profile, obtained by redemption.

    The profile itself belongs to the profile subsystem; this handle only
    carries the permission that makes reading it legitimate.
    """

    def __init__(
        self,
        token_id: UUID,
        patient_id: str,
        actor_id: str,
        permission: TemporaryAccessPermission,
        redeemed_at: datetime,
        profiles: EmergencyProfileSource | None = None,
        clock: Clock | None = None,
    ):
        self.token_id = token_id
        self.patient_id = patient_id
        self.actor_id = actor_id
        self.permission = permission
        self.redeemed_at = redeemed_at
        self._profiles = profiles
        self._clock = clock or SystemClock()

    @property
    def expires_at(self) -> datetime:
        return self.permission.expires_at

    def is_valid(self) -> bool:
        return self.permission.is_valid(self._clock.now())

    async def fetch_profile(self) -> EmergencyProfile:
        """Fetch blood type, allergies, medications, conditions and emergency contact.

        Raises:
            AccessDeniedError: If the emergency session has lapsed.
        """
        if not self.is_valid():
            raise AccessDeniedError(
                f"Emergency access to patient {self.patient_id} has expired"
            )
        if self._profiles is None:
            raise AccessControlError("No emergency profile source configured")
        return await self._profiles.fetch_emergency_profile(self.patient_id)

    def __repr__(self) -> str:
        return (
            f"EmergencySummaryHandle(patient_id={self.patient_id!r}, "
            f"actor_id={self.actor_id!r}, expires_at={self.expires_at.isoformat()})"
        )


class EmergencyTokenService:
    def __init__(
        self,
        audit: AuditRecorder,
        temporary: TemporaryPermissionManager,
        clock: Clock | None = None,
        config: AccessConfig | None = None,
        generator: TokenGenerator | None = None,
        profiles: EmergencyProfileSource | None = None,
        actors: ActorDirectory | None = None,
    ):
        self._audit = audit
        self._temporary = temporary
        self._clock = clock or SystemClock()
        self._config = config or AccessConfig()
        self._generator = generator or TokenGenerator(
            length=self._config.token_length,
            group_size=self._config.token_group_size,
        )
        self._profiles = profiles
        self._actors = actors

    def _timeout(self, timeout: float | None) -> float:
        return timeout if timeout is not None else self._config.operation_timeout_seconds

    async def issue(
        self,
        conn: asyncpg.Connection,
        patient_id: str,
        ttl: timedelta | None = None,
        *,
        session_duration: timedelta | None = None,
        issued_by: str | None = None,
        timeout: float | None = None,
    ) -> EmergencyAccessToken:
        """Issue a single-use emergency code for a patient.

        The returned token carries the plaintext code in ``token``; it is not
        stored and cannot be retrieved again. ``session_duration`` is how long
        the emergency session opened by redeeming this code lasts; it is
        stored with the code and defaults to the configured session length.

        Raises:
            ValidationError: If ttl or session_duration is not positive or
                exceeds its maximum.
            StorageError: If no unique code could be allocated.
        """
        require_id(patient_id, "patient_id")
        ttl = ttl if ttl is not None else self._config.emergency_token_ttl
        if not isinstance(ttl, timedelta) or ttl <= timedelta(0):
            raise ValidationError(f"ttl must be a positive duration, got {ttl!r}")
        if ttl > self._config.max_emergency_ttl:
            raise ValidationError(
                f"Emergency token ttl cannot exceed {self._config.max_emergency_ttl_minutes} "
                f"minutes (requested: {ttl.total_seconds() / 60:.0f})"
            )
        session_duration = (
            session_duration if session_duration is not None else self._config.emergency_session
        )
        if not isinstance(session_duration, timedelta) or session_duration <= timedelta(0):
            raise ValidationError(
                f"session_duration must be a positive duration, got {session_duration!r}"
            )
        if session_duration > self._config.max_emergency_session:
            raise ValidationError(
                "Emergency session cannot exceed "
                f"{self._config.max_emergency_session_minutes} minutes "
                f"(requested: {session_duration.total_seconds() / 60:.0f})"
            )

        actor_metadata = await describe_actor(self._actors, issued_by)
        now = self._clock.now()

        async with storage_operation(conn, "emergency.issue", self._timeout(timeout)):
            for attempt in range(1, MAX_GENERATION_ATTEMPTS + 1):
                code = self._generator.generate()
                token_hash = hash_token(code)
                collision = await conn.fetchval(
                    """
                    SELECT EXISTS (
                        SELECT 1 FROM emergency_access_tokens
                        WHERE token_hash = $1 AND is_active
                    )
                    """,
                    token_hash,
                )
                if not collision:
                    break
                logger.warning("Emergency code collision on attempt %d; regenerating", attempt)
            else:
                raise StorageError("Could not allocate a unique emergency access code")

            token = EmergencyAccessToken(
                token_id=uuid4(),
                patient_id=patient_id,
                issued_at=now,
                expires_at=now + ttl,
                issued_by=issued_by,
                session_duration=session_duration,
                token=code,
            )
            await conn.execute(
                """
                INSERT INTO emergency_access_tokens (
                    token_id, token_hash, patient_id, issued_by, issued_at, expires_at,
                    session_duration
                ) VALUES ($1, $2, $3, $4, $5, $6, $7)
                """,
                token.token_id,
                token_hash,
                token.patient_id,
                token.issued_by,
                token.issued_at,
                token.expires_at,
                token.session_duration,
            )
            await self._audit.record(
                conn,
                AuditEvent(
                    action=AuditAction.EMERGENCY_ISSUE,
                    subject_patient_id=patient_id,
                    actor_id=issued_by,
                    timestamp=now,
                    metadata={
                        "token_id": str(token.token_id),
                        "ttl_seconds": int(ttl.total_seconds()),
                        "expires_at": token.expires_at.isoformat(),
                        "session_seconds": int(session_duration.total_seconds()),
                        **actor_metadata,
                    },
                ),
            )

        logger.warning(
            "Emergency access code issued: patient=%s token_id=%s ttl=%ds",
            patient_id,
            token.token_id,
            int(ttl.total_seconds()),
        )
        return token

    async def redeem(
        self,
        conn: asyncpg.Connection,
        token: str,
        actor_id: str,
        *,
        justification: str,
        emergency_level: EmergencyLevel | str = EmergencyLevel.CRITICAL,
        timeout: float | None = None,
    ) -> EmergencySummaryHandle:
        """Consume an emergency code and open an emergency session for ``actor_id``.

        On success the token becomes REDEEMED, a full-scope temporary
        permission lasting the code's session duration is created for the
        actor, and an ``emergency_redeem`` event carrying the justification
        is written, all in one transaction.

        Args:
            justification: REQUIRED explanation (min 20 chars) for the audit trail
            emergency_level: ``critical`` or ``urgent``

        Raises:
            ValidationError: Empty actor, short justification or unknown level.
            InvalidTokenError: Unknown, inactive, expired or malformed code.
            ConflictError: Another responder redeemed the code concurrently.
            DeadlineExceededError: Nothing was committed; the code is still usable.
        """
        require_id(actor_id, "actor_id")
        justification = self._check_justification(justification)
        emergency_level = EmergencyLevel.parse(emergency_level)
        try:
            normalized = self._generator.normalize(token)
        except InvalidTokenError as e:
            logger.warning("Emergency redemption rejected: reason=%s actor=%s", e.reason, actor_id)
            raise

        token_hash = hash_token(normalized)
        actor_metadata = await describe_actor(self._actors, actor_id)
        now = self._clock.now()
        current: EmergencyAccessToken | None = None

        try:
            async with storage_operation(conn, "emergency.redeem", self._timeout(timeout)):
                row = await conn.fetchrow(
                    """
                    SELECT * FROM emergency_access_tokens
                    WHERE token_hash = $1
                    ORDER BY is_active DESC, issued_at DESC
                    LIMIT 1
                    """,
                    token_hash,
                )
                if row is None:
                    raise InvalidTokenError("not_found")
                current = EmergencyAccessToken.from_db_row(dict(row))
                if not current.is_active:
                    raise InvalidTokenError("inactive")
                if now >= current.expires_at:
                    raise InvalidTokenError("expired")

                claimed = await conn.fetchrow(
                    """
                    UPDATE emergency_access_tokens
                    SET is_active = false, used_at = $2, used_by = $3
                    WHERE token_id = $1 AND is_active AND expires_at > $2
                    RETURNING token_id
                    """,
                    current.token_id,
                    now,
                    actor_id,
                )
                if claimed is None:
                    raise ConflictError()

                permission = await self._temporary.grant_temporary(
                    conn,
                    current.patient_id,
                    actor_id,
                    TemporaryScope.FULL,
                    current.session_duration or self._config.emergency_session,
                    granted_by=actor_id,
                    source=PermissionSource.EMERGENCY,
                )
                await self._audit.record(
                    conn,
                    AuditEvent(
                        action=AuditAction.EMERGENCY_REDEEM,
                        subject_patient_id=current.patient_id,
                        actor_id=actor_id,
                        timestamp=now,
                        metadata={
                            "token_id": str(current.token_id),
                            "permission_id": str(permission.permission_id),
                            "session_expires_at": permission.expires_at.isoformat(),
                            "emergency_level": emergency_level.value,
                            "justification": justification,
                            **actor_metadata,
                        },
                    ),
                )
        except InvalidTokenError as e:
            logger.warning(
                "Emergency redemption rejected: reason=%s actor=%s token_id=%s",
                e.reason,
                actor_id,
                current.token_id if current else None,
            )
            if current is not None:
                await self._record_denial(conn, current, actor_id, e.reason, now, timeout)
            raise

        logger.warning(
            "Emergency access code redeemed: patient=%s actor=%s token_id=%s",
            current.patient_id,
            actor_id,
            current.token_id,
        )
        return EmergencySummaryHandle(
            token_id=current.token_id,
            patient_id=current.patient_id,
            actor_id=actor_id,
            permission=permission,
            redeemed_at=now,
            profiles=self._profiles,
            clock=self._clock,
        )

    def _check_justification(self, justification: str) -> str:
        minimum = self._config.min_justification_length
        if not isinstance(justification, str):
            raise ValidationError("justification must be a string")
        justification = justification.strip()
        if len(justification) < minimum:
            raise ValidationError(
                f"Justification must be at least {minimum} characters "
                f"(provided: {len(justification)})"
            )
        return justification

    async def _record_denial(
        self,
        conn: asyncpg.Connection,
        token: EmergencyAccessToken,
        actor_id: str,
        reason: str,
        now: datetime,
        timeout: float | None,
    ) -> None:
        async with storage_operation(conn, "emergency.record_denial", self._timeout(timeout)):
            await self._audit.record(
                conn,
                AuditEvent(
                    action=AuditAction.EMERGENCY_REDEEM_DENIED,
                    subject_patient_id=token.patient_id,
                    actor_id=actor_id,
                    success=False,
                    timestamp=now,
                    metadata={"token_id": str(token.token_id), "reason": reason},
                ),
            )

    async def revoke(
        self,
        conn: asyncpg.Connection,
        token_id: UUID | str,
        actor_id: str,
        *,
        timeout: float | None = None,
    ) -> bool:
        """Cancel an unused code.

        Returns:
            True if this call revoked the code, False if it was already
            redeemed, revoked or expired.

        Raises:
            NotFoundError: If no such token exists.
        """
        token_id = parse_uuid(token_id, "token id")
        require_id(actor_id, "actor_id")
        now = self._clock.now()

        async with storage_operation(conn, "emergency.revoke", self._timeout(timeout)):
            row = await conn.fetchrow(
                """
                UPDATE emergency_access_tokens
                SET is_active = false, revoked_at = $2, revoked_by = $3
                WHERE token_id = $1 AND is_active AND expires_at > $2
                RETURNING patient_id
                """,
                token_id,
                now,
                actor_id,
            )
            if row is None:
                exists = await conn.fetchval(
                    "SELECT EXISTS (SELECT 1 FROM emergency_access_tokens WHERE token_id = $1)",
                    token_id,
                )
                if not exists:
                    raise NotFoundError(f"Emergency token {token_id} not found")
                return False

            await self._audit.record(
                conn,
                AuditEvent(
                    action=AuditAction.REVOKE,
                    subject_patient_id=row["patient_id"],
                    actor_id=actor_id,
                    timestamp=now,
                    metadata={"kind": "emergency_token", "token_id": str(token_id)},
                ),
            )

        logger.info("Emergency token %s revoked by %s", token_id, actor_id)
        return True

    async def get(
        self,
        conn: asyncpg.Connection,
        token_id: UUID | str,
        *,
        timeout: float | None = None,
    ) -> EmergencyAccessToken:
        token_id = parse_uuid(token_id, "token id")
        async with read_operation("emergency.get", self._timeout(timeout)):
            row = await conn.fetchrow(
                "SELECT * FROM emergency_access_tokens WHERE token_id = $1",
                token_id,
            )
        if row is None:
            raise NotFoundError(f"Emergency token {token_id} not found")
        return EmergencyAccessToken.from_db_row(dict(row))

    async def list_active(
        self,
        conn: asyncpg.Connection,
        patient_id: str,
        *,
        timeout: float | None = None,
    ) -> list[EmergencyAccessToken]:
        """Codes for a patient that could still be redeemed, newest first."""
        async with read_operation("emergency.list_active", self._timeout(timeout)):
            rows = await conn.fetch(
                """
                SELECT * FROM emergency_access_tokens
                WHERE patient_id = $1 AND is_active AND expires_at > $2
                ORDER BY issued_at DESC
                """,
                patient_id,
                self._clock.now(),
            )
        return [EmergencyAccessToken.from_db_row(dict(row)) for row in rows]

    async def sweep_expired(
        self,
        conn: asyncpg.Connection,
        *,
        batch_size: int | None = None,
        timeout: float | None = None,
    ) -> int:
        """Deactivate lapsed codes and write one ``emergency_expire`` event each.

        Redemption never relies on this having run.
        """
        now = self._clock.now()
        batch_size = batch_size or self._config.sweep_batch_size

        async with storage_operation(conn, "emergency.sweep_expired", self._timeout(timeout)):
            rows = await conn.fetch(
                """
                UPDATE emergency_access_tokens t
                SET is_active = false, expired_at = $1
                WHERE t.token_id IN (
                    SELECT token_id FROM emergency_access_tokens
                    WHERE is_active AND expires_at <= $1
                    ORDER BY expires_at
                    LIMIT $2
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING t.token_id, t.patient_id, t.expires_at
                """,
                now,
                batch_size,
            )
            # Fixed patient order keeps per-patient audit locks deadlock-free.
            for row in sorted(rows, key=lambda r: (r["patient_id"], str(r["token_id"]))):
                await self._audit.record(
                    conn,
                    AuditEvent(
                        action=AuditAction.EMERGENCY_EXPIRE,
                        subject_patient_id=row["patient_id"],
                        timestamp=now,
                        metadata={
                            "token_id": str(row["token_id"]),
                            "expires_at": row["expires_at"].isoformat(),
                        },
                    ),
                )

        if rows:
            logger.info("Marked %d emergency access codes expired", len(rows))
        return len(rows)
