"""Short-lived, self-expiring access permissions.

Validity is ``revoked_at IS NULL AND now < expires_at``, evaluated at read
time on every call. The sweep only stamps ``expired_at`` for bookkeeping and
audit; nothing reads that column to make an access decision.
"""

import logging
from datetime import timedelta
from uuid import UUID, uuid4

import asyncpg

from ..audit.models import AuditAction, AuditEvent
from ..audit.recorder import AuditRecorder
from ..clock import Clock, SystemClock
from ..config import AccessConfig
from ..errors import NotFoundError, ValidationError
from ..storage import read_operation, storage_operation
from .models import (
    PermissionSource,
    TemporaryAccessPermission,
    TemporaryScope,
    parse_uuid,
    require_id,
)

logger = logging.getLogger(__name__)


class TemporaryPermissionManager:
    def __init__(
        self,
        audit: AuditRecorder,
        clock: Clock | None = None,
        config: AccessConfig | None = None,
    ):
        self._audit = audit
        self._clock = clock or SystemClock()
        self._config = config or AccessConfig()

    def _timeout(self, timeout: float | None) -> float:
        return timeout if timeout is not None else self._config.operation_timeout_seconds

    async def grant_temporary(
        self,
        conn: asyncpg.Connection,
        patient_id: str,
        accessor_id: str,
        scope: TemporaryScope | str,
        ttl: timedelta,
        *,
        granted_by: str | None = None,
        source: PermissionSource = PermissionSource.APPROVAL,
        timeout: float | None = None,
    ) -> TemporaryAccessPermission:
        """Create a permission valid from now until ``now + ttl``.

        Raises:
            ValidationError: Non-positive ttl, empty ids or unknown scope.
        """
        require_id(patient_id, "patient_id")
        require_id(accessor_id, "accessor_id")
        scope = TemporaryScope.parse(scope)
        if not isinstance(ttl, timedelta) or ttl <= timedelta(0):
            raise ValidationError(f"ttl must be a positive duration, got {ttl!r}")

        now = self._clock.now()
        permission = TemporaryAccessPermission(
            permission_id=uuid4(),
            patient_id=patient_id,
            accessor_id=accessor_id,
            scope=scope,
            granted_at=now,
            expires_at=now + ttl,
            granted_by=granted_by,
            source=source,
        )

        async with storage_operation(conn, "temporary.grant", self._timeout(timeout)):
            await conn.execute(
                """
                INSERT INTO temporary_access_permissions (
                    permission_id, patient_id, accessor_id, scope, source,
                    granted_by, granted_at, expires_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                """,
                permission.permission_id,
                permission.patient_id,
                permission.accessor_id,
                permission.scope.value,
                permission.source.value,
                permission.granted_by,
                permission.granted_at,
                permission.expires_at,
            )
            await self._audit.record(
                conn,
                AuditEvent(
                    action=AuditAction.GRANT,
                    subject_patient_id=patient_id,
                    actor_id=granted_by,
                    timestamp=now,
                    metadata={
                        "kind": "temporary",
                        "permission_id": str(permission.permission_id),
                        "accessor_id": accessor_id,
                        "scope": scope.value,
                        "source": source.value,
                        "expires_at": permission.expires_at.isoformat(),
                    },
                ),
            )

        logger.info(
            "Temporary %s access for %s to patient %s until %s (%s)",
            scope.value,
            accessor_id,
            patient_id,
            permission.expires_at.isoformat(),
            source.value,
        )
        return permission

    async def revoke(
        self,
        conn: asyncpg.Connection,
        permission_id: UUID | str,
        actor_id: str,
        *,
        timeout: float | None = None,
    ) -> bool:
        """Revoke a permission.

        Already revoked and already expired permissions are left untouched.

        Returns:
            True if this call revoked the permission, False if it was inactive.

        Raises:
            NotFoundError: If no such permission exists.
        """
        permission_id = parse_uuid(permission_id, "permission id")
        require_id(actor_id, "actor_id")
        now = self._clock.now()

        async with storage_operation(conn, "temporary.revoke", self._timeout(timeout)):
            row = await conn.fetchrow(
                """
                UPDATE temporary_access_permissions
                SET revoked_at = $2, revoked_by = $3
                WHERE permission_id = $1 AND revoked_at IS NULL AND expires_at > $2
                RETURNING *
                """,
                permission_id,
                now,
                actor_id,
            )
            if row is None:
                exists = await conn.fetchval(
                    """
                    SELECT EXISTS (
                        SELECT 1 FROM temporary_access_permissions WHERE permission_id = $1
                    )
                    """,
                    permission_id,
                )
                if not exists:
                    raise NotFoundError(f"Temporary permission {permission_id} not found")
                logger.debug("Temporary permission %s already inactive", permission_id)
                return False

            permission = TemporaryAccessPermission.from_db_row(dict(row))
            await self._audit.record(
                conn,
                AuditEvent(
                    action=AuditAction.REVOKE,
                    subject_patient_id=permission.patient_id,
                    actor_id=actor_id,
                    timestamp=now,
                    metadata={
                        "kind": "temporary",
                        "permission_id": str(permission_id),
                        "accessor_id": permission.accessor_id,
                        "scope": permission.scope.value,
                    },
                ),
            )

        logger.info("Temporary permission %s revoked by %s", permission_id, actor_id)
        return True

    async def get(
        self,
        conn: asyncpg.Connection,
        permission_id: UUID | str,
        *,
        timeout: float | None = None,
    ) -> TemporaryAccessPermission:
        permission_id = parse_uuid(permission_id, "permission id")
        async with read_operation("temporary.get", self._timeout(timeout)):
            row = await conn.fetchrow(
                "SELECT * FROM temporary_access_permissions WHERE permission_id = $1",
                permission_id,
            )
        if row is None:
            raise NotFoundError(f"Temporary permission {permission_id} not found")
        return TemporaryAccessPermission.from_db_row(dict(row))

    async def is_valid(
        self,
        conn: asyncpg.Connection,
        permission_id: UUID | str,
        *,
        timeout: float | None = None,
    ) -> bool:
        try:
            permission = await self.get(conn, permission_id, timeout=timeout)
        except (NotFoundError, ValidationError):
            return False
        return permission.is_valid(self._clock.now())

    async def list_valid(
        self,
        conn: asyncpg.Connection,
        patient_id: str,
        accessor_id: str,
        *,
        timeout: float | None = None,
    ) -> list[TemporaryAccessPermission]:
        async with read_operation("temporary.list_valid", self._timeout(timeout)):
            rows = await conn.fetch(
                """
                SELECT * FROM temporary_access_permissions
                WHERE patient_id = $1 AND accessor_id = $2
                  AND revoked_at IS NULL AND expires_at > $3
                ORDER BY expires_at DESC
                """,
                patient_id,
                accessor_id,
                self._clock.now(),
            )
        return [TemporaryAccessPermission.from_db_row(dict(row)) for row in rows]

    async def list_active_for_patient(
        self,
        conn: asyncpg.Connection,
        patient_id: str,
        *,
        timeout: float | None = None,
    ) -> list[TemporaryAccessPermission]:
        async with read_operation("temporary.list_active_for_patient", self._timeout(timeout)):
            rows = await conn.fetch(
                """
                SELECT * FROM temporary_access_permissions
                WHERE patient_id = $1 AND revoked_at IS NULL AND expires_at > $2
                ORDER BY granted_at DESC
                """,
                patient_id,
                self._clock.now(),
            )
        return [TemporaryAccessPermission.from_db_row(dict(row)) for row in rows]

    async def sweep_expired(
        self,
        conn: asyncpg.Connection,
        *,
        batch_size: int | None = None,
        timeout: float | None = None,
    ) -> int:
        """Stamp ``expired_at`` on lapsed permissions and audit each one.

        Safe to run concurrently with itself and with normal traffic; rows
        locked by another sweeper are skipped.
        """
        now = self._clock.now()
        batch_size = batch_size or self._config.sweep_batch_size

        async with storage_operation(conn, "temporary.sweep_expired", self._timeout(timeout)):
            rows = await conn.fetch(
                """
                UPDATE temporary_access_permissions t
                SET expired_at = $1
                WHERE t.permission_id IN (
                    SELECT permission_id FROM temporary_access_permissions
                    WHERE revoked_at IS NULL AND expired_at IS NULL AND expires_at <= $1
                    ORDER BY expires_at
                    LIMIT $2
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING t.*
                """,
                now,
                batch_size,
            )
            # Fixed patient order keeps per-patient audit locks deadlock-free.
            for row in sorted(rows, key=lambda r: (r["patient_id"], str(r["permission_id"]))):
                await self._audit.record(
                    conn,
                    AuditEvent(
                        action=AuditAction.EXPIRE,
                        subject_patient_id=row["patient_id"],
                        timestamp=now,
                        metadata={
                            "kind": "temporary",
                            "permission_id": str(row["permission_id"]),
                            "accessor_id": row["accessor_id"],
                            "expires_at": row["expires_at"].isoformat(),
                        },
                    ),
                )

        if rows:
            logger.info("Marked %d temporary permissions expired", len(rows))
        return len(rows)
