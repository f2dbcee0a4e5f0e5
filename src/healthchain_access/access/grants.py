"""Standing patient-to-entity access grants.

Grants are created by an explicit patient action and only ever change by
revocation. Duplicate grants for the same pair are allowed; readers take the
highest active level.
"""

import logging
from uuid import UUID, uuid4

import asyncpg

from ..audit.models import AuditAction, AuditEvent
from ..audit.recorder import AuditRecorder
from ..clock import Clock, SystemClock
from ..config import AccessConfig
from ..errors import NotFoundError, ValidationError
from ..storage import read_operation, storage_operation
from .models import (
    AccessGrant,
    EntityType,
    PermissionLevel,
    parse_uuid,
    require_id,
)

logger = logging.getLogger(__name__)


class GrantStore:
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

    async def grant(
        self,
        conn: asyncpg.Connection,
        granter_id: str,
        grantee_id: str,
        entity_type: EntityType | str,
        level: PermissionLevel | str,
        *,
        timeout: float | None = None,
    ) -> AccessGrant:
        """Grant ``grantee_id`` standing access to ``granter_id``'s records.

        Raises:
            ValidationError: Self-grant, empty ids, or unknown level/entity type.
        """
        require_id(granter_id, "granter_id")
        require_id(grantee_id, "grantee_id")
        if granter_id == grantee_id:
            raise ValidationError("A patient cannot grant access to themselves")
        entity_type = EntityType.parse(entity_type)
        level = PermissionLevel.parse(level)

        grant = AccessGrant(
            grant_id=uuid4(),
            granter_id=granter_id,
            grantee_id=grantee_id,
            entity_type=entity_type,
            level=level,
            created_at=self._clock.now(),
        )

        async with storage_operation(conn, "grants.grant", self._timeout(timeout)):
            await conn.execute(
                """
                INSERT INTO access_grants (
                    grant_id, granter_id, grantee_id, entity_type, level, created_at
                ) VALUES ($1, $2, $3, $4, $5, $6)
                """,
                grant.grant_id,
                grant.granter_id,
                grant.grantee_id,
                grant.entity_type.value,
                grant.level.value,
                grant.created_at,
            )
            await self._audit.record(
                conn,
                AuditEvent(
                    action=AuditAction.GRANT,
                    subject_patient_id=granter_id,
                    actor_id=granter_id,
                    timestamp=grant.created_at,
                    metadata={
                        "kind": "standing",
                        "grant_id": str(grant.grant_id),
                        "grantee_id": grantee_id,
                        "entity_type": entity_type.value,
                        "level": level.value,
                    },
                ),
            )

        logger.info(
            "Access granted: patient=%s grantee=%s (%s) level=%s grant=%s",
            granter_id,
            grantee_id,
            entity_type.value,
            level.value,
            grant.grant_id,
        )
        return grant

    async def revoke(
        self,
        conn: asyncpg.Connection,
        grant_id: UUID | str,
        actor_id: str,
        *,
        reason: str | None = None,
        timeout: float | None = None,
    ) -> bool:
        """Revoke a grant.

        Returns:
            True if this call revoked the grant, False if it was already revoked.

        Raises:
            NotFoundError: If no such grant exists.
        """
        grant_id = parse_uuid(grant_id, "grant id")
        require_id(actor_id, "actor_id")
        now = self._clock.now()

        async with storage_operation(conn, "grants.revoke", self._timeout(timeout)):
            row = await conn.fetchrow(
                """
                UPDATE access_grants
                SET revoked_at = $2, revoked_by = $3, revoke_reason = $4
                WHERE grant_id = $1 AND revoked_at IS NULL
                RETURNING *
                """,
                grant_id,
                now,
                actor_id,
                reason,
            )
            if row is None:
                exists = await conn.fetchval(
                    "SELECT EXISTS (SELECT 1 FROM access_grants WHERE grant_id = $1)",
                    grant_id,
                )
                if not exists:
                    raise NotFoundError(f"Access grant {grant_id} not found")
                logger.debug("Grant %s already revoked; nothing to do", grant_id)
                return False

            grant = AccessGrant.from_db_row(dict(row))
            metadata = {
                "kind": "standing",
                "grant_id": str(grant_id),
                "grantee_id": grant.grantee_id,
                "level": grant.level.value,
            }
            if reason:
                metadata["reason"] = reason
            await self._audit.record(
                conn,
                AuditEvent(
                    action=AuditAction.REVOKE,
                    subject_patient_id=grant.granter_id,
                    actor_id=actor_id,
                    timestamp=now,
                    metadata=metadata,
                ),
            )

        logger.info("Access grant %s revoked by %s", grant_id, actor_id)
        return True

    async def get(
        self,
        conn: asyncpg.Connection,
        grant_id: UUID | str,
        *,
        timeout: float | None = None,
    ) -> AccessGrant:
        grant_id = parse_uuid(grant_id, "grant id")
        async with read_operation("grants.get", self._timeout(timeout)):
            row = await conn.fetchrow("SELECT * FROM access_grants WHERE grant_id = $1", grant_id)
        if row is None:
            raise NotFoundError(f"Access grant {grant_id} not found")
        return AccessGrant.from_db_row(dict(row))

    async def list_active(
        self,
        conn: asyncpg.Connection,
        patient_id: str,
        *,
        timeout: float | None = None,
    ) -> list[AccessGrant]:
        """Active grants issued by a patient, most recent first."""
        async with read_operation("grants.list_active", self._timeout(timeout)):
            rows = await conn.fetch(
                """
                SELECT * FROM access_grants
                WHERE granter_id = $1 AND revoked_at IS NULL
                ORDER BY created_at DESC, grant_id
                """,
                patient_id,
            )
        return [AccessGrant.from_db_row(dict(row)) for row in rows]

    async def list_for_grantee(
        self,
        conn: asyncpg.Connection,
        grantee_id: str,
        *,
        timeout: float | None = None,
    ) -> list[AccessGrant]:
        """Active grants held by a hospital or individual, most recent first."""
        async with read_operation("grants.list_for_grantee", self._timeout(timeout)):
            rows = await conn.fetch(
                """
                SELECT * FROM access_grants
                WHERE grantee_id = $1 AND revoked_at IS NULL
                ORDER BY created_at DESC, grant_id
                """,
                grantee_id,
            )
        return [AccessGrant.from_db_row(dict(row)) for row in rows]

    async def active_levels(
        self,
        conn: asyncpg.Connection,
        patient_id: str,
        accessor_id: str,
        *,
        timeout: float | None = None,
    ) -> list[PermissionLevel]:
        async with read_operation("grants.active_levels", self._timeout(timeout)):
            rows = await conn.fetch(
                """
                SELECT level FROM access_grants
                WHERE granter_id = $1 AND grantee_id = $2 AND revoked_at IS NULL
                """,
                patient_id,
                accessor_id,
            )
        return [PermissionLevel(row["level"]) for row in rows]
