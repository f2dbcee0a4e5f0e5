"""Synchronous, transactional audit recording.

Events are written on the caller's connection, inside the caller's
transaction, so a state change and its audit entry commit or roll back
together. There is no buffering and no fallback file: if the insert fails
the surrounding operation fails with it.
"""

import json
import logging

import asyncpg

from ..clock import Clock, SystemClock
from ..storage import read_operation, storage_operation
from .context import get_audit_context
from .integrity import AuditIntegrity
from .models import AuditAction, AuditEvent

logger = logging.getLogger(__name__)


class AuditRecorder:
    def __init__(self, clock: Clock | None = None, integrity: AuditIntegrity | None = None):
        self._clock = clock or SystemClock()
        self._integrity = integrity or AuditIntegrity()

    async def record(self, conn: asyncpg.Connection, event: AuditEvent) -> AuditEvent:
        """Append one event to the subject patient's hash chain.

        Must be called on the same connection, and normally inside the same
        transaction, as the state change it describes.

        Raises:
            StorageError: If the insert fails. Never swallowed.
        """
        for key, value in get_audit_context().as_metadata().items():
            event.metadata.setdefault(key, value)

        if event.timestamp is None:
            event.timestamp = self._clock.now()

        async with storage_operation(conn, "audit.record"):
            # Serialises appends per patient so the chain stays linear.
            await conn.execute(
                "SELECT pg_advisory_xact_lock(hashtext('access_audit_log'), hashtext($1))",
                event.subject_patient_id,
            )
            event.previous_hash = await conn.fetchval(
                """
                SELECT entry_hash FROM access_audit_log
                WHERE subject_patient_id = $1
                ORDER BY audit_id DESC
                LIMIT 1
                """,
                event.subject_patient_id,
            )
            event.entry_hash = self._integrity.compute_event_hash(event, event.previous_hash)

            row = event.to_db_row()
            event.audit_id = await conn.fetchval(
                """
                INSERT INTO access_audit_log (
                    event_id, actor_id, subject_patient_id, action, success,
                    event_time, metadata, previous_hash, entry_hash
                ) VALUES (
                    $1, $2, $3, $4, $5,
                    $6, $7::jsonb, $8, $9
                ) RETURNING audit_id
                """,
                row["event_id"],
                row["actor_id"],
                row["subject_patient_id"],
                row["action"],
                row["success"],
                row["event_time"],
                json.dumps(row["metadata"]),
                row["previous_hash"],
                row["entry_hash"],
            )

        event.metadata = row["metadata"]
        logger.debug(
            "Audit %s recorded for patient %s (audit_id=%s)",
            event.action.value,
            event.subject_patient_id,
            event.audit_id,
        )
        return event

    async def query_by_patient(
        self,
        conn: asyncpg.Connection,
        patient_id: str,
        *,
        action: AuditAction | None = None,
        limit: int | None = None,
        timeout: float | None = None,
    ) -> list[AuditEvent]:
        """Return a patient's audit events in chain (insertion) order."""
        async with read_operation("audit.query_by_patient", timeout):
            rows = await conn.fetch(
                """
                SELECT * FROM access_audit_log
                WHERE subject_patient_id = $1
                  AND ($2::text IS NULL OR action = $2)
                ORDER BY audit_id
                LIMIT $3
                """,
                patient_id,
                action.value if action else None,
                limit,
            )
        return [AuditEvent.from_db_row(dict(row)) for row in rows]

    async def query_by_actor(
        self,
        conn: asyncpg.Connection,
        actor_id: str,
        *,
        limit: int | None = None,
        timeout: float | None = None,
    ) -> list[AuditEvent]:
        """Return events performed by an actor, most recent first."""
        async with read_operation("audit.query_by_actor", timeout):
            rows = await conn.fetch(
                """
                SELECT * FROM access_audit_log
                WHERE actor_id = $1
                ORDER BY audit_id DESC
                LIMIT $2
                """,
                actor_id,
                limit,
            )
        return [AuditEvent.from_db_row(dict(row)) for row in rows]
