"""Schema management for the access-control tables."""

import logging
from importlib.resources import files

import asyncpg

logger = logging.getLogger(__name__)

SCHEMA_PACKAGE = "healthchain_access.db.schema"
SCHEMA_FILES = ("audit_tables.sql", "access_tables.sql")
REQUIRED_TABLES = (
    "access_grants",
    "temporary_access_permissions",
    "emergency_access_tokens",
    "access_audit_log",
)


class SchemaManager:
    """Creates and inspects the grant, permission, token and audit tables.

    All statements are idempotent, so ``create_schema`` can run on every
    deployment.
    """

    async def create_schema(self, conn: asyncpg.Connection) -> None:
        async with conn.transaction():
            for name in SCHEMA_FILES:
                sql = files(SCHEMA_PACKAGE).joinpath(name).read_text()
                await conn.execute(sql)
                logger.info("Applied schema file %s", name)

    async def missing_tables(self, conn: asyncpg.Connection) -> list[str]:
        rows = await conn.fetch(
            """
            SELECT table_name FROM information_schema.tables
            WHERE table_schema = current_schema() AND table_name = ANY($1::text[])
            """,
            list(REQUIRED_TABLES),
        )
        present = {row["table_name"] for row in rows}
        return [t for t in REQUIRED_TABLES if t not in present]

    async def schema_exists(self, conn: asyncpg.Connection) -> bool:
        return not await self.missing_tables(conn)

    async def verify_immutability(self, conn: asyncpg.Connection) -> bool:
        """Verify that the audit immutability trigger is in place."""
        result = await conn.fetchval(
            """
            SELECT EXISTS (
                SELECT 1 FROM pg_trigger
                WHERE tgname = 'access_audit_immutability'
                  AND tgrelid = 'access_audit_log'::regclass
            )
            """
        )
        return bool(result)
