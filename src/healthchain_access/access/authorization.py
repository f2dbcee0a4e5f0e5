"""Single entry point for record-serving code to decide access."""

import logging
from collections.abc import Callable
from functools import wraps
from typing import ParamSpec, TypeVar

import asyncpg

from ..errors import AccessDeniedError, ValidationError
from .grants import GrantStore
from .models import DENIED, AccessDecision, PermissionLevel, require_id
from .temporary import TemporaryPermissionManager

logger = logging.getLogger(__name__)

P = ParamSpec("P")
R = TypeVar("R")


class Authorization:
    def __init__(self, grants: GrantStore, temporary: TemporaryPermissionManager):
        self._grants = grants
        self._temporary = temporary

    async def check(
        self,
        conn: asyncpg.Connection,
        patient_id: str,
        accessor_id: str,
        *,
        timeout: float | None = None,
    ) -> AccessDecision:
        """Highest level ``accessor_id`` currently holds on ``patient_id``.

        Standing grants and valid temporary permissions are both considered;
        a temporary ``full`` scope counts as ``full_access`` and ``partial``
        as ``view_records``. Returns ``DENIED`` when neither store has an
        entry. Never writes.
        """
        require_id(patient_id, "patient_id")
        require_id(accessor_id, "accessor_id")

        candidates: list[AccessDecision] = [
            AccessDecision(level=level, source="grant")
            for level in await self._grants.active_levels(
                conn, patient_id, accessor_id, timeout=timeout
            )
        ]
        candidates.extend(
            AccessDecision(level=permission.level, source="temporary")
            for permission in await self._temporary.list_valid(
                conn, patient_id, accessor_id, timeout=timeout
            )
        )

        if not candidates:
            logger.debug("No access for %s on patient %s", accessor_id, patient_id)
            return DENIED

        # Ties go to the standing grant, which is listed first.
        return max(candidates, key=lambda decision: decision.level.rank)

    async def require(
        self,
        conn: asyncpg.Connection,
        patient_id: str,
        accessor_id: str,
        minimum_level: PermissionLevel | str,
        *,
        timeout: float | None = None,
    ) -> AccessDecision:
        minimum_level = PermissionLevel.parse(minimum_level)
        decision = await self.check(conn, patient_id, accessor_id, timeout=timeout)
        if not decision.satisfies(minimum_level):
            logger.warning(
                "Access denied: accessor=%s patient=%s required=%s held=%s",
                accessor_id,
                patient_id,
                minimum_level.value,
                decision.level.value if decision.level else "none",
            )
            raise AccessDeniedError(
                f"{accessor_id} lacks {minimum_level.value} access to patient {patient_id}"
            )
        return decision

    def require_level(self, level: PermissionLevel | str) -> Callable:
        """Guard an async function taking ``conn``, ``patient_id`` and ``accessor_id``.

        The arguments are looked up by keyword first, then on the bound
        object (``_conn``), then positionally for the connection.
        """
        level = PermissionLevel.parse(level)

        def decorator(func: Callable[P, R]) -> Callable[P, R]:
            @wraps(func)
            async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
                self_obj = args[0] if args else None

                conn = kwargs.get("conn")
                if conn is None and self_obj is not None:
                    conn = getattr(self_obj, "_conn", None)
                if conn is None:
                    for arg in args:
                        if isinstance(arg, asyncpg.Connection):
                            conn = arg
                            break

                patient_id = kwargs.get("patient_id")
                accessor_id = kwargs.get("accessor_id")

                if conn is None or patient_id is None or accessor_id is None:
                    raise ValidationError(
                        f"Cannot check {level.value} access: missing connection, "
                        "patient_id or accessor_id"
                    )

                await self.require(conn, patient_id, accessor_id, level)
                return await func(*args, **kwargs)

            return wrapper

        return decorator
