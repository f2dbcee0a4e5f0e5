"""Request-scoped audit context, safe across concurrent asyncio tasks."""

from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from uuid import uuid4


@dataclass
class AuditContext:
    request_id: str | None = None
    client_ip: str | None = None
    user_agent: str | None = None

    def as_metadata(self) -> dict[str, str]:
        """Return the populated fields for merging into event metadata."""
        fields = {
            "request_id": self.request_id,
            "client_ip": self.client_ip,
            "user_agent": self.user_agent,
        }
        return {k: v for k, v in fields.items() if v is not None}


_audit_context: ContextVar[AuditContext | None] = ContextVar("audit_context", default=None)


def get_audit_context() -> AuditContext:
    """Get current audit context, creating default if none exists."""
    ctx = _audit_context.get()
    if ctx is None:
        ctx = AuditContext()
    return ctx


def set_audit_context(ctx: AuditContext) -> None:
    _audit_context.set(ctx)


def clear_audit_context() -> None:
    _audit_context.set(None)


@contextmanager
def audit_context(
    request_id: str | None = None,
    client_ip: str | None = None,
    user_agent: str | None = None,
):
    """Scope an audit context to a block, restoring the previous one on exit.

    A request id is generated when none is supplied.
    """
    previous = _audit_context.get()

    ctx = AuditContext(
        request_id=request_id or str(uuid4()),
        client_ip=client_ip,
        user_agent=user_agent,
    )
    _audit_context.set(ctx)

    try:
        yield ctx
    finally:
        _audit_context.set(previous)
