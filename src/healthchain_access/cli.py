"""healthchain-access: command-line administration of patient access control."""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Annotated, TypeVar

import asyncpg
import typer
from rich.console import Console

from . import __version__
from .access import (
    Authorization,
    EmergencyTokenService,
    ExpirySweeper,
    GrantStore,
    TemporaryPermissionManager,
)
from .audit import AuditAction, AuditIntegrity, AuditRecorder
from .config import AccessConfig, ConfigValidationError, load_config
from .errors import AccessControlError
from .schema import SchemaManager
from .secrets import DB_URL_ENV_VAR, CredentialValidationError, resolve_database_url

T = TypeVar("T")


def version_callback(value: bool) -> None:
    if value:
        print(__version__)
        raise typer.Exit()


app = typer.Typer(
    name="healthchain-access",
    help="Manage patient access grants, temporary permissions and emergency codes",
)
audit_app = typer.Typer(help="Inspect and verify the access audit trail")
app.add_typer(audit_app, name="audit")
console = Console()

DbOption = Annotated[
    str | None,
    typer.Option("--db", "-d", help=f"PostgreSQL URL without password (or ${DB_URL_ENV_VAR})"),
]


def setup_logging(verbose: bool, quiet: bool, default_level: str = "INFO") -> None:
    """Configure logging based on verbosity flags."""
    if quiet:
        level = logging.WARNING
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.getLevelName(default_level.upper())

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )
    logging.getLogger("healthchain_access").setLevel(level)


@app.callback()
def main_callback(
    ctx: typer.Context,
    version: Annotated[
        bool | None,
        typer.Option(
            "--version", callback=version_callback, is_eager=True, help="Show version and exit"
        ),
    ] = None,
    config_path: Annotated[
        Path | None, typer.Option("--config", "-c", help="TOML configuration file")
    ] = None,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only log warnings and errors"),
) -> None:
    try:
        config = load_config(config_path) if config_path else AccessConfig()
    except (FileNotFoundError, ConfigValidationError) as e:
        console.print(f"[red]Configuration Error: {e}[/red]")
        raise typer.Exit(1) from None

    setup_logging(verbose, quiet, config.log_level)
    ctx.obj = config


@dataclass
class Services:
    audit: AuditRecorder
    grants: GrantStore
    temporary: TemporaryPermissionManager
    emergency: EmergencyTokenService
    authorization: Authorization


def _build_services(config: AccessConfig) -> Services:
    audit = AuditRecorder()
    grants = GrantStore(audit, config=config)
    temporary = TemporaryPermissionManager(audit, config=config)
    emergency = EmergencyTokenService(audit, temporary, config=config)
    return Services(
        audit=audit,
        grants=grants,
        temporary=temporary,
        emergency=emergency,
        authorization=Authorization(grants, temporary),
    )


def _config(ctx: typer.Context) -> AccessConfig:
    return ctx.obj if isinstance(ctx.obj, AccessConfig) else AccessConfig()


def _resolve_db_url(db_url: str | None) -> str:
    try:
        resolved = resolve_database_url(db_url)
    except CredentialValidationError as e:
        console.print(f"[red]Security Error: {e}[/red]")
        raise typer.Exit(1) from None
    if resolved is None:
        console.print(f"[red]Error: No database URL. Pass --db or set {DB_URL_ENV_VAR}[/red]")
        raise typer.Exit(1)
    return resolved


def _run_with_connection(
    db_url: str, operation: Callable[[asyncpg.Connection], Awaitable[T]]
) -> T:
    """Run ``operation`` on a fresh connection, turning failures into exit code 1."""

    async def runner() -> T:
        conn = await asyncpg.connect(db_url)
        try:
            return await operation(conn)
        finally:
            await conn.close()

    try:
        return asyncio.run(runner())
    except AccessControlError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1) from None
    except (asyncpg.PostgresError, OSError) as e:
        console.print(f"[red]Error: Database connection failed: {e}[/red]")
        raise typer.Exit(1) from None


@app.command("init-db")
def init_db(db_url: DbOption = None) -> None:
    """Create the access-control and audit tables, with their guard triggers."""
    resolved = _resolve_db_url(db_url)

    async def run_init(conn: asyncpg.Connection) -> bool:
        manager = SchemaManager()
        await manager.create_schema(conn)
        return await manager.verify_immutability(conn)

    immutable = _run_with_connection(resolved, run_init)
    console.print("[green]✓[/green] Access-control schema initialized")
    if immutable:
        console.print("[green]✓[/green] Audit log immutability triggers active")
    else:
        console.print("[yellow]⚠ Audit log immutability triggers missing[/yellow]")
        raise typer.Exit(1)


@app.command()
def grant(
    ctx: typer.Context,
    patient_id: Annotated[str, typer.Argument(help="Patient granting access")],
    grantee_id: Annotated[str, typer.Argument(help="Hospital or individual receiving access")],
    level: Annotated[
        str, typer.Option("--level", "-l", help="view_summary, view_records, ...")
    ] = "view_records",
    entity_type: Annotated[
        str, typer.Option("--entity-type", "-t", help="hospital or individual")
    ] = "hospital",
    db_url: DbOption = None,
) -> None:
    """Grant standing access to a patient's records."""
    services = _build_services(_config(ctx))
    resolved = _resolve_db_url(db_url)

    result = _run_with_connection(
        resolved,
        lambda conn: services.grants.grant(conn, patient_id, grantee_id, entity_type, level),
    )
    console.print(f"[green]✓[/green] Granted {result.level.value} to {grantee_id}")
    console.print(f"  Grant ID: {result.grant_id}")


@app.command("revoke-grant")
def revoke_grant(
    ctx: typer.Context,
    grant_id: Annotated[str, typer.Argument(help="Grant to revoke")],
    actor_id: Annotated[str, typer.Option("--actor", "-a", help="Who is revoking")],
    reason: Annotated[str | None, typer.Option("--reason", "-r", help="Revocation reason")] = None,
    db_url: DbOption = None,
) -> None:
    """Revoke a standing grant. Revoking twice is not an error."""
    services = _build_services(_config(ctx))
    resolved = _resolve_db_url(db_url)

    revoked = _run_with_connection(
        resolved,
        lambda conn: services.grants.revoke(conn, grant_id, actor_id, reason=reason),
    )
    if revoked:
        console.print(f"[green]✓[/green] Grant {grant_id} revoked")
    else:
        console.print(f"[dim]Grant {grant_id} was already revoked[/dim]")


@app.command()
def grants(
    ctx: typer.Context,
    patient_id: Annotated[str, typer.Argument(help="Patient whose grants to list")],
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
    db_url: DbOption = None,
) -> None:
    """List a patient's active grants and temporary permissions."""
    services = _build_services(_config(ctx))
    resolved = _resolve_db_url(db_url)

    async def run_list(conn: asyncpg.Connection):
        standing = await services.grants.list_active(conn, patient_id)
        temporary = await services.temporary.list_active_for_patient(conn, patient_id)
        return standing, temporary

    standing, temporary = _run_with_connection(resolved, run_list)

    if json_output:
        payload = {
            "grants": [
                {
                    "grant_id": str(g.grant_id),
                    "grantee_id": g.grantee_id,
                    "entity_type": g.entity_type.value,
                    "level": g.level.value,
                    "created_at": g.created_at.isoformat(),
                }
                for g in standing
            ],
            "temporary": [
                {
                    "permission_id": str(p.permission_id),
                    "accessor_id": p.accessor_id,
                    "scope": p.scope.value,
                    "source": p.source.value,
                    "expires_at": p.expires_at.isoformat(),
                }
                for p in temporary
            ],
        }
        console.print(json.dumps(payload, indent=2))
        return

    if not standing and not temporary:
        console.print("[dim]No active access for this patient[/dim]")
        return

    for g in standing:
        console.print(f"[cyan]{g.grantee_id}[/cyan] ({g.entity_type.value})")
        console.print(f"  Level: {g.level.value}")
        console.print(f"  Grant ID: {g.grant_id}")
        console.print(f"  Since: {g.created_at:%Y-%m-%d %H:%M:%S}")
    for p in temporary:
        console.print(f"[yellow]{p.accessor_id}[/yellow] (temporary, {p.source.value})")
        console.print(f"  Scope: {p.scope.value}")
        console.print(f"  Expires: {p.expires_at:%Y-%m-%d %H:%M:%S}")


@app.command()
def check(
    ctx: typer.Context,
    patient_id: Annotated[str, typer.Argument(help="Patient whose records are requested")],
    accessor_id: Annotated[str, typer.Argument(help="Hospital or individual requesting")],
    db_url: DbOption = None,
) -> None:
    """Show the access level an accessor currently holds. Exits 2 when denied."""
    services = _build_services(_config(ctx))
    resolved = _resolve_db_url(db_url)

    decision = _run_with_connection(
        resolved,
        lambda conn: services.authorization.check(conn, patient_id, accessor_id),
    )
    if decision.is_denied:
        console.print(f"[red]✗ Denied[/red]: {accessor_id} has no access to {patient_id}")
        raise typer.Exit(2)
    console.print(f"[green]✓[/green] {decision.level.value} (via {decision.source})")


@app.command("issue-token")
def issue_token(
    ctx: typer.Context,
    patient_id: Annotated[str, typer.Argument(help="Patient the code unlocks")],
    ttl_minutes: Annotated[
        int | None, typer.Option("--ttl-minutes", "-t", help="Minutes until the code lapses")
    ] = None,
    session_minutes: Annotated[
        int | None,
        typer.Option("--session-minutes", help="Length of the session opened by redeeming"),
    ] = None,
    issued_by: Annotated[
        str | None, typer.Option("--issued-by", help="Requester (defaults to system)")
    ] = None,
    db_url: DbOption = None,
) -> None:
    """Issue a single-use emergency access code. The code is shown only once."""
    services = _build_services(_config(ctx))
    resolved = _resolve_db_url(db_url)
    ttl = timedelta(minutes=ttl_minutes) if ttl_minutes is not None else None
    session = timedelta(minutes=session_minutes) if session_minutes is not None else None

    token = _run_with_connection(
        resolved,
        lambda conn: services.emergency.issue(
            conn, patient_id, ttl, session_duration=session, issued_by=issued_by
        ),
    )
    console.print("[bold yellow]Emergency access code issued[/bold yellow]")
    console.print(f"  Code: [bold]{token.token}[/bold]")
    console.print(f"  Token ID: {token.token_id}")
    console.print(f"  Expires: {token.expires_at:%Y-%m-%d %H:%M:%S %Z}")
    console.print("[dim]Store this code now; it cannot be shown again.[/dim]")


@app.command("redeem-token")
def redeem_token(
    ctx: typer.Context,
    code: Annotated[str, typer.Argument(help="Emergency code or link")],
    actor_id: Annotated[str, typer.Option("--actor", "-a", help="Responder redeeming the code")],
    justification: Annotated[
        str, typer.Option("--justification", "-j", help="Why emergency access is needed")
    ],
    level: Annotated[
        str, typer.Option("--level", "-l", help="Emergency level: critical or urgent")
    ] = "critical",
    db_url: DbOption = None,
) -> None:
    """Redeem an emergency code and open a time-limited emergency session."""
    services = _build_services(_config(ctx))
    resolved = _resolve_db_url(db_url)

    handle = _run_with_connection(
        resolved,
        lambda conn: services.emergency.redeem(
            conn, code, actor_id, justification=justification, emergency_level=level
        ),
    )
    console.print("[bold red]EMERGENCY ACCESS GRANTED[/bold red]")
    console.print(f"  Patient: {handle.patient_id}")
    console.print(f"  Responder: {handle.actor_id}")
    console.print(f"  Session expires: {handle.expires_at:%Y-%m-%d %H:%M:%S %Z}")


@app.command()
def sweep(ctx: typer.Context, db_url: DbOption = None) -> None:
    """Mark lapsed temporary permissions and emergency codes as expired."""
    config = _config(ctx)
    services = _build_services(config)
    resolved = _resolve_db_url(db_url)

    async def run_sweep():
        pool = await asyncpg.create_pool(resolved, min_size=1, max_size=2)
        try:
            sweeper = ExpirySweeper(pool, services.temporary, services.emergency, config)
            return await sweeper.run_once()
        finally:
            await pool.close()

    try:
        result = asyncio.run(run_sweep())
    except AccessControlError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1) from None
    except (asyncpg.PostgresError, OSError) as e:
        console.print(f"[red]Error: Database connection failed: {e}[/red]")
        raise typer.Exit(1) from None

    console.print(
        f"[green]✓[/green] Expired {result.permissions_expired} temporary permissions "
        f"and {result.tokens_expired} emergency codes"
    )


@audit_app.command("show")
def audit_show(
    ctx: typer.Context,
    patient_id: Annotated[str, typer.Argument(help="Patient whose trail to show")],
    action: Annotated[
        str | None, typer.Option("--action", help="Only show this action, e.g. emergency_redeem")
    ] = None,
    limit: Annotated[int | None, typer.Option("--limit", "-n", help="Maximum events")] = None,
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
    db_url: DbOption = None,
) -> None:
    """Show a patient's audit events in order."""
    try:
        action_filter = AuditAction(action) if action else None
    except ValueError:
        valid = ", ".join(a.value for a in AuditAction)
        console.print(f"[red]Error: Unknown action '{action}'. Expected one of: {valid}[/red]")
        raise typer.Exit(1) from None

    services = _build_services(_config(ctx))
    resolved = _resolve_db_url(db_url)

    events = _run_with_connection(
        resolved,
        lambda conn: services.audit.query_by_patient(
            conn, patient_id, action=action_filter, limit=limit
        ),
    )

    if json_output:
        rows = [event.to_db_row() for event in events]
        console.print(json.dumps(rows, indent=2, default=str))
        return

    if not events:
        console.print("[dim]No audit events for this patient[/dim]")
        return

    for event in events:
        marker = "[green]✓[/green]" if event.success else "[red]✗[/red]"
        console.print(
            f"{marker} {event.timestamp:%Y-%m-%d %H:%M:%S} "
            f"[cyan]{event.action.value}[/cyan] by {event.actor_id or 'system'}"
        )
        for key, value in sorted(event.metadata.items()):
            console.print(f"    {key}: {value}")


@audit_app.command("verify")
def audit_verify(
    patient_id: Annotated[str, typer.Argument(help="Patient whose hash chain to verify")],
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
    db_url: DbOption = None,
) -> None:
    """Verify a patient's audit hash chain. Exits 1 if tampering is detected."""
    resolved = _resolve_db_url(db_url)

    report = _run_with_connection(
        resolved, lambda conn: AuditIntegrity().verify_patient_chain(conn, patient_id)
    )

    if json_output:
        console.print(json.dumps(report.to_dict(), indent=2))
    else:
        console.print("\n[bold]Audit Integrity Report[/bold]")
        console.print(f"  Patient: {report.patient_id}")
        console.print(f"  Total Entries: {report.total_entries:,}")
        console.print(f"  Verified: {report.verified_entries:,}")
        console.print()

    if report.is_valid:
        if not json_output:
            console.print("[green]✓ Audit chain integrity verified[/green]")
        return

    if not json_output:
        console.print(f"[red]✗ {len(report.violations)} integrity violations detected[/red]")
        for v in report.violations[:10]:
            console.print(f"  - Audit ID {v.audit_id}: {v.status.value} - {v.message}")
        if len(report.violations) > 10:
            console.print(f"  ... and {len(report.violations) - 10} more")
    raise typer.Exit(1)


if __name__ == "__main__":
    app()
