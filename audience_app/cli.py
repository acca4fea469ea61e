"""
Operator commands for the audience pipeline (``flask pipeline ...``).

Long-running commands queue a Celery task by default; pass ``--inline`` to run
them inside the CLI process and print a summary.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import ScriptInfo
from sqlalchemy import func, or_, select

from audience_app.celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from audience_app.errors import PipelineError
from audience_app.models import IdentityRecord, Tenant, db
from audience_app.pipeline import (
    DailyRunSummary,
    IngestionResult,
    MatchMode,
    ingest_contact_file,
    run_daily_pipeline,
    run_retention_tick,
    suppress_purchasers,
    sync_tenant_audience,
    update_identity,
)
from audience_app.services import (
    build_sync_service,
    get_source_fetcher,
    get_vault,
    require_platform_client,
    require_vault,
)

MODE_CHOICES = click.Choice([mode.value for mode in MatchMode])


@click.group(name="pipeline", invoke_without_command=True)
@click.pass_context
def pipeline_cli(ctx):
    """
    Audience reconciliation and sync commands.

    Lists tenants with their audience size when invoked without a subcommand.
    """
    info = ctx.ensure_object(ScriptInfo)
    info.load_app()
    if ctx.invoked_subcommand is None:
        rows = db.session.execute(
            select(Tenant, func.count(IdentityRecord.id))
            .outerjoin(IdentityRecord, IdentityRecord.tenant_id == Tenant.id)
            .group_by(Tenant.id)
            .order_by(Tenant.id)
        ).all()
        if not rows:
            click.echo("No tenants configured.")
            return
        click.echo("Tenants:")
        for tenant, member_count in rows:
            state = "active" if tenant.is_active else "inactive"
            audience = tenant.audience_id or "no audience"
            click.echo(f"  - {tenant.slug} ({state}, {audience}): {member_count} members")


def _resolve_celery(app) -> Celery:
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException("Pipeline Celery app is unavailable; the app was not initialised.")
    return celery_app


def _resolve_tenant(identifier: str) -> Tenant:
    """Look a tenant up by slug, falling back to numeric id."""
    clauses = [Tenant.slug == identifier]
    if identifier.isdigit():
        clauses.append(Tenant.id == int(identifier))
    tenant = db.session.scalars(select(Tenant).where(or_(*clauses)).order_by(Tenant.id)).first()
    if tenant is None:
        raise click.ClickException(f"Tenant '{identifier}' not found.")
    return tenant


def _queue(app, task_name: str, **kwargs) -> dict[str, object]:
    celery_app = _resolve_celery(app)
    try:
        async_result = celery_app.send_task(task_name, kwargs=kwargs)
    except Exception as exc:
        raise click.ClickException(f"Failed to enqueue {task_name}: {exc}") from exc
    app.logger.info(
        "Pipeline task queued via CLI",
        extra={"event": "cli_task_queued", "task_name": task_name, "task_id": async_result.id},
    )
    return {"task": task_name, "task_id": async_result.id, "status": "queued", **kwargs}


def _format_ingestion(tenant: Tenant, result: IngestionResult) -> str:
    summary = result.summary
    errors_display = str(len(summary.errors)) if summary.errors else "none"
    return (
        f"Ingested {result.file_name} for {tenant.name} (log {result.log_id}, mode={summary.mode.value}).\n"
        f"  rows_total     : {result.total}\n"
        f"  created        : {summary.created}\n"
        f"  updated        : {summary.updated}\n"
        f"  skipped        : {summary.skipped}\n"
        f"  no_identifier  : {summary.no_identifier}\n"
        f"  strategy       : {summary.strategy}\n"
        f"  row_errors     : {errors_display}"
    )


def _format_daily(summary: DailyRunSummary) -> str:
    lines = [
        f"Daily run {summary.run_date.isoformat()} processed {summary.tenants_processed} tenant(s).",
        f"  decremented    : {summary.decremented}",
        f"  expired        : {summary.expired}",
        f"  total_added    : {summary.total_added}",
        f"  total_synced   : {summary.total_synced}",
    ]
    for outcome in summary.outcomes:
        lines.append(
            f"  [{outcome.status}] {outcome.tenant_name}: added={outcome.records_added} synced={outcome.records_synced}"
        )
    for error in summary.errors:
        lines.append(f"  error: {error}")
    return "\n".join(lines)


@pipeline_cli.command("run-daily")
@click.option(
    "--inline/--no-inline",
    default=False,
    help="Run inline within the CLI process instead of queueing via Celery.",
)
@click.option("--mode", type=MODE_CHOICES, default=MatchMode.APPEND.value, show_default=True)
@click.option("--summary-json", is_flag=True, help="Emit a machine-readable summary (inline runs only).")
@click.pass_context
def pipeline_run_daily(ctx, inline: bool, mode: str, summary_json: bool):
    """Age members, expire the stale ones, then ingest and sync every active tenant."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if summary_json and not inline:
        raise click.ClickException("--summary-json is only available for --inline runs.")

    if not inline:
        click.echo(json.dumps(_queue(app, "pipeline.run_daily", mode=mode)))
        return

    try:
        summary = run_daily_pipeline(
            get_source_fetcher(app),
            sync_service=build_sync_service(app),
            vault=get_vault(app),
            mode=mode,
        )
    except PipelineError as exc:
        raise click.ClickException(f"Daily run failed: {exc}") from exc
    click.echo(_format_daily(summary))
    if summary_json:
        click.echo(json.dumps(summary.as_dict(), indent=2, sort_keys=True))


@pipeline_cli.command("ingest")
@click.option("--tenant", "tenant_identifier", required=True, help="Tenant slug or id.")
@click.option(
    "--file",
    "file_path",
    required=True,
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    help="Path to the contact CSV.",
)
@click.option("--mode", type=MODE_CHOICES, default=MatchMode.APPEND.value, show_default=True)
@click.option(
    "--inline/--no-inline",
    default=False,
    help="Run inline within the CLI process instead of queueing via Celery.",
)
@click.option("--summary-json", is_flag=True, help="Emit a machine-readable summary (inline runs only).")
@click.pass_context
def pipeline_ingest(ctx, tenant_identifier: str, file_path: Path, mode: str, inline: bool, summary_json: bool):
    """Reconcile a contact CSV into a tenant's audience."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if summary_json and not inline:
        raise click.ClickException("--summary-json is only available for --inline runs.")
    tenant = _resolve_tenant(tenant_identifier)
    csv_path = file_path.resolve()

    if not inline:
        payload = _queue(app, "pipeline.ingest_file", tenant_id=tenant.id, file_path=str(csv_path), mode=mode)
        click.echo(json.dumps(payload))
        return

    content = csv_path.read_text(encoding="utf-8-sig")
    try:
        result = ingest_contact_file(tenant.id, csv_path.name, content, mode=mode)
    except PipelineError as exc:
        raise click.ClickException(f"Ingestion failed: {exc}") from exc
    click.echo(_format_ingestion(tenant, result))
    if summary_json:
        click.echo(json.dumps(result.as_dict(), indent=2, sort_keys=True))


@pipeline_cli.command("sync")
@click.option("--tenant", "tenant_identifier", required=True, help="Tenant slug or id.")
@click.option(
    "--inline/--no-inline",
    default=False,
    help="Run inline within the CLI process instead of queueing via Celery.",
)
@click.pass_context
def pipeline_sync(ctx, tenant_identifier: str, inline: bool):
    """Push a tenant's eligible members to its remote audience."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    tenant = _resolve_tenant(tenant_identifier)
    if not tenant.has_audience:
        raise click.ClickException(f"Tenant '{tenant.slug}' has no remote audience. Run create-audience first.")

    if not inline:
        click.echo(json.dumps(_queue(app, "pipeline.sync_tenant", tenant_id=tenant.id)))
        return

    service = build_sync_service(app)
    if service is None:
        raise click.ClickException("META_ACCESS_TOKEN and META_AD_ACCOUNT_ID must be configured to sync.")
    try:
        result = sync_tenant_audience(tenant.id, service)
    except PipelineError as exc:
        raise click.ClickException(f"Sync failed: {exc}") from exc
    click.echo(json.dumps(result.as_dict(), indent=2, sort_keys=True))


@pipeline_cli.command("retention")
@click.pass_context
def pipeline_retention(ctx):
    """Run one retention tick (decrement, then expire) without ingesting or syncing."""
    info = ctx.ensure_object(ScriptInfo)
    info.load_app()
    try:
        summary = run_retention_tick()
    except PipelineError as exc:
        raise click.ClickException(f"Retention tick failed: {exc}") from exc
    click.echo(f"Decremented {summary.decremented} member(s); expired {summary.expired}.")


@pipeline_cli.command("update-member")
@click.option("--id", "member_id", required=True, type=int, help="Audience member id.")
@click.option("--email", default=None, help="New email; pass an empty string to clear it.")
@click.option("--phone", default=None, help="New phone; pass an empty string to clear it.")
@click.option("--first-name", default=None)
@click.option("--last-name", default=None)
@click.pass_context
def pipeline_update_member(ctx, member_id: int, **options):
    """Edit one audience member, re-enrolling it when it gains its first identifier."""
    info = ctx.ensure_object(ScriptInfo)
    info.load_app()
    fields = {name: value for name, value in options.items() if value is not None}
    if not fields:
        raise click.UsageError("Pass at least one of --email, --phone, --first-name or --last-name.")
    try:
        edit = update_identity(member_id, **fields)
    except PipelineError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(edit.as_dict(), indent=2, sort_keys=True))


@pipeline_cli.command("suppress")
@click.option("--tenant", "tenant_identifier", required=True, help="Tenant slug or id.")
@click.option(
    "--file",
    "file_path",
    required=True,
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    help="Path to the purchase CSV.",
)
@click.option("--skip-remote", is_flag=True, help="Only remove members locally.")
@click.pass_context
def pipeline_suppress(ctx, tenant_identifier: str, file_path: Path, skip_remote: bool):
    """Remove purchasers listed in a CSV from a tenant's audience."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    tenant = _resolve_tenant(tenant_identifier)
    service = None if skip_remote else build_sync_service(app)
    content = file_path.read_text(encoding="utf-8-sig")
    try:
        summary = suppress_purchasers(tenant.id, content, file_name=file_path.name, service=service)
    except PipelineError as exc:
        raise click.ClickException(f"Suppression failed: {exc}") from exc
    click.echo(json.dumps(summary.as_dict(), indent=2, sort_keys=True))


@pipeline_cli.command("create-audience")
@click.option("--tenant", "tenant_identifier", required=True, help="Tenant slug or id.")
@click.option("--name", "audience_name", help="Audience name (defaults to the tenant name).")
@click.option("--description", default="", help="Audience description.")
@click.option("--force", is_flag=True, help="Replace an existing audience id on the tenant.")
@click.pass_context
def pipeline_create_audience(ctx, tenant_identifier: str, audience_name: Optional[str], description: str, force: bool):
    """Create a customer-list audience and attach it to a tenant."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    tenant = _resolve_tenant(tenant_identifier)
    if tenant.has_audience and not force:
        raise click.ClickException(
            f"Tenant '{tenant.slug}' already has audience {tenant.audience_id}. Use --force to replace it."
        )
    try:
        client = require_platform_client(app)
        audience_id = client.create_audience(
            audience_name or f"{tenant.name} Audience",
            description or f"Customer list audience for {tenant.name}",
        )
    except PipelineError as exc:
        raise click.ClickException(str(exc)) from exc
    tenant.audience_id = audience_id
    db.session.commit()
    click.echo(json.dumps({"tenant": tenant.slug, "audience_id": audience_id}))


@pipeline_cli.command("audience-stats")
@click.option("--tenant", "tenant_identifier", required=True, help="Tenant slug or id.")
@click.pass_context
def pipeline_audience_stats(ctx, tenant_identifier: str):
    """Print the remote audience size and status for a tenant."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    tenant = _resolve_tenant(tenant_identifier)
    if not tenant.has_audience:
        raise click.ClickException(f"Tenant '{tenant.slug}' has no remote audience.")
    try:
        stats = require_platform_client(app).get_audience_stats(tenant.audience_id)
    except PipelineError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps({"tenant": tenant.slug, "audience_id": tenant.audience_id, **stats.as_dict()}))


@pipeline_cli.command("encrypt-secret")
@click.option("--value", prompt=True, hide_input=True, help="Plaintext to encrypt.")
@click.pass_context
def pipeline_encrypt_secret(ctx, value: str):
    """Encrypt a remote-server password for storage on a tenant."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    try:
        token = require_vault(app).encrypt(value)
    except PipelineError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(token)


@pipeline_cli.command("add-tenant")
@click.option("--name", required=True)
@click.option("--slug", required=True)
@click.option("--audience-id", default=None)
@click.option("--source-directory", default=None, help="Directory under SOURCE_ROOT_DIR (defaults to the slug).")
@click.option("--file-pattern", default="*.csv", show_default=True)
@click.option("--remote-host", default=None)
@click.option("--remote-username", default=None)
@click.option("--remote-password", default=None, help="Stored encrypted with CREDENTIAL_ENCRYPTION_KEY.")
@click.pass_context
def pipeline_add_tenant(
    ctx,
    name: str,
    slug: str,
    audience_id: Optional[str],
    source_directory: Optional[str],
    file_pattern: str,
    remote_host: Optional[str],
    remote_username: Optional[str],
    remote_password: Optional[str],
):
    """Register a tenant."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if Tenant.find_by_slug(slug) is not None:
        raise click.ClickException(f"Tenant '{slug}' already exists.")
    encrypted = None
    if remote_password:
        try:
            encrypted = require_vault(app).encrypt(remote_password)
        except PipelineError as exc:
            raise click.ClickException(str(exc)) from exc
    tenant = Tenant(
        name=name,
        slug=slug,
        audience_id=audience_id,
        source_directory=source_directory,
        file_pattern=file_pattern,
        remote_host=remote_host,
        remote_username=remote_username,
        remote_password_encrypted=encrypted,
    )
    db.session.add(tenant)
    db.session.commit()
    click.echo(json.dumps(tenant.to_dict(), sort_keys=True))


@pipeline_cli.group(name="worker")
def worker_group():
    """Manage the pipeline background worker."""


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option("--pool", type=str, help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').")
@click.option("--queues", default=DEFAULT_QUEUE_NAME, show_default=True, help="Comma-separated queue list.")
@click.option("--beat", is_flag=True, help="Embed the beat scheduler for the daily run.")
@click.pass_context
def worker_run(ctx, loglevel: str, concurrency: Optional[int], pool: Optional[str], queues: str, beat: bool):
    """Start the Celery worker in the current process."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)

    argv = ["worker", "--loglevel", loglevel, "-Q", queues]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])
    if beat:
        argv.append("--beat")

    click.echo(f"Starting pipeline worker (queues: {queues}, loglevel: {loglevel})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """Validate worker connectivity by executing the heartbeat task."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)
    task = celery_app.tasks.get("pipeline.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'pipeline.healthcheck' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc
    except Exception as exc:  # pragma: no cover - surfacing unexpected errors
        raise click.ClickException(f"Worker ping failed: {exc}") from exc

    click.echo(json.dumps(payload, indent=2))
