"""
Backup and Disaster Recovery Command Line Interface

Every command prints one JSON summary line on stdout (logs go to stderr) and
exits non-zero on any unresolved failure.
"""
from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import click
from pydantic import ValidationError
from tabulate import tabulate

from drvault.backup.orchestrator import BackupOrchestrator
from drvault.backup.scheduler import BackupScheduler, lock_holders
from drvault.config import BackupSettings, get_settings
from drvault.exceptions import BackupError
from drvault.logging import get_logger
from drvault.models import CycleResult, JobType

logger = get_logger(__name__)

BACKUP_KINDS = {
    "full": JobType.FULL_BACKUP,
    "incremental": JobType.INCREMENTAL_SWEEP,
    "files": JobType.FILE_SNAPSHOT,
}


def emit(data: dict[str, Any]) -> None:
    click.echo(json.dumps(data, default=str, sort_keys=True))


class BackupCLI:
    """Command line interface for backup operations."""

    def __init__(self, backup_root: Path | None = None):
        overrides = {"backup_root": backup_root} if backup_root else {}
        try:
            self.settings: BackupSettings = get_settings(**overrides)
        except ValidationError as e:
            raise click.ClickException(f"Invalid configuration: {e}") from e
        self._orchestrator: BackupOrchestrator | None = None

    @property
    def orchestrator(self) -> BackupOrchestrator:
        if self._orchestrator is None:
            try:
                self._orchestrator = BackupOrchestrator(self.settings)
            except BackupError as e:
                raise click.ClickException(e.message) from e
        return self._orchestrator

    async def run_job(self, job_type: JobType, sample_size: int | None = None) -> CycleResult:
        scheduler = BackupScheduler(self.orchestrator)
        return await scheduler.run(job_type, sample_size)

    def finish(self, result: CycleResult) -> None:
        emit(result.to_dict())
        if result.skipped:
            logger.info(f"{result.job_type.value} already running; nothing to do")
        raise SystemExit(result.exit_code)

    def status_table(self, status: dict[str, Any]) -> str:
        rows = [
            [
                artifact["artifact_id"],
                artifact["kind"],
                artifact["status"],
                artifact["created_at"][:19].replace("T", " "),
                f"{artifact['size_bytes'] / 1024 / 1024:.1f} MB",
                ", ".join(sorted(artifact.get("remote_locations", {}))) or "-",
            ]
            for artifact in status["artifacts"]
        ]
        table = tabulate(
            rows,
            headers=["Artifact", "Kind", "Status", "Created", "Size", "Regions"],
            tablefmt="grid",
        )
        cycles = tabulate(
            [
                [job, cycle["state"], cycle["severity"], cycle["finished_at"] or "-"]
                for job, cycle in sorted(status["last_cycles"].items())
            ],
            headers=["Job", "State", "Severity", "Finished"],
            tablefmt="grid",
        )
        return f"{table}\n\nLast cycles:\n{cycles}"

    def status(self) -> dict[str, Any]:
        orchestrator = self.orchestrator
        status = orchestrator.status()
        status["artifacts"] = [artifact.to_dict() for artifact in orchestrator.catalog.list_artifacts()]
        status["lock_holders"] = lock_holders(self.settings.lock_path)
        return status


# CLI Commands
@click.group()
@click.option("--backup-root", type=click.Path(file_okay=False, path_type=Path),
              help="Root directory for the catalog, staging and locks")
@click.pass_context
def cli(ctx, backup_root):
    """Backup and Disaster Recovery CLI Tool"""
    ctx.ensure_object(dict)
    ctx.obj['backup_root'] = backup_root


@cli.command()
@click.argument("kind", type=click.Choice(sorted(BACKUP_KINDS)))
@click.pass_context
def backup(ctx, kind):
    """Produce, verify and replicate a backup artifact"""
    backup_cli = BackupCLI(ctx.obj['backup_root'])
    backup_cli.finish(asyncio.run(backup_cli.run_job(BACKUP_KINDS[kind])))


@cli.command()
@click.argument("sample_size", type=click.IntRange(min=1), required=False)
@click.pass_context
def validate(ctx, sample_size):
    """Restore-test a sample of recent artifacts and probe PITR readiness"""
    backup_cli = BackupCLI(ctx.obj['backup_root'])
    backup_cli.finish(asyncio.run(backup_cli.run_job(JobType.VALIDATION, sample_size)))


@cli.command()
@click.pass_context
def replicate(ctx):
    """Replicate verified artifacts and reconcile regions"""
    backup_cli = BackupCLI(ctx.obj['backup_root'])
    backup_cli.finish(asyncio.run(backup_cli.run_job(JobType.REGION_SYNC)))


@cli.command()
@click.pass_context
def retain(ctx):
    """Expire artifacts past their retention period"""
    backup_cli = BackupCLI(ctx.obj['backup_root'])
    backup_cli.finish(asyncio.run(backup_cli.run_job(JobType.RETENTION)))


@cli.command()
@click.option("--format", "output_format", type=click.Choice(["json", "table"]), default="json")
@click.pass_context
def status(ctx, output_format):
    """Show catalog contents and the last cycle of each job"""
    backup_cli = BackupCLI(ctx.obj['backup_root'])
    data = backup_cli.status()
    if output_format == "table":
        click.echo(backup_cli.status_table(data))
    else:
        emit(data)


@cli.command()
@click.pass_context
def daemon(ctx):
    """Run every job on its schedule until SIGTERM or SIGINT"""
    backup_cli = BackupCLI(ctx.obj['backup_root'])
    scheduler = BackupScheduler(backup_cli.orchestrator)
    asyncio.run(scheduler.run_forever())
    emit(scheduler.get_schedule_status())


@cli.command("rebuild-catalog")
@click.option("--overwrite/--keep-existing", default=False, help="Replace existing catalog entries")
@click.pass_context
def rebuild_catalog(ctx, overwrite):
    """Re-derive the catalog from the primary store"""
    backup_cli = BackupCLI(ctx.obj['backup_root'])
    stats = asyncio.run(backup_cli.orchestrator.rebuild_catalog(overwrite))
    emit(stats)
    raise SystemExit(1 if stats["unrecognized"] else 0)


@cli.command("ack-drift")
@click.argument("cycle_id")
@click.option("--operator", required=True, help="Who acknowledges the drift")
@click.option("--note", default="", help="Free-form remark")
@click.pass_context
def ack_drift(ctx, cycle_id, operator, note):
    """Acknowledge a drifted reconciliation report"""
    backup_cli = BackupCLI(ctx.obj['backup_root'])
    try:
        acknowledgement = backup_cli.orchestrator.acknowledge_drift(cycle_id, operator, note)
    except BackupError as e:
        raise click.ClickException(e.message) from e
    emit(acknowledgement)


if __name__ == "__main__":
    cli()
