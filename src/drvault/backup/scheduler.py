"""
Cycle Scheduling

Triggers each job type on its cadence (cron expressions for full backups and
validation, intervals for incremental sweeps and region sync) and makes sure
at most one cycle per job type runs at a time, across processes.
"""
from __future__ import annotations

import asyncio
import fcntl
import os
import signal
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any

from croniter import croniter

from drvault.backup.orchestrator import BackupOrchestrator
from drvault.exceptions import ConfigurationError, LockUnavailable
from drvault.logging import get_logger
from drvault.models import CycleResult, CycleState, JobType

logger = get_logger(__name__)


class ScheduleType(str, Enum):
    """Types of job schedules."""
    CRON = "cron"
    INTERVAL = "interval"


@dataclass
class JobSchedule:
    """Cadence of one job type."""
    job_type: JobType
    schedule_type: ScheduleType
    expression: str  # Cron expression or interval in minutes
    enabled: bool = True
    next_run: datetime | None = None
    last_run: datetime | None = None
    last_exit_code: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            'job_type': self.job_type.value,
            'schedule_type': self.schedule_type.value,
            'expression': self.expression,
            'enabled': self.enabled,
            'next_run': self.next_run.isoformat() if self.next_run else None,
            'last_run': self.last_run.isoformat() if self.last_run else None,
            'last_exit_code': self.last_exit_code,
        }


def calculate_next_run(schedule_type: ScheduleType, expression: str, after: datetime) -> datetime:
    """
    Next trigger time strictly after ``after``.

    Raises:
        ConfigurationError: if the cron expression or interval is invalid
    """
    if schedule_type == ScheduleType.CRON:
        if not croniter.is_valid(expression):
            raise ConfigurationError(f"Invalid cron expression '{expression}'")
        return croniter(expression, after).get_next(datetime)

    try:
        minutes = float(expression)
    except ValueError as e:
        raise ConfigurationError(f"Invalid interval '{expression}'") from e
    if minutes <= 0:
        raise ConfigurationError(f"Interval must be positive, got '{expression}'")
    return after + timedelta(minutes=minutes)


class JobLock:
    """
    Per-job-type advisory lock at ``<lock_dir>/<job>.lock``.

    The lock belongs to the open file descriptor, so it is released by the
    kernel if the holding process dies.
    """

    def __init__(self, lock_dir: Path, job_type: JobType):
        self.path = lock_dir / f"{job_type.value}.lock"
        self.job_type = job_type
        self._fd: int | None = None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            os.close(fd)
            raise LockUnavailable(
                f"A {self.job_type.value} cycle is already running",
                details={"lock": str(self.path)},
            ) from e
        os.ftruncate(fd, 0)
        os.write(fd, str(os.getpid()).encode())
        self._fd = fd

    def release(self) -> None:
        if self._fd is None:
            return
        fcntl.flock(self._fd, fcntl.LOCK_UN)
        os.close(self._fd)
        self._fd = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def __enter__(self) -> JobLock:
        self.acquire()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.release()


def lock_holders(lock_dir: Path) -> dict[str, int | None]:
    """
    Job types whose lock is currently held, with the pid recorded by the holder.

    Takes a shared lock only for the instant of the check and never writes the
    lock file, so a concurrent trigger is not mistaken for an overlap.
    """
    holders: dict[str, int | None] = {}
    if not lock_dir.is_dir():
        return holders
    for path in sorted(lock_dir.glob("*.lock")):
        try:
            job_type = JobType(path.stem)
        except ValueError:
            continue
        fd = os.open(path, os.O_RDONLY)
        try:
            fcntl.flock(fd, fcntl.LOCK_SH | fcntl.LOCK_NB)
        except BlockingIOError:
            pid = os.read(fd, 32).decode(errors="replace").strip()
            holders[job_type.value] = int(pid) if pid.isdigit() else None
        else:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
    return holders


class BackupScheduler:
    """
    Drives the orchestrator on schedule.

    Each enabled job type has its own trigger loop, so a long cycle of one
    type never delays another. Each job type is serialized by its lock, so a
    trigger that finds its job type already running becomes a logged no-op.
    """

    def __init__(self, orchestrator: BackupOrchestrator):
        self.orchestrator = orchestrator
        self.settings = orchestrator.settings
        self.clock = orchestrator.clock
        self.schedules: dict[JobType, JobSchedule] = {}

        self._job_tasks: dict[JobType, asyncio.Task] = {}

        self.create_standard_schedules()
        logger.info("Backup scheduler initialized")

    def create_standard_schedules(self) -> list[JobSchedule]:
        """Schedules for every job type the settings give a cadence to."""
        settings = self.settings
        schedules = [
            JobSchedule(JobType.FULL_BACKUP, ScheduleType.CRON, settings.full_backup_schedule),
            JobSchedule(JobType.VALIDATION, ScheduleType.CRON, settings.validation_schedule),
            JobSchedule(
                JobType.INCREMENTAL_SWEEP, ScheduleType.INTERVAL,
                str(settings.incremental_interval_minutes),
                enabled=settings.wal_archive_dir is not None,
            ),
            JobSchedule(
                JobType.REGION_SYNC, ScheduleType.INTERVAL,
                str(settings.region_sync_interval_minutes),
                enabled=bool(settings.secondary_regions),
            ),
        ]
        now = self.clock()
        for schedule in schedules:
            schedule.next_run = calculate_next_run(schedule.schedule_type, schedule.expression, now)
            self.schedules[schedule.job_type] = schedule
        return schedules

    async def run(self, job_type: JobType, sample_size: int | None = None) -> CycleResult:
        """
        Run one cycle of ``job_type`` unless one is already running.

        Returns:
            The cycle result, or a skipped result when the job's lock is held
        """
        lock = JobLock(self.settings.lock_path, job_type)
        try:
            lock.acquire()
        except LockUnavailable as e:
            now = self.clock()
            logger.info(f"Trigger for {job_type.value} ignored: {e.message}")
            return CycleResult(
                cycle_id=self.orchestrator.new_cycle_id(job_type),
                job_type=job_type,
                started_at=now,
                state=CycleState.COMPLETED,
                finished_at=now,
                skipped=True,
            )
        try:
            return await self.orchestrator.run_cycle(job_type, sample_size)
        finally:
            lock.release()

    def due_schedules(self, now: datetime) -> list[JobSchedule]:
        return [
            schedule for schedule in self.schedules.values()
            if schedule.enabled and schedule.next_run is not None and now >= schedule.next_run
        ]

    async def trigger(self, schedule: JobSchedule) -> CycleResult | None:
        """Run one scheduled job and move its next trigger forward."""
        started = self.clock()
        result: CycleResult | None = None
        try:
            result = await self.run(schedule.job_type)
            schedule.last_exit_code = result.exit_code
        except Exception as e:
            logger.error(f"Scheduled {schedule.job_type.value} cycle raised: {e!r}")
            schedule.last_exit_code = 1
        schedule.last_run = started
        schedule.next_run = calculate_next_run(schedule.schedule_type, schedule.expression, self.clock())
        return result

    async def run_due(self) -> list[CycleResult]:
        """Run every due job once and move its next trigger forward."""
        due = self.due_schedules(self.clock())
        if not due:
            return []
        results = await asyncio.gather(*(self.trigger(schedule) for schedule in due))
        return [result for result in results if result is not None]

    async def _job_loop(self, schedule: JobSchedule) -> None:
        stop_event = self.orchestrator.stop_event
        while not stop_event.is_set():
            if schedule.next_run is not None and self.clock() >= schedule.next_run:
                await self.trigger(schedule)
                continue
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.settings.poll_interval_seconds)
            except asyncio.TimeoutError:
                pass

    async def start_scheduler(self) -> None:
        """Start one trigger loop per enabled job type."""
        if self._job_tasks:
            logger.warning("Scheduler is already running")
            return
        self._job_tasks = {
            job_type: asyncio.create_task(self._job_loop(schedule), name=f"drvault-{job_type.value}")
            for job_type, schedule in self.schedules.items()
            if schedule.enabled
        }
        logger.info(f"Backup scheduler started for {', '.join(t.value for t in self._job_tasks)}")

    async def stop_scheduler(self) -> None:
        """Ask running cycles to stop at the next stage boundary and wait for them."""
        if not self._job_tasks:
            return
        self.orchestrator.request_stop()
        await asyncio.gather(*self._job_tasks.values())
        self._job_tasks = {}
        logger.info("Backup scheduler stopped")

    async def run_forever(self) -> None:
        """Run until SIGTERM or SIGINT."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.orchestrator.request_stop)

        await self.start_scheduler()
        try:
            await self.orchestrator.stop_event.wait()
        finally:
            await self.stop_scheduler()
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)

    def get_schedule_status(self) -> dict[str, Any]:
        return {
            'running': bool(self._job_tasks),
            'schedules': [schedule.to_dict() for schedule in self.schedules.values()],
        }
