"""Scheduled job runner: polls stored cron jobs and drives them through the agents."""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from octo_bot.channels.models import IncomingMessage, OutgoingMessage
from octo_bot.config import SchedulerConfig
from octo_bot.core.agent_directory import AgentDirectory
from octo_bot.core.types import SCHEDULED_JOB_CHANNEL, JobStatus
from octo_bot.errors import CronInvalidError, NotFoundError
from octo_bot.log import bound_context, get_logger
from octo_bot.services.base import Service
from octo_bot.storage.database import ensure_utc, utcnow
from octo_bot.storage.job_repo import JobRepository
from octo_bot.storage.models import JobExecution, ScheduledJob

if TYPE_CHECKING:
    from octo_bot.channels.manager import ChannelOrchestrator

logger = get_logger(__name__)

POLL_JOB_ID = "scheduled-job-poll"
SYSTEM_USER_ID = "system"
SYSTEM_USER_NAME = "Scheduler"


_WEEKDAYS = ("sun", "mon", "tue", "wed", "thu", "fri", "sat", "sun")


def _crontab_weekdays(field: str) -> str:
    """Translate a crontab day-of-week field (0 or 7 = Sunday) to weekday names.

    APScheduler counts numeric weekdays from Monday, so numeric terms are
    expanded to explicit names. Named terms pass through unchanged.
    """
    terms = []
    for term in field.split(","):
        span, _, step = term.partition("/")
        if not any(ch.isdigit() for ch in span):
            if span == "*" and step:
                span = "0-6"
            else:
                terms.append(term)
                continue
        first, _, last = span.partition("-")
        start = int(first)
        end = int(last) if last else (7 if step else start)
        stride = int(step) if step else 1
        if not (0 <= start <= 7 and 0 <= end <= 7) or start > end or stride < 1:
            raise ValueError(f"day of week out of range: {term!r}")
        terms.extend(_WEEKDAYS[day] for day in range(start, end + 1, stride))
    return ",".join(dict.fromkeys(terms))


def parse_cron(cron_expression: str, tz: str = "UTC") -> CronTrigger:
    """Parse a standard 5-field crontab expression."""
    try:
        minute, hour, day, month, day_of_week = cron_expression.split()
        return CronTrigger(
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=_crontab_weekdays(day_of_week),
            timezone=tz,
        )
    except (ValueError, TypeError) as e:
        raise CronInvalidError(f"Invalid cron expression '{cron_expression}': {e}") from e


def next_fire_time(
    cron_expression: str, now: Optional[datetime] = None, tz: str = "UTC"
) -> datetime:
    """First fire time strictly after `now`, in UTC."""
    trigger = parse_cron(cron_expression, tz)
    now = ensure_utc(now or utcnow())
    # Crontab resolution is one second; start from the next whole second
    anchor = now.replace(microsecond=0) + timedelta(seconds=1)
    fire = trigger.get_next_fire_time(None, anchor)
    if fire is None:
        raise CronInvalidError(f"Cron expression '{cron_expression}' never fires")
    return fire.astimezone(timezone.utc)


class ScheduledJobRunner(Service):
    """Background poll loop over persisted jobs.

    Each due job runs on its own task, bounded by ``max_concurrent_jobs``.
    A job that is still running is not dispatched again by later ticks.
    Failures are recorded on the execution row and never reach the poll loop.
    """

    def __init__(
        self,
        job_repo: JobRepository,
        agents: AgentDirectory,
        config: SchedulerConfig,
        channels: Optional[ChannelOrchestrator] = None,
    ):
        self._repo = job_repo
        self._agents = agents
        self._config = config
        self._channels = channels
        self._scheduler = AsyncIOScheduler(timezone=config.timezone)
        self._semaphore = asyncio.Semaphore(config.max_concurrent_jobs)
        self._tasks: set[asyncio.Task] = set()
        self._in_flight: set[str] = set()
        self._poll_task: Optional[asyncio.Task] = None
        self._accepting = False

    @property
    def service_name(self) -> str:
        return "scheduler"

    async def start(self) -> None:
        self._scheduler.add_job(
            self._poll,
            IntervalTrigger(seconds=self._config.poll_interval_seconds),
            id=POLL_JOB_ID,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(timezone.utc),
        )
        self._accepting = True
        self._scheduler.start()
        logger.info(
            "scheduler_started",
            poll_interval=self._config.poll_interval_seconds,
            timezone=self._config.timezone,
        )

    async def stop(self) -> None:
        """Stop polling, let the current tick finish, then drain running jobs."""
        self._accepting = False
        poll = self._poll_task
        if poll is not None and not poll.done():
            # Shutting the scheduler down cancels its pending coroutines
            await asyncio.wait({poll}, timeout=self._config.shutdown_grace_seconds)
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            # AsyncIOScheduler applies shutdown on the next loop iteration
            await asyncio.sleep(0)
        await self._drain(self._config.shutdown_grace_seconds)
        logger.info("scheduler_stopped")

    async def health_check(self) -> bool:
        return self._accepting and self._scheduler.running

    async def _drain(self, grace_seconds: float) -> None:
        if not self._tasks:
            return
        _, pending = await asyncio.wait(set(self._tasks), timeout=grace_seconds)
        if pending:
            logger.warning("scheduler_jobs_cancelled", count=len(pending))
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    async def _poll(self) -> None:
        if not self._accepting:
            return
        self._poll_task = asyncio.current_task()
        try:
            await self.tick()
        except Exception as e:
            logger.error("scheduler_poll_failed", error=str(e))
        finally:
            self._poll_task = None

    async def tick(self, now: Optional[datetime] = None) -> list[asyncio.Task]:
        """Dispatch every due job once. Returns the spawned tasks."""
        now = now or utcnow()
        due = await self._repo.get_due(now)
        spawned = []
        for job in due:
            if job.id in self._in_flight:
                logger.debug("job_still_running", job_id=job.id)
                continue
            spawned.append(self._spawn(job, track=True))
        if spawned:
            logger.info("scheduler_tick", due=len(due), dispatched=len(spawned))
        return spawned

    def _spawn(self, job: ScheduledJob, track: bool) -> asyncio.Task:
        if track:
            self._in_flight.add(job.id)
        task = asyncio.create_task(self._run_bounded(job, track), name=f"job:{job.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_bounded(self, job: ScheduledJob, track: bool) -> JobExecution:
        try:
            async with self._semaphore:
                return await self.execute_job(job)
        finally:
            if track:
                self._in_flight.discard(job.id)

    async def run_job_now(self, job_id: str) -> JobExecution:
        """Run a job immediately regardless of its schedule."""
        job = await self._repo.get(job_id)
        if job is None:
            raise NotFoundError(f"Scheduled job '{job_id}' not found")
        logger.info("job_triggered_manually", job_id=job_id)
        return await self._spawn(job, track=False)

    async def execute_job(self, job: ScheduledJob) -> JobExecution:
        execution = JobExecution(
            id=uuid.uuid4().hex,
            job_id=job.id,
            started_at=utcnow(),
            status=JobStatus.RUNNING,
        )
        with bound_context(job_id=job.id, bot_id=job.bot_id, execution_id=execution.id):
            await self._repo.mark_started(job.id, execution)
            logger.info("job_started")
            try:
                message = IncomingMessage(
                    channel_type=SCHEDULED_JOB_CHANNEL,
                    channel_id=f"job-{job.id}",
                    user_id=SYSTEM_USER_ID,
                    user_name=SYSTEM_USER_NAME,
                    content=job.instructions,
                    timestamp=execution.started_at,
                )
                execution.output = await self._agents.process(job.bot_id, message)
                execution.status = JobStatus.SUCCESS
            except asyncio.CancelledError:
                execution.status = JobStatus.FAILED
                execution.error_message = "Cancelled during shutdown"
                await asyncio.shield(self._finish(job, execution))
                raise
            except Exception as e:
                execution.status = JobStatus.FAILED
                execution.error_message = str(e) or type(e).__name__
                logger.error("job_failed", error=execution.error_message, error_type=type(e).__name__)

            await self._finish(job, execution)
            if execution.status == JobStatus.SUCCESS:
                logger.info("job_succeeded")
                await self._deliver(job, execution.output or "")
        return execution

    async def _finish(self, job: ScheduledJob, execution: JobExecution) -> None:
        execution.completed_at = utcnow()
        next_run = self.compute_next_run(job.cron_expression, execution.completed_at)
        await self._repo.mark_finished(job.id, execution, next_run)

    async def _deliver(self, job: ScheduledJob, output: str) -> None:
        if not (job.target_channel and job.target_chat_id and output):
            return
        if self._channels is None:
            logger.warning("job_delivery_unavailable", target_channel=job.target_channel)
            return
        try:
            await self._channels.send(
                job.bot_id,
                job.target_channel,
                OutgoingMessage(channel_id=job.target_chat_id, content=output),
            )
        except Exception as e:
            logger.warning("job_delivery_failed", target_channel=job.target_channel, error=str(e))

    def compute_next_run(
        self, cron_expression: str, now: Optional[datetime] = None
    ) -> Optional[datetime]:
        """Next fire time after `now`, or None (job paused) if the expression is invalid."""
        try:
            return next_fire_time(cron_expression, now, self._config.timezone)
        except CronInvalidError as e:
            logger.warning("job_cron_invalid", cron=cron_expression, error=str(e))
            return None

    async def initialize_schedule(self) -> int:
        """Give enabled jobs without a next run time their first one."""
        initialized = 0
        for job in await self._repo.list_jobs():
            if job.enabled and job.next_run_at is None:
                next_run = self.compute_next_run(job.cron_expression)
                if next_run is not None:
                    await self._repo.set_next_run(job.id, next_run)
                    initialized += 1
        if initialized:
            logger.info("job_schedule_initialized", count=initialized)
        return initialized

    async def list_executions(self, job_id: str, limit: int = 20) -> list[JobExecution]:
        if await self._repo.get(job_id) is None:
            raise NotFoundError(f"Scheduled job '{job_id}' not found")
        return await self._repo.list_executions(job_id, limit)
