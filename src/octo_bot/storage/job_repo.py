"""Scheduled job definitions and their execution records."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from octo_bot.core.types import JobStatus
from octo_bot.log import get_logger
from octo_bot.storage.database import Database, from_db_time, to_db_time
from octo_bot.storage.models import JobExecution, ScheduledJob

logger = get_logger(__name__)


class JobRepository:
    """Reads due jobs and records run outcomes."""

    def __init__(self, db: Database):
        self._db = db

    async def get(self, job_id: str) -> Optional[ScheduledJob]:
        cursor = await self._db.conn.execute(
            "SELECT * FROM scheduled_jobs WHERE id = ?", (job_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_job(row) if row else None

    async def list_jobs(self, bot_id: Optional[str] = None) -> list[ScheduledJob]:
        if bot_id:
            cursor = await self._db.conn.execute(
                "SELECT * FROM scheduled_jobs WHERE bot_id = ? ORDER BY id", (bot_id,)
            )
        else:
            cursor = await self._db.conn.execute("SELECT * FROM scheduled_jobs ORDER BY id")
        return [self._row_to_job(row) for row in await cursor.fetchall()]

    async def get_due(self, now: datetime) -> list[ScheduledJob]:
        """Enabled jobs whose next run time is at or before `now`."""
        cursor = await self._db.conn.execute(
            """SELECT * FROM scheduled_jobs
               WHERE is_enabled = 1 AND next_run_at IS NOT NULL AND next_run_at <= ?
               ORDER BY next_run_at""",
            (to_db_time(now),),
        )
        return [self._row_to_job(row) for row in await cursor.fetchall()]

    async def upsert(self, job: ScheduledJob) -> None:
        """Save the definition; run state (last/next run) is only written when provided."""
        async with self._db.transaction() as conn:
            await conn.execute(
                """INSERT INTO scheduled_jobs
                   (id, bot_id, name, description, instructions, cron_expr, is_enabled,
                    target_channel, target_chat_id, next_run_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                     bot_id = excluded.bot_id,
                     name = excluded.name,
                     description = excluded.description,
                     instructions = excluded.instructions,
                     cron_expr = excluded.cron_expr,
                     is_enabled = excluded.is_enabled,
                     target_channel = excluded.target_channel,
                     target_chat_id = excluded.target_chat_id,
                     next_run_at = COALESCE(excluded.next_run_at, scheduled_jobs.next_run_at),
                     updated_at = strftime('%Y-%m-%dT%H:%M:%f','now')""",
                (
                    job.id,
                    job.bot_id,
                    job.name,
                    job.description,
                    job.instructions,
                    job.cron_expression,
                    int(job.enabled),
                    job.target_channel,
                    job.target_chat_id,
                    to_db_time(job.next_run_at) if job.next_run_at else None,
                ),
            )

    async def mark_started(self, job_id: str, execution: JobExecution) -> None:
        async with self._db.transaction() as conn:
            await conn.execute(
                """INSERT INTO job_executions (id, job_id, started_at, status)
                   VALUES (?, ?, ?, ?)""",
                (execution.id, job_id, to_db_time(execution.started_at), execution.status.value),
            )
            await conn.execute(
                """UPDATE scheduled_jobs
                   SET last_run_at = ?, last_run_status = ?,
                       updated_at = strftime('%Y-%m-%dT%H:%M:%f','now')
                   WHERE id = ?""",
                (to_db_time(execution.started_at), execution.status.value, job_id),
            )

    async def mark_finished(
        self, job_id: str, execution: JobExecution, next_run_at: Optional[datetime]
    ) -> None:
        """Close the execution record and store the recomputed next run time."""
        async with self._db.transaction() as conn:
            await conn.execute(
                """UPDATE job_executions
                   SET completed_at = ?, status = ?, output = ?, error_message = ?
                   WHERE id = ?""",
                (
                    to_db_time(execution.completed_at) if execution.completed_at else None,
                    execution.status.value,
                    execution.output,
                    execution.error_message,
                    execution.id,
                ),
            )
            await conn.execute(
                """UPDATE scheduled_jobs
                   SET last_run_status = ?, next_run_at = ?,
                       updated_at = strftime('%Y-%m-%dT%H:%M:%f','now')
                   WHERE id = ?""",
                (
                    execution.status.value,
                    to_db_time(next_run_at) if next_run_at else None,
                    job_id,
                ),
            )

    async def set_next_run(self, job_id: str, next_run_at: Optional[datetime]) -> None:
        async with self._db.transaction() as conn:
            await conn.execute(
                "UPDATE scheduled_jobs SET next_run_at = ? WHERE id = ?",
                (to_db_time(next_run_at) if next_run_at else None, job_id),
            )

    async def list_executions(self, job_id: str, limit: int = 20) -> list[JobExecution]:
        """Most recent executions first."""
        cursor = await self._db.conn.execute(
            """SELECT * FROM job_executions WHERE job_id = ?
               ORDER BY started_at DESC LIMIT ?""",
            (job_id, limit),
        )
        return [
            JobExecution(
                id=row["id"],
                job_id=row["job_id"],
                started_at=from_db_time(row["started_at"]),
                status=JobStatus(row["status"]),
                completed_at=from_db_time(row["completed_at"]),
                output=row["output"],
                error_message=row["error_message"],
            )
            for row in await cursor.fetchall()
        ]

    @staticmethod
    def _row_to_job(row) -> ScheduledJob:
        status = row["last_run_status"]
        return ScheduledJob(
            id=row["id"],
            bot_id=row["bot_id"],
            name=row["name"],
            description=row["description"],
            instructions=row["instructions"],
            cron_expression=row["cron_expr"],
            enabled=bool(row["is_enabled"]),
            target_channel=row["target_channel"],
            target_chat_id=row["target_chat_id"],
            last_run_at=from_db_time(row["last_run_at"]),
            next_run_at=from_db_time(row["next_run_at"]),
            last_run_status=JobStatus(status) if status else None,
        )
