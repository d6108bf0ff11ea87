"""Durable storage for remote optimization jobs."""

from datetime import datetime

import structlog
from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from remote_optimizer.db.models.remote_job import RemoteOptimizerJob
from remote_optimizer.jobs.state_machine import ACTIVE_STATUSES, TERMINAL_STATUSES, JobStatus

logger = structlog.get_logger(__name__)

_ACTIVE_VALUES = [status.value for status in ACTIVE_STATUSES]
_TERMINAL_VALUES = [status.value for status in TERMINAL_STATUSES]


class RemoteJobRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, job_id: str) -> RemoteOptimizerJob | None:
        async with self._session_factory() as session:
            return await session.get(RemoteOptimizerJob, job_id)

    async def list_all(self) -> list[RemoteOptimizerJob]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(RemoteOptimizerJob).order_by(RemoteOptimizerJob.created_at.asc())
            )
            return list(result.scalars().all())

    async def upsert(self, values: dict) -> None:
        """Insert or update a job row.

        A row already in a terminal state keeps its status and finished_at;
        late writes from a driver that lost a race with stop or the
        reconciler only refresh the remaining columns.
        """
        async with self._session_factory() as session:
            row = await session.get(RemoteOptimizerJob, values["id"])
            if row is None:
                session.add(RemoteOptimizerJob(**values))
            else:
                fields = dict(values)
                if row.status in _TERMINAL_VALUES and fields.get("status") != row.status:
                    logger.info(
                        "remote_job_terminal_status_kept",
                        job_id=row.id,
                        persisted_status=row.status,
                        ignored_status=fields.get("status"),
                    )
                    fields.pop("status", None)
                    fields.pop("finished_at", None)
                for key, value in fields.items():
                    if key != "id":
                        setattr(row, key, value)
            await session.commit()

    async def transition(
        self,
        job_id: str,
        expected: JobStatus,
        new: JobStatus,
        finished_at: datetime | None = None,
        clear_server: bool = False,
    ) -> bool:
        """Compare-and-set the status. Returns False if the row moved on meanwhile."""
        values: dict = {"status": new.value}
        if finished_at is not None:
            values["finished_at"] = finished_at
        if clear_server:
            values["hetzner_server_id"] = None
            values["remote_server_ip"] = None

        async with self._session_factory() as session:
            result = await session.execute(
                update(RemoteOptimizerJob)
                .where(RemoteOptimizerJob.id == job_id)
                .where(RemoteOptimizerJob.status == expected.value)
                .values(**values)
            )
            await session.commit()
            return result.rowcount == 1

    async def clear_server(self, job_id: str) -> None:
        """Forget the VM of a job whose server has been deleted."""
        async with self._session_factory() as session:
            await session.execute(
                update(RemoteOptimizerJob)
                .where(RemoteOptimizerJob.id == job_id)
                .values(hetzner_server_id=None, remote_server_ip=None)
            )
            await session.commit()

    async def has_active_for_template(self, template_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                select(RemoteOptimizerJob.id)
                .where(RemoteOptimizerJob.template_id == template_id)
                .where(RemoteOptimizerJob.status.in_(_ACTIVE_VALUES))
                .limit(1)
            )
            return result.first() is not None

    async def delete_finished(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(RemoteOptimizerJob).where(
                    or_(
                        RemoteOptimizerJob.finished_at.isnot(None),
                        RemoteOptimizerJob.status.in_(_TERMINAL_VALUES),
                    )
                )
            )
            await session.commit()
            return result.rowcount
