"""StaleJobReconciler: resolves persisted jobs whose driver is gone.

After a restart (or when a remote host dies) nothing is left to move a job
out of queued/running/handoff. The reconciler periodically walks the
persisted jobs and consults the cloud API:

  queued   older than the queued threshold and never started → failed
  running  VM missing or unresponsive → failed; unknown → left alone;
           otherwise failed once older than the running threshold
  handoff  no VM id → failed; VM missing → succeeded (the remote script
           deletes its own VM on completion); unresponsive → warning only

Status writes are compare-and-set against the status that was read, so a
job that a driver or a manual stop moved on in the meantime is skipped.
queued and running jobs whose driver task lives in this process are left
to that driver. A VM is deleted only after the failed status is written,
and its id and IP are cleared once the delete succeeds.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone

import structlog

from remote_optimizer.cloud.hetzner import HetznerClient
from remote_optimizer.db.repos.remote_jobs import RemoteJobRepository
from remote_optimizer.jobs.record import as_utc
from remote_optimizer.jobs.state_machine import JobStatus, can_transition, is_active

logger = structlog.get_logger(__name__)

NEVER_STARTED_REASON = "Remote optimizer job never started after service restart."
SERVER_MISSING_REASON = "Hetzner server no longer exists."
SERVER_UNRESPONSIVE_REASON = "Hetzner server stopped responding."
STALLED_REASON = "Remote optimizer job stalled and has been marked as failed."
HANDOFF_WITHOUT_SERVER_REASON = "Hetzner server ID missing after remote hand-off."
HANDOFF_COMPLETED_REASON = "Hetzner server reported missing after remote completion."


class StaleJobReconciler:
    def __init__(
        self,
        repository: RemoteJobRepository,
        hetzner: HetznerClient,
        refresh_token: Callable[[], Awaitable[str | None]] | None = None,
        is_driven_locally: Callable[[str], bool] | None = None,
        interval_seconds: float = 60.0,
        queued_stale_after_seconds: float = 5 * 60,
        running_stale_after_seconds: float = 15 * 60,
    ) -> None:
        self.repository = repository
        self.hetzner = hetzner
        self._refresh_token = refresh_token
        self._is_driven_locally = is_driven_locally or (lambda job_id: False)
        self.interval_seconds = interval_seconds
        self.queued_stale_after = timedelta(seconds=queued_stale_after_seconds)
        self.running_stale_after = timedelta(seconds=running_stale_after_seconds)
        self._in_flight: asyncio.Task | None = None
        self._last_attempt: float | None = None

    async def run_forever(self) -> None:
        """Trigger a sweep every interval until cancelled.

        Intended to run as: ``asyncio.create_task(reconciler.run_forever())``
        """
        logger.info("reconciler_started", interval_seconds=self.interval_seconds)
        while True:
            await asyncio.sleep(self.interval_seconds)
            self.trigger()

    def trigger(self, force: bool = False) -> asyncio.Task | None:
        """Start a sweep in the background.

        Single-flight: while a sweep runs, the in-flight task is returned.
        Unless ``force`` is set, a new sweep starts at most once per interval.
        """
        if self._in_flight is not None and not self._in_flight.done():
            return self._in_flight
        now = time.monotonic()
        if not force and self._last_attempt is not None and now - self._last_attempt < self.interval_seconds:
            return None
        self._last_attempt = now
        self._in_flight = asyncio.create_task(self._guarded_sweep())
        return self._in_flight

    async def _guarded_sweep(self) -> None:
        try:
            await self.sweep()
        except Exception as exc:
            logger.warning("reconcile_sweep_failed", error=str(exc), error_type=type(exc).__name__)

    async def sweep(self, now: datetime | None = None) -> dict[str, int]:
        """Run one reconciliation pass. Returns counts of resolved jobs."""
        now = now or datetime.now(timezone.utc)
        if self._refresh_token is not None:
            await self._refresh_token()

        counts = {"failed": 0, "succeeded": 0}
        for row in await self.repository.list_all():
            status = JobStatus(row.status)
            if status in (JobStatus.QUEUED, JobStatus.RUNNING) and self._is_driven_locally(row.id):
                # Owned by a live driver task
                continue
            if status == JobStatus.HANDOFF:
                outcome = await self._reconcile_handoff(row, now)
            elif is_active(status):
                reason = await self._stale_reason(row, status, now)
                outcome = await self._mark_failed(row, status, reason, now) if reason else None
            else:
                outcome = None
            if outcome:
                counts[outcome] += 1

        if counts["failed"] or counts["succeeded"]:
            logger.info("reconcile_sweep_complete", **counts)
        return counts

    async def _stale_reason(self, row, status: JobStatus, now: datetime) -> str | None:
        if status == JobStatus.QUEUED:
            if row.started_at is None and now - as_utc(row.created_at) > self.queued_stale_after:
                return NEVER_STARTED_REASON
            return None

        if row.hetzner_server_id:
            state = await self.hetzner.lookup_server_state(row.hetzner_server_id)
            if state == "missing":
                return SERVER_MISSING_REASON
            if state == "unresponsive":
                return SERVER_UNRESPONSIVE_REASON
            if state == "unknown":
                return None

        started_at = as_utc(row.started_at or row.created_at)
        if now - started_at > self.running_stale_after:
            return STALLED_REASON
        return None

    async def _reconcile_handoff(self, row, now: datetime) -> str | None:
        if not row.hetzner_server_id:
            return await self._mark_failed(row, JobStatus.HANDOFF, HANDOFF_WITHOUT_SERVER_REASON, now)

        state = await self.hetzner.lookup_server_state(row.hetzner_server_id)
        if state == "missing":
            return await self._mark_succeeded(row, now)
        if state == "unresponsive":
            logger.warning(
                "handoff_server_unresponsive",
                job_id=row.id,
                template_id=row.template_id,
                hetzner_server_id=row.hetzner_server_id,
            )
        return None

    async def _mark_failed(self, row, status: JobStatus, reason: str, now: datetime) -> str | None:
        if not can_transition(status, JobStatus.FAILED):
            return None

        # The status is claimed before the VM is touched
        try:
            updated = await self.repository.transition(row.id, status, JobStatus.FAILED, finished_at=now)
        except Exception as exc:
            logger.warning("stale_job_update_failed", job_id=row.id, error=str(exc))
            return None
        if not updated:
            logger.info("stale_job_changed_concurrently", job_id=row.id, expected_status=status.value)
            return None

        if row.hetzner_server_id:
            await self._delete_server(row)

        logger.warning(
            "remote_job_auto_failed",
            job_id=row.id,
            template_id=row.template_id,
            reason=reason,
            auto_failed=True,
        )
        return "failed"

    async def _delete_server(self, row) -> None:
        """Best-effort VM teardown; the id is kept only when the delete itself failed."""
        try:
            await self.hetzner.delete_server(row.hetzner_server_id)
        except Exception as exc:
            logger.warning(
                "stale_job_server_delete_failed",
                job_id=row.id,
                hetzner_server_id=row.hetzner_server_id,
                error=str(exc),
            )
            return
        try:
            await self.repository.clear_server(row.id)
        except Exception as exc:
            logger.warning("stale_job_server_clear_failed", job_id=row.id, error=str(exc))

    async def _mark_succeeded(self, row, now: datetime) -> str | None:
        try:
            updated = await self.repository.transition(
                row.id,
                JobStatus.HANDOFF,
                JobStatus.SUCCEEDED,
                finished_at=now,
                clear_server=True,
            )
        except Exception as exc:
            logger.warning("completed_job_update_failed", job_id=row.id, error=str(exc))
            return None
        if not updated:
            return None

        logger.info(
            "remote_job_auto_succeeded",
            job_id=row.id,
            template_id=row.template_id,
            reason=HANDOFF_COMPLETED_REASON,
            auto_resolved=True,
        )
        return "succeeded"
