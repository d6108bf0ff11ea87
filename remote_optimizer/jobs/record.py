"""In-memory job record, requester identity, and the public job snapshot."""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone

from pydantic import BaseModel

from remote_optimizer.jobs.state_machine import JobStatus, can_transition

JOB_LOG_LIMIT = 400
HANDOFF_SUMMARY = "Remote optimizer running on Hetzner. Await completion email before considering final."


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive timestamps (SQLite drops tzinfo on the way back)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class TriggeredBy(BaseModel):
    """Who requested the job. Kept in memory only; snapshots report "unknown"."""

    user_id: str = "unknown"
    email: str = "unknown"


class JobSnapshot(BaseModel):
    """Public view of a job built from its durable fields."""

    id: str
    template_id: str
    template_name: str
    status: JobStatus
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    hetzner_server_id: int | None = None
    remote_server_ip: str | None = None
    triggered_by: TriggeredBy = TriggeredBy()
    remote_handoff_complete: bool = False

    @classmethod
    def from_row(cls, row) -> "JobSnapshot":
        status = JobStatus(row.status)
        return cls(
            id=row.id,
            template_id=row.template_id,
            template_name=row.template_name,
            status=status,
            created_at=as_utc(row.created_at),
            started_at=as_utc(row.started_at),
            finished_at=as_utc(row.finished_at),
            hetzner_server_id=row.hetzner_server_id,
            remote_server_ip=row.remote_server_ip,
            remote_handoff_complete=status in (JobStatus.HANDOFF, JobStatus.SUCCEEDED),
        )


@dataclass
class JobRecord:
    """Mutable state of a job while its driver task runs.

    Only the fields returned by to_row() are persisted; the log buffer,
    stage bookkeeping and the SSH key exist for the lifetime of the driver.
    """

    id: str
    template_id: str
    template_name: str
    triggered_by: TriggeredBy = field(default_factory=TriggeredBy)
    status: JobStatus = JobStatus.QUEUED
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: datetime | None = None
    finished_at: datetime | None = None
    hetzner_server_id: int | None = None
    remote_server_ip: str | None = None

    log_buffer: deque = field(default_factory=lambda: deque(maxlen=JOB_LOG_LIMIT))
    current_stage: str | None = None
    failure_stage: str | None = None
    failure_details: str | None = None
    error: str | None = None
    result_summary: str | None = None
    ssh_private_key: str | None = None
    remote_handoff_complete: bool = False

    def transition_to(self, new_status: JobStatus, now: datetime | None = None) -> bool:
        """Move to ``new_status`` if allowed, stamping started_at/finished_at once."""
        if not can_transition(self.status, new_status):
            return False
        now = now or datetime.now(timezone.utc)
        self.status = new_status
        if new_status == JobStatus.RUNNING and self.started_at is None:
            self.started_at = now
        if new_status in (JobStatus.SUCCEEDED, JobStatus.FAILED) and self.finished_at is None:
            self.finished_at = now
        return True

    def append_log(self, message: str, now: datetime | None = None) -> str:
        now = now or datetime.now(timezone.utc)
        entry = f"[{now.isoformat()}] {message}"
        self.log_buffer.append(entry)
        return entry

    def log_tail(self, max_entries: int = 20) -> str | None:
        if not self.log_buffer:
            return None
        return "\n".join(list(self.log_buffer)[-max_entries:])

    def to_row(self) -> dict:
        return {
            "id": self.id,
            "template_id": self.template_id,
            "template_name": self.template_name,
            "status": self.status.value,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "hetzner_server_id": self.hetzner_server_id,
            "remote_server_ip": self.remote_server_ip,
        }
