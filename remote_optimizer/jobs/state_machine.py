"""Remote job status lifecycle and driver stage labels."""

from enum import Enum


class JobStatus(str, Enum):
    """Remote optimization job lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    HANDOFF = "handoff"  # remote script launched and acknowledged
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# Valid state transitions
TRANSITIONS: dict[JobStatus, list[JobStatus]] = {
    JobStatus.QUEUED: [JobStatus.RUNNING, JobStatus.FAILED],
    JobStatus.RUNNING: [JobStatus.HANDOFF, JobStatus.FAILED],
    JobStatus.HANDOFF: [JobStatus.SUCCEEDED, JobStatus.FAILED],
    JobStatus.SUCCEEDED: [],  # Terminal state
    JobStatus.FAILED: [],  # Terminal state
}

ACTIVE_STATUSES = frozenset({JobStatus.QUEUED, JobStatus.RUNNING, JobStatus.HANDOFF})
TERMINAL_STATUSES = frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED})


def can_transition(current: JobStatus | str, new: JobStatus | str) -> bool:
    return JobStatus(new) in TRANSITIONS.get(JobStatus(current), [])


def is_active(status: JobStatus | str) -> bool:
    return JobStatus(status) in ACTIVE_STATUSES


def is_terminal(status: JobStatus | str) -> bool:
    return JobStatus(status) in TERMINAL_STATUSES


class JobStage:
    """Driver stage labels, recorded as current_stage / failure_stage."""

    WAITING_MARKET_DATA_JOB = "waiting-market-data-job"
    INITIALIZING = "initializing"
    CHECKING_MARKET_DATA = "checking-market-data"
    PROVISIONING_SERVER = "provisioning-server"
    WAITING_FOR_SERVER_IP = "waiting-for-server-ip"
    WAITING_FOR_SSH = "waiting-for-ssh"
    PACKAGING_ENGINE = "packaging-engine"
    UPLOADING_ENGINE = "uploading-engine"
    EXTRACTING_ENGINE = "extracting-engine"
    UPLOADING_MARKET_DATA = "uploading-market-data"
    UPLOADING_MTLS_CERTIFICATES = "uploading-mtls-certificates"
    GENERATING_REMOTE_SCRIPT = "generating-remote-script"
    UPLOADING_REMOTE_SCRIPT = "uploading-remote-script"
    CONFIGURING_REMOTE_SCRIPT = "configuring-remote-script"
    LAUNCHING_REMOTE_SCRIPT = "launching-remote-script"
    HANDOFF_COMPLETE = "handoff-complete"
    FETCHING_REMOTE_LOGS = "fetching-remote-logs"
