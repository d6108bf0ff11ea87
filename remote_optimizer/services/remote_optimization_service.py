"""RemoteOptimizationService: drives one optimization job per ephemeral Hetzner VM.

Lifecycle of a job:
  1. trigger_optimization() persists a queued record and spawns a driver task
  2. the driver provisions a VM, waits for its IP and for SSH, ships the
     engine sources, market data, optional mTLS bundle and launcher script
  3. the launcher is started detached; once its ack token is seen the job
     is handed off and the remote script owns completion (email, self-delete)
  4. any failure before hand-off records the failing stage, emails the
     requester, and tears the VM down

Jobs in handoff are resolved later by StaleJobReconciler.
"""

import asyncio
import os
import tempfile
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path

import structlog
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_delay, wait_fixed

from remote_optimizer.cloud.hetzner import HetznerClient, HetznerServer, build_cloud_init, build_server_name
from remote_optimizer.core.config import Settings
from remote_optimizer.core.exceptions import (
    ConfigurationError,
    JobNotFoundError,
    JobStateError,
    ProvisioningError,
    RemoteCommandError,
    RemoteOptimizerError,
    SshConnectivityError,
)
from remote_optimizer.db.repos.remote_jobs import RemoteJobRepository
from remote_optimizer.db.repos.settings_store import SettingKeys, SettingsStore
from remote_optimizer.jobs.persistence import PersistQueue
from remote_optimizer.jobs.reconciler import StaleJobReconciler
from remote_optimizer.jobs.record import HANDOFF_SUMMARY, JobRecord, JobSnapshot, TriggeredBy
from remote_optimizer.jobs.state_machine import JobStage, JobStatus, is_active, is_terminal
from remote_optimizer.remote.channel import RemoteExecutionChannel, normalize_log_tail
from remote_optimizer.remote.launcher import (
    REMOTE_ENGINE_ARCHIVE_PATH,
    REMOTE_DATA_DIR,
    REMOTE_LOG_PATH,
    REMOTE_MARKET_DATA_PATH,
    REMOTE_SCRIPT_PATH,
    LaunchScriptContext,
    build_extract_command,
    build_launch_command,
    render_launch_script,
    write_launch_script,
)
from remote_optimizer.services.artifacts import (
    PendingJobProbe,
    create_engine_archive,
    ensure_market_data_snapshot,
    market_data_snapshot_path,
    no_pending_jobs,
)
from remote_optimizer.services.key_provider import KeyMaterialProvider
from remote_optimizer.services.mtls_bootstrap import MtlsBootstrap, RemoteMtlsConfig
from remote_optimizer.services.notifications import EmailClient, FailureNotifier

logger = structlog.get_logger(__name__)

REMOTE_LOG_TAIL_LINES = 400
REMOTE_LOG_MAX_BYTES = 256_000
SERVER_LABEL = "remote-optimize"

ChannelFactory = Callable[[str, str], RemoteExecutionChannel]


class RemoteLogResult(BaseModel):
    job: JobSnapshot
    log: str
    tail_lines: int


class StopResult(BaseModel):
    job: JobSnapshot
    server_deleted: bool


def describe_error(exc: BaseException | None) -> str:
    if exc is None:
        return "Unknown error"
    return str(exc) or type(exc).__name__


class RemoteOptimizationService:
    def __init__(
        self,
        settings: Settings,
        repository: RemoteJobRepository,
        settings_store: SettingsStore,
        hetzner: HetznerClient,
        key_provider: KeyMaterialProvider,
        notifier: FailureNotifier,
        mtls: MtlsBootstrap,
        reconciler: StaleJobReconciler | None = None,
        pending_job_probe: PendingJobProbe = no_pending_jobs,
        channel_factory: ChannelFactory = RemoteExecutionChannel,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.settings_store = settings_store
        self.hetzner = hetzner
        self.key_provider = key_provider
        self.notifier = notifier
        self.mtls = mtls
        self.reconciler = reconciler
        self._pending_job_probe = pending_job_probe
        self._channel_factory = channel_factory
        self._persist = PersistQueue(repository.upsert, delay=settings.persist_debounce_seconds)
        self._jobs: dict[str, JobRecord] = {}
        self._tasks: set[asyncio.Task] = set()
        self.work_dir = Path(settings.work_dir or tempfile.gettempdir())

    # ──────────────────────────────────────────────────────────────────────────
    # Public operations
    # ──────────────────────────────────────────────────────────────────────────

    @property
    def tasks(self) -> set[asyncio.Task]:
        """Driver tasks still running."""
        return set(self._tasks)

    async def refresh_token(self) -> str | None:
        token = await self.settings_store.get_text(SettingKeys.HETZNER_API_TOKEN)
        self.hetzner.set_token(token)
        return token or None

    async def require_token(self) -> str:
        token = await self.refresh_token()
        if not token:
            raise ConfigurationError(
                "Hetzner API token is not configured. "
                "Set HETZNER_API_TOKEN in Settings to enable remote optimization."
            )
        return token

    async def trigger_optimization(
        self,
        template_id: str,
        template_name: str | None,
        triggered_by: TriggeredBy,
    ) -> JobSnapshot:
        await self.require_token()
        await self.key_provider.ensure_key_pair()

        job = JobRecord(
            id=str(uuid.uuid4()),
            template_id=template_id,
            template_name=template_name or template_id,
            triggered_by=triggered_by,
        )
        self._jobs[job.id] = job
        await self._persist.flush(job)
        self._log(job, "Queued remote optimization job")

        task = asyncio.create_task(self._run_job(job), name=f"remote-job-{job.id}")
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

        snapshot = await self.get_job(job.id)
        if snapshot is None:
            raise RemoteOptimizerError("Failed to load remote optimization job after creation")
        return snapshot

    async def get_job(self, job_id: str) -> JobSnapshot | None:
        row = await self.repository.get(job_id)
        return JobSnapshot.from_row(row) if row is not None else None

    async def list_jobs(self) -> list[JobSnapshot]:
        if self.reconciler is not None:
            self.reconciler.trigger()
        return [JobSnapshot.from_row(row) for row in await self.repository.list_all()]

    def is_driving(self, job_id: str) -> bool:
        """True while this process runs the driver task for ``job_id``."""
        return job_id in self._jobs

    async def has_active_job(self, template_id: str) -> bool:
        return await self.repository.has_active_for_template(template_id)

    async def delete_finished_jobs(self) -> int:
        deleted = await self.repository.delete_finished()
        logger.info("finished_remote_jobs_deleted", deleted=deleted)
        return deleted

    async def get_remote_log(self, job_id: str) -> RemoteLogResult:
        """Fetch the tail of the remote launcher log over SFTP."""
        job_id = (job_id or "").strip()
        row = await self.repository.get(job_id) if job_id else None
        if row is None:
            raise JobNotFoundError(job_id)
        if row.status not in (JobStatus.RUNNING.value, JobStatus.HANDOFF.value):
            raise JobStateError(
                f"Remote optimization job {job_id} is {row.status}; logs are only available while running."
            )
        if not row.remote_server_ip:
            raise JobStateError(f"Remote optimization job {job_id} does not have a server IP yet.")

        private_key = await self.key_provider.require_private_key()
        header = ""
        log = ""
        try:
            channel = self._channel_factory(row.remote_server_ip, private_key)
            tail = await channel.read_tail(REMOTE_LOG_PATH, REMOTE_LOG_MAX_BYTES)
            if tail is None:
                header = f"Log file not found at {REMOTE_LOG_PATH}."
            else:
                truncated = ", truncated" if tail.truncated else ""
                header = f"Log file: {REMOTE_LOG_PATH} ({tail.size} bytes{truncated})"
                log = normalize_log_tail(tail.content, REMOTE_LOG_TAIL_LINES)
                if not log and tail.size > 0:
                    fallback = await channel.run(f"tail -n {REMOTE_LOG_TAIL_LINES} {REMOTE_LOG_PATH} || true")
                    combined = "\n".join(part for part in (fallback.stdout, fallback.stderr) if part)
                    log = normalize_log_tail(combined, REMOTE_LOG_TAIL_LINES)
        except RemoteOptimizerError as exc:
            logger.warning("remote_log_read_failed", job_id=job_id, error=str(exc))
            header = "Failed to read remote log file."
            log = describe_error(exc)

        text = f"{header}\n{log}" if log else f"{header}\nLog file is empty."
        return RemoteLogResult(job=JobSnapshot.from_row(row), log=text, tail_lines=REMOTE_LOG_TAIL_LINES)

    async def stop_optimization(self, job_id: str) -> StopResult:
        """Delete the job's VM (if any) and mark it failed.

        The driver task is not interrupted; its next stage sees the terminal
        status and fails through the normal path.
        """
        await self.require_token()

        row = await self.repository.get(job_id)
        if row is None:
            raise JobNotFoundError(job_id)
        if not is_active(row.status):
            raise JobStateError(f"Remote optimization job {job_id} is already {row.status} and cannot be stopped.")

        log = logger.bind(job_id=job_id, template_id=row.template_id, hetzner_server_id=row.hetzner_server_id)
        server_deleted = False
        if row.hetzner_server_id:
            try:
                result = await self.hetzner.delete_server(row.hetzner_server_id)
            except ProvisioningError as exc:
                log.error("stop_server_delete_failed", error=str(exc))
                raise ProvisioningError(
                    f"Failed to delete Hetzner server {row.hetzner_server_id}: {exc}",
                    status_code=exc.status_code,
                    body=exc.body,
                ) from exc
            server_deleted = result == "deleted"
            if server_deleted:
                log.info("stop_server_deleted")
            else:
                log.warning("stop_server_already_missing")
        else:
            log.warning("stop_without_server_id")

        now = datetime.now(timezone.utc)
        await self.repository.transition(
            job_id,
            JobStatus(row.status),
            JobStatus.FAILED,
            finished_at=now,
            clear_server=True,
        )

        live = self._jobs.get(job_id)
        if live is not None:
            live.transition_to(JobStatus.FAILED, now)
            live.hetzner_server_id = None
            live.remote_server_ip = None
            live.append_log("Remote optimization job was manually stopped")

        log.warning("remote_job_manually_stopped", server_deleted=server_deleted)
        updated = await self.repository.get(job_id)
        return StopResult(job=JobSnapshot.from_row(updated or row), server_deleted=server_deleted)

    async def shutdown(self) -> None:
        """Write out any debounced job state."""
        await self._persist.flush_all()

    # ──────────────────────────────────────────────────────────────────────────
    # Driver
    # ──────────────────────────────────────────────────────────────────────────

    async def _run_job(self, job: JobRecord) -> None:
        job.transition_to(JobStatus.RUNNING)
        self._persist.schedule(job)

        server: HetznerServer | None = None
        archive_path: Path | None = None
        script_path: Path | None = None

        try:
            await self._wait_for_market_data_jobs(job)
            self._enter_stage(job, JobStage.INITIALIZING, "Starting remote optimization job")
            job.ssh_private_key = await self.key_provider.require_private_key()

            snapshot_path = market_data_snapshot_path(self.settings.repo_root)
            self._enter_stage(job, JobStage.CHECKING_MARKET_DATA, f"Checking market data snapshot at {snapshot_path}")
            ensure_market_data_snapshot(snapshot_path)

            server = await self._create_server(job)
            job.hetzner_server_id = server.id
            await self._persist.flush(job)

            job.remote_server_ip = await self._wait_for_server_ip(job, server.id)
            await self._persist.flush(job)

            channel = self._channel_factory(job.remote_server_ip, job.ssh_private_key)
            await self._wait_for_ssh(job, channel)

            archive_path = self.work_dir / f"engine-{job.id}.tar.gz"
            await self._create_engine_archive(job, archive_path)
            self._enter_stage(job, JobStage.UPLOADING_ENGINE, "Uploading engine archive to remote host")
            await self._upload(job, channel, archive_path, REMOTE_ENGINE_ARCHIVE_PATH)
            self._enter_stage(job, JobStage.EXTRACTING_ENGINE, "Extracting engine archive on remote host")
            await self._run_remote(job, channel, build_extract_command())
            self._log(job, "Uploaded engine directory to remote host")

            self._enter_stage(job, JobStage.UPLOADING_MARKET_DATA, "Uploading market data snapshot to remote host")
            await self._run_remote(job, channel, f"mkdir -p {REMOTE_DATA_DIR}")
            await self._upload(job, channel, snapshot_path, REMOTE_MARKET_DATA_PATH)

            mtls_config = await self._prepare_mtls(job, channel)

            self._enter_stage(job, JobStage.GENERATING_REMOTE_SCRIPT, "Generating remote optimizer script")
            script_path = self.work_dir / f"remote-optimize-{job.id}.sh"
            await self._create_remote_script(job, mtls_config, script_path)
            self._enter_stage(job, JobStage.UPLOADING_REMOTE_SCRIPT, "Uploading remote optimizer script")
            await self._upload(job, channel, script_path, REMOTE_SCRIPT_PATH)
            self._enter_stage(
                job,
                JobStage.CONFIGURING_REMOTE_SCRIPT,
                "Setting executable permissions on remote optimizer script",
            )
            await self._run_remote(job, channel, f"chmod +x {REMOTE_SCRIPT_PATH}")

            self._enter_stage(job, JobStage.LAUNCHING_REMOTE_SCRIPT, "Launching remote optimizer script")
            await self._launch(job, channel)

            if not job.transition_to(JobStatus.HANDOFF):
                raise JobStateError(f"Remote optimization job {job.id} was stopped before hand-off.")
            job.result_summary = HANDOFF_SUMMARY
            job.remote_handoff_complete = True
            self._enter_stage(
                job,
                JobStage.HANDOFF_COMPLETE,
                "Remote optimizer hand-off complete. Monitoring Hetzner server state.",
            )
            await self._persist.flush(job)
        except Exception as exc:
            await self._handle_failure(job, exc)
        finally:
            for path in (script_path, archive_path):
                if path is not None:
                    self._safe_unlink(path)
            if not job.remote_handoff_complete and server is not None:
                await self._delete_server(job, server.id)
            job.ssh_private_key = None
            self._jobs.pop(job.id, None)

    async def _handle_failure(self, job: JobRecord, exc: Exception) -> None:
        detail = describe_error(exc)
        job.transition_to(JobStatus.FAILED)
        job.failure_stage = job.current_stage
        job.failure_details = detail
        job.error = f'Stage "{job.current_stage}" failed: {detail}' if job.current_stage else detail
        self._log(
            job,
            f"Remote optimization failed: {job.error}",
            "error",
            stage=job.failure_stage,
            failure_details=detail,
        )
        await self._persist.flush(job)

        sent = await self.notifier.notify_failure(
            job,
            job.error or "Remote optimizer setup failed.",
            stage=job.failure_stage,
            log_tail=job.log_tail(),
        )
        if not sent:
            self._log(job, "Remote optimization failure email was not sent", "warning")

    async def _wait_for_market_data_jobs(self, job: JobRecord) -> None:
        if not await self._pending_job_probe():
            return

        self._enter_stage(job, JobStage.WAITING_MARKET_DATA_JOB, "Waiting for market data snapshot job to finish")
        last_log = time.monotonic()
        while await self._pending_job_probe():
            await asyncio.sleep(self.settings.market_data_wait_interval_seconds)
            now = time.monotonic()
            if now - last_log >= self.settings.market_data_wait_log_interval_seconds:
                self._log(job, "Market data snapshot job still running; waiting", stage=job.current_stage)
                last_log = now
        self._log(job, "Market data snapshot job finished; continuing remote optimization", stage=job.current_stage)

    async def _create_server(self, job: JobRecord) -> HetznerServer:
        name = build_server_name(job.template_id)
        self._enter_stage(job, JobStage.PROVISIONING_SERVER, f"Provisioning Hetzner server {name}")

        overrides = await self.settings_store.get_values(
            [
                SettingKeys.HETZNER_SSH_KEY_NAME,
                SettingKeys.HETZNER_SERVER_TYPE,
                SettingKeys.HETZNER_SERVER_LOCATION,
            ]
        )
        ssh_key_name = (overrides.get(SettingKeys.HETZNER_SSH_KEY_NAME) or "").strip()
        server = await self.hetzner.create_server(
            name=name,
            server_type=(overrides.get(SettingKeys.HETZNER_SERVER_TYPE) or "").strip()
            or self.settings.hetzner_server_type,
            location=(overrides.get(SettingKeys.HETZNER_SERVER_LOCATION) or "").strip()
            or self.settings.hetzner_server_location,
            image=self.settings.hetzner_server_image,
            user_data=build_cloud_init(),
            labels={"stratcraft": SERVER_LABEL, "template": job.template_id},
            ssh_keys=[ssh_key_name] if ssh_key_name else None,
        )
        self._log(job, f"Created server {server.id} ({name})", stage=job.current_stage)
        return server

    async def _wait_for_server_ip(self, job: JobRecord, server_id: int) -> str:
        self._enter_stage(job, JobStage.WAITING_FOR_SERVER_IP, f"Waiting for server {server_id} to become ready")
        server = await self.hetzner.wait_until_ready(
            server_id,
            poll_interval=self.settings.server_ip_poll_interval_seconds,
            timeout=self.settings.server_ip_timeout_seconds,
        )
        self._log(job, f"Server {server_id} is running at {server.public_ipv4}", stage=job.current_stage)
        return server.public_ipv4

    async def _wait_for_ssh(self, job: JobRecord, channel: RemoteExecutionChannel) -> None:
        self._enter_stage(job, JobStage.WAITING_FOR_SSH, f"Waiting for SSH availability on {job.remote_server_ip}")
        retryer = AsyncRetrying(
            retry=retry_if_exception_type((SshConnectivityError, RemoteCommandError)),
            stop=stop_after_delay(self.settings.ssh_wait_timeout_seconds),
            wait=wait_fixed(self.settings.ssh_poll_interval_seconds),
        )
        try:
            await retryer(channel.run, "exit 0")
        except RetryError as exc:
            raise SshConnectivityError(
                "SSH did not become available on the remote server within the expected window"
            ) from exc
        self._log(job, f"SSH is available on {job.remote_server_ip}", stage=job.current_stage)

    async def _create_engine_archive(self, job: JobRecord, archive_path: Path) -> None:
        self._enter_stage(job, JobStage.PACKAGING_ENGINE, f"Creating engine archive at {archive_path}")
        skipped: list[str] = []
        await asyncio.to_thread(create_engine_archive, self.settings.repo_root, archive_path, skipped.append)
        for name in skipped:
            self._log(job, f"Skipping {name} when creating engine archive")

    async def _prepare_mtls(self, job: JobRecord, channel: RemoteExecutionChannel) -> RemoteMtlsConfig:
        try:
            enabled = await self.mtls.lockdown_enabled()
        except Exception as exc:
            self._log(
                job,
                f"Unable to determine mTLS lockdown state for remote callbacks: {describe_error(exc)}",
                "warning",
            )
            return RemoteMtlsConfig()
        if not enabled:
            return RemoteMtlsConfig()

        bundle = self.mtls.local_bundle()
        self._enter_stage(
            job,
            JobStage.UPLOADING_MTLS_CERTIFICATES,
            "Uploading mTLS client certificate bundle for API callbacks",
        )
        config = await self.mtls.upload(channel, bundle)
        self._log(job, "Uploaded mTLS client certificate bundle for remote API callbacks", stage=job.current_stage)
        return config

    async def _create_remote_script(self, job: JobRecord, mtls_config: RemoteMtlsConfig, script_path: Path) -> None:
        resend_key = await self.settings_store.get_text(SettingKeys.RESEND_API_KEY)
        site_name = await self.settings_store.get_text(SettingKeys.SITE_NAME)
        sender = await self.notifier.resolve_sender()
        email_to = (job.triggered_by.email or "").strip()
        if email_to == "unknown":
            email_to = ""

        context = LaunchScriptContext(
            site_name=site_name,
            template_id=job.template_id,
            template_name=job.template_name or job.template_id,
            job_id=job.id,
            email_to=email_to,
            email_from=sender or "",
            resend_api_key=resend_key,
            resend_api_url=self.settings.resend_api_url,
            hetzner_api_base_url=self.settings.hetzner_api_base_url,
            hetzner_token=self.hetzner.token or "",
            hetzner_server_id=str(job.hetzner_server_id) if job.hetzner_server_id else "",
            mtls_ca_cert=mtls_config.ca_cert_path if mtls_config.enabled else "",
            mtls_client_cert=mtls_config.client_cert_path if mtls_config.enabled else "",
            mtls_client_key=mtls_config.client_key_path if mtls_config.enabled else "",
        )
        await asyncio.to_thread(write_launch_script, script_path, render_launch_script(context))

    async def _launch(self, job: JobRecord, channel: RemoteExecutionChannel) -> None:
        command = build_launch_command()
        display = " && ".join(line.strip() for line in command.split("\n") if line.strip())
        self._log(job, f"Executing remote command: {display}", stage=job.current_stage)
        try:
            await channel.run_detached(command, ack_timeout=self.settings.ack_timeout_seconds)
        except RemoteCommandError as exc:
            self._log(job, f"Remote command failed: {display}", "error", exit_code=exc.exit_code)
            raise
        self._log(job, "Remote optimize script launched via nohup", stage=job.current_stage)

    async def _run_remote(self, job: JobRecord, channel: RemoteExecutionChannel, command: str):
        self._log(job, f"Executing remote command: {command}", stage=job.current_stage)
        try:
            return await channel.run(command)
        except RemoteCommandError as exc:
            self._log(
                job,
                f"Remote command failed with exit code {exc.exit_code}: {command}",
                "error",
                exit_code=exc.exit_code,
            )
            raise

    async def _upload(self, job: JobRecord, channel: RemoteExecutionChannel, local_path: Path, remote_path: str) -> None:
        self._log(job, f"Uploading file to remote: {local_path} -> {remote_path}", stage=job.current_stage)
        await channel.upload(str(local_path), remote_path)

    async def _delete_server(self, job: JobRecord, server_id: int) -> None:
        """Best-effort teardown; errors are logged, never raised."""
        try:
            result = await self.hetzner.delete_server(server_id)
        except Exception as exc:
            self._log(job, f"Failed to delete server {server_id}: {describe_error(exc)}", "warning")
            return

        if result == "deleted":
            self._log(job, f"Deleted Hetzner server {server_id}")
        else:
            self._log(job, f"Hetzner server {server_id} was already missing", "warning")
        job.hetzner_server_id = None
        job.remote_server_ip = None
        await self._persist.flush(job)

    def _safe_unlink(self, path: Path) -> None:
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("local_artifact_cleanup_failed", path=str(path), error=str(exc))

    # ──────────────────────────────────────────────────────────────────────────
    # Job log
    # ──────────────────────────────────────────────────────────────────────────

    def _log(self, job: JobRecord, message: str, level: str = "info", **meta) -> None:
        """Append to the job's log buffer, emit a structured log, and schedule a write."""
        job.append_log(message)
        getattr(logger, level)(
            "remote_job_event",
            message=message,
            job_id=job.id,
            template_id=job.template_id,
            **meta,
        )
        self._persist.schedule(job)

    def _enter_stage(self, job: JobRecord, stage: str, message: str | None = None) -> None:
        if is_terminal(job.status):
            raise JobStateError(f"Remote optimization job {job.id} is already {job.status.value}.")
        job.current_stage = stage
        if message:
            self._log(job, message, stage=stage)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("remote_job_crashed", task=task.get_name(), error=str(exc), exc_info=exc)


def build_remote_optimization_service(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    hetzner_transport=None,
    email_transport=None,
    pending_job_probe: PendingJobProbe = no_pending_jobs,
    channel_factory: ChannelFactory = RemoteExecutionChannel,
) -> RemoteOptimizationService:
    """Wire the service graph for the app lifespan and the one-shot scripts."""
    repository = RemoteJobRepository(session_factory)
    settings_store = SettingsStore(session_factory)
    hetzner = HetznerClient(
        base_url=settings.hetzner_api_base_url,
        timeout=settings.hetzner_request_timeout_seconds,
        transport=hetzner_transport,
    )
    email_client = EmailClient(api_url=settings.resend_api_url, transport=email_transport)

    async def lockdown_probe() -> bool:
        return settings.mtls_lockdown_enabled

    service = RemoteOptimizationService(
        settings=settings,
        repository=repository,
        settings_store=settings_store,
        hetzner=hetzner,
        key_provider=KeyMaterialProvider(settings_store),
        notifier=FailureNotifier(settings_store, email_client, domain=settings.domain),
        mtls=MtlsBootstrap(settings.mtls_dir, lockdown_probe),
        pending_job_probe=pending_job_probe,
        channel_factory=channel_factory,
    )
    service.reconciler = StaleJobReconciler(
        repository=repository,
        hetzner=hetzner,
        refresh_token=service.refresh_token,
        is_driven_locally=service.is_driving,
        interval_seconds=settings.reconcile_interval_seconds,
        queued_stale_after_seconds=settings.queued_stale_after_seconds,
        running_stale_after_seconds=settings.running_stale_after_seconds,
    )
    return service
