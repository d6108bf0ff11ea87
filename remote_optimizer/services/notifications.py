"""Failure notifications for jobs that never reached hand-off.

Success (and post-hand-off failure) emails are sent by the remote script
itself; this module only covers failures while the orchestrator still owns
the job. Sending is best-effort: missing configuration skips quietly, and
delivery errors are logged, never raised.
"""

import re
from pathlib import Path

import httpx
import structlog
from jinja2 import Environment, FileSystemLoader
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from remote_optimizer.db.repos.settings_store import SettingKeys, SettingsStore
from remote_optimizer.jobs.record import JobRecord

logger = structlog.get_logger(__name__)

TEMPLATE_DIR = Path(__file__).parent / "templates"
DEFAULT_RESEND_API_URL = "https://api.resend.com/emails"
SENDER_DISPLAY_NAME = "Remote Optimizer"

_DOMAIN_PATTERN = re.compile(r"^[A-Za-z0-9.-]+$")


def normalize_domain(value: str | None) -> str | None:
    """Accept a bare host name only: no scheme, path, query, fragment or port."""
    trimmed = (value or "").strip()
    if not trimmed:
        return None
    if any(marker in trimmed for marker in ("://", "/", "?", "#", ":")):
        return None
    if not _DOMAIN_PATTERN.match(trimmed):
        return None
    return trimmed


class EmailClient:
    """Resend HTTP API client."""

    def __init__(
        self,
        api_url: str = DEFAULT_RESEND_API_URL,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_url = api_url
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
        before_sleep=lambda rs: logger.warning(
            "email_send_retrying",
            attempt=rs.attempt_number,
            sleep_seconds=rs.next_action.sleep,
        ),
    )
    async def send(self, api_key: str, sender: str, to: str, subject: str, html: str) -> None:
        response = await self._client.post(
            self.api_url,
            headers={"Authorization": f"Bearer {api_key}"},
            json={"from": sender, "to": [to], "subject": subject, "html": html},
        )
        response.raise_for_status()


class FailureNotifier:
    def __init__(
        self,
        settings_store: SettingsStore,
        email_client: EmailClient,
        domain: str | None = None,
    ) -> None:
        self.settings_store = settings_store
        self.email_client = email_client
        self._env_domain = domain
        self.env = Environment(
            loader=FileSystemLoader(str(TEMPLATE_DIR)),
            autoescape=True,
            keep_trailing_newline=True,
        )

    async def resolve_domain(self) -> str | None:
        """Environment DOMAIN wins over the DOMAIN setting."""
        env_value = normalize_domain(self._env_domain)
        if env_value:
            return env_value
        return normalize_domain(await self.settings_store.get_value(SettingKeys.DOMAIN))

    async def resolve_sender(self) -> str | None:
        domain = await self.resolve_domain()
        if not domain:
            return None
        return f"{SENDER_DISPLAY_NAME} <noreply@{domain}>"

    def render_failure(self, job: JobRecord, details: str, stage: str | None, log_tail: str | None) -> str:
        template = self.env.get_template("failure_email.html.j2")
        return template.render(
            template_name=job.template_name,
            template_id=job.template_id,
            job_id=job.id,
            stage=stage,
            details=details,
            log_tail=log_tail,
        )

    async def notify_failure(
        self,
        job: JobRecord,
        details: str,
        stage: str | None = None,
        log_tail: str | None = None,
    ) -> bool:
        """Email the requester about a pre-hand-off failure. Returns True if sent."""
        log = logger.bind(job_id=job.id, template_id=job.template_id)
        recipient = (job.triggered_by.email or "").strip()
        if not recipient or recipient == "unknown":
            log.debug("failure_email_skipped", reason="no_requester_email")
            return False

        try:
            api_key = await self.settings_store.get_text(SettingKeys.RESEND_API_KEY)
            if not api_key:
                log.warning("failure_email_skipped", reason="resend_api_key_missing")
                return False
            sender = await self.resolve_sender()
            if not sender:
                log.warning("failure_email_skipped", reason="sender_domain_missing")
                return False

            await self.email_client.send(
                api_key=api_key,
                sender=sender,
                to=recipient,
                subject=f"Remote optimize failed to launch ({job.template_name})",
                html=self.render_failure(job, details, stage, log_tail),
            )
        except Exception as exc:
            log.warning("failure_email_send_failed", error=str(exc), error_type=type(exc).__name__)
            return False

        log.info("failure_email_sent", stage=stage)
        return True
