"""Hetzner Cloud API client: create, inspect, and delete the per-job VM.

This module provides:
- HetznerClient: thin async wrapper over the /servers endpoints (httpx)
- build_server_name: DNS-safe server names derived from the template id
- build_cloud_init: user data that hardens sshd to key-only root login
"""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal

import httpx
import structlog
from tenacity import AsyncRetrying, RetryError, retry_if_result, stop_after_delay, wait_fixed

from remote_optimizer.core.exceptions import ProvisioningError

logger = structlog.get_logger(__name__)

DEFAULT_BASE_URL = "https://api.hetzner.cloud/v1"
DEFAULT_TIMEOUT_SECONDS = 30.0
SERVER_NAME_MAX_LENGTH = 63

DeleteResult = Literal["deleted", "missing"]
ServerState = Literal["running", "missing", "unresponsive", "unknown"]


@dataclass
class HetznerServer:
    id: int
    name: str
    status: str
    public_ipv4: str | None = None

    @property
    def is_ready(self) -> bool:
        return self.status == "running" and bool(self.public_ipv4)

    @classmethod
    def from_api(cls, payload: dict) -> "HetznerServer":
        ipv4 = ((payload.get("public_net") or {}).get("ipv4") or {}).get("ip")
        return cls(
            id=int(payload["id"]),
            name=payload.get("name", ""),
            status=payload.get("status", ""),
            public_ipv4=ipv4 or None,
        )


def describe_response(response: httpx.Response) -> str:
    return f"status={response.status_code} body={response.text}"


def build_server_name(template_id: str, now: datetime | None = None) -> str:
    """Build ``sc-<template>-<epoch ms>`` restricted to ``[a-z0-9.-]``, at most 63 chars."""
    now = now or datetime.now(timezone.utc)
    epoch_ms = int(now.timestamp() * 1000)
    fallback = f"sc-{epoch_ms}"

    name = f"sc-{template_id}-{epoch_ms}".lower()
    name = re.sub(r"[^a-z0-9.-]", "-", name)
    name = re.sub(r"-+", "-", name).strip("-")
    if not name:
        return fallback
    if len(name) > SERVER_NAME_MAX_LENGTH:
        name = name[:SERVER_NAME_MAX_LENGTH].rstrip("-")
    return name or fallback


def build_cloud_init() -> str:
    """cloud-config that disables password logins and clears the root password."""
    return (
        "#cloud-config\n"
        "write_files:\n"
        "  - path: /etc/ssh/sshd_config.d/99-stratcraft.conf\n"
        "    permissions: '0644'\n"
        "    content: |\n"
        "      PermitRootLogin prohibit-password\n"
        "      PasswordAuthentication no\n"
        "      ChallengeResponseAuthentication no\n"
        "runcmd:\n"
        "  - systemctl reload ssh || systemctl reload sshd\n"
        "  - passwd -d root || true\n"
    )


class HetznerClient:
    """Client for the Hetzner Cloud /servers API.

    The bearer token lives in the settings table and can change between jobs,
    so it is applied with set_token() rather than fixed at construction.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)
        self.token: str | None = None

    def set_token(self, token: str | None) -> None:
        self.token = token or None
        if self.token:
            self._client.headers["Authorization"] = f"Bearer {self.token}"
        else:
            self._client.headers.pop("Authorization", None)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def create_server(
        self,
        name: str,
        server_type: str,
        location: str,
        image: str,
        user_data: str,
        labels: dict[str, str],
        ssh_keys: list[str] | None = None,
    ) -> HetznerServer:
        payload = {
            "name": name,
            "server_type": server_type,
            "image": image,
            "location": location,
            "user_data": user_data,
            "labels": labels,
        }
        if ssh_keys:
            payload["ssh_keys"] = ssh_keys

        try:
            response = await self._client.post("/servers", json=payload)
        except httpx.HTTPError as exc:
            raise ProvisioningError(f"Failed to create Hetzner server {name}: {exc}") from exc
        if response.is_error:
            raise ProvisioningError(
                f"Failed to create Hetzner server {name}: {describe_response(response)}",
                status_code=response.status_code,
                body=response.text,
            )

        server = HetznerServer.from_api(response.json()["server"])
        logger.info("hetzner_server_created", hetzner_server_id=server.id, name=name)
        return server

    async def get_server(self, server_id: int) -> HetznerServer:
        try:
            response = await self._client.get(f"/servers/{server_id}")
        except httpx.HTTPError as exc:
            raise ProvisioningError(f"Failed to load Hetzner server {server_id}: {exc}") from exc
        if response.is_error:
            raise ProvisioningError(
                f"Failed to load Hetzner server {server_id}: {describe_response(response)}",
                status_code=response.status_code,
                body=response.text,
            )
        return HetznerServer.from_api(response.json()["server"])

    async def delete_server(self, server_id: int) -> DeleteResult:
        """Delete a server. A 404 means it is already gone and is not an error."""
        try:
            response = await self._client.delete(f"/servers/{server_id}")
        except httpx.HTTPError as exc:
            raise ProvisioningError(f"Failed to delete Hetzner server {server_id}: {exc}") from exc
        if response.status_code == 404:
            return "missing"
        if response.is_error:
            raise ProvisioningError(
                f"Failed to delete Hetzner server {server_id}: {describe_response(response)}",
                status_code=response.status_code,
                body=response.text,
            )
        return "deleted"

    async def lookup_server_state(self, server_id: int) -> ServerState:
        """Classify a server for reconciliation. Lookup errors map to ``unknown``."""
        try:
            response = await self._client.get(f"/servers/{server_id}")
        except httpx.HTTPError as exc:
            logger.warning("hetzner_server_lookup_failed", hetzner_server_id=server_id, error=str(exc))
            return "unknown"

        if response.status_code == 404:
            return "missing"
        if response.is_error:
            logger.warning(
                "hetzner_server_lookup_failed",
                hetzner_server_id=server_id,
                error=describe_response(response),
            )
            return "unknown"

        try:
            payload = response.json().get("server")
        except ValueError:
            logger.warning("hetzner_server_lookup_unparseable", hetzner_server_id=server_id)
            return "unknown"
        if not payload:
            return "missing"
        if HetznerServer.from_api(payload).is_ready:
            return "running"
        return "unresponsive"

    async def wait_until_ready(
        self,
        server_id: int,
        poll_interval: float = 5.0,
        timeout: float = 10 * 60,
    ) -> HetznerServer:
        """Poll until the server is running with a public IPv4 address.

        Lookup errors are raised immediately; only "not ready yet" is retried.
        """
        retryer = AsyncRetrying(
            retry=retry_if_result(lambda server: not server.is_ready),
            stop=stop_after_delay(timeout),
            wait=wait_fixed(poll_interval),
        )
        try:
            return await retryer(self.get_server, server_id)
        except RetryError as exc:
            raise ProvisioningError(f"Timed out waiting for server {server_id} to become ready") from exc
