"""mTLS client bundle installed on the remote host for certificate-locked API callbacks."""

import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

from remote_optimizer.core.exceptions import LocalArtifactError
from remote_optimizer.remote.channel import RemoteExecutionChannel

REMOTE_MTLS_DIR = "/root/.stratcraft-api-mtls"
REMOTE_CA_CERT_PATH = f"{REMOTE_MTLS_DIR}/ca.crt"
REMOTE_CLIENT_CERT_PATH = f"{REMOTE_MTLS_DIR}/client.crt"
REMOTE_CLIENT_KEY_PATH = f"{REMOTE_MTLS_DIR}/client.key"


@dataclass
class RemoteMtlsConfig:
    enabled: bool = False
    ca_cert_path: str = ""
    client_cert_path: str = ""
    client_key_path: str = ""


@dataclass
class LocalMtlsBundle:
    ca_cert: Path
    client_cert: Path
    client_key: Path


def ensure_readable_file(path: Path, description: str) -> None:
    if not path.is_file() or not os.access(path, os.R_OK):
        raise LocalArtifactError(f"{description} is required at {path} but was not found or is unreadable.")


class MtlsBootstrap:
    """Looks up the lockdown state and ships the client bundle when it is on."""

    def __init__(self, local_dir: Path, lockdown_probe: Callable[[], Awaitable[bool]]) -> None:
        self.local_dir = Path(local_dir)
        self._lockdown_probe = lockdown_probe

    async def lockdown_enabled(self) -> bool:
        return await self._lockdown_probe()

    def local_bundle(self) -> LocalMtlsBundle:
        bundle = LocalMtlsBundle(
            ca_cert=self.local_dir / "ca.crt",
            client_cert=self.local_dir / "client.crt",
            client_key=self.local_dir / "client.key",
        )
        ensure_readable_file(bundle.ca_cert, "mTLS CA certificate")
        ensure_readable_file(bundle.client_cert, "mTLS client certificate")
        ensure_readable_file(bundle.client_key, "mTLS client key")
        return bundle

    async def upload(self, channel: RemoteExecutionChannel, bundle: LocalMtlsBundle) -> RemoteMtlsConfig:
        await channel.run(f"mkdir -p {REMOTE_MTLS_DIR} && chmod 700 {REMOTE_MTLS_DIR}")
        await channel.upload(str(bundle.ca_cert), REMOTE_CA_CERT_PATH)
        await channel.upload(str(bundle.client_cert), REMOTE_CLIENT_CERT_PATH)
        await channel.upload(str(bundle.client_key), REMOTE_CLIENT_KEY_PATH)
        await channel.run(f"chmod 600 {REMOTE_CA_CERT_PATH} {REMOTE_CLIENT_CERT_PATH} {REMOTE_CLIENT_KEY_PATH}")
        return RemoteMtlsConfig(
            enabled=True,
            ca_cert_path=REMOTE_CA_CERT_PATH,
            client_cert_path=REMOTE_CLIENT_CERT_PATH,
            client_key_path=REMOTE_CLIENT_KEY_PATH,
        )
