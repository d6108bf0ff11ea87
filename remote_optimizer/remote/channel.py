"""Remote execution channel over SSH/SFTP (paramiko).

Every operation opens its own SSH connection, mirroring how the remote host
is driven one stage at a time. paramiko is blocking, so each operation runs
in a worker thread via asyncio.to_thread().
"""

import asyncio
import codecs
import io
import time
from dataclasses import dataclass

import paramiko
import structlog
from cryptography.hazmat.primitives.asymmetric import ed25519, rsa

from remote_optimizer.core.exceptions import KeyFormatError, RemoteCommandError, SshConnectivityError
from remote_optimizer.remote.ack import AckScanner, append_ack, build_ack_token
from remote_optimizer.remote.keys import (
    OPENSSH_BEGIN,
    encode_openssh_private_key,
    load_private_key,
)

logger = structlog.get_logger(__name__)

SSH_TIMEOUT_SECONDS = 60
COMMAND_OUTPUT_LIMIT = 4000
STRICT_SHELL_PREFIX = "set -euo pipefail; "
_READ_CHUNK = 32768
_POLL_SECONDS = 0.05


@dataclass
class CommandResult:
    stdout: str
    stderr: str
    exit_code: int


@dataclass
class RemoteFileTail:
    content: str
    size: int
    truncated: bool


def trim_command_output(output: str, limit: int = COMMAND_OUTPUT_LIMIT) -> str | None:
    """Keep the last ``limit`` chars of trimmed output; None when empty."""
    trimmed = (output or "").strip()
    if not trimmed:
        return None
    if len(trimmed) <= limit:
        return trimmed
    return f"{trimmed[-limit:]} (truncated)"


def format_command_failure(headline: str, command: str, stdout: str, stderr: str) -> str:
    parts = [headline, f'command="{command}"']
    formatted_stderr = trim_command_output(stderr)
    formatted_stdout = trim_command_output(stdout)
    if formatted_stderr:
        parts.append(f"stderr={formatted_stderr}")
    if formatted_stdout:
        parts.append(f"stdout={formatted_stdout}")
    return "; ".join(parts)


def normalize_log_tail(text: str, max_lines: int) -> str:
    """Convert CRLF to LF and keep only the last ``max_lines`` lines."""
    if not text:
        return ""
    normalized = text.replace("\r\n", "\n")
    lines = normalized.split("\n")
    if len(lines) <= max_lines:
        return normalized.rstrip()
    return "\n".join(lines[-max_lines:])


def load_paramiko_key(private_key: str) -> paramiko.PKey:
    """Turn stored key text into a paramiko key (Ed25519 or RSA)."""
    crypto_key = load_private_key(private_key)
    if isinstance(crypto_key, ed25519.Ed25519PrivateKey):
        text = private_key.strip()
        if not text.startswith(OPENSSH_BEGIN):
            text = encode_openssh_private_key(crypto_key)
        return paramiko.Ed25519Key(file_obj=io.StringIO(text))
    if isinstance(crypto_key, rsa.RSAPrivateKey):
        return paramiko.RSAKey(key=crypto_key)
    raise KeyFormatError("Unsupported SSH key type for remote connections.")


def _answer_blank_prompts(title, instructions, prompt_list):
    return ["" for _ in prompt_list]


def await_ack(
    channel,
    scanner: AckScanner,
    timeout: float,
    clock=time.monotonic,
    sleep=time.sleep,
) -> tuple[str, int | None]:
    """Pump a paramiko channel until the ack token line is seen.

    Returns ``("", None)`` on acknowledgement. Returns the collected stderr and
    the exit code (when known) if the channel closed first. Raises
    ``TimeoutError`` when ``timeout`` elapses without either.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    stderr_chunks: list[bytes] = []
    deadline = clock() + timeout

    while True:
        progressed = False
        if channel.recv_ready():
            data = channel.recv(_READ_CHUNK)
            progressed = True
            if data and scanner.feed(decoder.decode(data)):
                return "", None
        if channel.recv_stderr_ready():
            stderr_chunks.append(channel.recv_stderr(_READ_CHUNK))
            progressed = True

        if not progressed and channel.exit_status_ready():
            if scanner.feed(decoder.decode(b"", final=True)) or scanner.finish():
                return "", None
            stderr = b"".join(stderr_chunks).decode("utf-8", errors="replace")
            return stderr, channel.recv_exit_status()

        if clock() >= deadline:
            raise TimeoutError("Timed out waiting for remote command acknowledgement")
        if not progressed:
            sleep(_POLL_SECONDS)


class RemoteExecutionChannel:
    """Command execution and file transfer against one remote host."""

    def __init__(self, host: str, private_key: str, username: str = "root"):
        if not host:
            raise SshConnectivityError("Remote server connection details are unavailable")
        if not private_key:
            raise SshConnectivityError("Remote optimizer SSH key is unavailable")
        self.host = host
        self.username = username
        self._private_key = private_key
        self._log = logger.bind(host=host)

    # ──────────────────────────────────────────────────────────────────────────
    # Connection
    # ──────────────────────────────────────────────────────────────────────────

    def _connect(self) -> paramiko.SSHClient:
        pkey = load_paramiko_key(self._private_key)
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                self.host,
                username=self.username,
                pkey=pkey,
                timeout=SSH_TIMEOUT_SECONDS,
                banner_timeout=SSH_TIMEOUT_SECONDS,
                auth_timeout=SSH_TIMEOUT_SECONDS,
                allow_agent=False,
                look_for_keys=False,
            )
        except paramiko.AuthenticationException as exc:
            transport = client.get_transport()
            if transport is None or not transport.is_active():
                client.close()
                raise SshConnectivityError(f"SSH authentication failed for {self.host}: {exc}") from exc
            try:
                transport.auth_interactive(self.username, _answer_blank_prompts)
            except (paramiko.SSHException, OSError) as interactive_exc:
                client.close()
                raise SshConnectivityError(
                    f"SSH authentication failed for {self.host}: {interactive_exc}"
                ) from interactive_exc
        except (paramiko.SSHException, OSError) as exc:
            client.close()
            raise SshConnectivityError(f"SSH connection to {self.host} failed: {exc}") from exc
        return client

    # ──────────────────────────────────────────────────────────────────────────
    # Commands
    # ──────────────────────────────────────────────────────────────────────────

    async def run(self, command: str) -> CommandResult:
        """Run a command under strict shell mode; non-zero exit raises RemoteCommandError."""
        return await asyncio.to_thread(self._run_sync, command)

    def _run_sync(self, command: str) -> CommandResult:
        try:
            client = self._connect()
        except SshConnectivityError as exc:
            raise SshConnectivityError(f'SSH connection error during command "{command}": {exc}') from exc

        try:
            _stdin, stdout, stderr = client.exec_command(f"{STRICT_SHELL_PREFIX}{command}")
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            exit_code = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as exc:
            raise SshConnectivityError(f'SSH connection error during command "{command}": {exc}') from exc
        finally:
            client.close()

        if exit_code == -1:
            exit_code = 0
        if exit_code != 0:
            self._log.warning(
                "remote_command_failed",
                command=command,
                exit_code=exit_code,
                stdout=trim_command_output(out),
                stderr=trim_command_output(err),
            )
            raise RemoteCommandError(
                format_command_failure(
                    f"Remote command failed with exit code {exit_code}", command, out, err
                ),
                command=command,
                exit_code=exit_code,
                stdout=out,
                stderr=err,
            )
        return CommandResult(stdout=out, stderr=err, exit_code=exit_code)

    async def run_detached(self, command: str, ack_timeout: float = SSH_TIMEOUT_SECONDS) -> None:
        """Launch a command that backgrounds itself and wait for the launch ack.

        Returns as soon as the ack token is seen; the remote process keeps
        running after the session is closed.
        """
        await asyncio.to_thread(self._run_detached_sync, command, ack_timeout)

    def _run_detached_sync(self, command: str, ack_timeout: float) -> None:
        display = " && ".join(part.strip() for part in command.split("\n") if part.strip())
        token = build_ack_token()
        scanner = AckScanner(token)

        try:
            client = self._connect()
        except SshConnectivityError as exc:
            raise RemoteCommandError(
                format_command_failure(f"SSH connection error: {exc}", display, "", ""),
                command=display,
            ) from exc

        try:
            channel = client.get_transport().open_session()
            channel.exec_command(f"{STRICT_SHELL_PREFIX}{append_ack(command, token)}")
            stderr, exit_code = await_ack(channel, scanner, ack_timeout)
        except TimeoutError as exc:
            raise RemoteCommandError(
                format_command_failure(str(exc), display, scanner.output, ""),
                command=display,
                stdout=scanner.output,
            ) from exc
        except (paramiko.SSHException, OSError) as exc:
            raise RemoteCommandError(
                format_command_failure(f"SSH connection error: {exc}", display, scanner.output, ""),
                command=display,
                stdout=scanner.output,
            ) from exc
        finally:
            client.close()

        if scanner.acknowledged:
            self._log.debug("remote_command_acknowledged", command=display)
            return

        headline = "Remote command exited before acknowledgement"
        if exit_code is not None:
            headline = f"{headline} (exit code {exit_code})"
        self._log.warning("remote_command_not_acknowledged", command=display, exit_code=exit_code)
        raise RemoteCommandError(
            format_command_failure(headline, display, scanner.output, stderr),
            command=display,
            exit_code=exit_code,
            stdout=scanner.output,
            stderr=stderr,
        )

    # ──────────────────────────────────────────────────────────────────────────
    # Files
    # ──────────────────────────────────────────────────────────────────────────

    async def upload(self, local_path: str, remote_path: str) -> None:
        await asyncio.to_thread(self._upload_sync, str(local_path), remote_path)

    def _upload_sync(self, local_path: str, remote_path: str) -> None:
        client = self._connect()
        try:
            with client.open_sftp() as sftp:
                sftp.put(local_path, remote_path)
        except (paramiko.SSHException, OSError) as exc:
            raise SshConnectivityError(f"Failed to upload {local_path} to {remote_path}: {exc}") from exc
        finally:
            client.close()

    async def read_tail(self, remote_path: str, max_bytes: int) -> RemoteFileTail | None:
        """Read at most the last ``max_bytes`` of a remote file; None if it is missing."""
        return await asyncio.to_thread(self._read_tail_sync, remote_path, max_bytes)

    def _read_tail_sync(self, remote_path: str, max_bytes: int) -> RemoteFileTail | None:
        client = self._connect()
        try:
            with client.open_sftp() as sftp:
                return read_tail_from_sftp(sftp, remote_path, max_bytes)
        except (paramiko.SSHException, OSError) as exc:
            raise SshConnectivityError(f"Failed to read {remote_path}: {exc}") from exc
        finally:
            client.close()


def read_tail_from_sftp(sftp, remote_path: str, max_bytes: int) -> RemoteFileTail | None:
    try:
        stats = sftp.stat(remote_path)
    except FileNotFoundError:
        return None

    size = int(stats.st_size or 0)
    if size <= 0:
        return RemoteFileTail(content="", size=0, truncated=False)

    start = max(0, size - max(1, int(max_bytes)))
    with sftp.open(remote_path, "rb") as handle:
        handle.seek(start)
        data = handle.read(size - start)
    return RemoteFileTail(
        content=data.decode("utf-8", errors="replace"),
        size=size,
        truncated=start > 0,
    )
