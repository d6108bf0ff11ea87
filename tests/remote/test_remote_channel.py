"""Tests for the SSH channel helpers: ack pump, tail reads, command failures."""

import io
from unittest.mock import MagicMock, patch

import paramiko
import pytest

from remote_optimizer.core.exceptions import RemoteCommandError, SshConnectivityError
from remote_optimizer.remote.ack import AckScanner
from remote_optimizer.remote.channel import (
    COMMAND_OUTPUT_LIMIT,
    STRICT_SHELL_PREFIX,
    RemoteExecutionChannel,
    await_ack,
    format_command_failure,
    load_paramiko_key,
    normalize_log_tail,
    read_tail_from_sftp,
    trim_command_output,
)
from remote_optimizer.remote.keys import generate_key_pair

pytestmark = pytest.mark.unit

TOKEN = "__SC_REMOTE_OPT_ACK__abc_12345678"


class FakeSessionChannel:
    """Replays scripted stdout/stderr chunks like a paramiko Channel."""

    def __init__(self, stdout: list[bytes], stderr: list[bytes] | None = None, exit_code: int | None = 0):
        self._stdout = list(stdout)
        self._stderr = list(stderr or [])
        self._exit_code = exit_code

    def recv_ready(self) -> bool:
        return bool(self._stdout)

    def recv(self, size: int) -> bytes:
        return self._stdout.pop(0)

    def recv_stderr_ready(self) -> bool:
        return bool(self._stderr)

    def recv_stderr(self, size: int) -> bytes:
        return self._stderr.pop(0)

    def exit_status_ready(self) -> bool:
        return self._exit_code is not None and not self._stdout and not self._stderr

    def recv_exit_status(self) -> int:
        return self._exit_code


class FakeSftp:
    def __init__(self, files: dict[str, bytes]):
        self.files = files

    def stat(self, path: str):
        if path not in self.files:
            raise FileNotFoundError(path)
        return MagicMock(st_size=len(self.files[path]))

    def open(self, path: str, mode: str = "rb"):
        return io.BytesIO(self.files[path])


# ---------------------------------------------------------------------------
# Ack pump
# ---------------------------------------------------------------------------


def test_await_ack_returns_on_token_line() -> None:
    channel = FakeSessionChannel([b"setting up\n", f"{TOKEN}\n".encode()], exit_code=None)
    scanner = AckScanner(TOKEN)

    assert await_ack(channel, scanner, timeout=5, sleep=lambda _: None) == ("", None)
    assert scanner.acknowledged


def test_await_ack_reports_exit_before_token() -> None:
    channel = FakeSessionChannel([b"oops\n"], stderr=[b"bash: nohup: not found\n"], exit_code=127)
    scanner = AckScanner(TOKEN)

    stderr, exit_code = await_ack(channel, scanner, timeout=5, sleep=lambda _: None)

    assert exit_code == 127
    assert "nohup: not found" in stderr
    assert not scanner.acknowledged


def test_await_ack_accepts_unterminated_token_at_close() -> None:
    channel = FakeSessionChannel([TOKEN.encode()], exit_code=0)

    assert await_ack(channel, AckScanner(TOKEN), timeout=5, sleep=lambda _: None) == ("", None)


def test_await_ack_times_out() -> None:
    ticks = iter([0.0, 0.5, 1.0, 1.5, 2.0])
    channel = FakeSessionChannel([], exit_code=None)

    with pytest.raises(TimeoutError, match="acknowledgement"):
        await_ack(channel, AckScanner(TOKEN), timeout=1.0, clock=lambda: next(ticks), sleep=lambda _: None)


# ---------------------------------------------------------------------------
# Tail reads
# ---------------------------------------------------------------------------


def test_tail_of_file_larger_than_window() -> None:
    sftp = FakeSftp({"/root/remote-optimize.log": b"0123456789"})

    tail = read_tail_from_sftp(sftp, "/root/remote-optimize.log", 4)

    assert tail.content == "6789"
    assert tail.size == 10
    assert tail.truncated is True


def test_tail_of_file_smaller_than_window() -> None:
    sftp = FakeSftp({"/root/remote-optimize.log": b"hello\n"})

    tail = read_tail_from_sftp(sftp, "/root/remote-optimize.log", 4096)

    assert tail.content == "hello\n"
    assert tail.size == 6
    assert tail.truncated is False


def test_tail_of_empty_file() -> None:
    sftp = FakeSftp({"/root/remote-optimize.log": b""})

    tail = read_tail_from_sftp(sftp, "/root/remote-optimize.log", 4096)

    assert (tail.content, tail.size, tail.truncated) == ("", 0, False)


def test_tail_of_missing_file_is_none() -> None:
    assert read_tail_from_sftp(FakeSftp({}), "/root/remote-optimize.log", 4096) is None


def test_normalize_log_tail_keeps_last_lines() -> None:
    assert normalize_log_tail("a\r\nb\r\nc\r\nd", 2) == "c\nd"
    assert normalize_log_tail("a\nb\n", 10) == "a\nb"
    assert normalize_log_tail("", 10) == ""


# ---------------------------------------------------------------------------
# Failure formatting
# ---------------------------------------------------------------------------


def test_trim_command_output_keeps_tail() -> None:
    long_output = "x" * (COMMAND_OUTPUT_LIMIT + 10)

    trimmed = trim_command_output(long_output)

    assert trimmed.endswith(" (truncated)")
    assert len(trimmed) == COMMAND_OUTPUT_LIMIT + len(" (truncated)")
    assert trim_command_output("  \n") is None


def test_format_command_failure_includes_streams() -> None:
    message = format_command_failure("Remote command failed with exit code 2", "ls /nope", "", "no such file\n")

    assert message == 'Remote command failed with exit code 2; command="ls /nope"; stderr=no such file'


# ---------------------------------------------------------------------------
# Channel
# ---------------------------------------------------------------------------


def test_channel_requires_host_and_key() -> None:
    with pytest.raises(SshConnectivityError):
        RemoteExecutionChannel("", "key")
    with pytest.raises(SshConnectivityError):
        RemoteExecutionChannel("203.0.113.5", "")


def test_load_paramiko_key_accepts_generated_key() -> None:
    private_text, public_line = generate_key_pair()

    pkey = load_paramiko_key(private_text)

    assert isinstance(pkey, paramiko.Ed25519Key)
    assert public_line.split()[1] == pkey.get_base64()


def _client_with_exec(stdout: bytes, stderr: bytes, exit_code: int) -> MagicMock:
    client = MagicMock()
    out = MagicMock()
    out.read.return_value = stdout
    out.channel.recv_exit_status.return_value = exit_code
    err = MagicMock()
    err.read.return_value = stderr
    client.exec_command.return_value = (MagicMock(), out, err)
    return client


async def test_run_uses_strict_shell_and_returns_output() -> None:
    channel = RemoteExecutionChannel("203.0.113.5", "key")
    client = _client_with_exec(b"ok\n", b"", 0)

    with patch.object(channel, "_connect", return_value=client):
        result = await channel.run("uname -a")

    client.exec_command.assert_called_once_with(f"{STRICT_SHELL_PREFIX}uname -a")
    client.close.assert_called_once()
    assert result.stdout == "ok\n"
    assert result.exit_code == 0


async def test_run_treats_missing_exit_status_as_success() -> None:
    channel = RemoteExecutionChannel("203.0.113.5", "key")

    with patch.object(channel, "_connect", return_value=_client_with_exec(b"", b"", -1)):
        result = await channel.run("true")

    assert result.exit_code == 0


async def test_run_raises_on_non_zero_exit() -> None:
    channel = RemoteExecutionChannel("203.0.113.5", "key")

    with patch.object(channel, "_connect", return_value=_client_with_exec(b"", b"denied\n", 2)):
        with pytest.raises(RemoteCommandError) as exc_info:
            await channel.run("cat /secret")

    assert exc_info.value.exit_code == 2
    assert str(exc_info.value).startswith("Remote command failed with exit code 2")
    assert "stderr=denied" in str(exc_info.value)


async def test_run_wraps_connection_errors_with_command() -> None:
    channel = RemoteExecutionChannel("203.0.113.5", "key")

    with patch.object(channel, "_connect", side_effect=SshConnectivityError("refused")):
        with pytest.raises(SshConnectivityError, match='during command "exit 0"'):
            await channel.run("exit 0")


def _acknowledge(channel, scanner, timeout):
    scanner.feed(f"{TOKEN}\n")
    return "", None


async def test_run_detached_succeeds_on_ack() -> None:
    channel = RemoteExecutionChannel("203.0.113.5", "key")
    client = MagicMock()
    session = client.get_transport.return_value.open_session.return_value

    with (
        patch.object(channel, "_connect", return_value=client),
        patch("remote_optimizer.remote.channel.build_ack_token", return_value=TOKEN),
        patch("remote_optimizer.remote.channel.await_ack", side_effect=_acknowledge),
    ):
        await channel.run_detached("cd /root\nnohup bash x.sh &")

    sent = session.exec_command.call_args[0][0]
    assert sent.startswith(STRICT_SHELL_PREFIX)
    assert sent.endswith(f"printf '%s\\n' '{TOKEN}'\n")
    client.close.assert_called_once()


async def test_run_detached_reports_exit_without_ack() -> None:
    channel = RemoteExecutionChannel("203.0.113.5", "key")

    with (
        patch.object(channel, "_connect", return_value=MagicMock()),
        patch("remote_optimizer.remote.channel.await_ack", return_value=("boom", 1)),
    ):
        with pytest.raises(RemoteCommandError) as exc_info:
            await channel.run_detached("cd /root\nfalse")

    message = str(exc_info.value)
    assert message.startswith("Remote command exited before acknowledgement (exit code 1)")
    assert 'command="cd /root && false"' in message
    assert exc_info.value.exit_code == 1


async def test_run_detached_reports_timeout() -> None:
    channel = RemoteExecutionChannel("203.0.113.5", "key")

    with (
        patch.object(channel, "_connect", return_value=MagicMock()),
        patch(
            "remote_optimizer.remote.channel.await_ack",
            side_effect=TimeoutError("Timed out waiting for remote command acknowledgement"),
        ),
    ):
        with pytest.raises(RemoteCommandError, match="Timed out waiting"):
            await channel.run_detached("sleep 100")
