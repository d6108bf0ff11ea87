"""Tests for the generated launcher script and the commands around it."""

import os
import stat

import pytest

from remote_optimizer.remote.launcher import (
    REMOTE_ENGINE_ARCHIVE_PATH,
    REMOTE_LOG_PATH,
    REMOTE_PID_PATH,
    REMOTE_SCRIPT_PATH,
    LaunchScriptContext,
    build_extract_command,
    build_launch_command,
    render_launch_script,
    shell_escape,
    write_launch_script,
)

pytestmark = pytest.mark.unit


def _context(**overrides) -> LaunchScriptContext:
    values = dict(
        site_name="StratCraft",
        template_id="momentum-v3",
        template_name="Momentum v3",
        job_id="job-1",
        email_to="ops@example.com",
        email_from="Remote Optimizer <noreply@example.com>",
        resend_api_key="re_123",
        resend_api_url="https://api.resend.com/emails",
        hetzner_api_base_url="https://api.hetzner.cloud/v1",
        hetzner_token="tok",
        hetzner_server_id="42",
    )
    values.update(overrides)
    return LaunchScriptContext(**values)


def test_shell_escape_handles_special_characters() -> None:
    assert shell_escape('a"b$c`d\\e') == 'a\\"b\\$c\\`d\\\\e'
    assert shell_escape(None) == ""
    assert shell_escape(42) == "42"


def test_script_embeds_job_values() -> None:
    script = render_launch_script(_context())

    assert script.startswith("#!/usr/bin/env bash\n")
    assert 'TEMPLATE_ID="momentum-v3"' in script
    assert 'HETZNER_SERVER_ID="42"' in script
    assert 'EMAIL_FROM="Remote Optimizer <noreply@example.com>"' in script


def test_script_escapes_untrusted_template_name() -> None:
    script = render_launch_script(_context(template_name='x"; rm -rf / #$(id)'))

    assert 'TEMPLATE_NAME="x\\"; rm -rf / #\\$(id)"' in script


def test_script_leaves_mtls_paths_empty_when_disabled() -> None:
    script = render_launch_script(_context())

    assert 'BACKTEST_API_MTLS_CA_CERT=""' in script


def test_write_launch_script_is_executable(tmp_path) -> None:
    path = write_launch_script(tmp_path / "remote-optimize.sh", "#!/usr/bin/env bash\n")

    assert stat.S_IMODE(os.stat(path).st_mode) == 0o755


def test_extract_command_replaces_engine_dir() -> None:
    command = build_extract_command()

    assert f"tar -xzf {REMOTE_ENGINE_ARCHIVE_PATH}" in command
    assert command.index("rm -rf") < command.index("tar -xzf")


def test_launch_command_detaches_and_records_pid() -> None:
    command = build_launch_command()

    assert f"nohup bash {REMOTE_SCRIPT_PATH} >> {REMOTE_LOG_PATH} 2>&1 < /dev/null &" in command
    assert command.splitlines()[-1] == f"printf '%s\\n' \"$PID\" > {REMOTE_PID_PATH}"
