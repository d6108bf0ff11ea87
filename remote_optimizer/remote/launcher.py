"""Remote filesystem layout, the generated launcher script, and the shell commands around it."""

import os
from dataclasses import asdict, dataclass
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, StrictUndefined

from remote_optimizer.services.artifacts import MARKET_DATA_FILENAME

TEMPLATE_DIR = Path(__file__).parent / "templates"

REMOTE_WORKSPACE_DIR = "/root/stratcraft"
REMOTE_ENGINE_DIR = f"{REMOTE_WORKSPACE_DIR}/engine"
REMOTE_DATA_DIR = f"{REMOTE_WORKSPACE_DIR}/data"
REMOTE_MARKET_DATA_PATH = f"{REMOTE_DATA_DIR}/{MARKET_DATA_FILENAME}"
REMOTE_ENGINE_ARCHIVE_PATH = "/tmp/engine.tar.gz"
REMOTE_SCRIPT_PATH = "/root/remote-optimize.sh"
REMOTE_LOG_PATH = "/root/remote-optimize.log"
REMOTE_STATUS_PATH = "/root/remote-optimize-status.json"
REMOTE_PID_PATH = "/root/remote-optimize.pid"


def shell_escape(value) -> str:
    """Escape a value for a double-quoted bash string."""
    if value is None:
        return ""
    text = str(value)
    for char in ("\\", '"', "$", "`"):
        text = text.replace(char, f"\\{char}")
    return text


@dataclass
class LaunchScriptContext:
    site_name: str
    template_id: str
    template_name: str
    job_id: str
    email_to: str
    email_from: str
    resend_api_key: str
    resend_api_url: str
    hetzner_api_base_url: str
    hetzner_token: str
    hetzner_server_id: str
    mtls_ca_cert: str = ""
    mtls_client_cert: str = ""
    mtls_client_key: str = ""
    engine_dir: str = REMOTE_ENGINE_DIR
    data_dir: str = REMOTE_DATA_DIR
    log_file: str = REMOTE_LOG_PATH
    status_file: str = REMOTE_STATUS_PATH
    market_data_filename: str = MARKET_DATA_FILENAME


_env = Environment(
    loader=FileSystemLoader(str(TEMPLATE_DIR)),
    keep_trailing_newline=True,
    undefined=StrictUndefined,
)
_env.filters["shell_escape"] = shell_escape


def render_launch_script(context: LaunchScriptContext) -> str:
    return _env.get_template("remote_optimize.sh.j2").render(**asdict(context))


def write_launch_script(path: Path, content: str) -> Path:
    path = Path(path)
    path.write_text(content, encoding="utf-8")
    os.chmod(path, 0o755)
    return path


def build_extract_command() -> str:
    return " && ".join(
        [
            f"mkdir -p {REMOTE_WORKSPACE_DIR}",
            f"rm -rf {REMOTE_ENGINE_DIR}",
            f"tar -xzf {REMOTE_ENGINE_ARCHIVE_PATH} -C {REMOTE_WORKSPACE_DIR}",
            f"rm -f {REMOTE_ENGINE_ARCHIVE_PATH}",
        ]
    )


def build_launch_command() -> str:
    """Start the script under nohup, detached from the SSH session, and record its PID."""
    return "\n".join(
        [
            "cd /root",
            f"touch {REMOTE_LOG_PATH}",
            f"chmod 600 {REMOTE_LOG_PATH} || true",
            f"printf '%s\\n' \"[$(date -Iseconds)] Remote optimizer log initialized\" >> {REMOTE_LOG_PATH}",
            f"nohup bash {REMOTE_SCRIPT_PATH} >> {REMOTE_LOG_PATH} 2>&1 < /dev/null &",
            "PID=$!",
            f"printf '%s\\n' \"$PID\" > {REMOTE_PID_PATH}",
        ]
    )
