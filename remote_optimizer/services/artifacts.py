"""Local artifacts shipped to the remote host: engine archive and market data snapshot."""

import os
import tarfile
from collections.abc import Awaitable, Callable
from pathlib import Path

from remote_optimizer.core.exceptions import LocalArtifactError

ENGINE_DIRNAME = "engine"
MARKET_DATA_FILENAME = "market-data.bin"
EXCLUDED_PREFIXES = ("engine/vendor", "engine/target")

# Returns True while a market-data export job is running or due to run
PendingJobProbe = Callable[[], Awaitable[bool]]


async def no_pending_jobs() -> bool:
    return False


def is_excluded_prefix(arcname: str) -> bool:
    return any(arcname == prefix or arcname.startswith(f"{prefix}/") for prefix in EXCLUDED_PREFIXES)


def is_nohup_output(basename: str) -> bool:
    return basename == "nohup.out" or basename.startswith("nohup.out.")


def market_data_snapshot_path(repo_root: Path) -> Path:
    return Path(repo_root) / "data" / MARKET_DATA_FILENAME


def ensure_market_data_snapshot(snapshot_path: Path) -> None:
    if not snapshot_path.is_file() or not os.access(snapshot_path, os.R_OK):
        raise LocalArtifactError(
            f"Market data snapshot missing at {snapshot_path}. "
            "Generate it with export-market-data before creating a remote optimizer."
        )


def create_engine_archive(
    repo_root: Path,
    archive_path: Path,
    on_skip: Callable[[str], None] | None = None,
) -> Path:
    """Write ``<repo_root>/engine`` to a gzipped tarball rooted at ``engine/``.

    Build output and vendored sources are left out, as are stray nohup logs
    (reported through ``on_skip``). Ownership and mtimes are zeroed so the
    archive only changes when the sources do.
    """
    engine_root = Path(repo_root) / ENGINE_DIRNAME
    if not engine_root.is_dir() or not os.access(engine_root, os.R_OK):
        raise LocalArtifactError(f"Engine directory missing at {engine_root}")

    def _filter(info: tarfile.TarInfo) -> tarfile.TarInfo | None:
        name = info.name.replace("\\", "/")
        if is_excluded_prefix(name):
            return None
        if is_nohup_output(name.rsplit("/", 1)[-1]):
            if on_skip is not None:
                on_skip(name)
            return None
        info.mtime = 0
        info.uid = info.gid = 0
        info.uname = info.gname = ""
        return info

    with tarfile.open(archive_path, "w:gz") as tar:
        tar.add(engine_root, arcname=ENGINE_DIRNAME, filter=_filter)
    return Path(archive_path)
