"""Shared test fixtures for all test groups."""

from pathlib import Path

import pytest
from remote_optimizer.core.config import Settings
from remote_optimizer.db.base import build_engine, build_session_factory, create_tables
from remote_optimizer.db.repos.remote_jobs import RemoteJobRepository
from remote_optimizer.db.repos.settings_store import SettingsStore


@pytest.fixture
async def session_factory(tmp_path: Path):
    """File-backed SQLite database with all tables created."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'optimizer.db'}")
    await create_tables(engine)

    yield build_session_factory(engine)

    await engine.dispose()


@pytest.fixture
def repository(session_factory) -> RemoteJobRepository:
    return RemoteJobRepository(session_factory)


@pytest.fixture
def settings_store(session_factory) -> SettingsStore:
    return SettingsStore(session_factory)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with every wait shortened so driver tests finish instantly."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'optimizer.db'}",
        repo_root=tmp_path / "repo",
        work_dir=tmp_path / "work",
        persist_debounce_seconds=0.01,
        server_ip_poll_interval_seconds=0,
        server_ip_timeout_seconds=5,
        ssh_poll_interval_seconds=0,
        ssh_wait_timeout_seconds=5,
        ack_timeout_seconds=1,
        market_data_wait_interval_seconds=0,
        mtls_dir=tmp_path / "mtls",
    )


@pytest.fixture
def repo_root(settings: Settings) -> Path:
    """Minimal source tree: an engine crate plus the market data snapshot."""
    root = Path(settings.repo_root)
    (root / "engine" / "src").mkdir(parents=True)
    (root / "engine" / "Cargo.toml").write_text('[package]\nname = "engine"\n')
    (root / "engine" / "src" / "main.rs").write_text("fn main() {}\n")
    (root / "data").mkdir()
    (root / "data" / "market-data.bin").write_bytes(b"\x00\x01market")
    Path(settings.work_dir).mkdir(parents=True, exist_ok=True)
    return root
