"""Tests for the engine archive and market data snapshot checks."""

import tarfile

import pytest

from remote_optimizer.core.exceptions import LocalArtifactError
from remote_optimizer.services.artifacts import (
    create_engine_archive,
    ensure_market_data_snapshot,
    market_data_snapshot_path,
)

pytestmark = pytest.mark.unit


def test_archive_is_rooted_at_engine_and_skips_build_output(tmp_path) -> None:
    engine = tmp_path / "engine"
    (engine / "src").mkdir(parents=True)
    (engine / "src" / "lib.rs").write_text("pub fn f() {}\n")
    (engine / "target" / "release").mkdir(parents=True)
    (engine / "target" / "release" / "engine").write_bytes(b"bin")
    (engine / "vendor").mkdir()
    (engine / "vendor" / "crate.rs").write_text("")
    (engine / "nohup.out").write_text("old log")
    (engine / "src" / "nohup.out.1").write_text("older log")
    skipped: list[str] = []

    archive = create_engine_archive(tmp_path, tmp_path / "engine.tar.gz", skipped.append)

    with tarfile.open(archive, "r:gz") as tar:
        names = set(tar.getnames())
        members = tar.getmembers()
    assert "engine/src/lib.rs" in names
    assert not any(name.startswith(("engine/target", "engine/vendor")) for name in names)
    assert not any("nohup.out" in name for name in names)
    assert sorted(skipped) == ["engine/nohup.out", "engine/src/nohup.out.1"]
    assert all(member.mtime == 0 and member.uid == 0 for member in members)


def test_archive_requires_engine_directory(tmp_path) -> None:
    with pytest.raises(LocalArtifactError, match="Engine directory missing"):
        create_engine_archive(tmp_path, tmp_path / "engine.tar.gz")


def test_market_data_snapshot_must_exist(tmp_path) -> None:
    path = market_data_snapshot_path(tmp_path)

    with pytest.raises(LocalArtifactError, match="Market data snapshot missing"):
        ensure_market_data_snapshot(path)

    path.parent.mkdir()
    path.write_bytes(b"data")
    ensure_market_data_snapshot(path)
