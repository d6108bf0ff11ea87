"""Tests for the mTLS client bundle upload."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from remote_optimizer.core.exceptions import LocalArtifactError
from remote_optimizer.services.mtls_bootstrap import REMOTE_CLIENT_KEY_PATH, MtlsBootstrap

pytestmark = pytest.mark.unit


async def _enabled() -> bool:
    return True


def test_missing_bundle_file_is_reported(tmp_path) -> None:
    (tmp_path / "ca.crt").write_text("ca")

    with pytest.raises(LocalArtifactError, match="mTLS client certificate is required at"):
        MtlsBootstrap(tmp_path, _enabled).local_bundle()


async def test_upload_ships_all_three_files(tmp_path) -> None:
    for name in ("ca.crt", "client.crt", "client.key"):
        (tmp_path / name).write_text(name)
    bootstrap = MtlsBootstrap(tmp_path, _enabled)
    channel = MagicMock()
    channel.run = AsyncMock()
    channel.upload = AsyncMock()

    assert await bootstrap.lockdown_enabled() is True
    config = await bootstrap.upload(channel, bootstrap.local_bundle())

    assert config.enabled
    assert config.client_key_path == REMOTE_CLIENT_KEY_PATH
    assert channel.upload.await_count == 3
    assert "chmod 600" in channel.run.await_args_list[-1].args[0]
