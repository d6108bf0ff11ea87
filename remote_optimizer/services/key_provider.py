"""SSH key material for the per-job VMs.

The keypair lives in the settings table. ensure_key_pair() fills in whatever
is missing before a job is created:

  private + public  → nothing to do
  private only      → derive the public key and store it
  public only       → warn; jobs fail until a private key is configured
  neither           → generate an Ed25519 keypair and store both
"""

import asyncio

import structlog

from remote_optimizer.core.exceptions import ConfigurationError, KeyFormatError
from remote_optimizer.db.repos.settings_store import SettingKeys, SettingsStore
from remote_optimizer.remote.keys import derive_public_key, generate_key_pair

logger = structlog.get_logger(__name__)


class KeyMaterialProvider:
    def __init__(self, settings_store: SettingsStore) -> None:
        self.settings_store = settings_store
        self._in_flight: asyncio.Task | None = None

    async def ensure_key_pair(self) -> None:
        """Single-flight: concurrent callers share one in-progress check."""
        if self._in_flight is None or self._in_flight.done():
            self._in_flight = asyncio.create_task(self._ensure_key_pair())
        await self._in_flight

    async def _ensure_key_pair(self) -> None:
        values = await self.settings_store.get_values(
            [SettingKeys.HETZNER_PRIVATE_KEY, SettingKeys.HETZNER_PUBLIC_KEY]
        )
        private_key = (values.get(SettingKeys.HETZNER_PRIVATE_KEY) or "").strip()
        public_key = (values.get(SettingKeys.HETZNER_PUBLIC_KEY) or "").strip()

        if private_key and public_key:
            return

        if private_key:
            try:
                derived = derive_public_key(private_key)
            except KeyFormatError as exc:
                logger.warning("hetzner_public_key_derivation_failed", error=str(exc))
                return
            await self.settings_store.upsert({SettingKeys.HETZNER_PUBLIC_KEY: derived})
            logger.info("hetzner_public_key_derived")
            return

        if public_key:
            logger.warning(
                "hetzner_private_key_missing",
                detail="remote optimization will fail until HETZNER_PRIVATE_KEY is configured",
            )
            return

        generated_private, generated_public = generate_key_pair()
        await self.settings_store.upsert(
            {
                SettingKeys.HETZNER_PRIVATE_KEY: generated_private,
                SettingKeys.HETZNER_PUBLIC_KEY: generated_public,
            }
        )
        logger.info("hetzner_keypair_generated", key_type="ssh-ed25519")

    async def require_private_key(self) -> str:
        private_key = await self.settings_store.get_text(SettingKeys.HETZNER_PRIVATE_KEY)
        if not private_key:
            raise ConfigurationError(
                "Hetzner SSH private key is not configured. "
                "Set HETZNER_PRIVATE_KEY in Settings to enable remote optimization."
            )
        return private_key
