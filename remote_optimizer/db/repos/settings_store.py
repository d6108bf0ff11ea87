"""Key/value operator settings (API tokens, SSH keys, sender domain)."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from remote_optimizer.db.models.app_setting import AppSetting


class SettingKeys:
    HETZNER_API_TOKEN = "HETZNER_API_TOKEN"
    HETZNER_PRIVATE_KEY = "HETZNER_PRIVATE_KEY"
    HETZNER_PUBLIC_KEY = "HETZNER_PUBLIC_KEY"
    HETZNER_SSH_KEY_NAME = "HETZNER_SSH_KEY_NAME"
    HETZNER_SERVER_TYPE = "HETZNER_SERVER_TYPE"
    HETZNER_SERVER_LOCATION = "HETZNER_SERVER_LOCATION"
    RESEND_API_KEY = "RESEND_API_KEY"
    DOMAIN = "DOMAIN"
    SITE_NAME = "SITE_NAME"


class SettingsStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_value(self, key: str) -> str | None:
        async with self._session_factory() as session:
            row = await session.get(AppSetting, key)
            return row.value if row is not None else None

    async def get_text(self, key: str) -> str:
        """Stripped value, or "" when unset."""
        value = await self.get_value(key)
        return value.strip() if isinstance(value, str) else ""

    async def get_values(self, keys: list[str]) -> dict[str, str | None]:
        if not keys:
            return {}
        async with self._session_factory() as session:
            result = await session.execute(select(AppSetting).where(AppSetting.key.in_(keys)))
            found = {row.key: row.value for row in result.scalars().all()}
        return {key: found.get(key) for key in keys}

    async def upsert(self, values: dict[str, str | None]) -> None:
        async with self._session_factory() as session:
            for key, value in values.items():
                row = await session.get(AppSetting, key)
                if row is None:
                    session.add(AppSetting(key=key, value=value))
                else:
                    row.value = value
            await session.commit()
