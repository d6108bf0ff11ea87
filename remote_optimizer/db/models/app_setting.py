"""AppSetting model: key/value operator settings (API tokens, SSH keys, domain)."""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, String, Text

from remote_optimizer.db.base import Base


class AppSetting(Base):
    __tablename__ = "settings"

    key = Column("setting_key", String(255), primary_key=True)
    value = Column(Text, nullable=True)

    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))
