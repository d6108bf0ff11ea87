"""Re-export all models so Base.metadata sees them."""

from remote_optimizer.db.models.app_setting import AppSetting
from remote_optimizer.db.models.remote_job import RemoteOptimizerJob

__all__ = [
    "AppSetting",
    "RemoteOptimizerJob",
]
