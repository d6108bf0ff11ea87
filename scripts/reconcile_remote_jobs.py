"""Run one stale-job reconciliation sweep and exit.

Useful after an outage, when the API process is not running its periodic
reconciler.

Run from repo root:
    python -m scripts.reconcile_remote_jobs
"""

import asyncio

from remote_optimizer.core.config import get_settings
from remote_optimizer.core.logging import configure_structlog
from remote_optimizer.db import close_db, get_session_factory, init_db
from remote_optimizer.services.remote_optimization_service import build_remote_optimization_service


async def main() -> None:
    settings = get_settings()
    configure_structlog(log_level="INFO", json_logs=not settings.debug)

    await init_db()
    service = build_remote_optimization_service(settings, get_session_factory())
    try:
        counts = await service.reconciler.sweep()
        print(f"Reconciled remote jobs: {counts['failed']} failed, {counts['succeeded']} succeeded.")
    finally:
        await service.hetzner.aclose()
        await service.notifier.email_client.aclose()
        await close_db()


if __name__ == "__main__":
    asyncio.run(main())
