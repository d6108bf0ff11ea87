"""Delete finished remote optimization jobs (succeeded, failed, or with finished_at set).

Run from repo root:
    python -m scripts.purge_finished_remote_jobs
"""

import asyncio

from remote_optimizer.db import close_db, get_session_factory, init_db
from remote_optimizer.db.repos.remote_jobs import RemoteJobRepository


async def main() -> None:
    await init_db()
    try:
        deleted = await RemoteJobRepository(get_session_factory()).delete_finished()
        print(f"Deleted {deleted} finished remote job(s).")
    finally:
        await close_db()


if __name__ == "__main__":
    asyncio.run(main())
