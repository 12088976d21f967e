"""
Non-blocking advisory locks for periodic batch jobs.

Multiple process instances may fire the same cron job at once. Each job takes a
session-scoped PostgreSQL advisory lock with try-semantics: if another session
already holds it, the caller gets `acquired=False` immediately instead of
waiting. The lock lives on a dedicated connection and is released when that
connection's session ends; an explicit unlock is attempted on exit anyway.

SQLite (tests, local development) has no advisory locks, so an in-process
registry provides the same try-semantics within a single process.
"""
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Set
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)

_local_locks: Set[str] = set()


def lock_key(job_name: str, clinic_id: Optional[UUID] = None) -> str:
    """Lock name per job, optionally narrowed to one clinic."""
    if clinic_id is None:
        return job_name
    return f"{job_name}:{clinic_id}"


@asynccontextmanager
async def try_advisory_lock(
    engine: AsyncEngine,
    job_name: str,
    clinic_id: Optional[UUID] = None
) -> AsyncIterator[bool]:
    """
    Try to take the lock for `job_name` (and clinic). Yields whether it was acquired.

        async with try_advisory_lock(engine, "refills:process-due") as acquired:
            if not acquired:
                return {"skipped": True}
    """
    key = lock_key(job_name, clinic_id)

    if engine.dialect.name != "postgresql":
        if key in _local_locks:
            logger.info(f"[LOCK] {key} already held in this process, skipping")
            yield False
            return
        _local_locks.add(key)
        try:
            yield True
        finally:
            _local_locks.discard(key)
        return

    async with engine.connect() as conn:
        result = await conn.execute(
            text("SELECT pg_try_advisory_lock(hashtext(:key))"),
            {"key": key}
        )
        acquired = bool(result.scalar())
        # Keep the lock call out of any open transaction on this connection
        await conn.commit()

        if not acquired:
            logger.info(f"[LOCK] {key} held by another session, skipping")
            yield False
            return

        logger.debug(f"[LOCK] Acquired {key}")
        try:
            yield True
        finally:
            try:
                await conn.execute(
                    text("SELECT pg_advisory_unlock(hashtext(:key))"),
                    {"key": key}
                )
                await conn.commit()
            except Exception as e:
                # A pooled connection would keep the lock; discard it so the session ends
                logger.warning(f"[LOCK] Explicit unlock of {key} failed, invalidating connection: {e}")
                await conn.invalidate()
