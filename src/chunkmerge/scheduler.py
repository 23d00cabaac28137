import time
from datetime import datetime
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

from chunkmerge.config import DEFAULT_EXPIRY_INTERVAL_MINUTES, DEFAULT_SESSION_TTL_MINUTES
from chunkmerge.engine import UploadEngine
from chunkmerge.errors import ConcurrencyConflict, NotFound, StorageFailure

_scheduler: AsyncIOScheduler | None = None


def get_scheduler() -> AsyncIOScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = AsyncIOScheduler()
    return _scheduler


def _get_last_activity_time(engine: UploadEngine, session_key: str) -> float:
    mtimes = []

    on_disk = engine.store.last_modified(session_key)
    if on_disk is not None:
        mtimes.append(on_disk)

    in_memory = engine.registry.last_activity(session_key)
    if in_memory is not None:
        mtimes.append(in_memory)

    return max(mtimes) if mtimes else 0.0


def _session_is_stale(
    engine: UploadEngine,
    session_key: str,
    ttl_seconds: int,
    now: Optional[float] = None,
) -> bool:
    if engine.registry.is_busy(session_key):
        return False

    if now is None:
        now = time.time()
    inactive_seconds = now - _get_last_activity_time(engine, session_key)
    return inactive_seconds >= ttl_seconds


def find_stale_sessions(
    engine: UploadEngine, ttl_seconds: int, now: Optional[float] = None
) -> list[str]:
    candidates = set(engine.store.list_sessions()) | set(engine.registry.sessions())
    return sorted(
        key for key in candidates if _session_is_stale(engine, key, ttl_seconds, now)
    )


async def expire_stale_sessions(
    engine: UploadEngine, ttl_seconds: int, now: Optional[float] = None
) -> int:
    logger.debug("Running scheduled session expiry check")
    stale = find_stale_sessions(engine, ttl_seconds, now)
    if not stale:
        logger.debug("No sessions require expiry")
        return 0

    logger.info(f"Found {len(stale)} stale session(s) to expire")
    expired_count = 0
    seen_activity = {key: _get_last_activity_time(engine, key) for key in stale}

    for session_key in stale:

        def untouched(key=session_key) -> bool:
            return _get_last_activity_time(engine, key) <= seen_activity[key]

        try:
            if await engine.abort(session_key, only_if=untouched):
                expired_count += 1
            else:
                logger.debug(
                    f"Session {session_key[:8]}... received activity, skipping expiry"
                )
        except ConcurrencyConflict:
            logger.debug(f"Session {session_key[:8]}... became busy, skipping expiry")
        except NotFound:
            await engine.registry.forget(session_key)
            expired_count += 1
        except StorageFailure as e:
            logger.error(f"Failed to expire session {session_key[:8]}...: {e}")

    return expired_count


def start_scheduler(
    engine: UploadEngine,
    interval_minutes: int = DEFAULT_EXPIRY_INTERVAL_MINUTES,
    ttl_minutes: int = DEFAULT_SESSION_TTL_MINUTES,
):
    scheduler = get_scheduler()
    ttl_seconds = ttl_minutes * 60

    async def job():
        await expire_stale_sessions(engine, ttl_seconds)

    scheduler.add_job(
        job,
        trigger=IntervalTrigger(minutes=interval_minutes),
        id="expire_sessions",
        replace_existing=True,
        next_run_time=datetime.now(),
    )
    scheduler.start()
    logger.info(
        f"Session expiry scheduler started (interval: {interval_minutes}m, ttl: {ttl_minutes}m)"
    )


def stop_scheduler():
    global _scheduler
    scheduler = _scheduler
    _scheduler = None
    if scheduler is not None and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Session expiry scheduler stopped")
