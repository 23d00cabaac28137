import asyncio
import os
import time
from unittest.mock import patch

import pytest

from chunkmerge.scheduler import (
    _get_last_activity_time,
    _session_is_stale,
    expire_stale_sessions,
    find_stale_sessions,
    get_scheduler,
    start_scheduler,
    stop_scheduler,
)

TTL_SECONDS = 3600


def age_session_on_disk(temp_data_dir, session_key: str, seconds: float):
    old_time = time.time() - seconds
    session_dir = temp_data_dir / "chunks" / session_key
    for path in [session_dir, *session_dir.iterdir()]:
        os.utime(path, (old_time, old_time))
    return old_time


class TestGetLastActivityTime:
    @pytest.mark.asyncio
    async def test_uses_chunk_mtime_for_disk_only_session(
        self, engine, temp_data_dir
    ):
        await engine.store.put("disk", 0, b"a")
        old_time = age_session_on_disk(temp_data_dir, "disk", 500)

        assert _get_last_activity_time(engine, "disk") == pytest.approx(old_time)

    @pytest.mark.asyncio
    async def test_prefers_most_recent_of_disk_and_registry(
        self, engine, temp_data_dir
    ):
        await engine.upload_chunk("s1", 0, b"a")
        age_session_on_disk(temp_data_dir, "s1", 500)

        result = _get_last_activity_time(engine, "s1")

        assert result == engine.registry.last_activity("s1")

    def test_returns_zero_for_unknown_session(self, engine):
        assert _get_last_activity_time(engine, "unknown") == 0.0


class TestSessionIsStale:
    @pytest.mark.asyncio
    async def test_fresh_session_is_not_stale(self, engine):
        await engine.upload_chunk("s1", 0, b"a")

        assert _session_is_stale(engine, "s1", TTL_SECONDS) is False

    @pytest.mark.asyncio
    async def test_inactive_session_is_stale(self, engine):
        await engine.upload_chunk("s1", 0, b"a")
        later = time.time() + TTL_SECONDS + 10

        assert _session_is_stale(engine, "s1", TTL_SECONDS, now=later) is True

    @pytest.mark.asyncio
    async def test_merging_session_is_never_stale(self, engine):
        await engine.upload_chunk("s1", 0, b"a")
        later = time.time() + TTL_SECONDS + 10

        async with engine.registry.exclusive("s1"):
            assert _session_is_stale(engine, "s1", TTL_SECONDS, now=later) is False


class TestFindStaleSessions:
    @pytest.mark.asyncio
    async def test_finds_old_disk_sessions_only(self, engine, temp_data_dir):
        await engine.store.put("old", 0, b"a")
        await engine.store.put("new", 0, b"b")
        age_session_on_disk(temp_data_dir, "old", TTL_SECONDS + 60)

        assert find_stale_sessions(engine, TTL_SECONDS) == ["old"]

    def test_returns_empty_without_sessions(self, engine):
        assert find_stale_sessions(engine, TTL_SECONDS) == []


class TestExpireStaleSessions:
    @pytest.mark.asyncio
    async def test_removes_stale_sessions(self, engine, temp_data_dir):
        await engine.upload_chunk("s1", 0, b"a")
        await engine.upload_chunk("s2", 0, b"b")
        later = time.time() + TTL_SECONDS + 10

        count = await expire_stale_sessions(engine, TTL_SECONDS, now=later)

        assert count == 2
        assert not (temp_data_dir / "chunks" / "s1").exists()
        assert not (temp_data_dir / "chunks" / "s2").exists()
        assert engine.registry.sessions() == []

    @pytest.mark.asyncio
    async def test_keeps_active_sessions(self, engine, temp_data_dir):
        await engine.upload_chunk("s1", 0, b"a")

        count = await expire_stale_sessions(engine, TTL_SECONDS)

        assert count == 0
        assert (temp_data_dir / "chunks" / "s1" / "chunk_0").exists()

    @pytest.mark.asyncio
    async def test_skips_session_that_turns_busy(self, engine, temp_data_dir):
        await engine.upload_chunk("s1", 0, b"a")
        later = time.time() + TTL_SECONDS + 10

        with patch("chunkmerge.scheduler._session_is_stale", return_value=True):
            async with engine.registry.exclusive("s1"):
                count = await expire_stale_sessions(engine, TTL_SECONDS, now=later)

        assert count == 0
        assert (temp_data_dir / "chunks" / "s1").exists()

    @pytest.mark.asyncio
    async def test_keeps_session_that_receives_chunk_during_sweep(
        self, engine, temp_data_dir, monkeypatch
    ):
        await engine.upload_chunk("s1", 0, b"a")
        await engine.upload_chunk("s2", 0, b"b")
        later = time.time() + TTL_SECONDS + 10
        real_remove = engine.store.remove

        async def remove_then_upload(session_key):
            if session_key == "s1":
                await engine.upload_chunk("s2", 1, b"c")
            await real_remove(session_key)

        monkeypatch.setattr(engine.store, "remove", remove_then_upload)

        count = await expire_stale_sessions(engine, TTL_SECONDS, now=later)

        assert count == 1
        assert not (temp_data_dir / "chunks" / "s1").exists()
        assert await engine.store.exists("s2", 1)
        assert await engine.registry.received_indices("s2") == {0, 1}

    @pytest.mark.asyncio
    async def test_merged_artifacts_are_untouched(self, engine, temp_data_dir):
        await engine.upload_chunk("s1", 0, b"a")
        result = await engine.merge("s1", 1, "f.txt")
        later = time.time() + TTL_SECONDS + 10

        await expire_stale_sessions(engine, TTL_SECONDS, now=later)

        assert (temp_data_dir / "artifacts" / result.artifact_name).exists()


class TestSchedulerLifecycle:
    def test_get_scheduler_returns_scheduler(self):
        import chunkmerge.scheduler as sched_module

        sched_module._scheduler = None
        scheduler = get_scheduler()
        assert scheduler is not None
        sched_module._scheduler = None

    @pytest.mark.asyncio
    async def test_start_and_stop_scheduler(self, engine):
        import chunkmerge.scheduler as sched_module

        sched_module._scheduler = None

        start_scheduler(engine, interval_minutes=1, ttl_minutes=1)
        scheduler = get_scheduler()
        assert scheduler.running

        stop_scheduler()
        assert sched_module._scheduler is None

    def test_stop_scheduler_when_not_running(self):
        import chunkmerge.scheduler as sched_module

        sched_module._scheduler = None
        stop_scheduler()
        assert sched_module._scheduler is None

    @pytest.mark.asyncio
    async def test_scheduler_runs_immediately_on_start(self, engine):
        import chunkmerge.scheduler as sched_module

        sched_module._scheduler = None

        with patch("chunkmerge.scheduler.expire_stale_sessions") as mock_expire:
            start_scheduler(engine, interval_minutes=1, ttl_minutes=5)

            await asyncio.sleep(0.1)

            mock_expire.assert_called_once_with(engine, 300)

            stop_scheduler()
