import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Optional

from loguru import logger

from chunkmerge.errors import MergeInProgress, SessionClosed
from chunkmerge.storage.chunk_store import ChunkStore


class SessionState(str, Enum):
    OPEN = "open"
    MERGING = "merging"
    CLOSED = "closed"


@dataclass
class SessionInfo:
    session_key: str
    received: list[int]
    state: str
    last_activity: Optional[float]

    def to_dict(self) -> dict:
        return {
            "session": self.session_key,
            "state": self.state,
            "received": self.received,
            "last_activity": self.last_activity,
        }


class _SessionEntry:
    def __init__(self):
        self.received: set[int] = set()
        self.state = SessionState.OPEN
        self.active_uploads = 0
        self.last_activity: Optional[float] = None
        self.loaded = False
        self.condition = asyncio.Condition()


class SessionRegistry:
    """In-memory bookkeeping for upload sessions.

    The chunk store stays the source of truth: an entry seen for the first time
    (for instance after a restart) is seeded from the chunks already on disk.

    Besides the received-index set, each entry carries the gate that keeps
    uploads and merges of the same session apart. Any number of uploads may hold
    an ``upload_slot`` at once; ``exclusive`` closes the session to new uploads,
    waits for the in-flight ones to drain, and keeps it closed until released.
    """

    def __init__(self, store: ChunkStore):
        self.store = store
        self._sessions: dict[str, _SessionEntry] = {}

    def _entry(self, session_key: str) -> _SessionEntry:
        entry = self._sessions.get(session_key)
        if entry is None:
            entry = _SessionEntry()
            self._sessions[session_key] = entry
        return entry

    async def _load(self, session_key: str, entry: _SessionEntry) -> None:
        if entry.loaded:
            return
        on_disk = await self.store.list_indices(session_key)
        if on_disk:
            logger.debug(
                f"Rebuilt session {session_key[:8]}... from disk ({len(on_disk)} chunks)"
            )
        entry.received |= on_disk
        entry.loaded = True

    async def record_chunk(self, session_key: str, index: int) -> None:
        entry = self._entry(session_key)
        async with entry.condition:
            await self._load(session_key, entry)
            entry.received.add(index)
            entry.last_activity = time.time()

    async def received_indices(self, session_key: str) -> set[int]:
        entry = self._sessions.get(session_key)
        if entry is None:
            return await self.store.list_indices(session_key)
        async with entry.condition:
            await self._load(session_key, entry)
            return set(entry.received)

    async def forget(self, session_key: str) -> None:
        entry = self._sessions.pop(session_key, None)
        if entry is None:
            return
        async with entry.condition:
            entry.state = SessionState.CLOSED
            entry.received.clear()
            entry.condition.notify_all()

    def sessions(self) -> list[str]:
        return list(self._sessions)

    def last_activity(self, session_key: str) -> Optional[float]:
        entry = self._sessions.get(session_key)
        return entry.last_activity if entry else None

    def is_busy(self, session_key: str) -> bool:
        entry = self._sessions.get(session_key)
        if entry is None:
            return False
        return entry.state is SessionState.MERGING or entry.active_uploads > 0

    async def snapshot(self, session_key: str) -> Optional[SessionInfo]:
        entry = self._sessions.get(session_key)
        if entry is None:
            if not self.store.session_exists(session_key):
                return None
            received = await self.store.list_indices(session_key)
            return SessionInfo(
                session_key=session_key,
                received=sorted(received),
                state=SessionState.OPEN.value,
                last_activity=self.store.last_modified(session_key),
            )

        async with entry.condition:
            await self._load(session_key, entry)
            return SessionInfo(
                session_key=session_key,
                received=sorted(entry.received),
                state=entry.state.value,
                last_activity=entry.last_activity,
            )

    async def _acquire_open_entry(self, session_key: str) -> _SessionEntry:
        # An entry can be forgotten while we wait for its lock; retry on a fresh one.
        while True:
            entry = self._entry(session_key)
            async with entry.condition:
                if entry.state is SessionState.CLOSED:
                    continue
                if entry.state is SessionState.MERGING:
                    raise SessionClosed(session_key)
                await self._load(session_key, entry)
                entry.active_uploads += 1
                entry.last_activity = time.time()
                return entry

    @asynccontextmanager
    async def upload_slot(self, session_key: str) -> AsyncIterator[None]:
        entry = await self._acquire_open_entry(session_key)
        try:
            yield
        finally:
            async with entry.condition:
                entry.active_uploads -= 1
                entry.last_activity = time.time()
                entry.condition.notify_all()

    async def _close_entry(self, session_key: str) -> _SessionEntry:
        while True:
            entry = self._entry(session_key)
            async with entry.condition:
                if entry.state is SessionState.CLOSED:
                    continue
                if entry.state is SessionState.MERGING:
                    raise MergeInProgress(session_key)
                entry.state = SessionState.MERGING
                try:
                    await entry.condition.wait_for(lambda: entry.active_uploads == 0)
                    await self._load(session_key, entry)
                except BaseException:
                    entry.state = SessionState.OPEN
                    raise
                return entry

    @asynccontextmanager
    async def exclusive(self, session_key: str) -> AsyncIterator[None]:
        entry = await self._close_entry(session_key)
        try:
            yield
        finally:
            async with entry.condition:
                if entry.state is SessionState.MERGING:
                    entry.state = SessionState.OPEN
                    entry.last_activity = time.time()
                entry.condition.notify_all()
