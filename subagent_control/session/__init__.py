"""Session store with SQLite storage plus a per-command read cache."""

import asyncio
import json
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import aiosqlite

from subagent_control.config import Config, get_config
from subagent_control.exceptions import SessionStoreError
from subagent_control.logging import get_logger
from subagent_control.models import SessionEntry

log = get_logger(__name__)

SessionStoreMap = dict[str, SessionEntry]


@dataclass(frozen=True)
class ParsedSessionKey:
    """Components of an ``agent:<agent_id>:<rest>`` session key."""

    agent_id: str
    rest: str


def parse_agent_session_key(key: str | None) -> ParsedSessionKey | None:
    """Parse an agent-scoped session key, or return None."""
    raw = (key or "").strip().lower()
    if not raw:
        return None
    parts = [part for part in raw.split(":") if part]
    if len(parts) < 3 or parts[0] != "agent":
        return None
    agent_id = parts[1].strip()
    rest = ":".join(parts[2:])
    if not agent_id or not rest:
        return None
    return ParsedSessionKey(agent_id=agent_id, rest=rest)


def resolve_store_path(session_key: str, config: Config | None = None) -> Path:
    """Resolve which store file holds the entry for ``session_key``."""
    cfg = config or get_config()
    parsed = parse_agent_session_key(session_key)
    return cfg.resolve_store_path(parsed.agent_id if parsed else None)


class SessionStore:
    """Key/value store of ``SessionEntry`` rows, one SQLite file per agent.

    Each store file has one shared connection. All work on a file runs under
    that file's lock, so overlapping ``update`` calls never nest
    ``BEGIN IMMEDIATE`` on the same connection.
    """

    def __init__(self):
        self._connections: dict[str, aiosqlite.Connection] = {}
        self._lock = asyncio.Lock()
        self._path_locks: dict[str, asyncio.Lock] = {}

    @staticmethod
    def _cache_key(store_path: Path | str) -> str:
        return str(Path(store_path).expanduser())

    async def _path_lock(self, cache_key: str) -> asyncio.Lock:
        async with self._lock:
            lock = self._path_locks.get(cache_key)
            if lock is None:
                lock = asyncio.Lock()
                self._path_locks[cache_key] = lock
            return lock

    async def _ensure_db(self, cache_key: str) -> aiosqlite.Connection:
        """Open the connection for ``cache_key``. Caller holds the path lock."""
        existing = self._connections.get(cache_key)
        if existing is not None:
            return existing
        Path(cache_key).parent.mkdir(parents=True, exist_ok=True)
        db = await aiosqlite.connect(cache_key, isolation_level=None)
        await db.execute("""
            CREATE TABLE IF NOT EXISTS session_entries (
                session_key TEXT PRIMARY KEY,
                data TEXT NOT NULL DEFAULT '{}'
            )
        """)
        await db.commit()
        self._connections[cache_key] = db
        return db

    @staticmethod
    async def _read_all(db: aiosqlite.Connection) -> SessionStoreMap:
        store: SessionStoreMap = {}
        async with db.execute("SELECT session_key, data FROM session_entries") as cursor:
            rows = await cursor.fetchall()
        for session_key, raw in rows:
            try:
                data = json.loads(raw)
            except ValueError:
                log.warning("Skipping unreadable session entry", session_key=session_key)
                continue
            if isinstance(data, dict):
                store[session_key] = SessionEntry.from_dict(data)
        return store

    async def load(self, store_path: Path | str) -> SessionStoreMap:
        """Load every entry in a store file."""
        cache_key = self._cache_key(store_path)
        try:
            async with await self._path_lock(cache_key):
                db = await self._ensure_db(cache_key)
                return await self._read_all(db)
        except (aiosqlite.Error, OSError) as e:
            raise SessionStoreError(str(store_path), str(e)) from e

    async def update(
        self,
        store_path: Path | str,
        mutator: Callable[[SessionStoreMap], None],
    ) -> SessionStoreMap:
        """Read-modify-write the store inside one transaction."""
        cache_key = self._cache_key(store_path)
        try:
            async with await self._path_lock(cache_key):
                db = await self._ensure_db(cache_key)
                await db.execute("BEGIN IMMEDIATE")
                try:
                    before = await self._read_all(db)
                    after = dict(before)
                    mutator(after)
                    for session_key in before.keys() - after.keys():
                        await db.execute(
                            "DELETE FROM session_entries WHERE session_key = ?",
                            (session_key,),
                        )
                    for session_key, entry in after.items():
                        await db.execute(
                            "INSERT OR REPLACE INTO session_entries (session_key, data) VALUES (?, ?)",
                            (session_key, json.dumps(entry.to_dict())),
                        )
                except Exception:
                    await db.rollback()
                    raise
                await db.commit()
                return after
        except (aiosqlite.Error, OSError) as e:
            raise SessionStoreError(str(store_path), str(e)) from e

    async def close(self) -> None:
        """Close all database connections."""
        for db in self._connections.values():
            await db.close()
        self._connections.clear()


class SessionStoreCache:
    """Memoises store loads for the lifetime of one command invocation."""

    def __init__(self, store: SessionStore, config: Config | None = None):
        self._store = store
        self._config = config
        self._loaded: dict[str, SessionStoreMap] = {}

    async def load(self, store_path: Path | str) -> SessionStoreMap:
        cache_key = str(Path(store_path).expanduser())
        cached = self._loaded.get(cache_key)
        if cached is not None:
            return cached
        loaded = await self._store.load(store_path)
        self._loaded[cache_key] = loaded
        return loaded

    async def load_entry(self, session_key: str) -> tuple[Path, SessionEntry | None]:
        """Return the store path and entry (if any) for a session key."""
        store_path = resolve_store_path(session_key, self._config)
        store = await self.load(store_path)
        return store_path, store.get(session_key)


# Global session store
_store: SessionStore | None = None


def get_session_store() -> SessionStore:
    """Get the global session store."""
    global _store
    if _store is None:
        _store = SessionStore()
    return _store


def set_session_store(store: SessionStore) -> None:
    """Set the global session store."""
    global _store
    _store = store
