"""Per-(user, platform) dialogue sessions.

The SQL table is the source of truth; ``CachedSessionStore`` layers an
explicit read-through/write-through cache on top and never assumes a fresh
session on a cache miss.
"""

from __future__ import annotations

import asyncio
import copy
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from techrehub.logging_config import get_logger
from techrehub.models import ConversationSession
from techrehub.services.state_machine import Stage, coerce_stage

logger = get_logger("session_store")

SessionKey = tuple[str, str]


def as_aware(value: datetime | None) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class SessionRecord:
    user_id: str
    platform: str
    stage: Stage = Stage.INITIAL
    context: dict = field(default_factory=dict)
    history: list[dict] = field(default_factory=list)
    last_activity: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def new(cls, user_id: str, platform: str, now: datetime) -> "SessionRecord":
        return cls(user_id=user_id, platform=platform, last_activity=now)

    @property
    def key(self) -> SessionKey:
        return (self.user_id, self.platform)

    def is_stale(self, now: datetime, window: timedelta) -> bool:
        return now - as_aware(self.last_activity) > window

    def reset(self, now: datetime) -> None:
        self.stage = Stage.INITIAL
        self.context = {}
        self.last_activity = now

    def remember(self, content: str, now: datetime, limit: int) -> None:
        """Record an inbound message, newest first, keeping at most ``limit`` entries."""
        entry = {"content": content, "timestamp": now.isoformat()}
        self.history = [entry, *self.history][: max(limit, 1)]

    def snapshot(self) -> "SessionRecord":
        return copy.deepcopy(self)


class SessionStore:
    async def load(self, user_id: str, platform: str) -> SessionRecord | None:
        raise NotImplementedError

    async def save(self, record: SessionRecord) -> None:
        raise NotImplementedError

    async def delete(self, user_id: str, platform: str) -> None:
        raise NotImplementedError


def _to_record(row: ConversationSession) -> SessionRecord:
    return SessionRecord(
        user_id=row.user_id,
        platform=row.platform,
        stage=coerce_stage(row.stage),
        context=dict(row.context or {}),
        history=list(row.history or []),
        last_activity=as_aware(row.last_activity),
    )


def _apply(row: ConversationSession, record: SessionRecord) -> None:
    row.stage = record.stage.value
    row.context = copy.deepcopy(record.context)
    row.history = copy.deepcopy(record.history)
    row.last_activity = record.last_activity


class SqlSessionStore(SessionStore):
    """Session persistence over SQLAlchemy. Blocking calls run in a worker thread."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    async def load(self, user_id: str, platform: str) -> SessionRecord | None:
        return await asyncio.to_thread(self._load, user_id, platform)

    async def save(self, record: SessionRecord) -> None:
        await asyncio.to_thread(self._save, record.snapshot())

    async def delete(self, user_id: str, platform: str) -> None:
        await asyncio.to_thread(self._delete, user_id, platform)

    def _find(self, db: Session, user_id: str, platform: str) -> ConversationSession | None:
        return (
            db.query(ConversationSession)
            .filter(ConversationSession.user_id == user_id, ConversationSession.platform == platform)
            .first()
        )

    def _load(self, user_id: str, platform: str) -> SessionRecord | None:
        db = self._session_factory()
        try:
            row = self._find(db, user_id, platform)
            return _to_record(row) if row else None
        finally:
            db.close()

    def _save(self, record: SessionRecord) -> None:
        db = self._session_factory()
        try:
            row = self._find(db, record.user_id, record.platform)
            if row is None:
                row = ConversationSession(user_id=record.user_id, platform=record.platform)
                _apply(row, record)
                db.add(row)
                try:
                    db.commit()
                    return
                except IntegrityError:
                    # A concurrent turn created the row first; last writer wins.
                    db.rollback()
                    row = self._find(db, record.user_id, record.platform)
                    if row is None:
                        raise
            _apply(row, record)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _delete(self, user_id: str, platform: str) -> None:
        db = self._session_factory()
        try:
            db.query(ConversationSession).filter(
                ConversationSession.user_id == user_id,
                ConversationSession.platform == platform,
            ).delete()
            db.commit()
        finally:
            db.close()


class InMemorySessionCache:
    """Process-local cache of session snapshots with a short entry TTL."""

    def __init__(self, ttl_seconds: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[SessionKey, tuple[float, SessionRecord]] = {}

    def get(self, key: SessionKey) -> SessionRecord | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, record = entry
        if self._clock() - stored_at > self._ttl_seconds:
            self._entries.pop(key, None)
            return None
        return record.snapshot()

    def set(self, record: SessionRecord) -> None:
        self._entries[record.key] = (self._clock(), record.snapshot())

    def invalidate(self, key: SessionKey) -> None:
        self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)


class CachedSessionStore(SessionStore):
    def __init__(self, store: SessionStore, cache: InMemorySessionCache):
        self._store = store
        self._cache = cache

    async def load(self, user_id: str, platform: str) -> SessionRecord | None:
        cached = self._cache.get((user_id, platform))
        if cached is not None:
            return cached
        record = await self._store.load(user_id, platform)
        if record is not None:
            self._cache.set(record)
        return record

    async def save(self, record: SessionRecord) -> None:
        try:
            await self._store.save(record)
        except Exception:
            self._cache.invalidate(record.key)
            raise
        self._cache.set(record)

    async def delete(self, user_id: str, platform: str) -> None:
        self._cache.invalidate((user_id, platform))
        await self._store.delete(user_id, platform)


def purge_expired_sessions(db: Session, ttl: timedelta, now: datetime | None = None) -> int:
    """Delete sessions idle for longer than ``ttl``. Returns the number removed."""
    cutoff = (now or datetime.now(timezone.utc)) - ttl
    removed = (
        db.query(ConversationSession)
        .filter(ConversationSession.last_activity < cutoff)
        .delete(synchronize_session=False)
    )
    db.commit()
    if removed:
        logger.info("Expired sessions purged", extra={"context": {"removed": removed}})
    return removed
