"""
Session affinity store.

Maps an opaque, client-chosen session id to the room and player it belongs
to, so a client that reconnects on a new transport connection can be put
back into its seat.  Records live in Redis under ``session:{sessionId}``
with a TTL equal to the reconnection grace window.  The expiry time is also
kept inside the record and checked on lookup, so a record is never honoured
past its window even if the backing store is slow to evict it.
"""

import json
import time
from dataclasses import dataclass
from typing import Callable, Optional
import redis
from loguru import logger

KEY_PREFIX = 'session:'


class StoreUnavailable(RuntimeError):
    """Raised when the backing Redis cannot be reached."""


class SessionExpired(KeyError):
    """Raised when a session record exists but its grace window has lapsed."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session '{session_id}' has expired")

    def __str__(self):
        return self.args[0]


@dataclass
class SessionRecord(object):
    """Where a session's player lives.

    Attributes
    ----------
    session_id : str
        Client-supplied identifier, stable across reconnects
    room_code : str
        Code of the room the player belongs to
    player_id : str
        The player's id inside that room
    expires_at : float
        Epoch seconds after which the record must not be used
    """
    session_id: str
    room_code: str
    player_id: str
    expires_at: float

    def to_json(self) -> str:
        return json.dumps({
            'roomCode': self.room_code,
            'playerId': self.player_id,
            'expiresAt': self.expires_at,
        })

    @classmethod
    def from_json(cls, session_id: str, raw: str) -> 'SessionRecord':
        data = json.loads(raw)
        return cls(session_id=session_id, room_code=data['roomCode'],
                   player_id=data['playerId'], expires_at=float(data['expiresAt']))


def session_key(session_id: str) -> str:
    return f"{KEY_PREFIX}{session_id}"


class SessionStore(object):
    """Redis-backed session records with a fixed time-to-live.

    The store is shared by every room and is used without room locks; keys
    are per session so there is no cross-room contention.  All Redis errors
    surface as ``StoreUnavailable``.

    Parameters
    ----------
    client : redis.Redis
        A client created with ``decode_responses=True``
    ttl_seconds : int
        Grace window for reconnection
    clock : callable, optional
        Returns the current time in seconds
    """

    def __init__(self, client: redis.Redis, ttl_seconds: int = 120, clock: Callable[[], float] = time.time):
        self.client = client
        self.ttl_seconds = ttl_seconds
        self.available = True
        self._clock = clock

    @classmethod
    def from_url(cls, url: str, ttl_seconds: int = 120, clock: Callable[[], float] = time.time) -> 'SessionStore':
        """Create a store for a ``redis://`` URL.  No connection is made until
        the first command."""
        client = redis.Redis.from_url(url, decode_responses=True,
                                      socket_connect_timeout=5, socket_timeout=5)
        return cls(client, ttl_seconds=ttl_seconds, clock=clock)

    def _failed(self, operation: str, error: Exception):
        if self.available:
            logger.warning(f"Session store unavailable during {operation}: {error}")
        self.available = False
        return StoreUnavailable(f"Session store unavailable during {operation}: {error}")

    def save(self, session_id: str, room_code: str, player_id: str) -> SessionRecord:
        """Write (or refresh) a session record with a full TTL."""
        record = SessionRecord(session_id, room_code, player_id, self._clock() + self.ttl_seconds)
        try:
            self.client.set(session_key(session_id), record.to_json(), ex=self.ttl_seconds)
        except redis.RedisError as e:
            raise self._failed('save', e) from e
        return record

    def lookup(self, session_id: str) -> Optional[SessionRecord]:
        """Return the record for a session, or None if there is none.

        Raises
        ------
        SessionExpired
            If the record's grace window has lapsed.  The record is deleted.
        StoreUnavailable
            If Redis cannot be reached
        """
        try:
            raw = self.client.get(session_key(session_id))
        except redis.RedisError as e:
            raise self._failed('lookup', e) from e
        if raw is None:
            return None
        try:
            record = SessionRecord.from_json(session_id, raw)
        except (ValueError, KeyError, TypeError):
            logger.warning(f"Discarding malformed session record for '{session_id}'")
            self.delete(session_id)
            return None
        if record.expires_at <= self._clock():
            self.delete(session_id)
            raise SessionExpired(session_id)
        return record

    def delete(self, session_id: str):
        try:
            self.client.delete(session_key(session_id))
        except redis.RedisError as e:
            raise self._failed('delete', e) from e

    def ping(self) -> bool:
        """Ping the backing store, logging transitions between up and down."""
        try:
            self.client.ping()
        except redis.RedisError as e:
            self._failed('ping', e)
            return False
        if not self.available:
            logger.info("Session store reachable again")
        self.available = True
        return True

    def close(self):
        try:
            self.client.close()
        except redis.RedisError as e:
            logger.warning(f"Error closing session store: {e}")
