"""
Tests for the Redis-backed session affinity store and reconnection recovery.
"""

import json
from unittest.mock import patch
import fakeredis
import pytest
import redis
from minesync.board import DIFFICULTIES
from minesync.game_modes import COOPERATIVE
from minesync.reconnect import recover_session
from minesync.rooms import RoomRegistry
from minesync.session_store import SessionStore, SessionExpired, StoreUnavailable, session_key


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class TestSessionStore:
    """Test cases for SessionStore."""

    def setup_method(self):
        self.clock = FakeClock()
        self.client = fakeredis.FakeRedis(decode_responses=True)
        self.store = SessionStore(self.client, ttl_seconds=120, clock=self.clock)

    def test_save_and_lookup(self):
        self.store.save('s1', 'ABC', 'p1')
        record = self.store.lookup('s1')
        assert record.room_code == 'ABC'
        assert record.player_id == 'p1'
        assert record.expires_at == 1120.0

    def test_record_layout(self):
        """Test that records are stored as JSON under session:{id} with a TTL."""
        self.store.save('s1', 'ABC', 'p1')
        raw = self.client.get(session_key('s1'))
        assert session_key('s1') == 'session:s1'
        assert json.loads(raw) == {'roomCode': 'ABC', 'playerId': 'p1', 'expiresAt': 1120.0}
        assert 0 < self.client.ttl('session:s1') <= 120

    def test_lookup_missing(self):
        assert self.store.lookup('nobody') is None

    def test_expired_record(self):
        """Test that a record past its window raises SessionExpired and is removed."""
        self.store.save('s1', 'ABC', 'p1')
        self.clock.now = 1120.0
        with pytest.raises(SessionExpired):
            self.store.lookup('s1')
        assert self.client.get('session:s1') is None
        assert self.store.lookup('s1') is None

    def test_save_refreshes_window(self):
        self.store.save('s1', 'ABC', 'p1')
        self.clock.now = 1100.0
        self.store.save('s1', 'ABC', 'p1')
        self.clock.now = 1150.0
        assert self.store.lookup('s1').expires_at == 1220.0

    def test_malformed_record_discarded(self):
        self.client.set('session:s1', 'not json')
        assert self.store.lookup('s1') is None
        assert self.client.get('session:s1') is None

    def test_delete(self):
        self.store.save('s1', 'ABC', 'p1')
        self.store.delete('s1')
        assert self.store.lookup('s1') is None

    def test_session_expired_is_key_error(self):
        assert issubclass(SessionExpired, KeyError)
        assert str(SessionExpired('s1')) == "Session 's1' has expired"

    def test_unreachable_store(self):
        """Test that Redis errors surface as StoreUnavailable and flip the availability flag."""
        with patch.object(self.client, 'get', side_effect=redis.exceptions.ConnectionError('down')):
            with pytest.raises(StoreUnavailable):
                self.store.lookup('s1')
        assert self.store.available is False

        with patch.object(self.client, 'set', side_effect=redis.exceptions.TimeoutError('slow')):
            with pytest.raises(StoreUnavailable):
                self.store.save('s1', 'ABC', 'p1')

    def test_ping_tracks_availability(self):
        with patch.object(self.client, 'ping', side_effect=redis.exceptions.ConnectionError('down')):
            assert self.store.ping() is False
        assert self.store.available is False
        assert self.store.ping() is True
        assert self.store.available is True

    def test_from_url(self):
        store = SessionStore.from_url('redis://localhost:6379/0', ttl_seconds=30)
        assert isinstance(store.client, redis.Redis)
        assert store.ttl_seconds == 30


class TestRecoverSession:
    """Test cases for putting a returning connection back in its seat."""

    def setup_method(self):
        self.clock = FakeClock()
        self.registry = RoomRegistry(grace_seconds=120, seed=3, clock=self.clock)
        self.client = fakeredis.FakeRedis(decode_responses=True)
        self.sessions = SessionStore(self.client, ttl_seconds=120, clock=self.clock)
        self.room, self.alice, _ = self.registry.create_or_join('ABC', 'Alice', COOPERATIVE,
                                                               DIFFICULTIES['Easy'], 'sid-a')
        self.registry.create_or_join('ABC', 'Bob', COOPERATIVE, DIFFICULTIES['Easy'], 'sid-b')
        self.sessions.save('sess-a', 'ABC', self.alice.player_id)
        self.registry.mark_disconnected('ABC', self.alice.player_id, 'sid-a')

    def test_recovers_seat(self):
        """Test that a live session is reattached with a fresh snapshot."""
        self.clock.now += 30
        reattached = recover_session(self.registry, self.sessions, 'sess-a', 'sid-a2')
        assert reattached.room_code == 'ABC'
        assert reattached.player_id == self.alice.player_id
        assert reattached.snapshot['you'] == self.alice.player_id
        assert reattached.snapshot['room'] == 'ABC'
        assert [d.event for d in reattached.deliveries][0] == 'player_reconnected'
        assert self.room.players[self.alice.player_id].connected

    def test_unknown_session(self):
        assert recover_session(self.registry, self.sessions, 'sess-x', 'sid-x') is None

    def test_expired_session_is_fresh_join(self):
        self.clock.now += 121
        assert recover_session(self.registry, self.sessions, 'sess-a', 'sid-a2') is None
        assert not self.room.players[self.alice.player_id].connected

    def test_different_room_requested(self):
        assert recover_session(self.registry, self.sessions, 'sess-a', 'sid-a2', room_code='XYZ') is None

    def test_same_room_requested(self):
        reattached = recover_session(self.registry, self.sessions, 'sess-a', 'sid-a2', room_code='ABC')
        assert reattached is not None

    def test_seat_gone(self):
        """Test that a session pointing at a removed player is dropped."""
        self.registry.sweep(now=self.clock.now + 200)
        assert recover_session(self.registry, self.sessions, 'sess-a', 'sid-a2') is None
        assert self.client.get('session:sess-a') is None

    def test_room_gone(self):
        self.registry.leave('ABC', self.alice.player_id)
        self.sessions.save('sess-b', 'GONE', 'p')
        assert recover_session(self.registry, self.sessions, 'sess-b', 'sid-b2') is None

    def test_store_down(self):
        with patch.object(self.client, 'get', side_effect=redis.exceptions.ConnectionError('down')):
            assert recover_session(self.registry, self.sessions, 'sess-a', 'sid-a2') is None
