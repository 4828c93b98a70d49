"""
Room registry.

Tracks live rooms by code and is the single serialization point for every
mutation of a room's game state.
"""

import threading
import time
import uuid
from collections import namedtuple
from typing import Callable, Dict, List, Optional, Tuple
import numpy as np
from loguru import logger
from .board import BoardConfig
from .game_modes import IllegalAction, Message, ModeController, Player, create_controller, SCORE_CASCADE


class RoomFull(RuntimeError):
    """Raised when joining a room that has reached its capacity."""

    def __init__(self, code: str, capacity: int):
        self.code = code
        self.capacity = capacity
        super().__init__(f"Room '{code}' is full ({capacity} players)")


class RoomNotFound(KeyError):
    """Raised when a room code does not refer to a live room."""

    def __init__(self, code: str):
        self.code = code
        super().__init__(f"Room '{code}' does not exist")

    def __str__(self):
        return self.args[0]


# A resolved outgoing socket message.  ``to`` is either a connection sid or a
# room code; ``skip_sid`` is left out of room broadcasts.
Delivery = namedtuple('Delivery', ['event', 'data', 'to', 'skip_sid'])


class Room(object):
    """A live room: its code, mode controller and serialization lock.

    ``seq`` increases with every delivery produced by the room, so clients
    can order deltas relative to the last snapshot they received.
    """

    def __init__(self, code: str, controller: ModeController, created_at: float):
        self.code = code
        self.controller = controller
        self.created_at = created_at
        self.lock = threading.RLock()
        self.seq = 0
        self.closed = False

    @property
    def mode(self) -> str:
        return self.controller.mode

    @property
    def players(self) -> Dict[str, Player]:
        return self.controller.players

    def snapshot_for(self, player_id: str) -> dict:
        data = self.controller.snapshot_for(player_id)
        data['room'] = self.code
        data['seq'] = self.seq
        return data


def normalize_code(code) -> str:
    """Room codes are case-insensitive; store them upper case."""
    return str(code).strip().upper()


class RoomRegistry(object):
    """Owns the set of live rooms.

    The model here is:
    - A room is created by the first join to an unseen code and destroyed
      once it has no players left, counting disconnected players still
      inside their grace window.
    - Every mutation of a room goes through ``submit`` (or one of the
      membership methods), which holds that room's lock for the duration of
      the mutation.  Actions on one room are therefore applied one at a time
      in the order they reach the lock; different rooms never block each
      other.
    - Network I/O never happens under a room lock.  Methods return
      ``Delivery`` tuples and the caller emits them afterwards.

    Parameters
    ----------
    grace_seconds : float
        How long a disconnected player keeps their slot
    score_policy : str
        Co-op score attribution policy, passed to new CoopGame controllers
    seed : int, optional
        Seeds mine placement.  Each board still gets its own generator
        spawned from the seed, so layouts are reproducible but independent.
    clock : callable, optional
        Returns the current time in seconds
    """

    def __init__(self, grace_seconds: float = 120, score_policy: str = SCORE_CASCADE,
                 seed: Optional[int] = None, clock: Callable[[], float] = time.time):
        self.rooms: Dict[str, Room] = {}
        self.grace_seconds = grace_seconds
        self.score_policy = score_policy
        self._clock = clock
        self._lock = threading.Lock()
        self._seed_lock = threading.Lock()
        self._seed_sequence = np.random.SeedSequence(seed)

    def _new_rng(self) -> np.random.Generator:
        with self._seed_lock:
            child = self._seed_sequence.spawn(1)[0]
        return np.random.default_rng(child)

    def list_rooms(self) -> List[str]:
        return list(self.rooms.keys())

    def get(self, code: str) -> Room:
        room = self.rooms.get(normalize_code(code))
        if room is None or room.closed:
            raise RoomNotFound(normalize_code(code))
        return room

    def _get_or_create(self, code: str, mode: str, config: BoardConfig) -> Room:
        with self._lock:
            room = self.rooms.get(code)
            if room is not None and not room.closed:
                return room
            controller = create_controller(mode, config, rng_factory=self._new_rng,
                                           clock=self._clock, score_policy=self.score_policy)
            room = Room(code, controller, self._clock())
            self.rooms[code] = room
            logger.info(f"Room '{code}' created ({mode}, {config.rows}x{config.cols}, {config.mines} mines)")
            return room

    def create_or_join(self, code: str, name: str, mode: str, config: BoardConfig,
                       sid: str) -> Tuple[Room, Player, List[Delivery]]:
        """Add a new player to a room, creating the room if needed.

        ``mode`` and ``config`` only matter when the room is created; later
        joiners get whatever the room already plays.

        Raises
        ------
        RoomFull
            If the room is at capacity
        """
        code = normalize_code(code)
        while True:
            room = self._get_or_create(code, mode, config)
            with room.lock:
                if room.closed:
                    # Emptied and removed between lookup and lock; start over
                    continue
                if room.controller.is_full():
                    raise RoomFull(code, room.controller.capacity)
                player = Player(player_id=uuid.uuid4().hex, name=name, sid=sid)
                messages = room.controller.add_player(player)
                logger.info(f"Player '{name}' joined room '{code}' ({len(room.players)} players)")
                return room, player, self._deliver(room, messages)

    def snapshot(self, code: str, player_id: str) -> dict:
        """Current authoritative view of a room for one of its members.

        Raises
        ------
        RoomNotFound
            If the room does not exist
        KeyError
            If the player is not a member
        """
        room = self.get(code)
        with room.lock:
            if player_id not in room.players:
                raise KeyError(f"Player '{player_id}' is not in room '{room.code}'")
            return room.snapshot_for(player_id)

    def submit(self, code: str, player_id: str, action: str, *args) -> List[Delivery]:
        """Apply one player action to a room at its serialization point.

        ``action`` names a controller method (open_cell, toggle_flag,
        chord_cell, reset_board, start_pvp, pvp_rematch).  Illegal actions
        are dropped without any delivery.  Any other failure is treated as
        corruption: the room is closed and its members told to resync.

        Raises
        ------
        RoomNotFound
            If the room does not exist
        """
        room = self.get(code)
        with room.lock:
            if room.closed:
                raise RoomNotFound(room.code)
            handler = getattr(room.controller, action)
            try:
                messages = handler(player_id, *args)
            except IllegalAction as e:
                logger.debug(f"Ignored in room '{room.code}': {e}")
                return []
            except Exception:
                logger.exception(f"Room '{room.code}' failed while applying {action}; closing it")
                return self._abort(room, f"internal error during {action}")
            return self._deliver(room, messages)

    def leave(self, code: str, player_id: str) -> List[Delivery]:
        """Remove a player permanently.  Removes the room once it is empty."""
        room = self.get(code)
        with room.lock:
            name = room.players[player_id].name if player_id in room.players else player_id
            messages = room.controller.remove_player(player_id)
            deliveries = self._deliver(room, messages)
            logger.info(f"Player '{name}' left room '{room.code}'")
            if not room.players:
                self._close(room)
            return deliveries

    def mark_disconnected(self, code: str, player_id: str, sid: str) -> List[Delivery]:
        """Start a player's grace window after their transport dropped.

        Ignored if the player has already reattached on a newer connection.
        """
        room = self.get(code)
        with room.lock:
            player = room.players.get(player_id)
            if player is None or player.sid != sid:
                return []
            messages = room.controller.player_disconnected(player_id)
            logger.info(f"Player '{player.name}' disconnected from room '{room.code}'")
            return self._deliver(room, messages)

    def reattach(self, code: str, player_id: str, sid: str) -> Tuple[dict, List[Delivery]]:
        """Bind an existing player to a new connection.

        Returns the player's full snapshot together with the deliveries
        announcing the return, both produced under the same lock so the
        snapshot is consistent with them.

        Raises
        ------
        RoomNotFound
            If the room is gone
        KeyError
            If the player is no longer a member
        """
        room = self.get(code)
        with room.lock:
            if room.closed:
                raise RoomNotFound(room.code)
            if player_id not in room.players:
                raise KeyError(f"Player '{player_id}' is no longer in room '{room.code}'")
            messages = room.controller.player_reconnected(player_id, sid)
            deliveries = self._deliver(room, messages)
            logger.info(f"Player '{room.players[player_id].name}' reattached to room '{room.code}'")
            return room.snapshot_for(player_id), deliveries

    def player_name(self, code: str, player_id: str) -> Optional[str]:
        try:
            room = self.get(code)
        except RoomNotFound:
            return None
        player = room.players.get(player_id)
        return player.name if player else None

    def sweep(self, now: Optional[float] = None) -> List[Delivery]:
        """Remove players whose grace window lapsed and drop empty rooms."""
        now = self._clock() if now is None else now
        with self._lock:
            rooms = list(self.rooms.values())
        deliveries = []
        for room in rooms:
            with room.lock:
                if room.closed:
                    continue
                for player_id in room.controller.expired_players(now, self.grace_seconds):
                    name = room.players[player_id].name
                    logger.info(f"Grace window lapsed for '{name}' in room '{room.code}'")
                    deliveries.extend(self._deliver(room, room.controller.remove_player(player_id)))
                if not room.players:
                    self._close(room)
        return deliveries

    def _close(self, room: Room):
        room.closed = True
        with self._lock:
            if self.rooms.get(room.code) is room:
                del self.rooms[room.code]
        logger.info(f"Room '{room.code}' destroyed")

    def _abort(self, room: Room, reason: str) -> List[Delivery]:
        self._close(room)
        return [Delivery('room_closed', {'room': room.code, 'reason': reason, 'resync': True}, room.code, None)]

    def _deliver(self, room: Room, messages: List[Message]) -> List[Delivery]:
        """Resolve controller messages into deliveries, stamping each with
        the room's next sequence number."""
        deliveries = []
        for message in messages:
            room.seq += 1
            if message.snapshot:
                targets = [message.player_id] if message.player_id else list(room.players)
                for player_id in targets:
                    player = room.players.get(player_id)
                    if player is None or not player.connected or player.sid is None:
                        continue
                    deliveries.append(Delivery(message.event, room.snapshot_for(player_id), player.sid, None))
                continue

            data = dict(message.data or {})
            data['seq'] = room.seq
            if message.player_id is not None:
                player = room.players.get(message.player_id)
                if player is not None and player.connected and player.sid is not None:
                    deliveries.append(Delivery(message.event, data, player.sid, None))
                continue

            skip_sid = None
            if message.exclude is not None and message.exclude in room.players:
                skip_sid = room.players[message.exclude].sid
            deliveries.append(Delivery(message.event, data, room.code, skip_sid))
        return deliveries
