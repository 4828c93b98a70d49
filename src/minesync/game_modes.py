"""Per-room game state machines.

A room holds exactly one mode controller.  ``CoopGame`` shares one board
among any number of players; ``PvpGame`` gives each of two players their own
board and races them to clear it.

Controllers never talk to sockets.  Every operation returns a list of
``Message`` objects describing what should be sent to whom, and the room
registry turns those into deliveries after the mutation has finished.
Actions that have no effect raise ``IllegalAction``, which the registry
swallows so nothing is broadcast.

"""
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional
import numpy as np
from loguru import logger
from .board import Board, BoardConfig, OpenResult


COOPERATIVE = 'cooperative'
COMPETITIVE = 'competitive'

MODE_ALIASES = {
    'cooperative': COOPERATIVE,
    'co-op': COOPERATIVE,
    'coop': COOPERATIVE,
    'competitive': COMPETITIVE,
    'pvp': COMPETITIVE,
}

# Room states
WAITING = 'waiting'
READY = 'ready'
PLAYING = 'playing'
WON = 'won'
LOST = 'lost'
FINISHED = 'finished'
TERMINAL_STATES = {WON, LOST, FINISHED}

# Player statuses
STATUS_WAITING = 'waiting'
STATUS_PLAYING = 'playing'
STATUS_WON = 'won'
STATUS_FAILED = 'failed'
STATUS_DISCONNECTED = 'disconnected'

# Co-op score attribution
SCORE_CASCADE = 'cascade'
SCORE_CLICKED = 'clicked'
SCORE_POLICIES = {SCORE_CASCADE, SCORE_CLICKED}


class IllegalAction(Exception):
    """Raised when a player action cannot be applied in the current state.

    These are expected during normal play (double clicks, clicks on a frozen
    board, chords on unsatisfied numbers) and are ignored by the caller.
    """

    def __init__(self, player_id: str, action: str, reason: str):
        self.player_id = player_id
        self.action = action
        self.reason = reason
        super().__init__(f"Illegal {action} by {player_id}: {reason}")


def normalize_mode(mode: Optional[str]) -> str:
    """Map a client-supplied mode name onto COOPERATIVE or COMPETITIVE.

    Raises ValueError for unknown names.  ``None`` means cooperative.
    """
    if mode is None:
        return COOPERATIVE
    try:
        return MODE_ALIASES[str(mode).strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown mode '{mode}'. Must be one of: {sorted(MODE_ALIASES)}")


def _timestamp(seconds: Optional[float]) -> Optional[str]:
    if seconds is None:
        return None
    return datetime.fromtimestamp(seconds, timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


@dataclass
class Player(object):
    """A member of a room.

    ``sid`` is the current transport connection and changes on every
    reconnect; ``player_id`` is stable for the life of the membership.
    """
    player_id: str
    name: str
    sid: Optional[str] = None
    score: int = 0
    status: str = STATUS_WAITING
    connected: bool = True
    disconnected_at: Optional[float] = None
    resume_status: Optional[str] = None

    def to_dict(self, host_id: Optional[str] = None) -> dict:
        return {
            'playerId': self.player_id,
            'name': self.name,
            'score': self.score,
            'status': self.status,
            'connected': self.connected,
            'isHost': self.player_id == host_id,
        }


@dataclass
class Message(object):
    """Something a controller wants sent once the mutation is done.

    Attributes
    ----------
    event : str
        Socket event name
    data : dict, optional
        Payload.  Ignored for snapshot messages, which are rendered per
        viewer by the registry.
    player_id : str, optional
        Deliver only to this player.  None broadcasts to the whole room.
    exclude : str, optional
        Player to leave out of a room broadcast
    snapshot : bool
        If True, send each target its own full state snapshot
    """
    event: str
    data: Optional[dict] = None
    player_id: Optional[str] = None
    exclude: Optional[str] = None
    snapshot: bool = False


def snapshot_message(player_id: Optional[str] = None) -> Message:
    return Message('state_snapshot', player_id=player_id, snapshot=True)


class ModeController(object):
    """Behaviour shared by both modes: membership, host tracking,
    connection status and snapshot rendering.

    Parameters
    ----------
    config : BoardConfig
        Board dimensions used every time a board is (re)created
    rng_factory : callable, optional
        Returns a fresh ``np.random.Generator`` for each new board
    clock : callable, optional
        Returns the current time in seconds.  Defaults to ``time.time``.
    """
    mode = None
    capacity = None

    def __init__(self, config: BoardConfig, rng_factory: Optional[Callable[[], np.random.Generator]] = None,
                 clock: Callable[[], float] = time.time):
        self.config = config
        self.players: Dict[str, Player] = {}
        self.host_id: Optional[str] = None
        self.state = WAITING
        self.started_at: Optional[float] = None
        self.finished_at: Optional[float] = None
        self._rng_factory = rng_factory or np.random.default_rng
        self._clock = clock

    def new_board(self) -> Board:
        return Board.from_config(self.config, rng=self._rng_factory())

    def is_full(self) -> bool:
        return self.capacity is not None and len(self.players) >= self.capacity

    def player(self, player_id: str, action: str = 'action') -> Player:
        try:
            return self.players[player_id]
        except KeyError:
            raise IllegalAction(player_id, action, "not a member of this room")

    def player_list(self) -> List[dict]:
        return [p.to_dict(self.host_id) for p in self.players.values()]

    def add_player(self, player: Player) -> List[Message]:
        """Append a player in join order.  The first player becomes host."""
        self.players[player.player_id] = player
        if self.host_id is None:
            self.host_id = player.player_id
        messages = [Message('player_joined', {
            'playerId': player.player_id,
            'name': player.name,
            'hostId': self.host_id,
        }, exclude=player.player_id)]
        messages.extend(self._on_join(player))
        return messages

    def remove_player(self, player_id: str) -> List[Message]:
        """Remove a player for good, handing the host role to the next
        player in join order if needed."""
        player = self.players.pop(player_id, None)
        if player is None:
            return []
        if self.host_id == player_id:
            self.host_id = next(iter(self.players), None)
        messages = [Message('player_left', {
            'playerId': player.player_id,
            'name': player.name,
            'hostId': self.host_id,
        })]
        messages.extend(self._on_leave(player))
        return messages

    def player_disconnected(self, player_id: str) -> List[Message]:
        player = self.player(player_id, 'disconnect')
        if not player.connected:
            return []
        player.connected = False
        player.sid = None
        player.disconnected_at = self._clock()
        player.resume_status = player.status
        player.status = STATUS_DISCONNECTED
        messages = [Message('disconnected', {'playerId': player.player_id, 'name': player.name})]
        messages.extend(self._status_changed(player))
        return messages

    def player_reconnected(self, player_id: str, sid: str) -> List[Message]:
        player = self.player(player_id, 'reconnect')
        was_disconnected = not player.connected
        player.sid = sid
        player.connected = True
        player.disconnected_at = None
        if player.status == STATUS_DISCONNECTED:
            player.status = player.resume_status or STATUS_WAITING
        player.resume_status = None
        if not was_disconnected:
            return []
        messages = [Message('player_reconnected', {'playerId': player.player_id, 'name': player.name},
                            exclude=player.player_id)]
        messages.extend(self._status_changed(player))
        return messages

    def expired_players(self, now: float, grace_seconds: float) -> List[str]:
        """Players whose disconnect grace window has lapsed."""
        return [p.player_id for p in self.players.values()
                if not p.connected and p.disconnected_at is not None
                and now - p.disconnected_at >= grace_seconds]

    def _set_status(self, player: Player, status: str):
        # A disconnected player keeps showing as such; the new status applies
        # when they come back.
        if player.status == STATUS_DISCONNECTED:
            player.resume_status = status
        else:
            player.status = status

    def start_pvp(self, player_id: str) -> List[Message]:
        raise IllegalAction(player_id, 'start_pvp', f"not available in {self.mode} mode")

    def pvp_rematch(self, player_id: str) -> List[Message]:
        raise IllegalAction(player_id, 'pvp_rematch', f"not available in {self.mode} mode")

    def snapshot_for(self, player_id: str) -> dict:
        """Full authoritative view of the room for one player."""
        data = {
            'mode': self.mode,
            'state': self.state,
            'hostId': self.host_id,
            'you': player_id,
            'isHost': player_id == self.host_id,
            'config': self.config.to_dict(),
            'players': self.player_list(),
            'startedAt': _timestamp(self.started_at),
            'finishedAt': _timestamp(self.finished_at),
        }
        data.update(self._mode_snapshot(player_id))
        return data

    def _on_join(self, player: Player) -> List[Message]:
        raise NotImplementedError

    def _on_leave(self, player: Player) -> List[Message]:
        raise NotImplementedError

    def _status_changed(self, player: Player) -> List[Message]:
        return []

    def _mode_snapshot(self, player_id: str) -> dict:
        raise NotImplementedError


class CoopGame(ModeController):
    """Cooperative mode: one shared board, unlimited players.

    The room is ``ready`` once anyone has joined, ``playing`` after the first
    open, and ends ``lost`` on any detonation or ``won`` once every safe cell
    is open.  A terminal board is frozen for everyone until someone resets
    it.

    Scoring follows ``score_policy``: with 'cascade' a player is credited
    with every safe cell their action revealed, flood fill included; with
    'clicked' only the cells they targeted directly count (the clicked cell,
    or the chorded neighbours).
    """
    mode = COOPERATIVE

    def __init__(self, config: BoardConfig, rng_factory=None, clock=time.time,
                 score_policy: str = SCORE_CASCADE):
        super().__init__(config, rng_factory=rng_factory, clock=clock)
        if score_policy not in SCORE_POLICIES:
            raise ValueError(f"Invalid score policy '{score_policy}'. Must be one of: {SCORE_POLICIES}")
        self.score_policy = score_policy
        self.board = self.new_board()
        self.game_over_id: Optional[str] = None
        self.game_over_name = ''

    def _on_join(self, player: Player) -> List[Message]:
        player.status = STATUS_PLAYING
        if self.state == WAITING:
            self.state = READY
        return [self._stats_message()]

    def _on_leave(self, player: Player) -> List[Message]:
        if not self.players and self.state == READY:
            self.state = WAITING
        return [self._stats_message()]

    def _status_changed(self, player: Player) -> List[Message]:
        return [self._stats_message()]

    def _stats_message(self) -> Message:
        return Message('player_stats', {'players': self.player_list()})

    def _check_action(self, player_id: str, action: str, row: int, col: int):
        self.player(player_id, action)
        if self.state in TERMINAL_STATES:
            raise IllegalAction(player_id, action, "board is frozen")
        if not self.board.contains(row, col):
            raise IllegalAction(player_id, action, f"cell ({row}, {col}) is off the board")

    def open_cell(self, player_id: str, row: int, col: int) -> List[Message]:
        self._check_action(player_id, 'open', row, col)
        return self._apply_reveal(player_id, 'open', row, col, self.board.open(row, col))

    def chord_cell(self, player_id: str, row: int, col: int) -> List[Message]:
        self._check_action(player_id, 'chord', row, col)
        return self._apply_reveal(player_id, 'chord', row, col, self.board.chord(row, col))

    def toggle_flag(self, player_id: str, row: int, col: int) -> List[Message]:
        self._check_action(player_id, 'flag', row, col)
        if not self.board.toggle_flag(row, col):
            raise IllegalAction(player_id, 'flag', f"cell ({row}, {col}) is already open")
        return [Message('board_update', {
            'playerId': player_id,
            'action': 'flag',
            'cells': self.board.cells([(row, col)]),
        })]

    def reset_board(self, player_id: str) -> List[Message]:
        player = self.player(player_id, 'reset')
        self.board = self.new_board()
        self.state = READY
        self.started_at = None
        self.finished_at = None
        self.game_over_id = None
        self.game_over_name = ''
        for p in self.players.values():
            p.score = 0
        logger.info(f"Co-op board reset by '{player.name}'")
        return [Message('board_reset', {'playerId': player_id, 'name': player.name}), snapshot_message()]

    def _credit(self, action: str, row: int, col: int, safe_cells: List[tuple]) -> int:
        if self.score_policy == SCORE_CASCADE:
            return len(safe_cells)
        if action == 'open':
            targets = {(row, col)}
        else:
            targets = set(self.board.neighbors(row, col))
        return sum(1 for rc in safe_cells if rc in targets)

    def _apply_reveal(self, player_id: str, action: str, row: int, col: int,
                      result: OpenResult) -> List[Message]:
        if not result.changed:
            raise IllegalAction(player_id, action, f"no effect at ({row}, {col})")
        if self.state == READY:
            self.state = PLAYING
            self.started_at = self._clock()

        player = self.players[player_id]
        safe_cells = [rc for rc in result.opened if not self.board.mines[rc]]
        player.score += self._credit(action, row, col, safe_cells)

        messages = [Message('board_update', {
            'playerId': player_id,
            'action': action,
            'cells': self.board.cells(result.opened),
        }), self._stats_message()]

        if result.detonated:
            self.state = LOST
            self.finished_at = self._clock()
            self.game_over_id = player_id
            self.game_over_name = player.name
            logger.info(f"Co-op game lost: '{player.name}' hit a mine")
            messages.append(Message('game_over', {
                'playerId': player_id,
                'name': player.name,
                'mines': self.board.mine_positions(),
            }))
        elif self.board.is_cleared():
            self.state = WON
            self.finished_at = self._clock()
            logger.info("Co-op game won")
            messages.append(Message('game_won', {'players': self.player_list()}))
        return messages

    def _mode_snapshot(self, player_id: str) -> dict:
        reveal = self.state in TERMINAL_STATES
        return {
            'board': self.board.to_view(reveal=reveal),
            'gameOver': self.state == LOST,
            'gameWon': self.state == WON,
            'gameOverName': self.game_over_name,
            'totalSafeCells': self.board.total_safe_cells,
        }


class PvpGame(ModeController):
    """Competitive mode: two players, one board each, first to clear wins.

    Room states run ``waiting`` (fewer than two players) -> ``ready`` ->
    ``playing`` -> ``finished``.  Within a match each player is ``playing``,
    ``failed`` (hit a mine; may reset their own board), ``won`` or
    ``disconnected``.  Both boards share dimensions and mine count but get
    independent random generators, so layouts differ.
    """
    mode = COMPETITIVE
    capacity = 2

    def __init__(self, config: BoardConfig, rng_factory=None, clock=time.time):
        super().__init__(config, rng_factory=rng_factory, clock=clock)
        self.boards: Dict[str, Board] = {}
        self.winner_id: Optional[str] = None
        self.winner_name = ''
        self.finish_reason: Optional[str] = None

    def opponent_of(self, player_id: str) -> Optional[Player]:
        for p in self.players.values():
            if p.player_id != player_id:
                return p
        return None

    def _reset_match(self, state: str, status: str):
        self.state = state
        self.winner_id = None
        self.winner_name = ''
        self.finish_reason = None
        self.started_at = None
        self.finished_at = None
        for p in self.players.values():
            self.boards[p.player_id] = self.new_board()
            p.score = 0
            self._set_status(p, status)

    def _on_join(self, player: Player) -> List[Message]:
        player.status = STATUS_WAITING
        self.boards[player.player_id] = self.new_board()
        if len(self.players) == self.capacity and self.state in (WAITING, FINISHED):
            self._reset_match(READY, STATUS_WAITING)
        return [self._ready_message()]

    def _on_leave(self, player: Player) -> List[Message]:
        self.boards.pop(player.player_id, None)
        messages = []
        if self.state == PLAYING:
            opponent = self.opponent_of(player.player_id)
            if opponent is not None:
                messages.extend(self._declare_winner(opponent.player_id, 'forfeit'))
            else:
                self.state = WAITING
        elif self.state == READY:
            self.state = WAITING
        messages.append(self._ready_message())
        return messages

    def _status_changed(self, player: Player) -> List[Message]:
        if player.player_id not in self.boards:
            return []
        return [self._progress_message(player)]

    def _ready_message(self) -> Message:
        return Message('pvp_room_ready', {
            'ready': self.state == READY and len(self.players) == self.capacity,
            'hostId': self.host_id,
        })

    def _progress_message(self, player: Player) -> Message:
        return Message('pvp_progress', {
            'playerId': player.player_id,
            'name': player.name,
            'progress': self.boards[player.player_id].progress(),
            'status': player.status,
            'totalSafeCells': self.config.total_safe_cells,
        })

    def _require_host(self, player_id: str, action: str):
        self.player(player_id, action)
        if player_id != self.host_id:
            raise IllegalAction(player_id, action, "only the host can do this")
        if len(self.players) != self.capacity:
            raise IllegalAction(player_id, action, f"needs exactly {self.capacity} players")

    def _begin_match(self):
        self._reset_match(PLAYING, STATUS_PLAYING)
        self.started_at = self._clock()

    def start_pvp(self, player_id: str) -> List[Message]:
        self._require_host(player_id, 'start_pvp')
        if self.state != READY:
            raise IllegalAction(player_id, 'start_pvp', f"room is {self.state}")
        self._begin_match()
        logger.info(f"PvP match started by host {player_id}")
        return [Message('pvp_started', {'hostId': self.host_id}), snapshot_message()]

    def pvp_rematch(self, player_id: str) -> List[Message]:
        self._require_host(player_id, 'pvp_rematch')
        if self.state not in TERMINAL_STATES:
            raise IllegalAction(player_id, 'pvp_rematch', f"room is {self.state}")
        self._begin_match()
        logger.info(f"PvP rematch started by host {player_id}")
        return [Message('pvp_rematch', {'hostId': self.host_id}), snapshot_message()]

    def _active_board(self, player_id: str, action: str, row: int, col: int):
        player = self.player(player_id, action)
        if self.state != PLAYING:
            raise IllegalAction(player_id, action, f"room is {self.state}")
        if player.status != STATUS_PLAYING:
            raise IllegalAction(player_id, action, f"player is {player.status}")
        board = self.boards[player_id]
        if not board.contains(row, col):
            raise IllegalAction(player_id, action, f"cell ({row}, {col}) is off the board")
        return player, board

    def open_cell(self, player_id: str, row: int, col: int) -> List[Message]:
        player, board = self._active_board(player_id, 'open', row, col)
        return self._apply_reveal(player, board, 'open', board.open(row, col))

    def chord_cell(self, player_id: str, row: int, col: int) -> List[Message]:
        player, board = self._active_board(player_id, 'chord', row, col)
        return self._apply_reveal(player, board, 'chord', board.chord(row, col))

    def toggle_flag(self, player_id: str, row: int, col: int) -> List[Message]:
        player, board = self._active_board(player_id, 'flag', row, col)
        if not board.toggle_flag(row, col):
            raise IllegalAction(player_id, 'flag', f"cell ({row}, {col}) is already open")
        return [Message('board_update', {
            'playerId': player_id,
            'action': 'flag',
            'cells': board.cells([(row, col)]),
        }, player_id=player_id), self._progress_message(player)]

    def _apply_reveal(self, player: Player, board: Board, action: str, result: OpenResult) -> List[Message]:
        if not result.changed:
            raise IllegalAction(player.player_id, action, "no effect")
        player.score = board.progress()
        messages = [Message('board_update', {
            'playerId': player.player_id,
            'action': action,
            'cells': board.cells(result.opened),
        }, player_id=player.player_id)]

        if result.detonated:
            player.status = STATUS_FAILED
            logger.info(f"PvP player '{player.name}' hit a mine")
            messages.append(self._progress_message(player))
            messages.append(snapshot_message(player.player_id))
        elif board.is_cleared():
            messages.append(self._progress_message(player))
            messages.extend(self._declare_winner(player.player_id, 'cleared'))
        else:
            messages.append(self._progress_message(player))
        return messages

    def reset_board(self, player_id: str) -> List[Message]:
        """Give a player a fresh board mid-match (typically after failing)."""
        player = self.player(player_id, 'reset')
        if self.state != PLAYING:
            raise IllegalAction(player_id, 'reset', f"room is {self.state}")
        if player.status not in (STATUS_PLAYING, STATUS_FAILED):
            raise IllegalAction(player_id, 'reset', f"player is {player.status}")
        self.boards[player_id] = self.new_board()
        player.status = STATUS_PLAYING
        player.score = 0
        return [snapshot_message(player_id), self._progress_message(player)]

    def _declare_winner(self, winner_id: str, reason: str) -> List[Message]:
        winner = self.players[winner_id]
        self.state = FINISHED
        self.finished_at = self._clock()
        self.winner_id = winner_id
        self.winner_name = winner.name
        self.finish_reason = reason
        for p in self.players.values():
            self._set_status(p, STATUS_WON if p.player_id == winner_id else STATUS_FAILED)
        logger.info(f"PvP match won by '{winner.name}' ({reason})")
        return [Message('pvp_game_over', {
            'winnerId': winner_id,
            'winner': winner.name,
            'reason': reason,
        }), snapshot_message()]

    def _mode_snapshot(self, player_id: str) -> dict:
        player = self.players.get(player_id)
        board = self.boards.get(player_id)
        own_status = player.status if player else None
        reveal = self.state == FINISHED or own_status == STATUS_FAILED
        opponents = []
        for p in self.players.values():
            if p.player_id == player_id:
                continue
            opponents.append({
                'playerId': p.player_id,
                'name': p.name,
                'progress': self.boards[p.player_id].progress() if p.player_id in self.boards else 0,
                'status': p.status,
                'connected': p.connected,
            })
        return {
            'board': board.to_view(reveal=reveal) if board is not None else [],
            'status': own_status,
            'progress': board.progress() if board is not None else 0,
            'opponents': opponents,
            'pvpStarted': self.state in (PLAYING, FINISHED),
            'pvpRoomReady': self.state == READY and len(self.players) == self.capacity,
            'winnerId': self.winner_id,
            'winner': self.winner_name or None,
            'finishReason': self.finish_reason,
            'totalSafeCells': self.config.total_safe_cells,
        }


def create_controller(mode: str, config: BoardConfig, rng_factory=None, clock=time.time,
                      score_policy: str = SCORE_CASCADE) -> ModeController:
    """Build the controller for a normalized mode name."""
    if mode == COOPERATIVE:
        return CoopGame(config, rng_factory=rng_factory, clock=clock, score_policy=score_policy)
    if mode == COMPETITIVE:
        return PvpGame(config, rng_factory=rng_factory, clock=clock)
    raise ValueError(f"Unknown mode '{mode}'")
