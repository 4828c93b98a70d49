"""
WebSocket event handlers for real-time minesweeper play.

This module is the event gateway: it validates inbound Socket.IO events,
hands them to the room registry and emits the deliveries the registry
produces.  It never touches a board directly, and it only emits after the
room's lock has been released.
"""

import time
import uuid
from dataclasses import dataclass
from typing import List, Optional
from flask import request
from flask_socketio import emit, join_room
from loguru import logger
from .board import BoardConfig, InvalidConfiguration
from .config import is_allowed_origin
from .game_modes import normalize_mode
from .reconnect import recover_session
from .rooms import Delivery, RoomFull, RoomNotFound, RoomRegistry, normalize_code
from .session_store import SessionStore, StoreUnavailable

MAX_CODE_LENGTH = 16
MAX_SESSION_ID_LENGTH = 128
MAX_COLOR_LENGTH = 32


class InvalidMessage(ValueError):
    """Raised when an inbound payload is malformed."""


@dataclass
class Connection(object):
    """Per-connection state: the session it claims and the seat it holds."""
    sid: str
    session_id: str
    room_code: Optional[str] = None
    player_id: Optional[str] = None
    last_action_at: float = 0.0


def parse_cell(data) -> tuple:
    """Extract (row, col) from a ``{row, col}`` payload."""
    if not isinstance(data, dict):
        raise InvalidMessage("Expected an object with 'row' and 'col'")
    values = []
    for key in ('row', 'col'):
        value = data.get(key)
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise InvalidMessage(f"'{key}' must be a non-negative integer")
        values.append(value)
    return tuple(values)


def parse_join_request(data, max_name_length: int = 24):
    """Validate a join_room payload.

    Returns
    -------
    tuple
        (code, name, mode, board_config)

    Raises
    ------
    InvalidMessage
        If the code, name or mode is missing or malformed
    InvalidConfiguration
        If the requested board cannot be built
    """
    if not isinstance(data, dict):
        raise InvalidMessage("Expected an object with 'code' and 'name'")

    code = data.get('code')
    if not isinstance(code, str):
        raise InvalidMessage("Room code is required")
    code = normalize_code(code)
    if not code or len(code) > MAX_CODE_LENGTH or not code.replace('-', '').replace('_', '').isalnum():
        raise InvalidMessage("Invalid room code format")

    name = data.get('name')
    if not isinstance(name, str) or not name.strip():
        raise InvalidMessage("Name is required")
    name = name.strip()
    if len(name) > max_name_length:
        raise InvalidMessage(f"Name must be at most {max_name_length} characters")

    try:
        mode = normalize_mode(data.get('mode'))
    except ValueError as e:
        raise InvalidMessage(str(e))

    config = BoardConfig.from_request(data.get('difficulty'), data.get('rows'),
                                      data.get('cols'), data.get('mines'))
    return code, name, mode, config


class Gateway(object):
    """Connection table plus the helpers the handlers share.

    Parameters
    ----------
    socketio : flask_socketio.SocketIO
        Transport used to emit deliveries
    registry : RoomRegistry
        Owner of all rooms
    sessions : SessionStore
        Session affinity store
    config : mapping
        Application config (MAX_NAME_LENGTH, ACTION_MIN_INTERVAL_MS,
        ALLOWED_ORIGINS)
    """

    def __init__(self, socketio, registry: RoomRegistry, sessions: SessionStore, config):
        self.socketio = socketio
        self.registry = registry
        self.sessions = sessions
        self.connections = {}  # sid -> Connection
        self.max_name_length = config.get('MAX_NAME_LENGTH', 24)
        self.min_action_interval = config.get('ACTION_MIN_INTERVAL_MS', 0) / 1000.0
        self.allowed_origins = config.get('ALLOWED_ORIGINS', ['*'])

    def dispatch(self, deliveries: List[Delivery]):
        for delivery in deliveries:
            self.socketio.emit(delivery.event, delivery.data, room=delivery.to, skip_sid=delivery.skip_sid)
            if delivery.event == 'room_closed':
                self.evict(delivery.to)

    def member(self, sid: str) -> Optional[Connection]:
        conn = self.connections.get(sid)
        if conn is None or conn.room_code is None:
            return None
        return conn

    def seat(self, conn: Connection, room_code: str, player_id: str):
        conn.room_code = room_code
        conn.player_id = player_id
        join_room(room_code)

    def unseat(self, conn: Connection):
        """Forget the connection's seat and take it out of the room broadcast."""
        if conn.room_code is not None:
            self.socketio.server.leave_room(conn.sid, conn.room_code, namespace='/')
        conn.room_code = None
        conn.player_id = None

    def evict(self, room_code: str):
        """Unseat every connection still pointing at a closed room."""
        for conn in list(self.connections.values()):
            if conn.room_code == room_code:
                self.unseat(conn)

    def release_seat(self, room_code: str, player_id: str, keep_sid: str):
        """Detach any other connection holding the same seat.

        A seat is driven by one connection at a time; when a session resumes
        on a new transport the old one loses it.
        """
        for conn in list(self.connections.values()):
            if conn.sid != keep_sid and conn.room_code == room_code and conn.player_id == player_id:
                self.unseat(conn)
                logger.info(f"Session '{conn.session_id}' resumed on {keep_sid}; detached {conn.sid}")
                self.socketio.emit('error', {'message': 'Session resumed on another connection'}, to=conn.sid)

    def remember_session(self, conn: Connection):
        try:
            self.sessions.save(conn.session_id, conn.room_code, conn.player_id)
        except StoreUnavailable as e:
            logger.debug(f"Session '{conn.session_id}' not saved: {e}")

    def forget_session(self, conn: Connection):
        try:
            self.sessions.delete(conn.session_id)
        except StoreUnavailable as e:
            logger.debug(f"Session '{conn.session_id}' not deleted: {e}")

    def leave_current(self, conn: Connection):
        """Give up the connection's seat for good (explicit leave)."""
        code, player_id = conn.room_code, conn.player_id
        self.unseat(conn)
        self.forget_session(conn)
        try:
            deliveries = self.registry.leave(code, player_id)
        except RoomNotFound:
            return
        self.dispatch(deliveries)

    def throttled(self, conn: Connection) -> bool:
        if self.min_action_interval <= 0:
            return False
        now = time.monotonic()
        if now - conn.last_action_at < self.min_action_interval:
            logger.debug(f"Dropped action from session '{conn.session_id}' (too fast)")
            return True
        conn.last_action_at = now
        return False


def init_socketio_handlers(socketio, registry: RoomRegistry, sessions: SessionStore, config) -> Gateway:
    """Initialize WebSocket event handlers and return the gateway they share."""
    gateway = Gateway(socketio, registry, sessions, config)

    def send_reattachment(conn, reattached):
        gateway.release_seat(reattached.room_code, reattached.player_id, keep_sid=conn.sid)
        gateway.seat(conn, reattached.room_code, reattached.player_id)
        gateway.remember_session(conn)
        emit('state_snapshot', reattached.snapshot)
        gateway.dispatch(reattached.deliveries)

    @socketio.on('connect')
    def handle_connect(auth=None):
        """Register the connection and try to put it back in its old seat."""
        origin = request.headers.get('Origin')
        if not is_allowed_origin(origin, gateway.allowed_origins):
            logger.warning(f"Rejected connection from origin {origin}")
            return False

        session_id = auth.get('sessionId') if isinstance(auth, dict) else None
        if not isinstance(session_id, str) or not session_id or len(session_id) > MAX_SESSION_ID_LENGTH:
            session_id = uuid.uuid4().hex

        conn = Connection(request.sid, session_id)
        gateway.connections[request.sid] = conn
        reattached = recover_session(registry, sessions, session_id, request.sid)
        emit('connected', {'sessionId': session_id, 'recovered': reattached is not None})
        if reattached is not None:
            send_reattachment(conn, reattached)

    @socketio.on('disconnect')
    def handle_disconnect(reason=None):
        """Keep the seat for the grace window and tell the room."""
        conn = gateway.connections.pop(request.sid, None)
        if conn is None or conn.room_code is None:
            return
        try:
            deliveries = registry.mark_disconnected(conn.room_code, conn.player_id, request.sid)
        except RoomNotFound:
            return
        # Restart the session TTL from the moment of the drop
        gateway.remember_session(conn)
        gateway.dispatch(deliveries)

    @socketio.on('join_room')
    def handle_join_room(data=None):
        """Join (or create) a room by code."""
        conn = gateway.connections.get(request.sid)
        if conn is None:
            emit('error', {'message': 'Not connected'})
            return

        try:
            code, name, mode, board_config = parse_join_request(data, gateway.max_name_length)
        except (InvalidMessage, InvalidConfiguration) as e:
            emit('join_error', {'error': type(e).__name__, 'message': str(e)})
            return

        if conn.room_code == code:
            try:
                emit('state_snapshot', registry.snapshot(code, conn.player_id))
                return
            except KeyError:
                # Room or seat is gone (RoomNotFound is a KeyError); join afresh
                gateway.unseat(conn)
        elif conn.room_code is not None:
            gateway.leave_current(conn)

        reattached = recover_session(registry, sessions, conn.session_id, request.sid, room_code=code)
        if reattached is not None:
            send_reattachment(conn, reattached)
            return

        try:
            room, player, deliveries = registry.create_or_join(code, name, mode, board_config, request.sid)
        except RoomFull as e:
            emit('join_error', {'error': 'RoomFull', 'message': str(e)})
            return

        gateway.seat(conn, room.code, player.player_id)
        gateway.remember_session(conn)
        emit('state_snapshot', registry.snapshot(room.code, player.player_id))
        gateway.dispatch(deliveries)

    @socketio.on('leave_room')
    def handle_leave_room(data=None):
        conn = gateway.member(request.sid)
        if conn is None:
            emit('left_room', {'room': None})
            return
        code = conn.room_code
        gateway.leave_current(conn)
        emit('left_room', {'room': code})

    def room_action(action, parse=None):
        def handler(data=None):
            conn = gateway.member(request.sid)
            if conn is None:
                emit('error', {'message': 'Join a room first'})
                return
            if gateway.throttled(conn):
                return
            args = ()
            if parse is not None:
                try:
                    args = parse(data)
                except InvalidMessage as e:
                    emit('error', {'message': str(e)})
                    return
            try:
                deliveries = registry.submit(conn.room_code, conn.player_id, action, *args)
            except RoomNotFound as e:
                gateway.unseat(conn)
                emit('error', {'message': str(e)})
                return
            gateway.dispatch(deliveries)
        return handler

    socketio.on_event('open_cell', room_action('open_cell', parse_cell))
    socketio.on_event('toggle_flag', room_action('toggle_flag', parse_cell))
    socketio.on_event('chord_cell', room_action('chord_cell', parse_cell))
    socketio.on_event('reset_board', room_action('reset_board'))
    socketio.on_event('start_pvp', room_action('start_pvp'))
    socketio.on_event('pvp_rematch', room_action('pvp_rematch'))

    @socketio.on('cell_hover')
    def handle_cell_hover(data=None):
        """Relay a hover marker to the rest of the room.  No board state."""
        conn = gateway.member(request.sid)
        if conn is None:
            return
        try:
            row, col = parse_cell(data)
        except InvalidMessage:
            return
        name = registry.player_name(conn.room_code, conn.player_id)
        if name is None:
            return
        color = data.get('color')
        if not isinstance(color, str):
            color = None
        emit('cell_hover', {
            'playerId': conn.player_id,
            'row': row,
            'col': col,
            'name': name,
            'color': color[:MAX_COLOR_LENGTH] if color else None,
        }, room=conn.room_code, include_self=False)

    @socketio.on('confetti')
    def handle_confetti(data=None):
        conn = gateway.member(request.sid)
        if conn is None:
            return
        name = registry.player_name(conn.room_code, conn.player_id)
        if name is None:
            return
        emit('confetti', {'playerId': conn.player_id, 'name': name}, room=conn.room_code, include_self=False)

    @socketio.on('request_snapshot')
    def handle_request_snapshot(data=None):
        """Resend the full authoritative state to the requester."""
        conn = gateway.member(request.sid)
        if conn is None:
            emit('error', {'message': 'Join a room first'})
            return
        try:
            emit('state_snapshot', registry.snapshot(conn.room_code, conn.player_id))
        except KeyError:
            gateway.unseat(conn)
            emit('error', {'message': 'Join a room first'})

    return gateway
