#!/usr/bin/env python3
"""
Socket.IO console client for the minesweeper server.

This client connects to the Flask-SocketIO server and allows interactive play
from the command line.  The session id is kept across reconnects, so a
dropped connection is put back into the same seat.

Usage:
    python socketio_client.py http://localhost:5000 ROOM NAME [mode] [difficulty]

Commands:
    o <row> <col> - Open a cell
    f <row> <col> - Toggle a flag
    c <row> <col> - Chord a numbered cell
    r             - Reset the board
    start         - Start a PvP match (host only)
    rematch       - Start a PvP rematch (host only)
    p             - Print the board again
    q             - Leave the room and exit
"""

import sys
import uuid
from typing import Any, Dict, Optional

import socketio


class MinesweeperSocketIOClient:
    """Socket.IO client for the minesweeper server."""

    def __init__(self, server_url: str):
        self.server_url = server_url.rstrip('/')
        self.session_id = uuid.uuid4().hex
        self.sio = socketio.Client(reconnection=True)
        self.snapshot: Optional[Dict[str, Any]] = None
        self.join_request: Optional[Dict[str, Any]] = None
        self.setup_socketio_handlers()

    def setup_socketio_handlers(self):
        """Set up Socket.IO event handlers."""

        @self.sio.on('connected')
        def on_connected(data):
            self.session_id = data.get('sessionId', self.session_id)
            if data.get('recovered'):
                print("✓ Reconnected to previous seat")
            elif self.join_request is not None:
                self.sio.emit('join_room', self.join_request)

        @self.sio.on('state_snapshot')
        def on_state_snapshot(data):
            self.snapshot = data
            self.display_snapshot()

        @self.sio.on('board_update')
        def on_board_update(data):
            if self.snapshot is None:
                return
            board = self.snapshot['board']
            for entry in data.get('cells', []):
                board[entry['row']][entry['col']] = entry['cell']
            self.display_board()

        @self.sio.on('player_joined')
        def on_player_joined(data):
            print(f"👋 {data.get('name')} joined")

        @self.sio.on('player_left')
        def on_player_left(data):
            print(f"🚪 {data.get('name')} left")

        @self.sio.on('disconnected')
        def on_player_disconnected(data):
            print(f"📴 {data.get('name')} disconnected")

        @self.sio.on('player_reconnected')
        def on_player_reconnected(data):
            print(f"📱 {data.get('name')} reconnected")

        @self.sio.on('player_stats')
        def on_player_stats(data):
            scores = ', '.join(f"{p['name']}: {p['score']}" for p in data.get('players', []))
            print(f"📊 {scores}")

        @self.sio.on('pvp_progress')
        def on_pvp_progress(data):
            print(f"🏁 {data.get('name')}: {data.get('progress')}/{data.get('totalSafeCells')} ({data.get('status')})")

        @self.sio.on('pvp_room_ready')
        def on_pvp_room_ready(data):
            if data.get('ready'):
                print("✓ Two players present; the host can type 'start'")

        @self.sio.on('game_over')
        def on_game_over(data):
            print(f"💥 {data.get('name')} hit a mine. Type 'r' to reset.")

        @self.sio.on('game_won')
        def on_game_won(data):
            print("🎉 Board cleared!")

        @self.sio.on('pvp_game_over')
        def on_pvp_game_over(data):
            print(f"🏆 {data.get('winner')} wins ({data.get('reason')})")

        @self.sio.on('room_closed')
        def on_room_closed(data):
            print(f"❌ Room closed: {data.get('reason')}")
            self.snapshot = None

        @self.sio.on('join_error')
        def on_join_error(data):
            print(f"✗ Could not join: {data.get('message', 'Unknown error')}")

        @self.sio.on('error')
        def on_error(data):
            print(f"❌ Server error: {data.get('message', 'Unknown error')}")

        @self.sio.on('disconnect')
        def on_disconnect(*args):
            print("🔌 Socket.IO disconnected")

    def connect(self, code: str, name: str, mode: str = 'cooperative', difficulty: str = 'Easy') -> bool:
        """Connect and join a room."""
        self.join_request = {'code': code, 'name': name, 'mode': mode, 'difficulty': difficulty}
        try:
            self.sio.connect(self.server_url, auth=lambda: {'sessionId': self.session_id})
            return True
        except socketio.exceptions.ConnectionError as e:
            print(f"✗ Socket.IO connection failed: {e}")
            return False

    def display_snapshot(self):
        data = self.snapshot
        print("\n" + "=" * 60)
        print(f"ROOM {data.get('room')} - {data.get('mode')} - {data.get('state')}")
        print("=" * 60)
        for player in data.get('players', []):
            host = " (host)" if player.get('isHost') else ""
            status = "online" if player.get('connected') else "offline"
            print(f"  {player['name']}{host}: {player['score']} ({player['status']}, {status})")
        self.display_board()

    def display_board(self):
        board = self.snapshot.get('board') or []
        if not board:
            return
        cols = len(board[0])
        print("    " + "".join(f"{c % 10}" for c in range(cols)))
        for r, row in enumerate(board):
            print(f"{r:3d} " + "".join(self._cell_char(cell) for cell in row))

    @staticmethod
    def _cell_char(cell: Dict[str, Any]) -> str:
        if cell['isFlagged'] and not cell['isOpen']:
            return 'F'
        if not cell['isOpen']:
            return '*' if cell['isMine'] else '#'
        if cell['isMine']:
            return 'X'
        return str(cell['nearbyMines']) if cell['nearbyMines'] else '.'

    def run(self):
        """Read commands until the user quits."""
        actions = {'o': 'open_cell', 'f': 'toggle_flag', 'c': 'chord_cell'}
        while True:
            try:
                line = input("> ").strip()
            except (EOFError, KeyboardInterrupt):
                break
            if not line:
                continue
            parts = line.split()
            command = parts[0].lower()

            if command == 'q':
                break
            elif command in actions and len(parts) == 3:
                try:
                    row, col = int(parts[1]), int(parts[2])
                except ValueError:
                    print("Usage: o|f|c <row> <col>")
                    continue
                self.sio.emit(actions[command], {'row': row, 'col': col})
            elif command == 'r':
                self.sio.emit('reset_board')
            elif command == 'start':
                self.sio.emit('start_pvp')
            elif command == 'rematch':
                self.sio.emit('pvp_rematch')
            elif command == 'p':
                self.sio.emit('request_snapshot')
            else:
                print("Commands: o/f/c <row> <col>, r, start, rematch, p, q")

        if self.sio.connected:
            self.sio.emit('leave_room')
            self.sio.disconnect()


def main():
    if len(sys.argv) < 4:
        print(__doc__)
        sys.exit(1)
    server_url, code, name = sys.argv[1:4]
    mode = sys.argv[4] if len(sys.argv) > 4 else 'cooperative'
    difficulty = sys.argv[5] if len(sys.argv) > 5 else 'Easy'

    client = MinesweeperSocketIOClient(server_url)
    if not client.connect(code, name, mode, difficulty):
        sys.exit(1)
    client.run()


if __name__ == '__main__':
    main()
