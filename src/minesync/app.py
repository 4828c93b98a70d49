"""
Flask application factory and main application entry point.

This module creates and configures the Flask application instance with
WebSocket support, and wires the room registry, the session store and the
event gateway together as explicitly constructed services.
"""

import time
from dataclasses import dataclass
from flask import Flask
from flask_socketio import SocketIO
from flask_cors import CORS
from loguru import logger
from .config import Config
from .rooms import RoomRegistry
from .session_store import SessionStore


@dataclass
class Services(object):
    """Long-lived collaborators owned by one application instance."""
    socketio: SocketIO
    registry: RoomRegistry
    sessions: SessionStore
    gateway: object
    stopping: bool = False

    def shutdown(self):
        """Stop background loops and release the session store connection."""
        self.stopping = True
        self.sessions.close()
        logger.info("Minesweeper server services shut down")


def create_app(config=None, session_client=None, clock=None):
    """
    Create and configure the Flask application.

    Args:
        config: Dictionary of settings overriding ``Config``
        session_client: Redis client for the session store.  Built from
            REDIS_URL when omitted.
        clock: Time source shared by the registry and session store
            (defaults to time.time)

    Returns:
        Tuple of (Flask application, SocketIO instance)
    """
    app = Flask(__name__)
    app.config.from_object(Config)
    if config:
        app.config.update(config)

    # Configure logging
    logger.remove()  # Remove default handler
    logger.add(
        lambda msg: print(msg, end=''),
        format="{time} | {level} | {message}",
        level=app.config['LOG_LEVEL'],
        colorize=True
    )
    logger.info("Starting minesweeper server")

    allowed_origins = app.config['ALLOWED_ORIGINS']
    CORS(app, origins=allowed_origins, supports_credentials=True)

    # Initialize SocketIO for WebSocket support
    socketio = SocketIO(app, cors_allowed_origins=allowed_origins)

    clock = clock or time.time
    if session_client is not None:
        sessions = SessionStore(session_client, ttl_seconds=app.config['SESSION_TTL_SEC'], clock=clock)
    else:
        sessions = SessionStore.from_url(app.config['REDIS_URL'], ttl_seconds=app.config['SESSION_TTL_SEC'],
                                         clock=clock)
    registry = RoomRegistry(
        grace_seconds=app.config['DISCONNECT_GRACE_SEC'],
        score_policy=app.config['COOP_SCORE_POLICY'],
        seed=app.config['BOARD_SEED'],
        clock=clock,
    )

    # Initialize WebSocket handlers
    from . import websocket_handlers
    gateway = websocket_handlers.init_socketio_handlers(socketio, registry, sessions, app.config)

    services = Services(socketio=socketio, registry=registry, sessions=sessions, gateway=gateway)
    app.extensions['minesync'] = services

    from . import routes
    app.register_blueprint(routes.bp)

    if app.config['START_BACKGROUND_TASKS']:
        start_background_tasks(services, app.config)

    return app, socketio


def sweep_once(services: Services):
    """Expire lapsed grace windows and emit the resulting deliveries."""
    deliveries = services.registry.sweep()
    services.gateway.dispatch(deliveries)


def _sweep_loop(services: Services, interval: float):
    while not services.stopping:
        services.socketio.sleep(interval)
        try:
            sweep_once(services)
        except Exception:
            logger.exception("Grace-window sweep failed")


def _store_ping_loop(services: Services, interval: float):
    # Gameplay never waits on this; a failed ping only degrades reconnection
    while not services.stopping:
        services.sessions.ping()
        services.socketio.sleep(interval)


def start_background_tasks(services: Services, config):
    services.socketio.start_background_task(_sweep_loop, services, config['SWEEP_INTERVAL_SEC'])
    services.socketio.start_background_task(_store_ping_loop, services, config['STORE_PING_INTERVAL_SEC'])
    logger.info("Background sweep and session-store ping started")
