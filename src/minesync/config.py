"""
Application configuration.

Defaults come from environment variables; ``create_app`` accepts a dict of
overrides on top of them.
"""

import os


def _redis_url_from_env():
    if os.environ.get('REDIS_URL'):
        return os.environ['REDIS_URL']
    host = os.environ.get('REDIS_HOST', 'localhost')
    port = os.environ.get('REDIS_PORT', '6379')
    password = os.environ.get('REDIS_PASSWORD')
    if password:
        return f"redis://default:{password}@{host}:{port}/0"
    return f"redis://{host}:{port}/0"


def _allowed_origins_from_env():
    if os.environ.get('ALLOWED_ORIGINS'):
        return [o.strip().rstrip('/') for o in os.environ['ALLOWED_ORIGINS'].split(',') if o.strip()]
    origins = ['http://localhost:3000', 'http://127.0.0.1:3000']
    if os.environ.get('FRONTEND_URL'):
        origins.append(os.environ['FRONTEND_URL'].rstrip('/'))
    return origins


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'dev-key-change-in-production'
    REDIS_URL = _redis_url_from_env()
    # Reconnection grace windows (seconds).  The session record and the
    # room-side seat are tuned separately.
    SESSION_TTL_SEC = int(os.environ.get('SESSION_TTL_SEC', '120'))
    DISCONNECT_GRACE_SEC = int(os.environ.get('DISCONNECT_GRACE_SEC', '120'))
    SWEEP_INTERVAL_SEC = int(os.environ.get('SWEEP_INTERVAL_SEC', '5'))
    STORE_PING_INTERVAL_SEC = int(os.environ.get('STORE_PING_INTERVAL_SEC', '60'))
    # Optional: debounce mutating actions per connection (ms). 0 disables.
    ACTION_MIN_INTERVAL_MS = int(os.environ.get('ACTION_MIN_INTERVAL_MS', '0'))
    # 'cascade' credits flood-filled cells to whoever triggered them,
    # 'clicked' only the directly targeted cells
    COOP_SCORE_POLICY = os.environ.get('COOP_SCORE_POLICY', 'cascade')
    ALLOWED_ORIGINS = _allowed_origins_from_env()
    BOARD_SEED = int(os.environ['BOARD_SEED']) if os.environ.get('BOARD_SEED') else None
    MAX_NAME_LENGTH = int(os.environ.get('MAX_NAME_LENGTH', '24'))
    START_BACKGROUND_TASKS = True
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')


def is_allowed_origin(origin, allowed_origins) -> bool:
    """Pure check of a request Origin against the configured allow-list.

    Requests without an Origin header (native apps, curl) are allowed, and a
    '*' entry allows everything.
    """
    if not origin:
        return True
    if '*' in allowed_origins:
        return True
    return origin.rstrip('/') in allowed_origins
