"""
HTTP routes.

Only a banner and a liveness check; all gameplay goes over Socket.IO.
"""

from flask import Blueprint, current_app, jsonify

bp = Blueprint('main', __name__)


@bp.route('/')
def index():
    """Banner confirming the server is up."""
    return 'Minesweeper server is running.'


@bp.route('/health')
def health():
    """Report transport readiness and whether the session store answered its
    last ping."""
    services = current_app.extensions['minesync']
    return jsonify({
        'status': 'ok',
        'socketio': 'initialized',
        'sessionStore': 'up' if services.sessions.available else 'down',
        'rooms': len(services.registry.list_rooms()),
    })
