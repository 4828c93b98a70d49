"""Reattach returning connections to the seat they held before dropping."""

from dataclasses import dataclass
from typing import List, Optional
from loguru import logger
from .rooms import Delivery, RoomRegistry
from .session_store import SessionExpired, SessionStore, StoreUnavailable


@dataclass
class Reattachment(object):
    """A successful recovery: where the connection now sits, the snapshot to
    send it, and the deliveries telling the rest of the room."""
    room_code: str
    player_id: str
    snapshot: dict
    deliveries: List[Delivery]


def recover_session(registry: RoomRegistry, sessions: SessionStore, session_id: str, sid: str,
                    room_code: Optional[str] = None) -> Optional[Reattachment]:
    """Try to put a connection back into its previous room.

    Looks the session up in the affinity store and, if the room and player
    still exist, rebinds the player to ``sid``.  The caller sends the
    returned snapshot as the single source of truth; buffered deltas are
    never replayed.

    Returns None whenever the connection should be treated as a fresh join:
    no record, an expired record, an unreachable store, a room or player
    that is gone, or (when ``room_code`` is given) a record for a different
    room.
    """
    try:
        record = sessions.lookup(session_id)
    except SessionExpired:
        logger.info(f"Session '{session_id}' expired; treating as a new player")
        return None
    except StoreUnavailable:
        return None
    if record is None:
        return None
    if room_code is not None and record.room_code != room_code:
        return None

    try:
        snapshot, deliveries = registry.reattach(record.room_code, record.player_id, sid)
    except KeyError:
        # RoomNotFound is a KeyError too
        logger.info(f"Session '{session_id}' points at a seat that no longer exists")
        try:
            sessions.delete(session_id)
        except StoreUnavailable as e:
            logger.debug(f"Could not drop stale session '{session_id}': {e}")
        return None

    return Reattachment(record.room_code, record.player_id, snapshot, deliveries)
