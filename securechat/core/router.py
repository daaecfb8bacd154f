from typing import Callable, Dict, Optional

from securechat.core.errors import (
    AccessDenied,
    NotAuthenticated,
    NotFound,
    RoomNotFound,
    ValidationError,
)
from securechat.core.models import (
    GENERAL_KEY,
    AccessTier,
    ChatType,
    Identity,
    Room,
    Session,
    dm_key,
    dm_participants,
    is_dm_key,
)
from securechat.rooms.directory import RoomDirectory

GENERAL_NAME = "General Chat"


class ConversationRouter:
    """
    Tracks the active conversation and is the only gate to it.

    A room-tier session may only sit in its assigned room or in direct
    conversations; everything else is refused with AccessDenied.
    """

    def __init__(
        self,
        rooms: RoomDirectory,
        session: Callable[[], Optional[Session]],
        user_lookup: Callable[[str], Optional[Identity]],
    ):
        self.rooms = rooms
        self._session = session
        self._user_lookup = user_lookup

        self.active_key = GENERAL_KEY
        self.active_type = ChatType.GENERAL
        self.active_display_name = GENERAL_NAME
        self.pending_reply: Optional[int] = None

    # ---------------- reachability ----------------

    def can_reach(self, session: Optional[Session], key: str) -> bool:
        if session is None:
            return False
        if key == GENERAL_KEY:
            return session.tier != AccessTier.ROOM
        if is_dm_key(key):
            participants = dm_participants(key)
            if session.user_id not in participants:
                return False
            return all(self._user_lookup(uid) is not None for uid in participants)

        room = self.rooms.get_room(key)
        if room is None:
            return False
        if session.tier == AccessTier.ROOM:
            return key == session.restricted_to_room_id
        if session.tier == AccessTier.ADMIN:
            return True
        return not room.is_private or self.rooms.is_member(key, session.user_id)

    def _require_session(self) -> Session:
        session = self._session()
        if session is None:
            raise NotAuthenticated()
        return session

    # ---------------- navigation ----------------

    def switch_to_chat(self, target_id: str, chat_type: ChatType, display_name: str = ""):
        session = self._require_session()
        chat_type = ChatType(chat_type)

        if session.tier == AccessTier.ROOM and chat_type != ChatType.DM:
            if target_id != session.restricted_to_room_id:
                raise AccessDenied("Room access only covers your room and direct messages")

        if chat_type == ChatType.GENERAL:
            key = GENERAL_KEY
            display_name = display_name or GENERAL_NAME
        elif chat_type == ChatType.ROOM:
            room = self.rooms.get_room(target_id)
            if room is None:
                raise RoomNotFound()
            key = room.id
            display_name = display_name or room.name
        else:
            key = target_id

        if not self.can_reach(session, key):
            raise AccessDenied()

        if key != self.active_key:
            self.pending_reply = None
        self.active_key = key
        self.active_type = chat_type
        self.active_display_name = display_name or key

    def start_dm(self, peer_id: str) -> str:
        session = self._require_session()
        peer = self._user_lookup(peer_id)
        if peer is None:
            raise NotFound("User not found")
        if peer.id == session.user_id:
            raise ValidationError("You cannot message yourself")
        key = dm_key(session.user_id, peer.id)
        self.switch_to_chat(key, ChatType.DM, peer.username)
        return key

    def join_chat_room(self, room_id: str, password: Optional[str] = None) -> Room:
        session = self._require_session()
        if session.tier == AccessTier.ROOM and room_id != session.restricted_to_room_id:
            raise AccessDenied("Room access only covers your room and direct messages")
        room = self.rooms.join(room_id, session.user_id, password)
        self.switch_to_chat(room.id, ChatType.ROOM, room.name)
        return room

    def reset(self, session: Optional[Session] = None):
        """Return to the home conversation of `session` (general when logged out)."""
        self.pending_reply = None
        if session is not None and session.tier == AccessTier.ROOM:
            room = self.rooms.get_room(session.restricted_to_room_id)
            self.active_key = session.restricted_to_room_id
            self.active_type = ChatType.ROOM
            self.active_display_name = room.name if room else session.restricted_to_room_id
            return
        self.active_key = GENERAL_KEY
        self.active_type = ChatType.GENERAL
        self.active_display_name = GENERAL_NAME

    # ---------------- state ----------------

    def snapshot(self):
        return (self.active_key, self.active_type, self.active_display_name, self.pending_reply)

    def restore(self, snap):
        self.active_key, self.active_type, self.active_display_name, self.pending_reply = snap

    def serialize(self) -> Dict:
        return {
            "key": self.active_key,
            "type": self.active_type.value,
            "name": self.active_display_name,
            "reply_to": self.pending_reply,
        }
