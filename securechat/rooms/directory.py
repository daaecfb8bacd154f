import copy
import logging
import secrets
import time
from typing import Callable, Dict, List, Optional

from securechat.core.crypto import hash_secret, verify_secret
from securechat.core.errors import NotAuthorized, RoomNotFound, ValidationError, WrongPassword
from securechat.core.models import AccessTier, AdminConfig, Identity, Room, Session
from securechat.storage import keys

logger = logging.getLogger(__name__)

MAX_ROOM_NAME = 40
MIN_ROOM_PASSWORD = 2


class RoomDirectory:
    def __init__(
        self,
        storage,
        admin_config: Callable[[], Optional[AdminConfig]],
        password_in_use: Callable[[str, List[Room]], bool],
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage
        self._admin_config = admin_config
        self._password_in_use = password_in_use
        self._clock = clock
        self._rooms: Dict[str, Room] = {}

    def load(self):
        self._rooms = {}
        for raw in self.storage.get(keys.CHAT_ROOMS, []) or []:
            room = Room.from_dict(raw)
            self._rooms[room.id] = room

    # ---------------- queries ----------------

    def get_room(self, room_id: str) -> Optional[Room]:
        return self._rooms.get(room_id)

    def rooms(self) -> List[Room]:
        rooms = list(self._rooms.values())
        rooms.sort(key=lambda r: r.created_at)
        return rooms

    def owned_by(self, user_id: str) -> List[Room]:
        return [room for room in self._rooms.values() if room.owner_id == user_id]

    def is_member(self, room_id: str, user_id: str) -> bool:
        room = self._rooms.get(room_id)
        return bool(room) and (user_id in room.member_ids or room.owner_id == user_id)

    def list_visible(self, session: Optional[Session]) -> List[Room]:
        if session is None:
            return []
        if session.tier == AccessTier.ROOM:
            room = self._rooms.get(session.restricted_to_room_id)
            return [room] if room else []
        return self.rooms()

    # ---------------- mutations ----------------

    def create(
        self,
        owner: Identity,
        name: str,
        is_private: bool,
        password: Optional[str] = None,
        is_admin: bool = False,
    ) -> Room:
        config = self._admin_config() or AdminConfig(admin_password_hash="")
        if not is_admin:
            if not config.allow_user_room_creation:
                raise NotAuthorized("Room creation is disabled")
            if len(self.owned_by(owner.id)) >= config.max_rooms_per_user:
                raise NotAuthorized(f"Room limit reached (max {config.max_rooms_per_user})")

        name = (name or "").strip()
        if not name:
            raise ValidationError("Room name required")
        if len(name) > MAX_ROOM_NAME:
            raise ValidationError(f"Room name too long (max {MAX_ROOM_NAME})")

        password_hash = None
        if is_private:
            password = password or ""
            if len(password) < MIN_ROOM_PASSWORD:
                raise ValidationError(f"Password too short (min {MIN_ROOM_PASSWORD})")
            if self._password_in_use(password, self.rooms()):
                raise ValidationError("Password already in use, pick another one")
            password_hash = hash_secret(password)

        room_id = ""
        for _ in range(8):
            candidate = f"room_{secrets.token_hex(4)}"
            if candidate not in self._rooms:
                room_id = candidate
                break
        if not room_id:
            raise ValidationError("Room creation failed, try again")

        room = Room(
            id=room_id,
            name=name,
            owner_id=owner.id,
            created_at=self._clock(),
            is_private=is_private,
            password_hash=password_hash,
            member_ids={owner.id},
        )
        self._rooms[room.id] = room
        self._save()
        logger.info("%s created %s room %s (%s)", owner.username,
                    "private" if is_private else "public", room.name, room.id)
        return room

    def join(self, room_id: str, user_id: str, password: Optional[str] = None) -> Room:
        room = self._rooms.get(room_id)
        if not room:
            raise RoomNotFound()
        if user_id in room.member_ids:
            return room
        if room.is_private and room.owner_id != user_id:
            if not verify_secret(password or "", room.password_hash):
                raise WrongPassword()
        room.member_ids.add(user_id)
        self._save()
        logger.info("%s joined room %s", user_id, room.id)
        return room

    # ---------------- persistence ----------------

    def _save(self):
        self.storage.set(keys.CHAT_ROOMS, [room.to_dict() for room in self.rooms()])

    def snapshot(self):
        return copy.deepcopy(self._rooms)

    def restore(self, snap):
        self._rooms = snap

    # ---------------- serialization ----------------

    def serialize_room(self, room: Room, viewer_id: Optional[str] = None) -> Dict:
        joined = viewer_id is not None and (
            viewer_id in room.member_ids or room.owner_id == viewer_id
        )
        return {
            "id": room.id,
            "name": room.name,
            "owner_id": room.owner_id,
            "created_at": room.created_at,
            "is_private": room.is_private,
            "member_count": len(room.member_ids),
            "members": sorted(room.member_ids) if joined else [],
            "joined": joined,
            "is_owner": room.owner_id == viewer_id,
        }

    def serialize_rooms(self, rooms: List[Room], viewer_id: Optional[str] = None) -> List[Dict]:
        return [self.serialize_room(room, viewer_id) for room in rooms]
