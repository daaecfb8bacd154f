import logging
import time
from typing import Callable, Dict, List, Optional

from securechat.core.errors import UsernameTaken, ValidationError
from securechat.core.identity import generate_user_color, generate_user_id
from securechat.core.models import (
    STATUS_AWAY,
    STATUS_OFFLINE,
    STATUS_ONLINE,
    AccessTier,
    Identity,
    Session,
)
from securechat.storage import keys

logger = logging.getLogger(__name__)

MIN_USERNAME_LENGTH = 2
MAX_USERNAME_LENGTH = 32


class AccessSession:
    """
    Owns the known identities and the single live session.

    Identities survive logout and restarts (they are keyed by username);
    the session itself only lives in memory.
    """

    def __init__(
        self,
        storage,
        is_reserved_admin_username: Callable[[str], bool],
        new_identity_id: Callable[[], str] = generate_user_id,
        new_identity_color: Callable[[], str] = generate_user_color,
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage
        self._is_admin = is_reserved_admin_username
        self._new_id = new_identity_id
        self._new_color = new_identity_color
        self._clock = clock

        self.current: Optional[Session] = None
        self._users: Dict[str, Identity] = {}

    def load(self):
        self._users = {}
        for raw in self.storage.get(keys.USERS, []) or []:
            identity = Identity.from_dict(raw)
            self._users[identity.id] = identity

    # ---------------- queries ----------------

    def users(self) -> List[Identity]:
        return list(self._users.values())

    def get_user(self, user_id: str) -> Optional[Identity]:
        return self._users.get(user_id)

    def find_by_username(self, username: str) -> Optional[Identity]:
        wanted = username.strip().lower()
        for identity in self._users.values():
            if identity.username.lower() == wanted:
                return identity
        return None

    def online_count(self) -> int:
        return sum(1 for u in self._users.values() if u.status == STATUS_ONLINE)

    # ---------------- lifecycle ----------------

    def validate_username(self, username: str) -> str:
        """
        Everything login() can reject, checked without touching storage.
        Returns the normalized name.
        """
        name = (username or "").strip()
        if len(name) < MIN_USERNAME_LENGTH:
            raise ValidationError(f"Username must be at least {MIN_USERNAME_LENGTH} characters")
        if len(name) > MAX_USERNAME_LENGTH:
            raise ValidationError(f"Username too long (max {MAX_USERNAME_LENGTH})")
        if not self.storage.get(keys.session_key(name)):
            match = self.find_by_username(name)
            if match and match.status == STATUS_ONLINE:
                raise UsernameTaken()
        return name

    def login(
        self,
        username: str,
        tier: AccessTier,
        room_id: Optional[str] = None,
        color: Optional[str] = None,
    ) -> Session:
        name = self.validate_username(username)
        now = self._clock()
        is_admin = self._is_admin(name)

        saved = self.storage.get(keys.session_key(name))
        if saved:
            existing = self._users.get(str(saved.get("id"))) or Identity.from_dict(saved)
        else:
            existing = self.find_by_username(name)

        if existing:
            identity = existing
            identity.last_seen = now
            identity.status = STATUS_ONLINE
            if is_admin:
                identity.is_admin = True
        else:
            identity = Identity(
                id=self._new_id(),
                username=name,
                color=color or self._new_color(),
                joined_at=now,
                last_seen=now,
                status=STATUS_ONLINE,
                is_admin=is_admin,
            )

        self._users[identity.id] = identity
        self._save_users()
        self.storage.set(keys.CURRENT_USER, identity.to_dict())
        self.storage.set(keys.session_key(identity.username), identity.to_dict())

        self.current = Session(
            identity=identity,
            tier=tier,
            restricted_to_room_id=room_id if tier == AccessTier.ROOM else None,
        )
        logger.info("%s logged in (%s tier)", identity.username, tier.value)
        return self.current

    def logout(self) -> Optional[Identity]:
        if self.current is None:
            return None
        identity = self.current.identity
        identity.status = STATUS_OFFLINE
        identity.last_seen = self._clock()
        self._users[identity.id] = identity
        self._save_users()
        self.storage.set(keys.session_key(identity.username), identity.to_dict())
        self.current = None
        logger.info("%s logged out", identity.username)
        return identity

    def touch(self):
        if self.current is None:
            return
        identity = self.current.identity
        identity.last_seen = self._clock()
        identity.status = STATUS_ONLINE
        self._save_users()

    def refresh_presence(self, now: float, away_after: float) -> int:
        """
        Demote idle identities: online -> away after `away_after` seconds,
        then offline after four times that. Returns how many changed.
        """
        current_id = self.current.user_id if self.current else None
        changed = 0
        for identity in self._users.values():
            if identity.id == current_id or identity.status == STATUS_OFFLINE:
                continue
            idle = now - identity.last_seen
            if idle > away_after * 4:
                status = STATUS_OFFLINE
            elif idle > away_after:
                status = STATUS_AWAY
            else:
                status = STATUS_ONLINE
            if status != identity.status:
                identity.status = status
                changed += 1
        if changed:
            self._save_users()
        return changed

    # ---------------- persistence ----------------

    def _save_users(self):
        self.storage.set(keys.USERS, [u.to_dict() for u in self._users.values()])

    def snapshot(self):
        return (
            {uid: Identity(**vars(u)) for uid, u in self._users.items()},
            self.current,
            Identity(**vars(self.current.identity)) if self.current else None,
        )

    def restore(self, snap):
        users, current, current_identity = snap
        self._users = users
        if current is not None and current_identity is not None:
            identity = self._users.get(current_identity.id, current_identity)
            current = Session(identity, current.tier, current.restricted_to_room_id)
        self.current = current
