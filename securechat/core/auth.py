# securechat/core/auth.py

import hmac
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from securechat.core.crypto import verify_secret
from securechat.core.models import AccessTier, AdminConfig, Room


@dataclass(frozen=True)
class Grant:
    tier: AccessTier
    room_id: Optional[str] = None


def validate_master_password(secret: str, master_password: str) -> bool:
    return hmac.compare_digest(secret.encode("utf-8"), master_password.encode("utf-8"))


def check_room_access(secret: str, rooms: Iterable[Room]) -> Optional[str]:
    """
    Return the id of the private room whose password is `secret`, if any.
    Public rooms never grant access by password.
    """
    for room in rooms:
        if room.is_private and verify_secret(secret, room.password_hash):
            return room.id
    return None


def is_admin_user(username: str, reserved: str = "admin") -> bool:
    return username.strip().lower() == reserved.lower()


def validate_admin_password(secret: str, admin_config: Optional[AdminConfig]) -> bool:
    if admin_config is None:
        return False
    return verify_secret(secret, admin_config.admin_password_hash)


class CredentialClassifier:
    """
    Pure classification of a submitted secret into an access tier.

    - master password  -> public tier
    - private room pwd -> room tier, restricted to that room
    - anything else    -> None (denied)

    Admin tier is never handed out here; it depends on the username chosen
    afterwards and is decided by the engine's login flow.

    Every predicate can be swapped at construction time, which is how tests
    and alternative deployments inject their own secret checks.
    """

    def __init__(
        self,
        master_password: str,
        admin_username: str = "admin",
        classify_public_or_room_secret: Optional[Callable[[str, Iterable[Room]], Optional[Grant]]] = None,
        is_reserved_admin_username: Optional[Callable[[str], bool]] = None,
        validate_admin_secret: Optional[Callable[[str, Optional[AdminConfig]], bool]] = None,
    ):
        self.master_password = master_password
        self.admin_username = admin_username
        self._classify = classify_public_or_room_secret or self._default_classify
        self._is_admin = is_reserved_admin_username or (
            lambda username: is_admin_user(username, self.admin_username)
        )
        self._validate_admin = validate_admin_secret or validate_admin_password

    def _default_classify(self, secret: str, rooms: Iterable[Room]) -> Optional[Grant]:
        if validate_master_password(secret, self.master_password):
            return Grant(AccessTier.PUBLIC)
        room_id = check_room_access(secret, rooms)
        if room_id:
            return Grant(AccessTier.ROOM, room_id)
        return None

    def classify(
        self,
        secret: str,
        rooms: Iterable[Room],
        admin_config: Optional[AdminConfig] = None,
    ) -> Optional[Grant]:
        if not secret:
            return None
        return self._classify(secret, list(rooms))

    def is_reserved_admin_username(self, username: str) -> bool:
        return self._is_admin(username)

    def validate_admin_secret(self, secret: str, admin_config: Optional[AdminConfig]) -> bool:
        if not secret:
            return False
        return self._validate_admin(secret, admin_config)

    def collides(self, secret: str, rooms: Iterable[Room]) -> bool:
        """True if `secret` is already the master password or a private room password."""
        return self._default_classify(secret, rooms) is not None
