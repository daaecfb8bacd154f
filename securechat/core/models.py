from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set

GENERAL_KEY = "general"
DM_PREFIX = "dm:"

STATUS_ONLINE = "online"
STATUS_AWAY = "away"
STATUS_OFFLINE = "offline"


class AccessTier(str, Enum):
    PUBLIC = "public"
    ROOM = "room"
    ADMIN = "admin"


class ChatType(str, Enum):
    GENERAL = "general"
    ROOM = "room"
    DM = "dm"


@dataclass
class Identity:
    id: str
    username: str
    color: str
    joined_at: float
    last_seen: float
    status: str = STATUS_OFFLINE    # "online" | "away" | "offline"
    is_admin: bool = False

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "username": self.username,
            "color": self.color,
            "joined_at": self.joined_at,
            "last_seen": self.last_seen,
            "status": self.status,
            "is_admin": self.is_admin,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "Identity":
        return cls(
            id=str(data["id"]),
            username=str(data["username"]),
            color=str(data.get("color") or "#888888"),
            joined_at=float(data.get("joined_at") or 0),
            last_seen=float(data.get("last_seen") or 0),
            status=str(data.get("status") or STATUS_OFFLINE),
            is_admin=bool(data.get("is_admin")),
        )


@dataclass
class Session:
    identity: Identity
    tier: AccessTier
    restricted_to_room_id: Optional[str] = None

    def __post_init__(self):
        if (self.tier == AccessTier.ROOM) != bool(self.restricted_to_room_id):
            raise ValueError("restricted_to_room_id must be set exactly for room-tier sessions")

    @property
    def user_id(self) -> str:
        return self.identity.id

    @property
    def is_admin(self) -> bool:
        return self.tier == AccessTier.ADMIN


@dataclass
class Room:
    id: str
    name: str
    owner_id: str
    created_at: float
    is_private: bool
    password_hash: Optional[str] = None
    member_ids: Set[str] = field(default_factory=set)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "name": self.name,
            "owner_id": self.owner_id,
            "created_at": self.created_at,
            "is_private": self.is_private,
            "password_hash": self.password_hash,
            "member_ids": sorted(self.member_ids),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "Room":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or f"Room {str(data['id'])[:6]}"),
            owner_id=str(data.get("owner_id") or ""),
            created_at=float(data.get("created_at") or 0),
            is_private=bool(data.get("is_private")),
            password_hash=data.get("password_hash"),
            member_ids=set(data.get("member_ids") or []),
        )


@dataclass
class Message:
    id: int
    conversation_key: str       # "general" | room id | "dm:<a>:<b>"
    user_id: str
    username: str
    content: str
    created_at: float
    edited_at: Optional[float] = None
    is_pinned: bool = False
    pinned_at: Optional[float] = None
    reactions: Dict[str, Set[str]] = field(default_factory=dict)
    reply_to: Optional[int] = None
    deleted: bool = False

    @property
    def is_dm(self) -> bool:
        return is_dm_key(self.conversation_key)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "conversation_key": self.conversation_key,
            "user_id": self.user_id,
            "username": self.username,
            "content": self.content,
            "created_at": self.created_at,
            "edited_at": self.edited_at,
            "is_pinned": self.is_pinned,
            "pinned_at": self.pinned_at,
            "reactions": {emoji: sorted(users) for emoji, users in self.reactions.items()},
            "reply_to": self.reply_to,
            "deleted": self.deleted,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "Message":
        reply_to = data.get("reply_to")
        return cls(
            id=int(data["id"]),
            conversation_key=str(data["conversation_key"]),
            user_id=str(data["user_id"]),
            username=str(data.get("username") or ""),
            content=str(data.get("content") or ""),
            created_at=float(data["created_at"]),
            edited_at=data.get("edited_at"),
            is_pinned=bool(data.get("is_pinned")),
            pinned_at=data.get("pinned_at"),
            reactions={
                emoji: set(users)
                for emoji, users in (data.get("reactions") or {}).items()
                if users
            },
            reply_to=int(reply_to) if reply_to is not None else None,
            deleted=bool(data.get("deleted")),
        )


@dataclass
class AdminConfig:
    admin_password_hash: str
    default_message_retention_hours: int = 24
    allow_user_room_creation: bool = True
    max_rooms_per_user: int = 5
    welcome_message: str = "Welcome to SecureChat!"

    def to_dict(self) -> Dict:
        return {
            "admin_password_hash": self.admin_password_hash,
            "default_message_retention_hours": self.default_message_retention_hours,
            "allow_user_room_creation": self.allow_user_room_creation,
            "max_rooms_per_user": self.max_rooms_per_user,
            "welcome_message": self.welcome_message,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "AdminConfig":
        return cls(
            admin_password_hash=str(data["admin_password_hash"]),
            default_message_retention_hours=int(data.get("default_message_retention_hours", 24)),
            allow_user_room_creation=bool(data.get("allow_user_room_creation", True)),
            max_rooms_per_user=int(data.get("max_rooms_per_user", 5)),
            welcome_message=str(data.get("welcome_message", cls.welcome_message)),
        )


def dm_key(user_a: str, user_b: str) -> str:
    """Order-independent key for the direct conversation between two users."""
    low, high = sorted((user_a, user_b))
    return f"{DM_PREFIX}{low}:{high}"


def is_dm_key(key: str) -> bool:
    return key.startswith(DM_PREFIX)


def dm_participants(key: str) -> List[str]:
    if not is_dm_key(key):
        return []
    return key[len(DM_PREFIX):].split(":", 1)
