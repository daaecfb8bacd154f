# securechat/core/identity.py

import random
import uuid

ADMIN_COLOR = "#FF6B6B"

USER_COLORS = (
    "#4ECDC4",
    "#45B7D1",
    "#96CEB4",
    "#FFA07A",
    "#98D8C8",
    "#F7DC6F",
    "#BB8FCE",
    "#85C1E9",
    "#F8B500",
    "#6C5CE7",
)


def generate_user_id() -> str:
    return f"user-{uuid.uuid4().hex[:12]}"


def generate_user_color() -> str:
    return random.choice(USER_COLORS)


def display_name(identity) -> str:
    if identity.is_admin:
        return f"{identity.username} (admin)"
    return identity.username
