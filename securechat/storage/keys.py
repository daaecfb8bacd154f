USERS = "users"
CHAT_ROOMS = "chatRooms"
MESSAGES = "messages"
CURRENT_USER = "currentUser"
ADMIN_CONFIG = "adminConfig"
LAST_MESSAGE_ID = "lastMessageId"
SESSION_PREFIX = "session:"


def session_key(username: str) -> str:
    return f"{SESSION_PREFIX}{username.strip().lower()}"
