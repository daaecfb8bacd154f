from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    DENIED = "denied"
    USERNAME_TAKEN = "username_taken"
    ACCESS_DENIED = "access_denied"
    WRONG_PASSWORD = "wrong_password"
    ROOM_NOT_FOUND = "room_not_found"
    NOT_AUTHOR = "not_author"
    NOT_AUTHORIZED = "not_authorized"
    VALIDATION_ERROR = "validation_error"
    NOT_FOUND = "not_found"
    NOT_AUTHENTICATED = "not_authenticated"
    STORAGE_FAILED = "storage_failed"


class ChatError(Exception):
    """
    Base class for every recoverable rejection raised inside the engine.

    Components raise these; ChatEngine turns them into an ActionResult so
    nothing crosses the action boundary as an exception.
    """

    code = ErrorCode.VALIDATION_ERROR
    default_message = "Request rejected"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class Denied(ChatError):
    code = ErrorCode.DENIED
    default_message = "Invalid password"


class UsernameTaken(ChatError):
    code = ErrorCode.USERNAME_TAKEN
    default_message = "Username is currently in use"


class AccessDenied(ChatError):
    code = ErrorCode.ACCESS_DENIED
    default_message = "You do not have access to this conversation"


class WrongPassword(ChatError):
    code = ErrorCode.WRONG_PASSWORD
    default_message = "Invalid room password"


class RoomNotFound(ChatError):
    code = ErrorCode.ROOM_NOT_FOUND
    default_message = "Room not found"


class NotAuthor(ChatError):
    code = ErrorCode.NOT_AUTHOR
    default_message = "Only the author can edit this message"


class NotAuthorized(ChatError):
    code = ErrorCode.NOT_AUTHORIZED
    default_message = "You are not allowed to do that"


class ValidationError(ChatError):
    code = ErrorCode.VALIDATION_ERROR
    default_message = "Invalid input"


class NotFound(ChatError):
    code = ErrorCode.NOT_FOUND
    default_message = "Not found"


class NotAuthenticated(ChatError):
    code = ErrorCode.NOT_AUTHENTICATED
    default_message = "Log in first"


class StorageError(ChatError):
    code = ErrorCode.STORAGE_FAILED
    default_message = "Could not save changes"


@dataclass
class ActionResult:
    ok: bool
    value: Any = None
    error: Optional[ErrorCode] = None
    message: str = ""

    @classmethod
    def success(cls, value: Any = None) -> "ActionResult":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, err: ChatError) -> "ActionResult":
        return cls(ok=False, error=err.code, message=err.message)

    def to_dict(self) -> Dict:
        if self.ok:
            return {"ok": True}
        return {"ok": False, "error": self.error.value, "message": self.message}
