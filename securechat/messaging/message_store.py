import copy
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from securechat.core.errors import NotAuthor, NotAuthorized, NotFound, ValidationError
from securechat.core.models import Identity, Message, Session
from securechat.storage import keys

logger = logging.getLogger(__name__)

MAX_CONTENT_LENGTH = 2000
MIN_RETENTION_HOURS = 1
MAX_RETENTION_HOURS = 8760
DELETED_PLACEHOLDER = "This message was deleted"


@dataclass
class MessageView:
    messages: List[Message] = field(default_factory=list)
    pinned: List[Message] = field(default_factory=list)


def validate_retention_hours(hours) -> int:
    try:
        value = int(hours)
    except (TypeError, ValueError):
        raise ValidationError("Retention must be a whole number of hours")
    if not MIN_RETENTION_HOURS <= value <= MAX_RETENTION_HOURS:
        raise ValidationError(
            f"Retention must be between {MIN_RETENTION_HOURS} and {MAX_RETENTION_HOURS} hours"
        )
    return value


class MessageStore:
    """
    Every message of every conversation, kept in id (= chronological) order.

    Deletion leaves a tombstone so replies and pins can still point at it;
    only the retention sweep removes messages for good, and it never
    touches direct conversations.
    """

    def __init__(
        self,
        storage,
        reachable: Callable[[Session, str], bool],
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage
        self._reachable = reachable
        self._clock = clock
        self._messages: Dict[int, Message] = {}
        self._last_id = 0

    def load(self):
        self._messages = {}
        for raw in self.storage.get(keys.MESSAGES, []) or []:
            msg = Message.from_dict(raw)
            self._messages[msg.id] = msg
        stored_last = self.storage.get(keys.LAST_MESSAGE_ID, 0) or 0
        self._last_id = max(max(self._messages, default=0), int(stored_last))

    def _next_id(self) -> int:
        self._last_id += 1
        return self._last_id

    def get(self, message_id: int) -> Message:
        try:
            return self._messages[int(message_id)]
        except (KeyError, TypeError, ValueError):
            raise NotFound("Message not found")

    def all(self) -> List[Message]:
        return list(self._messages.values())

    # ---------------- mutations ----------------

    def send(
        self,
        conversation_key: str,
        author: Identity,
        content: str,
        reply_to: Optional[int] = None,
    ) -> Message:
        text = (content or "").strip()
        if not text:
            raise ValidationError("Message is empty")
        if len(text) > MAX_CONTENT_LENGTH:
            raise ValidationError(f"Message too long (max {MAX_CONTENT_LENGTH})")

        if reply_to is not None:
            original = self._messages.get(reply_to)
            if (
                original is None
                or original.deleted
                or original.conversation_key != conversation_key
            ):
                reply_to = None

        msg = Message(
            id=self._next_id(),
            conversation_key=conversation_key,
            user_id=author.id,
            username=author.username,
            content=text,
            created_at=self._clock(),
            reply_to=reply_to,
        )
        self._messages[msg.id] = msg
        self._save()
        return msg

    def edit(self, message_id: int, editor_id: str, new_content: str) -> Message:
        msg = self.get(message_id)
        if msg.user_id != editor_id:
            raise NotAuthor()
        if msg.deleted:
            return msg
        text = (new_content or "").strip()
        if not text:
            raise ValidationError("Message is empty")
        if len(text) > MAX_CONTENT_LENGTH:
            raise ValidationError(f"Message too long (max {MAX_CONTENT_LENGTH})")
        if text == msg.content:
            return msg
        msg.content = text
        msg.edited_at = self._clock()
        self._save()
        return msg

    def delete(self, message_id: int, requester_id: str, is_requester_admin: bool) -> Message:
        msg = self.get(message_id)
        if msg.user_id != requester_id and not is_requester_admin:
            raise NotAuthorized("Only the author or an admin can delete this message")
        if msg.deleted:
            return msg
        msg.deleted = True
        msg.content = ""
        msg.reactions = {}
        msg.is_pinned = False
        msg.pinned_at = None
        self._save()
        return msg

    def pin(self, message_id: int, requester_id: str, is_requester_admin: bool) -> Message:
        return self._set_pinned(message_id, requester_id, is_requester_admin, True)

    def unpin(self, message_id: int, requester_id: str, is_requester_admin: bool) -> Message:
        return self._set_pinned(message_id, requester_id, is_requester_admin, False)

    def _set_pinned(
        self, message_id: int, requester_id: str, is_requester_admin: bool, pinned: bool
    ) -> Message:
        msg = self.get(message_id)
        if not is_requester_admin:
            logger.info("%s may not pin message %d", requester_id, msg.id)
            raise NotAuthorized("Only admins can pin messages")
        if msg.is_pinned == pinned or (pinned and msg.deleted):
            return msg
        msg.is_pinned = pinned
        msg.pinned_at = self._clock() if pinned else None
        self._save()
        logger.info("%s %s message %d", requester_id, "pinned" if pinned else "unpinned", msg.id)
        return msg

    def react(self, message_id: int, user_id: str, emoji: str) -> Message:
        emoji = (emoji or "").strip()
        if not emoji:
            raise ValidationError("Pick an emoji")
        msg = self.get(message_id)
        if msg.deleted:
            return msg
        users = msg.reactions.setdefault(emoji, set())
        if user_id in users:
            users.discard(user_id)
        else:
            users.add(user_id)
        if not users:
            del msg.reactions[emoji]
        self._save()
        return msg

    def sweep_retention(self, retention_hours: int, now_fn: Optional[Callable[[], float]] = None) -> int:
        """
        Permanently drop general/room messages older than `retention_hours`.
        Direct messages are never swept. Returns the number removed.
        """
        hours = validate_retention_hours(retention_hours)
        now = (now_fn or self._clock)()
        max_age = hours * 3600
        expired = [
            msg.id
            for msg in self._messages.values()
            if not msg.is_dm and now - msg.created_at > max_age
        ]
        if not expired:
            return 0
        for message_id in expired:
            del self._messages[message_id]
        self._save()
        logger.info("Retention sweep removed %d message(s) older than %dh", len(expired), hours)
        return len(expired)

    # ---------------- views ----------------

    def filter_for(self, session: Optional[Session], active_key: str) -> MessageView:
        if session is None or not self._reachable(session, active_key):
            return MessageView()
        messages = [m for m in self._messages.values() if m.conversation_key == active_key]
        pinned = sorted(
            (m for m in messages if m.is_pinned),
            key=lambda m: (m.pinned_at or 0, m.id),
        )
        return MessageView(messages=messages, pinned=pinned)

    def resolve_reply(self, msg: Message) -> Optional[Message]:
        if msg.reply_to is None:
            return None
        return self._messages.get(msg.reply_to)

    # ---------------- persistence ----------------

    def _save(self):
        self.storage.set(keys.MESSAGES, [m.to_dict() for m in self._messages.values()])
        self.storage.set(keys.LAST_MESSAGE_ID, self._last_id)

    def snapshot(self):
        return copy.deepcopy(self._messages), self._last_id

    def restore(self, snap):
        self._messages, self._last_id = snap

    # ---------------- serialization ----------------

    def serialize_message(self, msg: Message, viewer_id: Optional[str] = None) -> Dict:
        reply = None
        original = self.resolve_reply(msg)
        if original is not None:
            reply = {
                "id": original.id,
                "username": original.username,
                "content": DELETED_PLACEHOLDER if original.deleted else original.content,
                "deleted": original.deleted,
            }
        return {
            "id": msg.id,
            "conversation_key": msg.conversation_key,
            "user_id": msg.user_id,
            "username": msg.username,
            "content": DELETED_PLACEHOLDER if msg.deleted else msg.content,
            "deleted": msg.deleted,
            "created_at": msg.created_at,
            "iso": time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(msg.created_at)),
            "edited_at": msg.edited_at,
            "is_pinned": msg.is_pinned,
            "pinned_at": msg.pinned_at,
            "reactions": {emoji: len(users) for emoji, users in msg.reactions.items()},
            "my_reactions": sorted(
                emoji for emoji, users in msg.reactions.items() if viewer_id in users
            ),
            "reply_to": msg.reply_to,
            "reply": reply,
            "is_own": viewer_id is not None and msg.user_id == viewer_id,
        }

    def serialize_messages(self, messages: List[Message], viewer_id: Optional[str] = None) -> List[Dict]:
        return [self.serialize_message(msg, viewer_id) for msg in messages]
