import copy
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional

from securechat.core.auth import CredentialClassifier, Grant
from securechat.core.crypto import hash_secret
from securechat.core.errors import (
    AccessDenied,
    ActionResult,
    ChatError,
    Denied,
    NotAuthenticated,
    NotAuthorized,
    StorageError,
    ValidationError,
)
from securechat.core.identity import ADMIN_COLOR, generate_user_color, generate_user_id
from securechat.core.models import AccessTier, AdminConfig, ChatType, Identity, Message, Room, Session
from securechat.core.router import ConversationRouter
from securechat.core.session import MIN_USERNAME_LENGTH, AccessSession
from securechat.messaging.message_store import MessageStore, MessageView, validate_retention_hours
from securechat.rooms.directory import RoomDirectory
from securechat.storage import keys
from securechat.storage.kv import StagedStore

logger = logging.getLogger(__name__)

MIN_ADMIN_PASSWORD = 6
DEFAULT_RETENTION_HOURS = 24
MAX_EVENTS = 50


class AdminBootstrap(str, Enum):
    NO_ADMIN_CONFIGURED = "no_admin_configured"
    ADMIN_SETUP_PENDING = "admin_setup_pending"
    ADMIN_CONFIGURED = "admin_configured"


class LoginStep(str, Enum):
    PASSWORD = "password"
    USERNAME = "username"
    ADMIN_SETUP = "admin_setup"
    DONE = "done"


@dataclass
class _PendingLogin:
    secret: str
    grant: Grant
    username: Optional[str] = None


class ChatEngine:
    """
    The explicit store behind the chat client.

    Every write goes through one of the public action methods, which run
    under a single re-entrant lock and return an ActionResult. Components
    raise ChatError subclasses; they are converted here and never escape.
    Writes made during an action are staged and reach storage in one batch
    only once the action has succeeded; a rejected or failed action rolls
    in-memory state back to what it was and persists nothing.

    Subscribers registered with subscribe() are called with
    (event_name, value) after each applied action.
    """

    def __init__(
        self,
        storage,
        classifier: CredentialClassifier,
        clock: Callable[[], float] = time.time,
        new_identity_id: Callable[[], str] = generate_user_id,
        new_identity_color: Callable[[], str] = generate_user_color,
        away_after: float = 300,
    ):
        self.storage = storage
        self._store = StagedStore(storage)
        self.classifier = classifier
        self.clock = clock
        self.away_after = away_after

        self._lock = threading.RLock()
        self._subscribers: List[Callable[[str, object], None]] = []
        self._events: List[Dict] = []

        self.admin_config: Optional[AdminConfig] = None
        self.bootstrap = AdminBootstrap.NO_ADMIN_CONFIGURED
        self._pending: Optional[_PendingLogin] = None

        self.access = AccessSession(
            self._store,
            is_reserved_admin_username=classifier.is_reserved_admin_username,
            new_identity_id=new_identity_id,
            new_identity_color=new_identity_color,
            clock=clock,
        )
        self.rooms = RoomDirectory(
            self._store,
            admin_config=lambda: self.admin_config,
            password_in_use=classifier.collides,
            clock=clock,
        )
        self.router = ConversationRouter(
            self.rooms,
            session=lambda: self.access.current,
            user_lookup=self.access.get_user,
        )
        self.messages = MessageStore(self._store, reachable=self.router.can_reach, clock=clock)

        self.load()

    # ---------------- lifecycle ----------------

    def load(self):
        with self._lock:
            raw_config = self.storage.get(keys.ADMIN_CONFIG)
            self.admin_config = AdminConfig.from_dict(raw_config) if raw_config else None
            self.bootstrap = (
                AdminBootstrap.ADMIN_CONFIGURED
                if self.admin_config
                else AdminBootstrap.NO_ADMIN_CONFIGURED
            )
            self.access.load()
            self.rooms.load()
            self.messages.load()
            try:
                self.messages.sweep_retention(self.retention_hours)
            except StorageError:
                logger.exception("Retention sweep on load failed")

    @property
    def retention_hours(self) -> int:
        if self.admin_config:
            return self.admin_config.default_message_retention_hours
        return DEFAULT_RETENTION_HOURS

    @property
    def session(self) -> Optional[Session]:
        return self.access.current

    @property
    def login_step(self) -> LoginStep:
        if self.access.current is not None:
            return LoginStep.DONE
        if self.bootstrap == AdminBootstrap.ADMIN_SETUP_PENDING:
            return LoginStep.ADMIN_SETUP
        if self._pending is not None:
            return LoginStep.USERNAME
        return LoginStep.PASSWORD

    # ---------------- subscriptions ----------------

    def subscribe(self, callback: Callable[[str, object], None]) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self, event: str, value):
        with self._lock:
            self._events.append({"type": event, "ts": self.clock()})
            if len(self._events) > MAX_EVENTS:
                self._events = self._events[-MAX_EVENTS:]
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event, value)
            except Exception:
                logger.exception("Subscriber failed handling %s", event)

    def consume_events(self) -> List[Dict]:
        with self._lock:
            events = list(self._events)
            self._events.clear()
        return events

    # ---------------- action plumbing ----------------

    def _snapshot(self):
        return (
            copy.deepcopy(self.admin_config),
            self.bootstrap,
            copy.deepcopy(self._pending),
            self.access.snapshot(),
            self.rooms.snapshot(),
            self.messages.snapshot(),
            self.router.snapshot(),
        )

    def _restore(self, snap):
        (
            self.admin_config,
            self.bootstrap,
            self._pending,
            access,
            rooms,
            messages,
            router,
        ) = snap
        self.access.restore(access)
        self.rooms.restore(rooms)
        self.messages.restore(messages)
        self.router.restore(router)

    def _run(self, event: str, action: Callable, *args, **kwargs) -> ActionResult:
        with self._lock:
            snap = self._snapshot()
            self._store.begin()
            try:
                value = action(*args, **kwargs)
                self._store.commit()
            except StorageError as err:
                self._store.discard()
                self._restore(snap)
                logger.exception("Storage failure during %s", event)
                return ActionResult.failure(err)
            except ChatError as err:
                self._store.discard()
                self._restore(snap)
                logger.debug("%s rejected: %s", event, err.message)
                return ActionResult.failure(err)
        self._notify(event, value)
        return ActionResult.success(value)

    def _require_session(self) -> Session:
        session = self.access.current
        if session is None:
            raise NotAuthenticated()
        return session

    def _require_admin(self) -> Session:
        session = self._require_session()
        if not session.is_admin:
            raise NotAuthorized("Admin access required")
        return session

    def _reachable_message(self, session: Session, message_id) -> Message:
        msg = self.messages.get(message_id)
        if not self.router.can_reach(session, msg.conversation_key):
            raise AccessDenied()
        return msg

    # ---------------- login flow ----------------

    def submit_secret(self, secret: str) -> ActionResult:
        return self._run("secret_accepted", self._submit_secret, secret)

    def choose_username(self, username: str) -> ActionResult:
        return self._run("login", self._choose_username, username)

    def login(self, secret: str, username: str) -> ActionResult:
        def both():
            self._submit_secret(secret)
            return self._choose_username(username)

        return self._run("login", both)

    def complete_admin_setup(self, admin_password: str) -> ActionResult:
        return self._run("admin_setup", self._complete_admin_setup, admin_password)

    def cancel_login(self) -> ActionResult:
        def cancel():
            self._pending = None
            if self.bootstrap == AdminBootstrap.ADMIN_SETUP_PENDING:
                self.bootstrap = AdminBootstrap.NO_ADMIN_CONFIGURED
            return LoginStep.PASSWORD

        return self._run("login_cancelled", cancel)

    def _submit_secret(self, secret: str) -> LoginStep:
        secret = secret or ""
        grant = self.classifier.classify(secret, self.rooms.rooms(), self.admin_config)
        if grant is None:
            if not self.classifier.validate_admin_secret(secret, self.admin_config):
                logger.info("Rejected access password")
                raise Denied()
            grant = Grant(AccessTier.ADMIN)
        self._pending = _PendingLogin(secret=secret, grant=grant)
        return LoginStep.USERNAME

    def _choose_username(self, username: str) -> LoginStep:
        pending = self._pending
        if pending is None:
            raise Denied("Enter the access password first")
        name = (username or "").strip()
        if len(name) < MIN_USERNAME_LENGTH:
            raise ValidationError(f"Username must be at least {MIN_USERNAME_LENGTH} characters")

        if self.classifier.is_reserved_admin_username(name):
            if self.admin_config is None:
                pending.username = name
                self.bootstrap = AdminBootstrap.ADMIN_SETUP_PENDING
                logger.info("No admin configured yet, starting admin setup")
                return LoginStep.ADMIN_SETUP
            if not self.classifier.validate_admin_secret(pending.secret, self.admin_config):
                logger.info("Rejected admin credentials")
                raise Denied("Invalid admin credentials")
            tier, room_id = AccessTier.ADMIN, None
        else:
            if pending.grant.tier == AccessTier.ADMIN:
                raise Denied()
            tier, room_id = pending.grant.tier, pending.grant.room_id

        self._open_session(name, tier, room_id, pending.secret)
        return LoginStep.DONE

    def _complete_admin_setup(self, admin_password: str) -> LoginStep:
        if self.bootstrap != AdminBootstrap.ADMIN_SETUP_PENDING or self._pending is None:
            raise NotAuthorized("Admin setup is not pending")
        password = (admin_password or "").strip()
        if len(password) < MIN_ADMIN_PASSWORD:
            raise ValidationError(f"Admin password must be at least {MIN_ADMIN_PASSWORD} characters")

        username = self.access.validate_username(self._pending.username)
        config = AdminConfig(admin_password_hash=hash_secret(password))
        self._store.set(keys.ADMIN_CONFIG, config.to_dict())
        self.admin_config = config
        self.bootstrap = AdminBootstrap.ADMIN_CONFIGURED

        self._open_session(username, AccessTier.ADMIN, None, password, color=ADMIN_COLOR)
        logger.info("Admin account configured")
        return LoginStep.DONE

    def _open_session(
        self,
        username: str,
        tier: AccessTier,
        room_id: Optional[str],
        secret: str,
        color: Optional[str] = None,
    ) -> Session:
        self.access.validate_username(username)
        if self.access.current is not None:
            self.access.logout()
        session = self.access.login(username, tier, room_id, color=color)
        if tier == AccessTier.ROOM:
            self.rooms.join(room_id, session.user_id, secret)
        self._pending = None
        self.router.reset(session)
        return session

    def logout(self) -> ActionResult:
        def do_logout():
            identity = self.access.logout()
            self._pending = None
            self.router.reset(None)
            return identity

        return self._run("logout", do_logout)

    # ---------------- navigation ----------------

    def switch_to_chat(self, target_id: str, chat_type, display_name: str = "") -> ActionResult:
        def switch():
            try:
                kind = ChatType(chat_type)
            except ValueError:
                raise ValidationError(f"Unknown chat type: {chat_type}")
            self.router.switch_to_chat(target_id, kind, display_name)
            return self.router.active_key

        return self._run("chat_switched", switch)

    def start_dm(self, peer_id: str) -> ActionResult:
        return self._run("chat_switched", self.router.start_dm, peer_id)

    def join_chat_room(self, room_id: str, password: Optional[str] = None) -> ActionResult:
        return self._run("room_joined", self.router.join_chat_room, room_id, password)

    def create_chat_room(
        self,
        name: str,
        is_private: bool = False,
        password: Optional[str] = None,
    ) -> ActionResult:
        def create() -> Room:
            session = self._require_session()
            if session.tier == AccessTier.ROOM:
                raise AccessDenied("Room access cannot create rooms")
            return self.rooms.create(
                session.identity,
                name,
                is_private,
                password,
                is_admin=session.is_admin,
            )

        return self._run("room_created", create)

    # ---------------- messages ----------------

    def send_message(self, content: str, reply_to: Optional[int] = None) -> ActionResult:
        def send() -> Message:
            session = self._require_session()
            key = self.router.active_key
            if not self.router.can_reach(session, key):
                raise AccessDenied()
            target = reply_to if reply_to is not None else self.router.pending_reply
            msg = self.messages.send(key, session.identity, content, target)
            self.router.pending_reply = None
            return msg

        return self._run("message_sent", send)

    def edit_message(self, message_id: int, content: str) -> ActionResult:
        def edit() -> Message:
            session = self._require_session()
            self._reachable_message(session, message_id)
            return self.messages.edit(message_id, session.user_id, content)

        return self._run("message_edited", edit)

    def delete_message(self, message_id: int) -> ActionResult:
        def delete() -> Message:
            session = self._require_session()
            self._reachable_message(session, message_id)
            msg = self.messages.delete(message_id, session.user_id, session.is_admin)
            if self.router.pending_reply == msg.id:
                self.router.pending_reply = None
            return msg

        return self._run("message_deleted", delete)

    def pin_message(self, message_id: int) -> ActionResult:
        def pin() -> Message:
            session = self._require_session()
            self._reachable_message(session, message_id)
            return self.messages.pin(message_id, session.user_id, session.is_admin)

        return self._run("message_pinned", pin)

    def unpin_message(self, message_id: int) -> ActionResult:
        def unpin() -> Message:
            session = self._require_session()
            self._reachable_message(session, message_id)
            return self.messages.unpin(message_id, session.user_id, session.is_admin)

        return self._run("message_unpinned", unpin)

    def react_to_message(self, message_id: int, emoji: str) -> ActionResult:
        def react() -> Message:
            session = self._require_session()
            self._reachable_message(session, message_id)
            return self.messages.react(message_id, session.user_id, emoji)

        return self._run("message_reacted", react)

    def begin_reply(self, message_id: int) -> ActionResult:
        def begin() -> Message:
            session = self._require_session()
            msg = self._reachable_message(session, message_id)
            if msg.conversation_key != self.router.active_key or msg.deleted:
                raise ValidationError("You can only reply to messages in this conversation")
            self.router.pending_reply = msg.id
            return msg

        return self._run("reply_started", begin)

    def cancel_reply(self) -> ActionResult:
        def cancel():
            self.router.pending_reply = None

        return self._run("reply_cancelled", cancel)

    # ---------------- admin settings ----------------

    def update_message_retention(self, hours) -> ActionResult:
        def update() -> int:
            self._require_admin()
            value = validate_retention_hours(hours)
            self.admin_config.default_message_retention_hours = value
            self._store.set(keys.ADMIN_CONFIG, self.admin_config.to_dict())
            logger.info("Message retention set to %dh", value)
            self.messages.sweep_retention(value)
            return value

        return self._run("retention_updated", update)

    def update_admin_password(self, new_password: str) -> ActionResult:
        def update():
            self._require_admin()
            password = (new_password or "").strip()
            if len(password) < MIN_ADMIN_PASSWORD:
                raise ValidationError(
                    f"Admin password must be at least {MIN_ADMIN_PASSWORD} characters"
                )
            self.admin_config.admin_password_hash = hash_secret(password)
            self._store.set(keys.ADMIN_CONFIG, self.admin_config.to_dict())
            logger.info("Admin password changed")

        return self._run("admin_password_updated", update)

    def update_admin_config(
        self,
        allow_user_room_creation: Optional[bool] = None,
        max_rooms_per_user: Optional[int] = None,
        welcome_message: Optional[str] = None,
    ) -> ActionResult:
        def update() -> AdminConfig:
            self._require_admin()
            config = self.admin_config
            if allow_user_room_creation is not None:
                config.allow_user_room_creation = bool(allow_user_room_creation)
            if max_rooms_per_user is not None:
                try:
                    limit = int(max_rooms_per_user)
                except (TypeError, ValueError):
                    raise ValidationError("Room limit must be a number")
                if limit < 0:
                    raise ValidationError("Room limit cannot be negative")
                config.max_rooms_per_user = limit
            if welcome_message is not None:
                config.welcome_message = str(welcome_message).strip()
            self._store.set(keys.ADMIN_CONFIG, config.to_dict())
            return config

        return self._run("admin_config_updated", update)

    # ---------------- timer ----------------

    def tick(self, now: Optional[float] = None) -> int:
        """
        Timer-driven housekeeping: keep the current user online, demote idle
        identities, run the retention sweep. Returns messages swept.
        """
        with self._lock:
            now = self.clock() if now is None else now
            snap = self._snapshot()
            self._store.begin()
            try:
                self.access.touch()
                self.access.refresh_presence(now, self.away_after)
                removed = self.messages.sweep_retention(self.retention_hours, lambda: now)
                self._store.commit()
            except StorageError:
                self._store.discard()
                self._restore(snap)
                logger.exception("Housekeeping tick failed")
                return 0
        if removed:
            self._notify("retention_swept", removed)
        return removed

    # ---------------- read-only views ----------------

    def filtered_messages(self) -> MessageView:
        with self._lock:
            return self.messages.filter_for(self.access.current, self.router.active_key)

    def pinned_messages(self) -> List[Message]:
        return self.filtered_messages().pinned

    def visible_rooms(self) -> List[Room]:
        with self._lock:
            return self.rooms.list_visible(self.access.current)

    def users(self) -> List[Identity]:
        with self._lock:
            return self.access.users()

    def online_user_count(self) -> int:
        with self._lock:
            return self.access.online_count()

    def total_user_count(self) -> int:
        with self._lock:
            return len(self.access.users())

    def state(self) -> Dict:
        with self._lock:
            session = self.access.current
            base = {
                "login_step": self.login_step.value,
                "bootstrap": self.bootstrap.value,
                "welcome_message": self.admin_config.welcome_message if self.admin_config else "",
            }
            if session is None:
                return base

            viewer = session.user_id
            view = self.messages.filter_for(session, self.router.active_key)
            users = [u.to_dict() for u in self.access.users()]
            if session.tier == AccessTier.ROOM:
                room = self.rooms.get_room(session.restricted_to_room_id)
                members = room.member_ids if room else {viewer}
                users = [u for u in users if u["id"] in members]
            base.update(
                {
                    "me": session.identity.to_dict(),
                    "tier": session.tier.value,
                    "restricted_to_room_id": session.restricted_to_room_id,
                    "chat": self.router.serialize(),
                    "messages": self.messages.serialize_messages(view.messages, viewer),
                    "pinned": self.messages.serialize_messages(view.pinned, viewer),
                    "rooms": self.rooms.serialize_rooms(self.rooms.list_visible(session), viewer),
                    "users": users,
                    "online_count": self.access.online_count(),
                    "total_users": len(self.access.users()),
                }
            )
            if session.is_admin and self.admin_config:
                config = self.admin_config.to_dict()
                config.pop("admin_password_hash", None)
                base["admin_config"] = config
            return base
