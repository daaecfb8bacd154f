import unittest
from unittest import mock

from securechat.core.auth import CredentialClassifier
from securechat.core.errors import StorageError
from securechat.engine import ChatEngine
from securechat.storage.kv import MemoryStore

MASTER = "letmein"
HOUR = 3600.0


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class FlakyStore(MemoryStore):
    """
    MemoryStore whose writes can be made to fail on demand: every write
    while `fail_writes` is set, or any batch touching one of `fail_keys`.
    A failing batch writes nothing.
    """

    def __init__(self, initial=None):
        super().__init__(initial)
        self.fail_writes = False
        self.fail_keys = set()

    def _check(self, written):
        blocked = self.fail_keys.intersection(written)
        if self.fail_writes or blocked:
            raise StorageError(f"Cannot write {sorted(blocked) or list(written)}")

    def set(self, key, value):
        self._check([key])
        super().set(key, value)

    def set_many(self, items, deletes=()):
        self._check(list(items) + list(deletes))
        super().set_many(items, deletes)


class FastHashTestCase(unittest.TestCase):
    """Keeps PBKDF2 cheap so suites with many password checks stay fast."""

    def setUp(self) -> None:
        patcher = mock.patch("securechat.core.crypto.ITERATIONS", 1000)
        patcher.start()
        self.addCleanup(patcher.stop)


def make_engine(storage=None, clock=None, away_after: float = 300) -> ChatEngine:
    return ChatEngine(
        storage if storage is not None else MemoryStore(),
        CredentialClassifier(master_password=MASTER),
        clock=clock or FakeClock(),
        away_after=away_after,
    )


def login(engine: ChatEngine, username: str, secret: str = MASTER):
    result = engine.login(secret, username)
    if not result.ok:
        raise AssertionError(f"login {username!r} failed: {result.message}")
    return engine.session


def setup_admin(engine: ChatEngine, password: str = "secret1"):
    engine.login(MASTER, "admin")
    result = engine.complete_admin_setup(password)
    if not result.ok:
        raise AssertionError(f"admin setup failed: {result.message}")
    return engine.session
