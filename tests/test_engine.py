from securechat.core.errors import ErrorCode
from securechat.core.identity import ADMIN_COLOR
from securechat.core.models import GENERAL_KEY, AccessTier, Identity
from securechat.engine import AdminBootstrap, LoginStep
from securechat.messaging.message_store import DELETED_PLACEHOLDER
from securechat.storage import keys
from securechat.storage.kv import MemoryStore

from tests.support import (
    HOUR,
    MASTER,
    FakeClock,
    FastHashTestCase,
    FlakyStore,
    login,
    make_engine,
    setup_admin,
)


class LoginFlowTests(FastHashTestCase):
    def test_same_username_keeps_identity(self) -> None:
        engine = make_engine()
        for name in ("alice", "Bob", "c3po"):
            first = login(engine, name).identity
            first_id, first_color = first.id, first.color
            engine.logout()
            second = login(engine, name).identity
            engine.logout()
            self.assertEqual((first_id, first_color), (second.id, second.color))

    def test_bad_secret_is_denied(self) -> None:
        engine = make_engine()
        result = engine.login("wrong", "alice")
        self.assertFalse(result.ok)
        self.assertEqual(result.error, ErrorCode.DENIED)
        self.assertIsNone(engine.session)

    def test_two_step_login(self) -> None:
        engine = make_engine()
        self.assertEqual(engine.login_step, LoginStep.PASSWORD)
        self.assertEqual(engine.choose_username("alice").error, ErrorCode.DENIED)

        self.assertEqual(engine.submit_secret(MASTER).value, LoginStep.USERNAME)
        self.assertEqual(engine.login_step, LoginStep.USERNAME)
        self.assertEqual(engine.choose_username("a").error, ErrorCode.VALIDATION_ERROR)
        self.assertEqual(engine.login_step, LoginStep.USERNAME)

        self.assertEqual(engine.choose_username("alice").value, LoginStep.DONE)
        self.assertEqual(engine.session.tier, AccessTier.PUBLIC)

    def test_username_held_by_online_user_is_taken(self) -> None:
        holder = Identity("user-x", "Carol", "#000", 0.0, 0.0, "online")
        engine = make_engine(storage=MemoryStore({keys.USERS: [holder.to_dict()]}))
        self.assertEqual(engine.login(MASTER, "carol").error, ErrorCode.USERNAME_TAKEN)
        self.assertIsNone(engine.session)

    def test_admin_bootstrap_then_wrong_password_is_denied(self) -> None:
        engine = make_engine()
        self.assertEqual(engine.bootstrap, AdminBootstrap.NO_ADMIN_CONFIGURED)

        first = engine.login(MASTER, "admin")
        self.assertTrue(first.ok)
        self.assertEqual(first.value, LoginStep.ADMIN_SETUP)
        self.assertEqual(engine.bootstrap, AdminBootstrap.ADMIN_SETUP_PENDING)
        self.assertIsNone(engine.session)

        self.assertEqual(engine.complete_admin_setup("short").error, ErrorCode.VALIDATION_ERROR)
        self.assertEqual(engine.bootstrap, AdminBootstrap.ADMIN_SETUP_PENDING)

        done = engine.complete_admin_setup("secret1")
        self.assertEqual(done.value, LoginStep.DONE)
        self.assertEqual(engine.bootstrap, AdminBootstrap.ADMIN_CONFIGURED)
        self.assertEqual(engine.session.tier, AccessTier.ADMIN)
        self.assertEqual(engine.session.identity.color, ADMIN_COLOR)
        self.assertTrue(engine.session.identity.is_admin)
        self.assertIsNotNone(engine.storage.get(keys.ADMIN_CONFIG))

        engine.logout()
        for secret in ("bad", MASTER):
            again = engine.login(secret, "admin")
            self.assertFalse(again.ok)
            self.assertEqual(again.error, ErrorCode.DENIED)
            self.assertIsNone(engine.session)

        self.assertTrue(engine.login("secret1", "admin").ok)
        self.assertEqual(engine.session.tier, AccessTier.ADMIN)

    def test_admin_password_only_works_for_admin_username(self) -> None:
        engine = make_engine()
        setup_admin(engine)
        engine.logout()
        self.assertEqual(engine.login("secret1", "mallory").error, ErrorCode.DENIED)

    def test_cancel_admin_setup(self) -> None:
        engine = make_engine()
        engine.login(MASTER, "admin")
        engine.cancel_login()
        self.assertEqual(engine.bootstrap, AdminBootstrap.NO_ADMIN_CONFIGURED)
        self.assertEqual(engine.login_step, LoginStep.PASSWORD)
        self.assertEqual(engine.complete_admin_setup("secret1").error, ErrorCode.NOT_AUTHORIZED)

    def test_admin_password_change(self) -> None:
        engine = make_engine()
        setup_admin(engine)
        self.assertEqual(engine.update_admin_password("tiny").error, ErrorCode.VALIDATION_ERROR)
        self.assertTrue(engine.update_admin_password("newsecret").ok)
        engine.logout()
        self.assertEqual(engine.login("secret1", "admin").error, ErrorCode.DENIED)
        self.assertTrue(engine.login("newsecret", "admin").ok)

    def test_history_and_identity_survive_restart(self) -> None:
        store = MemoryStore()
        first = make_engine(storage=store)
        alice_id = login(first, "alice").user_id
        first.send_message("remember me")

        second = make_engine(storage=store)
        self.assertIsNone(second.session)
        self.assertEqual(login(second, "alice").user_id, alice_id)
        contents = [m.content for m in second.filtered_messages().messages]
        self.assertEqual(contents, ["remember me"])


class MessageActionTests(FastHashTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.clock = FakeClock()
        self.engine = make_engine(clock=self.clock)
        self.bob_id = login(self.engine, "bob").user_id
        self.engine.logout()

    def test_actions_require_session(self) -> None:
        for result in (
            self.engine.send_message("hi"),
            self.engine.start_dm(self.bob_id),
            self.engine.create_chat_room("Lounge"),
            self.engine.delete_message(1),
        ):
            self.assertEqual(result.error, ErrorCode.NOT_AUTHENTICATED)

    def test_pending_reply_is_attached_once(self) -> None:
        login(self.engine, "alice")
        question = self.engine.send_message("question").value
        self.engine.begin_reply(question.id)
        answer = self.engine.send_message("answer").value
        follow_up = self.engine.send_message("follow up").value
        self.assertEqual(answer.reply_to, question.id)
        self.assertIsNone(follow_up.reply_to)

        self.engine.begin_reply(question.id)
        self.engine.cancel_reply()
        self.assertIsNone(self.engine.send_message("plain").value.reply_to)

    def test_cannot_reply_across_conversations(self) -> None:
        login(self.engine, "alice")
        general = self.engine.send_message("in general").value
        self.engine.start_dm(self.bob_id)
        self.assertEqual(self.engine.begin_reply(general.id).error, ErrorCode.VALIDATION_ERROR)

    def test_delete_keeps_replies_resolvable(self) -> None:
        login(self.engine, "alice")
        question = self.engine.send_message("question").value
        answer = self.engine.send_message("answer", reply_to=question.id).value
        self.assertTrue(self.engine.delete_message(question.id).ok)

        messages = self.engine.state()["messages"]
        self.assertEqual([m["id"] for m in messages], [question.id, answer.id])
        self.assertEqual(messages[0]["content"], DELETED_PLACEHOLDER)
        self.assertEqual(messages[1]["reply"]["content"], DELETED_PLACEHOLDER)

    def test_other_users_cannot_edit_or_delete(self) -> None:
        login(self.engine, "alice")
        msg = self.engine.send_message("mine").value
        self.engine.logout()
        login(self.engine, "bob")
        self.assertEqual(self.engine.edit_message(msg.id, "yours").error, ErrorCode.NOT_AUTHOR)
        self.assertEqual(self.engine.delete_message(msg.id).error, ErrorCode.NOT_AUTHORIZED)
        self.assertEqual(self.engine.pin_message(msg.id).error, ErrorCode.NOT_AUTHORIZED)
        self.assertEqual(self.engine.messages.get(msg.id).content, "mine")

    def test_admin_can_delete_and_pin(self) -> None:
        login(self.engine, "alice")
        msg = self.engine.send_message("announcement").value
        self.engine.logout()
        setup_admin(self.engine)
        self.assertTrue(self.engine.pin_message(msg.id).ok)
        self.assertEqual([m.id for m in self.engine.pinned_messages()], [msg.id])
        self.assertTrue(self.engine.unpin_message(msg.id).ok)
        self.assertTrue(self.engine.delete_message(msg.id).ok)

    def test_messages_outside_reach_cannot_be_touched(self) -> None:
        login(self.engine, "alice")
        self.engine.start_dm(self.bob_id)
        private = self.engine.send_message("just us").value
        self.engine.logout()
        login(self.engine, "mallory")
        self.assertEqual(self.engine.react_to_message(private.id, "👀").error, ErrorCode.ACCESS_DENIED)
        self.assertEqual(self.engine.edit_message(private.id, "x").error, ErrorCode.ACCESS_DENIED)

    def test_reaction_toggle_round_trip(self) -> None:
        login(self.engine, "alice")
        msg = self.engine.send_message("vote").value
        self.engine.react_to_message(msg.id, "👍")
        self.assertEqual(self.engine.messages.get(msg.id).reactions, {"👍": {msg.user_id}})
        self.engine.react_to_message(msg.id, "👍")
        self.assertEqual(self.engine.messages.get(msg.id).reactions, {})

    def test_retention_scenario(self) -> None:
        setup_admin(self.engine)
        general = self.engine.send_message("general hello").value
        self.engine.start_dm(self.bob_id)
        direct = self.engine.send_message("dm hello").value

        self.clock.advance(2 * HOUR)
        result = self.engine.update_message_retention(1)
        self.assertTrue(result.ok, result.message)
        self.assertEqual(self.engine.admin_config.default_message_retention_hours, 1)

        self.engine.switch_to_chat("general", "general")
        self.assertNotIn(general.id, [m.id for m in self.engine.filtered_messages().messages])
        self.engine.start_dm(self.bob_id)
        self.assertIn(direct.id, [m.id for m in self.engine.filtered_messages().messages])

    def test_retention_update_is_validated_and_admin_only(self) -> None:
        login(self.engine, "alice")
        self.assertEqual(self.engine.update_message_retention(5).error, ErrorCode.NOT_AUTHORIZED)
        self.engine.logout()
        setup_admin(self.engine)
        for hours in (0, 8761, "abc"):
            self.assertEqual(
                self.engine.update_message_retention(hours).error, ErrorCode.VALIDATION_ERROR
            )
        self.assertEqual(self.engine.admin_config.default_message_retention_hours, 24)

    def test_tick_sweeps_with_default_retention(self) -> None:
        login(self.engine, "alice")
        self.engine.send_message("old news")
        self.clock.advance(25 * HOUR)
        self.assertEqual(self.engine.tick(), 1)
        self.assertEqual(self.engine.filtered_messages().messages, [])
        self.assertEqual(self.engine.session.identity.status, "online")

    def test_tick_demotes_idle_users(self) -> None:
        login(self.engine, "alice")
        self.clock.advance(10 * 60)
        self.engine.tick()
        statuses = {u.username: u.status for u in self.engine.users()}
        self.assertEqual(statuses["alice"], "online")
        self.assertEqual(statuses["bob"], "offline")
        self.assertEqual(self.engine.online_user_count(), 1)
        self.assertEqual(self.engine.total_user_count(), 2)


class RoomTierIsolationTests(FastHashTestCase):
    def test_restricted_session_never_sees_other_conversations(self) -> None:
        engine = make_engine()
        login(engine, "alice")
        engine.send_message("general secret")
        vault = engine.create_chat_room("Vault", True, "p1").value
        lounge = engine.create_chat_room("Lounge", False).value
        for room in (vault, lounge):
            engine.switch_to_chat(room.id, "room")
            engine.send_message(f"inside {room.name}")
        engine.logout()

        session = login(engine, "carol", secret="p1")
        self.assertEqual(session.tier, AccessTier.ROOM)
        for key in (GENERAL_KEY, lounge.id, vault.id, "room_missing"):
            view = engine.messages.filter_for(session, key)
            self.assertTrue(all(m.conversation_key == vault.id for m in view.messages))

        contents = [m.content for m in engine.filtered_messages().messages]
        self.assertEqual(contents, ["inside Vault"])
        self.assertEqual([r.id for r in engine.visible_rooms()], [vault.id])
        self.assertEqual(engine.create_chat_room("Escape").error, ErrorCode.ACCESS_DENIED)

        state = engine.state()
        self.assertEqual(state["tier"], "room")
        self.assertEqual({u["username"] for u in state["users"]}, {"alice", "carol"})


class AdminConfigTests(FastHashTestCase):
    def test_room_creation_switch_and_quota(self) -> None:
        engine = make_engine()
        setup_admin(engine)
        self.assertEqual(
            engine.update_admin_config(max_rooms_per_user=-1).error, ErrorCode.VALIDATION_ERROR
        )
        updated = engine.update_admin_config(
            allow_user_room_creation=False, welcome_message=" Hello there "
        )
        self.assertTrue(updated.ok)
        self.assertEqual(engine.state()["welcome_message"], "Hello there")
        self.assertNotIn("admin_password_hash", engine.state()["admin_config"])
        engine.logout()

        login(engine, "alice")
        self.assertEqual(engine.create_chat_room("Nope").error, ErrorCode.NOT_AUTHORIZED)
        self.assertEqual(engine.update_admin_config(max_rooms_per_user=9).error, ErrorCode.NOT_AUTHORIZED)


    def test_settings_survive_restart(self) -> None:
        store = MemoryStore()
        engine = make_engine(storage=store)
        setup_admin(engine)
        self.assertTrue(engine.update_admin_config(max_rooms_per_user=0, welcome_message="").ok)
        engine.logout()

        restarted = make_engine(storage=store)
        self.assertEqual(restarted.admin_config.max_rooms_per_user, 0)
        self.assertEqual(restarted.admin_config.welcome_message, "")
        login(restarted, "alice")
        self.assertEqual(restarted.create_chat_room("Lounge").error, ErrorCode.NOT_AUTHORIZED)


class ResilienceTests(FastHashTestCase):
    def test_storage_failure_rolls_back_and_keeps_session(self) -> None:
        store = FlakyStore()
        engine = make_engine(storage=store)
        login(engine, "alice")
        first = engine.send_message("one").value

        store.fail_writes = True
        for result in (
            engine.send_message("two"),
            engine.create_chat_room("Lounge"),
            engine.react_to_message(first.id, "👍"),
            engine.logout(),
        ):
            self.assertFalse(result.ok)
            self.assertEqual(result.error, ErrorCode.STORAGE_FAILED)

        self.assertIsNotNone(engine.session)
        self.assertEqual(engine.session.identity.status, "online")
        self.assertEqual([m.id for m in engine.filtered_messages().messages], [first.id])
        self.assertEqual(engine.messages.get(first.id).reactions, {})
        self.assertEqual(engine.visible_rooms(), [])

        store.fail_writes = False
        second = engine.send_message("two").value
        self.assertEqual(second.id, first.id + 1)

    def test_subscribers_see_applied_actions_only(self) -> None:
        engine = make_engine()
        seen = []
        unsubscribe = engine.subscribe(lambda event, value: seen.append(event))

        login(engine, "alice")
        engine.send_message("   ")
        engine.send_message("hello")
        unsubscribe()
        engine.send_message("unseen")

        self.assertEqual(seen, ["login", "message_sent"])
        self.assertEqual(
            [e["type"] for e in engine.consume_events()],
            ["login", "message_sent", "message_sent"],
        )
        self.assertEqual(engine.consume_events(), [])

    def test_failing_subscriber_does_not_break_actions(self) -> None:
        engine = make_engine()

        def broken(event, value):
            raise RuntimeError("boom")

        engine.subscribe(broken)
        self.assertTrue(engine.login(MASTER, "alice").ok)
        self.assertIsNotNone(engine.session)


class AtomicActionTests(FastHashTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.clock = FakeClock()
        self.store = FlakyStore()
        self.engine = make_engine(storage=self.store, clock=self.clock)

    def assertStorageMatchesMemory(self) -> None:
        stored = {u["username"]: u["status"] for u in self.store.get(keys.USERS, [])}
        in_memory = {u.username: u.status for u in self.engine.users()}
        self.assertEqual(stored, in_memory)

    def test_rejected_relogin_keeps_current_user_online(self) -> None:
        login(self.engine, "alice")
        before = self.store.get(keys.USERS)

        for name in ("x" * 40, "a"):
            result = self.engine.login(MASTER, name)
            self.assertEqual(result.error, ErrorCode.VALIDATION_ERROR)

        self.assertEqual(self.engine.session.identity.username, "alice")
        self.assertEqual(self.store.get(keys.USERS), before)
        self.assertStorageMatchesMemory()
        self.assertEqual(self.store.get(keys.session_key("alice"))["status"], "online")

    def test_relogin_as_taken_name_keeps_current_user_online(self) -> None:
        holder = Identity("user-x", "carol", "#000", 0.0, 0.0, "online")
        self.store.set(keys.USERS, [holder.to_dict()])
        self.engine.load()
        login(self.engine, "alice")

        self.assertEqual(self.engine.login(MASTER, "carol").error, ErrorCode.USERNAME_TAKEN)
        self.assertEqual(self.engine.session.identity.username, "alice")
        self.assertStorageMatchesMemory()

    def test_login_with_failing_last_write_persists_nothing(self) -> None:
        login(self.engine, "bob")
        self.store.fail_keys = {keys.session_key("alice")}

        result = self.engine.login(MASTER, "alice")

        self.assertEqual(result.error, ErrorCode.STORAGE_FAILED)
        self.assertEqual(self.engine.session.identity.username, "bob")
        self.assertEqual(self.store.get(keys.CURRENT_USER)["username"], "bob")
        self.assertIsNone(self.store.get(keys.session_key("alice")))
        self.assertStorageMatchesMemory()
        self.assertEqual({u.username for u in self.engine.users()}, {"bob"})

    def test_admin_setup_with_failing_session_write_stays_pending(self) -> None:
        self.engine.login(MASTER, "admin")
        self.store.fail_keys = {keys.session_key("admin")}

        result = self.engine.complete_admin_setup("secret1")

        self.assertEqual(result.error, ErrorCode.STORAGE_FAILED)
        self.assertIsNone(self.store.get(keys.ADMIN_CONFIG))
        self.assertIsNone(self.engine.admin_config)
        self.assertEqual(self.engine.bootstrap, AdminBootstrap.ADMIN_SETUP_PENDING)
        self.assertIsNone(self.engine.session)
        self.assertStorageMatchesMemory()

        self.store.fail_keys = set()
        self.assertTrue(self.engine.complete_admin_setup("secret1").ok)
        restarted = make_engine(storage=self.store)
        self.assertEqual(restarted.bootstrap, AdminBootstrap.ADMIN_CONFIGURED)

    def test_retention_update_with_failing_sweep_keeps_old_setting(self) -> None:
        setup_admin(self.engine)
        msg = self.engine.send_message("hello").value
        self.clock.advance(2 * HOUR)
        self.store.fail_keys = {keys.MESSAGES}

        result = self.engine.update_message_retention(1)

        self.assertEqual(result.error, ErrorCode.STORAGE_FAILED)
        self.assertEqual(self.engine.admin_config.default_message_retention_hours, 24)
        self.assertEqual(self.store.get(keys.ADMIN_CONFIG)["default_message_retention_hours"], 24)
        self.assertEqual([m["id"] for m in self.store.get(keys.MESSAGES)], [msg.id])
        self.assertEqual(self.engine.messages.get(msg.id).content, "hello")

    def test_failed_tick_persists_nothing(self) -> None:
        login(self.engine, "alice")
        self.engine.send_message("old news")
        self.clock.advance(25 * HOUR)
        self.store.fail_keys = {keys.MESSAGES}

        self.assertEqual(self.engine.tick(), 0)
        self.assertEqual(len(self.store.get(keys.MESSAGES)), 1)
        self.assertEqual(len(self.engine.messages.all()), 1)
        self.assertStorageMatchesMemory()
