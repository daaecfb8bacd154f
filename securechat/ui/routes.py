from flask import jsonify, request
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge

from securechat.core.errors import ActionResult, ErrorCode, ValidationError

MAX_BODY_KB = 64
MAX_BODY_BYTES = MAX_BODY_KB * 1024

STATUS_BY_ERROR = {
    ErrorCode.DENIED: 401,
    ErrorCode.NOT_AUTHENTICATED: 401,
    ErrorCode.ACCESS_DENIED: 403,
    ErrorCode.WRONG_PASSWORD: 403,
    ErrorCode.NOT_AUTHOR: 403,
    ErrorCode.NOT_AUTHORIZED: 403,
    ErrorCode.ROOM_NOT_FOUND: 404,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.USERNAME_TAKEN: 409,
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.STORAGE_FAILED: 500,
}


def _payload():
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _text(payload, name: str) -> str:
    return str(payload.get(name) or "").strip()


def _respond(result, **extra):
    if result.ok:
        return jsonify({"ok": True, **extra}), 200
    return jsonify(result.to_dict()), STATUS_BY_ERROR.get(result.error, 400)


def _invalid(message: str):
    return _respond(ActionResult.failure(ValidationError(message)))


def configure_routes(app, ui):
    engine = ui.engine

    def message_body(result):
        if not result.ok:
            return _respond(result)
        viewer = engine.session.user_id if engine.session else None
        return _respond(result, message=engine.messages.serialize_message(result.value, viewer))

    @app.errorhandler(RequestEntityTooLarge)
    def handle_large_body(_err):
        return jsonify({"ok": False, "error": "too_large",
                        "message": f"Request too large (max {MAX_BODY_KB} KB)"}), 413

    @app.errorhandler(HTTPException)
    def handle_http_error(err):
        return jsonify({"ok": False, "error": "http_error", "message": err.description}), err.code

    @app.get("/")
    @app.get("/api/state")
    def api_state():
        state = engine.state()
        state["events"] = engine.consume_events()
        return jsonify(state)

    # ---------------- login ----------------

    @app.post("/api/login")
    def api_login():
        payload = _payload()
        secret = str(payload.get("password") or "")
        username = _text(payload, "username")

        if not username:
            result = engine.submit_secret(secret)
        elif not secret:
            result = engine.choose_username(username)
        else:
            result = engine.login(secret, username)
        if not result.ok:
            return _respond(result)
        return _respond(result, step=result.value.value, state=engine.state())

    @app.post("/api/admin/setup")
    def api_admin_setup():
        payload = _payload()
        result = engine.complete_admin_setup(str(payload.get("password") or ""))
        if not result.ok:
            return _respond(result)
        return _respond(result, step=result.value.value, state=engine.state())

    @app.post("/api/logout")
    def api_logout():
        return _respond(engine.logout())

    # ---------------- navigation ----------------

    @app.post("/api/chat/switch")
    def api_switch_chat():
        payload = _payload()
        chat_type = _text(payload, "type") or "general"
        target = _text(payload, "id") or chat_type
        result = engine.switch_to_chat(target, chat_type, _text(payload, "name"))
        return _respond(result, chat=engine.router.serialize())

    @app.post("/api/dm")
    def api_start_dm():
        payload = _payload()
        user_id = _text(payload, "user_id")
        if not user_id:
            return _invalid("Missing user id")
        result = engine.start_dm(user_id)
        return _respond(result, chat=engine.router.serialize())

    @app.post("/api/rooms")
    def api_create_room():
        payload = _payload()
        is_private = payload.get("is_private", False)
        if not isinstance(is_private, bool):
            return _invalid("is_private must be true or false")
        result = engine.create_chat_room(
            _text(payload, "name"),
            is_private,
            str(payload.get("password") or ""),
        )
        if not result.ok:
            return _respond(result)
        viewer = engine.session.user_id
        return _respond(result, room=engine.rooms.serialize_room(result.value, viewer))

    @app.post("/api/rooms/join")
    def api_join_room():
        payload = _payload()
        room_id = _text(payload, "room_id")
        if not room_id:
            return _invalid("Missing room id")
        result = engine.join_chat_room(room_id, str(payload.get("password") or ""))
        if not result.ok:
            return _respond(result)
        viewer = engine.session.user_id
        return _respond(
            result,
            room=engine.rooms.serialize_room(result.value, viewer),
            chat=engine.router.serialize(),
        )

    # ---------------- messages ----------------

    @app.post("/api/messages")
    def api_send():
        payload = _payload()
        reply_to = payload.get("reply_to")
        try:
            reply_to = int(reply_to) if reply_to is not None else None
        except (TypeError, ValueError):
            reply_to = None
        return message_body(engine.send_message(str(payload.get("text") or ""), reply_to))

    @app.post("/api/messages/<int:message_id>/edit")
    def api_edit(message_id: int):
        payload = _payload()
        return message_body(engine.edit_message(message_id, str(payload.get("text") or "")))

    @app.post("/api/messages/<int:message_id>/delete")
    def api_delete(message_id: int):
        return message_body(engine.delete_message(message_id))

    @app.post("/api/messages/<int:message_id>/pin")
    def api_pin(message_id: int):
        return message_body(engine.pin_message(message_id))

    @app.post("/api/messages/<int:message_id>/unpin")
    def api_unpin(message_id: int):
        return message_body(engine.unpin_message(message_id))

    @app.post("/api/messages/<int:message_id>/react")
    def api_react(message_id: int):
        payload = _payload()
        return message_body(engine.react_to_message(message_id, _text(payload, "emoji")))

    @app.post("/api/messages/<int:message_id>/reply")
    def api_reply(message_id: int):
        return message_body(engine.begin_reply(message_id))

    @app.post("/api/reply/cancel")
    def api_cancel_reply():
        return _respond(engine.cancel_reply())

    # ---------------- admin ----------------

    @app.post("/api/admin/retention")
    def api_retention():
        payload = _payload()
        result = engine.update_message_retention(payload.get("hours"))
        return _respond(result, hours=result.value)

    @app.post("/api/admin/password")
    def api_admin_password():
        payload = _payload()
        return _respond(engine.update_admin_password(str(payload.get("password") or "")))

    @app.post("/api/admin/config")
    def api_admin_config():
        payload = _payload()
        allow_rooms = payload.get("allow_user_room_creation")
        if allow_rooms is not None and not isinstance(allow_rooms, bool):
            return _invalid("allow_user_room_creation must be true or false")
        result = engine.update_admin_config(
            allow_user_room_creation=allow_rooms,
            max_rooms_per_user=payload.get("max_rooms_per_user"),
            welcome_message=payload.get("welcome_message"),
        )
        if not result.ok:
            return _respond(result)
        config = result.value.to_dict()
        config.pop("admin_password_hash", None)
        return _respond(result, config=config)
