# securechat/cli/commands.py

from securechat.core.identity import display_name


def print_banner(engine):
    print("SecureChat started.")
    print("Log in with /login <password> <username>.")
    print("Type /help to see available commands.\n")


def print_menu(engine, ui_url):
    session = engine.session
    print("\n=== SecureChat ===")
    if session:
        print(f"User: {display_name(session.identity)} [{session.tier.value}]")
        print(f"Chat: {engine.router.active_display_name}")
    else:
        print("User: (not logged in)")
    print(f"UI: {ui_url}")
    print("Commands: /menu /help /login /rooms /users /messages /logs /quit\n")


def print_help():
    print(
        "\nCommands:\n"
        "  /login <password> <username>   Log in\n"
        "  /setup <admin password>        Finish first-time admin setup\n"
        "  /logout                        Log out\n"
        "  /rooms                         List visible rooms\n"
        "  /create <name> [password]      Create a room (private with a password)\n"
        "  /join <room_id> [password]     Join a room\n"
        "  /general                       Go to the general chat\n"
        "  /room <room_id>                Switch to a joined room\n"
        "  /users                         List users\n"
        "  /dm <user_id>                  Start a direct conversation\n"
        "  /messages                      Show the active conversation\n"
        "  /edit <id> <text>              Edit your message\n"
        "  /delete <id>                   Delete a message\n"
        "  /pin <id> | /unpin <id>        Pin or unpin (admin)\n"
        "  /react <id> <emoji>            Toggle a reaction\n"
        "  /reply <id> | /noreply         Reply to a message / cancel\n"
        "  /retention <hours>             Set message retention (admin)\n"
        "  /logs                          Show recent logs\n"
        "  /menu                          Show the main menu\n"
        "  /help                          Show this help\n"
        "  /quit                          Exit\n"
        "Anything else is sent to the active conversation.\n"
    )


def _report(result, done: str = ""):
    if not result.ok:
        print(f"Error: {result.message}")
        return False
    if done:
        print(done)
    return True


def _message_id(raw: str):
    try:
        return int(raw)
    except ValueError:
        print(f"Not a message id: {raw}")
        return None


def show_messages(engine):
    view = engine.filtered_messages()
    print(f"\n--- {engine.router.active_display_name} ---")
    if view.pinned:
        print("Pinned:")
        for msg in view.pinned:
            print(f"  [{msg.id}] {msg.username}: {msg.content}")
    if not view.messages:
        print("No messages yet.")
    for msg in view.messages:
        data = engine.messages.serialize_message(msg)
        line = f"[{msg.id}] {data['iso']} {msg.username}: {data['content']}"
        if data["reply"]:
            line += f"  (re: {data['reply']['username']}: {data['reply']['content'][:30]})"
        if msg.edited_at:
            line += " (edited)"
        if data["reactions"]:
            line += "  " + " ".join(f"{e}{n}" for e, n in data["reactions"].items())
        print(line)
    print()


def handle_command(line, engine, logs=None, show_menu=None):
    """
    Handle a single CLI command.
    Returns False if the app should exit.
    """
    if line in ("/quit", "/exit"):
        return False

    if line == "/menu":
        if show_menu:
            show_menu()
        else:
            print_help()
        return True

    if line == "/help":
        print_help()
        return True

    if line == "/logs":
        if not logs:
            print("No logs yet.")
            return True
        print("\nRecent logs:")
        for entry in logs:
            print(f"  {entry}")
        print()
        return True

    parts = line.split(maxsplit=2)
    cmd = parts[0]

    if cmd == "/login":
        if len(parts) < 3:
            print("Usage: /login <password> <username>")
            return True
        result = engine.login(parts[1], parts[2])
        if _report(result):
            if result.value.value == "admin_setup":
                print("No admin yet. Choose an admin password with /setup <password>.")
            else:
                print(f"Logged in as {display_name(engine.session.identity)}.")
                show_messages(engine)
        return True

    if cmd == "/setup":
        if len(parts) < 2:
            print("Usage: /setup <admin password>")
            return True
        _report(engine.complete_admin_setup(line[len("/setup "):]), "Admin account ready.")
        return True

    if line == "/logout":
        _report(engine.logout(), "Logged out.")
        return True

    if line == "/rooms":
        rooms = engine.visible_rooms()
        if not rooms:
            print("No rooms.")
            return True
        print("\nRooms:")
        for room in rooms:
            kind = "private" if room.is_private else "public"
            print(f"  {room.id:<15} {room.name} ({kind}, {len(room.member_ids)} members)")
        print()
        return True

    if cmd == "/create":
        if len(parts) < 2:
            print("Usage: /create <name> [password]")
            return True
        password = parts[2] if len(parts) > 2 else ""
        result = engine.create_chat_room(parts[1], bool(password), password)
        if _report(result):
            print(f"Created room {result.value.name} ({result.value.id}).")
        return True

    if cmd == "/join":
        if len(parts) < 2:
            print("Usage: /join <room_id> [password]")
            return True
        password = parts[2] if len(parts) > 2 else None
        if _report(engine.join_chat_room(parts[1], password)):
            show_messages(engine)
        return True

    if line == "/general":
        if _report(engine.switch_to_chat("general", "general")):
            show_messages(engine)
        return True

    if cmd == "/room" and len(parts) >= 2:
        if _report(engine.switch_to_chat(parts[1], "room")):
            show_messages(engine)
        return True

    if line == "/users":
        users = engine.users()
        if not users:
            print("No users.")
            return True
        print(f"\nUsers ({engine.online_user_count()} online):")
        for user in users:
            print(f"  {user.id:<18} {display_name(user):<24} {user.status}")
        print()
        return True

    if cmd == "/dm" and len(parts) >= 2:
        if _report(engine.start_dm(parts[1])):
            show_messages(engine)
        return True

    if line == "/messages":
        show_messages(engine)
        return True

    if cmd == "/edit":
        if len(parts) < 3:
            print("Usage: /edit <id> <text>")
            return True
        message_id = _message_id(parts[1])
        if message_id is not None:
            _report(engine.edit_message(message_id, parts[2]), "Edited.")
        return True

    if cmd in ("/delete", "/pin", "/unpin", "/reply") and len(parts) >= 2:
        message_id = _message_id(parts[1])
        if message_id is None:
            return True
        action = {
            "/delete": (engine.delete_message, "Deleted."),
            "/pin": (engine.pin_message, "Pinned."),
            "/unpin": (engine.unpin_message, "Unpinned."),
            "/reply": (engine.begin_reply, "Replying; your next message quotes it."),
        }[cmd]
        _report(action[0](message_id), action[1])
        return True

    if line == "/noreply":
        _report(engine.cancel_reply(), "Reply cancelled.")
        return True

    if cmd == "/react":
        if len(parts) < 3:
            print("Usage: /react <id> <emoji>")
            return True
        message_id = _message_id(parts[1])
        if message_id is not None:
            _report(engine.react_to_message(message_id, parts[2]))
        return True

    if cmd == "/retention" and len(parts) >= 2:
        result = engine.update_message_retention(parts[1])
        _report(result, f"Retention set to {result.value}h.")
        return True

    if line.startswith("/"):
        print("Unknown command. Type /help.")
        return True

    _report(engine.send_message(line))
    return True
