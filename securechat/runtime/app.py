from collections import deque
from pathlib import Path
import logging
import time

from securechat.cli.commands import handle_command, print_banner, print_menu
from securechat.config.settings import Settings
from securechat.core.auth import CredentialClassifier
from securechat.engine import ChatEngine
from securechat.runtime.scheduler import Ticker
from securechat.storage.kv import MemoryStore, SqliteStore
from securechat.ui.server import run_ui_server


def build_storage(settings: Settings):
    if settings.storage == "memory":
        return MemoryStore()
    return SqliteStore(Path(settings.data_dir) / "securechat.db")


def build_engine(settings: Settings, storage=None) -> ChatEngine:
    classifier = CredentialClassifier(
        master_password=settings.master_password,
        admin_username=settings.admin_username,
    )
    return ChatEngine(
        storage if storage is not None else build_storage(settings),
        classifier,
        away_after=settings.away_after,
    )


class _BufferHandler(logging.Handler):
    def __init__(self, buffer):
        super().__init__()
        self.buffer = buffer

    def emit(self, record):
        stamp = time.strftime("%H:%M:%S", time.localtime(record.created))
        self.buffer.append(f"{stamp} {record.getMessage()}")


def main():
    settings = Settings.from_env()

    log_buffer = deque(maxlen=200)
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=[_BufferHandler(log_buffer)],
    )
    logging.getLogger("werkzeug").setLevel(logging.ERROR)
    logger = logging.getLogger("securechat")

    engine = build_engine(settings)

    def on_event(event: str, _value):
        logger.debug("event %s", event)

    # --- UI server (non-blocking) ---
    ui = run_ui_server(
        engine=engine,
        upstream_on_event=on_event,
        host=settings.ui_host,
        port=settings.ui_port,
    )
    ui_url = f"http://{settings.ui_host}:{settings.ui_port}"
    logger.info("UI running at %s", ui_url)

    # --- Timer: retention sweep + presence ---
    ticker = Ticker(engine, interval=settings.sweep_interval).start()

    # --- CLI ---
    def show_menu():
        print_menu(engine, ui_url)

    print_banner(engine)
    show_menu()

    try:
        while True:
            line = input("> ").strip()
            if not line:
                continue

            should_continue = handle_command(
                line=line,
                engine=engine,
                logs=log_buffer,
                show_menu=show_menu,
            )

            if not should_continue:
                break

    except (KeyboardInterrupt, EOFError):
        pass
    finally:
        print("\nExiting...")
        ticker.stop()
        engine.logout()
        ui.close()
