from __future__ import annotations

import threading
from typing import Callable, Optional

from flask import Flask

from securechat.ui.routes import MAX_BODY_BYTES, configure_routes


class UIServer:
    """
    Thin Flask JSON layer over the engine.
    - No state of its own
    - No persistence
    - Every write is an engine action
    """

    def __init__(self, engine, upstream_on_event: Optional[Callable[[str, object], None]] = None):
        self.engine = engine
        self.upstream_on_event = upstream_on_event
        self._unsubscribe = engine.subscribe(self.on_event)

        self.app = Flask(__name__)
        self.app.config["MAX_CONTENT_LENGTH"] = MAX_BODY_BYTES
        configure_routes(self.app, self)

    # ---------------- lifecycle ----------------

    def run(self, host: str = "127.0.0.1", port: int = 5000):
        thread = threading.Thread(
            target=self.app.run,
            kwargs={
                "host": host,
                "port": port,
                "debug": False,
                "use_reloader": False,
                "threaded": True,
            },
            daemon=True,
        )
        thread.start()
        return thread

    def close(self):
        self._unsubscribe()

    # ---------------- engine hook ----------------

    def on_event(self, event: str, value):
        """
        Subscriber passed to engine.subscribe().
        Forwards applied actions to the runtime (CLI log buffer).
        """
        if self.upstream_on_event:
            self.upstream_on_event(event, value)


def run_ui_server(
    engine,
    upstream_on_event: Optional[Callable[[str, object], None]] = None,
    host: str = "127.0.0.1",
    port: int = 5000,
) -> UIServer:
    """
    Convenience helper.
    """
    ui = UIServer(engine=engine, upstream_on_event=upstream_on_event)
    ui.run(host=host, port=port)
    return ui
