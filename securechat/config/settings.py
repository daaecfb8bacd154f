# securechat/config/settings.py

import os


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc


class Settings:
    """
    Centralized runtime settings.
    Override via environment variables.
    """

    def __init__(
        self,
        master_password: str = "securechat",
        admin_username: str = "admin",
        data_dir: str = "data",
        storage: str = "sqlite",
        ui_host: str = "127.0.0.1",
        ui_port: int = 5000,
        sweep_interval: int = 60,
        away_after: int = 300,
        debug: bool = False,
    ):
        self.master_password = master_password
        self.admin_username = admin_username
        self.data_dir = data_dir
        self.storage = storage
        self.ui_host = ui_host
        self.ui_port = ui_port
        self.sweep_interval = sweep_interval
        self.away_after = away_after
        self.debug = debug

    @classmethod
    def from_env(cls):
        master_password = os.getenv("SECURECHAT_MASTER_PASSWORD", "securechat")
        admin_username = os.getenv("SECURECHAT_ADMIN_USERNAME", "admin")
        data_dir = os.getenv("SECURECHAT_DATA_DIR", "data")
        storage = os.getenv("SECURECHAT_STORAGE", "sqlite").strip().lower()
        ui_host = os.getenv("SECURECHAT_UI_HOST", "127.0.0.1")
        ui_port = _int_env("SECURECHAT_UI_PORT", 5000)
        sweep_interval = max(1, _int_env("SECURECHAT_SWEEP_INTERVAL", 60))
        away_after = max(1, _int_env("SECURECHAT_AWAY_AFTER", 300))
        debug = os.getenv("SECURECHAT_DEBUG") == "1"

        if storage not in ("sqlite", "memory"):
            raise ValueError("SECURECHAT_STORAGE must be 'sqlite' or 'memory'")

        return cls(
            master_password=master_password,
            admin_username=admin_username,
            data_dir=data_dir,
            storage=storage,
            ui_host=ui_host,
            ui_port=ui_port,
            sweep_interval=sweep_interval,
            away_after=away_after,
            debug=debug,
        )
