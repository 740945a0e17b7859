from pathlib import Path
import os
import tomllib

# Canonical default config location (used by `lifeledger init`)
DEFAULT_CONFIG_PATH = "~/.config/lifeledger/config.toml"

DEFAULT_SCHEDULE = {
    "sweep_every_minutes": 60,
    "resonance": "02:00",
    "weekly_report": "Sun 23:00",
}


def _resolve_config_path(path: str | None) -> Path:
    """
    Resolve the configuration file path in priority order:
    1) Explicit path argument (if provided)
    2) LIFELEDGER_CONFIG environment variable (if set)
    3) ./config.toml in current working directory
    4) ~/.config/lifeledger/config.toml
    Raises FileNotFoundError with guidance if not found.
    """
    candidates: list[Path] = []
    if path:
        candidates.append(Path(path).expanduser())
    env_path = os.getenv("LIFELEDGER_CONFIG")
    if env_path:
        candidates.append(Path(env_path).expanduser())
    candidates.append(Path("config.toml").absolute())
    candidates.append(Path(DEFAULT_CONFIG_PATH).expanduser())
    for p in candidates:
        if p.is_file():
            return p
    raise FileNotFoundError(
        "No config.toml found. Set LIFELEDGER_CONFIG, place a config.toml in the working directory, "
        "or run 'lifeledger init' to create one at ~/.config/lifeledger/config.toml."
    )


class Settings:
    def __init__(self, data: dict):
        self.data_dir    = Path(data.get("data_dir", "~/LifeLedger")).expanduser()
        self.inbox_dir   = Path(data.get("inbox_dir", self.data_dir / "inbox")).expanduser()
        self.archive_dir = Path(data.get("archive_dir", self.data_dir / "archive")).expanduser()
        self.reports_dir = Path(data.get("reports_dir", self.data_dir / "reports")).expanduser()
        self.remote_allowed = bool(data.get("remote_allowed", False))
        self.llm_backend = data.get("llm_backend", "local")
        # Gateway timeouts: foreground ingestion vs. jobs and background extraction
        self.request_timeout = float(data.get("request_timeout", 20.0))
        self.background_timeout = float(data.get("background_timeout", 90.0))
        self.report_min_entries = int(data.get("report_min_entries", 5))
        self.resonance_window_days = int(data.get("resonance_window_days", 3))
        self.biography_ttl_hours = float(data.get("biography_ttl_hours", 24))
        self.biography_recent_limit = int(data.get("biography_recent_limit", 50))
        self.context_recent_entries = int(data.get("context_recent_entries", 10))
        self.event_identity = data.get("event_identity", "title")
        if self.event_identity not in ("title", "title_and_date"):
            raise ValueError(f"event_identity must be 'title' or 'title_and_date', got {self.event_identity!r}")
        self.schedule = {**DEFAULT_SCHEDULE, **(data.get("schedule") or {})}

    @property
    def state_dir(self) -> Path:
        return (self.data_dir / ".lifeledger").expanduser()

    @property
    def db_path(self) -> Path:
        return self.state_dir / "lifeledger.db"


def load_settings(path: str | None = None) -> Settings:
    cfg_path = _resolve_config_path(path)
    with open(cfg_path, "rb") as f:
        cfg = tomllib.load(f)
    s = Settings(cfg)
    s.state_dir.mkdir(parents=True, exist_ok=True)
    return s
