"""
Arya Configuration Manager
~~~~~~~~~~~~~~~~~~~~~~~~~~
Handles persistent configuration, project rules and the activity record
location. Everything is stored in ~/.arya/
"""

import json
import logging
from dataclasses import dataclass, asdict, fields
from pathlib import Path
from typing import Any, Dict

from .rules import RULES_FORMAT_VERSION

logger = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".arya"
CONFIG_PATH = CONFIG_DIR / "config.json"
RULES_PATH = CONFIG_DIR / "projects.json"
RECORD_PATH = CONFIG_DIR / "record.json"
PID_PATH = CONFIG_DIR / "recorder.pid"

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


# ── Tracker Settings ───────────────────────────────────────────────────────

@dataclass
class TrackerConfig:
    """Explicit tracker configuration passed to the recorder at construction."""
    track_apps: bool = True
    track_workspaces: bool = True
    track_projects: bool = True
    log_level: str = "WARNING"
    poll_interval: float = 1.0   # seconds between observer polls
    save_interval: float = 60.0  # seconds between automatic saves

    def __post_init__(self):
        self.log_level = str(self.log_level).upper()
        if self.log_level not in LOG_LEVELS:
            logger.warning("Unknown log level %r, using WARNING", self.log_level)
            self.log_level = "WARNING"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrackerConfig":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


DEFAULT_CONFIG = TrackerConfig().to_dict()


def _ensure_config():
    """Ensure the config file exists with default values."""
    if not CONFIG_DIR.exists():
        CONFIG_DIR.mkdir(parents=True, exist_ok=True)

    if not CONFIG_PATH.exists():
        try:
            with open(CONFIG_PATH, "w", encoding="utf-8") as f:
                json.dump(DEFAULT_CONFIG, f, indent=4)
        except OSError as e:
            logger.warning("Could not write default config to %s: %s", CONFIG_PATH, e)


def load_config() -> TrackerConfig:
    """Load configuration from disk, falling back to defaults."""
    _ensure_config()
    try:
        with open(CONFIG_PATH, "r", encoding="utf-8") as f:
            data = json.load(f)
            # Merge with defaults to ensure all keys exist
            return TrackerConfig.from_dict({**DEFAULT_CONFIG, **data})
    except (json.JSONDecodeError, OSError, TypeError, AttributeError) as e:
        logger.warning("Could not read %s (%s), using defaults", CONFIG_PATH, e)
        return TrackerConfig()


# ── Default Project Rules ──────────────────────────────────────────────────

# Sequence matters: the catch-all "Unsorted" must stay last.
DEFAULT_RULES = {
    "formatVersion": RULES_FORMAT_VERSION,
    "projects": {
        "Arya Development": ["arya"],
        "Reading EMail": ["Inbox - "],
        "Facebook": ["Facebook"],
        "MIF": ["mif", "facebook"],
        "eBook Download": ["ebook download", "/data/books/"],
        "Browsing": ["Mozilla Firefox"],
        "Unsorted": [".*"],
    },
    "projectSequence": [
        "Arya Development",
        "Reading EMail",
        "Facebook",
        "MIF",
        "eBook Download",
        "Browsing",
        "Unsorted",
    ],
    # Modal dialogs such as Firefox's "Library" keep the current project.
    "ignores": ["^Library$"],
}


def ensure_rules_file(path: Path = None) -> Path:
    """Write the default project rules if no rules file exists yet."""
    path = Path(path or RULES_PATH)
    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(DEFAULT_RULES, f, indent=4)
        logger.info("Wrote default project rules to %s", path)
    return path
