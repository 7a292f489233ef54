"""Configuration manager for scheduler settings.

Loads and saves settings.json with mtime-based change detection so edits
made while the scheduler runs (timezone, encoder, defaults, calendar
triggers) are picked up on the next read.
"""
import copy
import json
import os
import logging
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from config.constants import (
    ACTION_TYPES, BROADCAST_POLL_INTERVAL, CLEANUP_INTERVAL_MINUTES, DEFAULT_TIMEZONE,
    GO_LIVE_BUFFER_SECONDS, HEARTBEAT_GRACE, HEARTBEAT_INTERVAL, HEARTBEAT_RESTART_AFTER,
    PROBE_INTERVAL, WATCHDOG_SAMPLE_INTERVAL,
)

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS: Dict[str, Any] = {
    "timezone": DEFAULT_TIMEZONE,
    "encoder": {
        "enabled": True,
        "host": "127.0.0.1",
        "port": 4455,
        "password": "",
    },
    "defaults": {
        "title": "",
        "description": "",
        "privacy": "public",
        "latency": "normal",
        "thumbPath": None,
    },
    "calendar_triggers": [],
    "cleanup_interval_minutes": CLEANUP_INTERVAL_MINUTES,
    "broadcast_poll_seconds": BROADCAST_POLL_INTERVAL,
    "heartbeat_seconds": HEARTBEAT_INTERVAL,
    "probe_seconds": PROBE_INTERVAL,
    "watchdog_sample_seconds": WATCHDOG_SAMPLE_INTERVAL,
    "heartbeat_grace_seconds": HEARTBEAT_GRACE,
    "heartbeat_restart_seconds": HEARTBEAT_RESTART_AFTER,
    "go_live_buffer_seconds": GO_LIVE_BUFFER_SECONDS,
    "auto_pipeline": False,
}

_PRIVACY_VALUES = ("public", "unlisted", "private")
_LATENCY_VALUES = ("normal", "low", "ultraLow")
_NUMERIC_KEYS = (
    "cleanup_interval_minutes", "broadcast_poll_seconds", "heartbeat_seconds", "probe_seconds",
    "watchdog_sample_seconds", "heartbeat_grace_seconds", "heartbeat_restart_seconds",
    "go_live_buffer_seconds",
)


def validate_settings(settings: Dict[str, Any]) -> List[str]:
    """Return a list of problems (empty when the settings are usable)."""
    problems: List[str] = []

    tz_name = settings.get("timezone")
    try:
        ZoneInfo(str(tz_name))
    except (ZoneInfoNotFoundError, ValueError):
        problems.append(f"unknown timezone: {tz_name!r}")

    encoder = settings.get("encoder")
    if not isinstance(encoder, dict):
        problems.append("encoder must be an object")
    else:
        port = encoder.get("port")
        if not isinstance(port, int) or not 0 < port < 65536:
            problems.append(f"encoder.port must be a valid port number, got {port!r}")

    defaults = settings.get("defaults")
    if not isinstance(defaults, dict):
        problems.append("defaults must be an object")
    else:
        if defaults.get("privacy") not in _PRIVACY_VALUES:
            problems.append(f"defaults.privacy must be one of {_PRIVACY_VALUES}")
        if defaults.get("latency") not in _LATENCY_VALUES:
            problems.append(f"defaults.latency must be one of {_LATENCY_VALUES}")

    triggers = settings.get("calendar_triggers")
    if not isinstance(triggers, list):
        problems.append("calendar_triggers must be a list")
    else:
        for i, trigger in enumerate(triggers):
            if not isinstance(trigger, dict) or not trigger.get("cron"):
                problems.append(f"calendar_triggers[{i}] needs a cron expression")
            elif trigger.get("type") not in ACTION_TYPES:
                problems.append(f"calendar_triggers[{i}].type must be one of {ACTION_TYPES}")

    for key in _NUMERIC_KEYS:
        value = settings.get(key)
        if not isinstance(value, (int, float)) or isinstance(value, bool) or value <= 0:
            problems.append(f"{key} must be a positive number, got {value!r}")

    return problems


def _merge(defaults: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(defaults)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class ConfigManager:
    def __init__(self, settings_path: Optional[str] = None):
        config_dir = os.path.dirname(os.path.abspath(__file__))
        self.settings_path = settings_path or os.path.join(config_dir, "settings.json")
        # Seed with the actual mtime so the first has_settings_changed() call
        # doesn't report a change on startup.
        self.last_settings_mtime: float = self._safe_mtime(self.settings_path)
        self._cached_settings: Optional[Dict] = None
        self._settings_cache_mtime: float = 0

        if not os.path.exists(self.settings_path):
            self._create_default_settings()

    def _create_default_settings(self):
        """Create a default settings configuration file."""
        os.makedirs(os.path.dirname(os.path.abspath(self.settings_path)), exist_ok=True)
        with open(self.settings_path, 'w') as f:
            json.dump(DEFAULT_SETTINGS, f, indent=2)

        logger.info(f"Created default settings at {self.settings_path}")

    def _load_json(self, path: str) -> Dict | None:
        """Load a JSON file and return its contents."""
        try:
            with open(path, 'r') as f:
                return json.load(f)
        except Exception as e:
            logger.error(f"Failed to load {path}: {e}")
            return None

    def has_settings_changed(self) -> bool:
        """Check if settings.json has been modified since the last check."""
        try:
            current_mtime = os.path.getmtime(self.settings_path)
        except OSError as e:
            logger.error(f"Error checking settings modification time: {e}")
            return False
        if current_mtime > self.last_settings_mtime:
            self.last_settings_mtime = current_mtime
            return True
        return False

    def get_settings(self) -> Dict:
        """Get settings (cached, re-read on file change).

        Encoder connection values fall back to the OBS_HOST / OBS_PORT /
        OBS_PASSWORD environment variables when settings.json omits them.
        Invalid files are reported and replaced by defaults.
        """
        try:
            current_mtime = os.path.getmtime(self.settings_path)
        except OSError:
            current_mtime = 0

        if self._cached_settings is not None and current_mtime == self._settings_cache_mtime:
            return self._cached_settings

        self._settings_cache_mtime = current_mtime
        raw = self._load_json(self.settings_path) or {}

        base = copy.deepcopy(DEFAULT_SETTINGS)
        base["encoder"]["host"] = os.getenv("OBS_HOST", base["encoder"]["host"])
        env_port = os.getenv("OBS_PORT")
        if env_port:
            try:
                base["encoder"]["port"] = int(env_port)
            except ValueError:
                logger.warning(f"Ignoring invalid OBS_PORT {env_port!r}")
        base["encoder"]["password"] = os.getenv("OBS_PASSWORD", base["encoder"]["password"])
        base["timezone"] = os.getenv("SCHEDULER_TIMEZONE", base["timezone"])

        settings = _merge(base, raw if isinstance(raw, dict) else {})
        problems = validate_settings(settings)
        if problems:
            for problem in problems:
                logger.error(f"Invalid settings.json: {problem}")
            logger.error("Falling back to default settings")
            settings = base

        self._cached_settings = settings
        return settings

    def save_settings(self, updates: Dict[str, Any]) -> Dict:
        """Merge ``updates`` into settings.json and return the new settings."""
        current = self._load_json(self.settings_path) or {}
        merged = _merge(current, updates)
        problems = validate_settings(_merge(DEFAULT_SETTINGS, merged))
        if problems:
            raise ValueError("; ".join(problems))
        with open(self.settings_path, 'w') as f:
            json.dump(merged, f, indent=2)
        self._cached_settings = None
        logger.info(f"Saved settings ({', '.join(sorted(updates))})")
        return self.get_settings()

    def get_timezone(self) -> ZoneInfo:
        return ZoneInfo(self.get_settings()["timezone"])

    def get_encoder_settings(self) -> Dict[str, Any]:
        return dict(self.get_settings()["encoder"])

    def get_defaults(self) -> Dict[str, Any]:
        """Stream defaults used when a schedule request leaves fields empty."""
        return dict(self.get_settings()["defaults"])

    def save_defaults(self, defaults: Dict[str, Any]) -> Dict[str, Any]:
        return self.save_settings({"defaults": defaults})["defaults"]

    @staticmethod
    def _safe_mtime(path: str) -> float:
        """Return the file's mtime, or 0 if it doesn't exist yet."""
        try:
            return os.path.getmtime(path)
        except OSError:
            return 0
