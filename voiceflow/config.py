"""Configuration loading for VoiceFlow.

Settings come from ``config/config.json`` (if present), merged over
``DEFAULT_CONFIG``, then overridden by environment variables. Per-user
preferences such as the wake word live in the database settings table.
"""

import copy
import json
import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = BASE_DIR / "data"
CONFIG_FILE = BASE_DIR / "config" / "config.json"

PROVIDERS = ("google", "outlook", "apple")

DEFAULT_CONFIG = {
    "server": {
        "host": "127.0.0.1",
        "port": 5000,
        "public_base_url": "http://localhost:5000",
    },
    "database": {
        "path": str(DATA_DIR / "voiceflow.db"),
    },
    "user": {
        "default_user_id": 1,
    },
    "speech": {
        "switch_delay": 0.3,    # stop one recognizer before starting the other
        "restart_delay": 1.2,   # let the platform release the previous session
        "lang": "en-US",
    },
    "calendar": {
        "sync_window_days": 30,
        "max_results": 250,
        "google": {
            "client_id": "",
            "client_secret": "",
            "redirect_uri": "",
        },
    },
    "openai": {
        "api_key": "",
        "model": "gpt-4o",
    },
}

# env var -> dotted config key
ENV_OVERRIDES = {
    "VOICEFLOW_DB_PATH": "database.path",
    "VOICEFLOW_USER_ID": "user.default_user_id",
    "PUBLIC_BASE_URL": "server.public_base_url",
    "GOOGLE_CLIENT_ID": "calendar.google.client_id",
    "GOOGLE_CLIENT_SECRET": "calendar.google.client_secret",
    "GOOGLE_REDIRECT_URI": "calendar.google.redirect_uri",
    "OPENAI_API_KEY": "openai.api_key",
    "OPENAI_MODEL": "openai.model",
}


def _deep_merge(base: dict, override: dict) -> dict:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _set_dotted(cfg: dict, dotted: str, value):
    parts = dotted.split(".")
    obj = cfg
    for p in parts[:-1]:
        obj = obj.setdefault(p, {})
    current = obj.get(parts[-1])
    if isinstance(current, int) and not isinstance(current, bool):
        try:
            value = int(value)
        except ValueError:
            logger.warning(f"Ignoring non-integer override for {dotted}: {value!r}")
            return
    obj[parts[-1]] = value


def load_config(path: str | Path = None, env: dict = None) -> dict:
    """Load the VoiceFlow configuration.

    Args:
        path: JSON config file. Defaults to ``config/config.json``.
        env: Environment mapping (defaults to ``os.environ``).

    Returns:
        Merged configuration dict.
    """
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    config_path = Path(path) if path else CONFIG_FILE
    if config_path.exists():
        with open(config_path) as f:
            _deep_merge(cfg, json.load(f))
    elif path:
        raise FileNotFoundError(f"Config file not found: {config_path}")

    env = os.environ if env is None else env
    for var, dotted in ENV_OVERRIDES.items():
        if env.get(var):
            _set_dotted(cfg, dotted, env[var])

    google = cfg["calendar"]["google"]
    if not google.get("redirect_uri"):
        base = cfg["server"]["public_base_url"].rstrip("/")
        google["redirect_uri"] = f"{base}/api/calendar/callback/google"
    return cfg

