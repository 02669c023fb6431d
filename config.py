"""Configuration: defaults, then the JSON config file, then environment."""

import json
import os
from pathlib import Path
from urllib.parse import urlsplit, urlunsplit

from playback import PIPER_CMD, PIPER_MODEL
from vad_monitor import DEFAULT_MODEL_PATH, LISTENING_THRESHOLD, SPEAKING_THRESHOLD

CONFIG_FILE = Path.home() / ".config" / "voice-assistant" / "config.json"

ENV_OVERRIDES = {
    "VOICE_ASSISTANT_SERVER_URL": "server_url",
    "VOICE_ASSISTANT_LANGUAGE": "language",
}


def default_config():
    return {
        "server_url": "http://localhost:3000",
        "use_websocket": True,
        "barge_in": True,
        "language": "en",
        "vad_model_path": str(DEFAULT_MODEL_PATH),
        "piper_cmd": PIPER_CMD,
        "piper_model": PIPER_MODEL,
        "dead_zone_ms": 350,
        "settle_delay_ms": 40,
        "reconnect_delay": 2.0,
        "speaking_threshold": SPEAKING_THRESHOLD,
        "listening_threshold": LISTENING_THRESHOLD,
        "window_samples": 1600,
        "session_log_dir": "~/.local/share/voice-assistant/sessions",
    }


def load_config(path=None):
    """Load configuration merged over the defaults.

    An unreadable or invalid file is reported and ignored.
    """
    config = default_config()
    config_file = Path(path) if path else CONFIG_FILE
    if config_file.exists():
        try:
            with open(config_file) as f:
                data = json.load(f)
            if isinstance(data, dict):
                config.update(data)
            else:
                print(f"Config: Ignoring {config_file}: expected a JSON object", flush=True)
        except (OSError, json.JSONDecodeError) as e:
            print(f"Config: Ignoring {config_file}: {e}", flush=True)

    for env_var, key in ENV_OVERRIDES.items():
        value = os.environ.get(env_var)
        if value:
            config[key] = value
    return config


def ws_url_for(server_url):
    """http://host:port/... -> ws://host:port/ws (https -> wss)."""
    parts = urlsplit(server_url)
    scheme = "wss" if parts.scheme in ("https", "wss") else "ws"
    return urlunsplit((scheme, parts.netloc, "/ws", "", ""))


def get_deepgram_api_key():
    """Get Deepgram API key."""
    key = os.environ.get("DEEPGRAM_API_KEY")
    if key:
        return key
    path = Path.home() / ".config" / "deepgram" / "api_key"
    if path.exists():
        return path.read_text().strip()
    return None
