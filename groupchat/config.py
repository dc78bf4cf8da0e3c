"""
AgentGroupChat Configuration
"""
import os
import json
from pathlib import Path

# Project root
BASE_DIR = Path(__file__).resolve().parent.parent

CONFIG_FILE = BASE_DIR / "data" / "config.json"

config_data = {}
if CONFIG_FILE.exists():
    try:
        with open(CONFIG_FILE, "r", encoding="utf-8") as _f:
            config_data = json.load(_f)
    except Exception:
        pass


def _setting(env: str, key: str, default):
    return os.getenv(env, config_data.get(key, default))


# Data directory: repository checkout keeps state under data/, installed mode under ~/.groupchat
_repo_data_dir = BASE_DIR / "data"
if os.getenv("GROUPCHAT_HOME"):
    DATA_DIR = Path(os.getenv("GROUPCHAT_HOME"))
elif _repo_data_dir.exists():
    DATA_DIR = _repo_data_dir
else:
    DATA_DIR = Path.home() / ".groupchat"

# SQLite database holding chats and their messages
DB_PATH = os.getenv("GROUPCHAT_DB", str(DATA_DIR / "groupchat.db"))

# JSON transcripts that participants are told to read, plus per-chat debug logs
TRANSCRIPT_DIR = Path(os.getenv("GROUPCHAT_TRANSCRIPT_DIR", str(DATA_DIR / "transcripts")))

# Prompt template + pass keyword
PROMPT_CONFIG_PATH = Path(os.getenv("GROUPCHAT_PROMPT_CONFIG", str(DATA_DIR / "groupchat_prompt.json")))

# HTTP server - default to localhost only
HOST = _setting("GROUPCHAT_HOST", "HOST", "127.0.0.1")
PORT = int(_setting("GROUPCHAT_PORT", "PORT", "39775"))

# Polling cadence of both controller loops (seconds)
POLL_INTERVAL = float(_setting("GROUPCHAT_POLL_INTERVAL", "POLL_INTERVAL", "0.5"))
# An adapter must report idle continuously for this long before it counts as idle (seconds)
IDLE_STABILITY_THRESHOLD = float(_setting("GROUPCHAT_IDLE_THRESHOLD", "IDLE_STABILITY_THRESHOLD", "1.0"))

# Delivery retry backoff: min(RETRY_MAX_INTERVAL, RETRY_BASE_INTERVAL * 2^(attempt-1))
RETRY_BASE_INTERVAL = float(_setting("GROUPCHAT_RETRY_BASE", "RETRY_BASE_INTERVAL", "1.0"))
RETRY_MAX_INTERVAL = float(_setting("GROUPCHAT_RETRY_MAX", "RETRY_MAX_INTERVAL", "8.0"))

# Safety cap on automatic replies per participant (0 = disabled)
MAX_AUTO_RESPONSES = int(_setting("GROUPCHAT_MAX_AUTO_RESPONSES", "MAX_AUTO_RESPONSES", "10"))

# Abandon a turn whose output never arrives after this many seconds (0 = wait forever)
CAPTURE_TIMEOUT = float(_setting("GROUPCHAT_CAPTURE_TIMEOUT", "CAPTURE_TIMEOUT", "600"))

# Upper bound on the number of lines removed as one echoed prompt block
ECHO_MAX_SPAN = int(_setting("GROUPCHAT_ECHO_MAX_SPAN", "ECHO_MAX_SPAN", "200"))

DEBUG_LOG_ENABLED = str(_setting("GROUPCHAT_DEBUG_LOG", "DEBUG_LOG_ENABLED", "true")).lower() in {"1", "true", "yes"}

GROUPCHAT_VERSION = "0.1.0"


def get_config_dict():
    return {
        "HOST": HOST,
        "PORT": PORT,
        "POLL_INTERVAL": POLL_INTERVAL,
        "IDLE_STABILITY_THRESHOLD": IDLE_STABILITY_THRESHOLD,
        "RETRY_BASE_INTERVAL": RETRY_BASE_INTERVAL,
        "RETRY_MAX_INTERVAL": RETRY_MAX_INTERVAL,
        "MAX_AUTO_RESPONSES": MAX_AUTO_RESPONSES,
        "CAPTURE_TIMEOUT": CAPTURE_TIMEOUT,
        "ECHO_MAX_SPAN": ECHO_MAX_SPAN,
        "DEBUG_LOG_ENABLED": DEBUG_LOG_ENABLED,
    }


def save_config_dict(new_data: dict):
    """Merge into data/config.json. Takes effect on the next start."""
    config_file = CONFIG_FILE
    config_file.parent.mkdir(parents=True, exist_ok=True)

    current = {}
    if config_file.exists():
        with open(config_file, "r", encoding="utf-8") as f:
            current = json.load(f)

    current.update(new_data)
    with open(config_file, "w", encoding="utf-8") as f:
        json.dump(current, f, indent=2)
