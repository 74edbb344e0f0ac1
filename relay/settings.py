# relay/settings.py
from __future__ import annotations
import os
from typing import Optional

from relay.models import EndpointConfig

# --------- Config (env-overridable) ----------
BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
API_KEY = os.getenv("OPENAI_API_KEY", "")
DEFAULT_MODEL = os.getenv("OPENAI_MODEL", "")
CONFIG_PATH = os.getenv("RELAY_CONFIG", "")
MAX_AGENTS = os.getenv("RELAY_MAX_AGENTS", "")
AGENT_STYLE = os.getenv("RELAY_AGENT_STYLE", "")
ARCHITECT_PROMPT = os.getenv("RELAY_ARCHITECT_PROMPT", "")
TIMEOUT_S = os.getenv("RELAY_TIMEOUT_S", "")


def endpoint_from_env() -> EndpointConfig:
    return EndpointConfig(base_url=BASE_URL, api_key=API_KEY)


def request_timeout() -> Optional[float]:
    """Seconds to wait on the completion endpoint; None disables the timeout."""
    try:
        value = float(TIMEOUT_S)
    except ValueError:
        return None
    return value if value > 0 else None
