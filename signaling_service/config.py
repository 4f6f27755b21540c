"""
Environment configuration for the signaling service
"""
import os
from typing import List, Optional

PORT = int(os.environ.get("PORT", "3001"))
HOST = os.environ.get("HOST", "0.0.0.0")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
SEND_TIMEOUT_SEC = float(os.environ.get("SEND_TIMEOUT_SEC", "10"))


def parse_allowed_origins(raw: Optional[str]) -> List[str]:
    """``ALLOWED_ORIGINS`` is a comma separated list; unset or empty means any origin."""
    if not raw or not raw.strip():
        return ["*"]
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


def origin_allowed(origin: Optional[str], allowed_origins: List[str]) -> bool:
    # Non-browser clients send no Origin header at all.
    if origin is None or "*" in allowed_origins:
        return True
    return origin in allowed_origins


ALLOWED_ORIGINS = parse_allowed_origins(os.environ.get("ALLOWED_ORIGINS"))
