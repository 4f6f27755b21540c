"""
Environment configuration for the voice client
"""
import os
from typing import Dict, List, Union

SIGNALING_SERVER_URL = os.environ.get("SIGNALING_SERVER_URL", "ws://localhost:3001/ws")

STUN_URLS = [url.strip() for url in os.environ.get("STUN_URLS", "stun:stun.l.google.com:19302").split(",") if url.strip()]
TURN_URL = os.environ.get("TURN_URL")
TURN_USERNAME = os.environ.get("TURN_USERNAME")
TURN_CREDENTIAL = os.environ.get("TURN_CREDENTIAL")

# Passed straight to aiortc's MediaPlayer, e.g. "default"/"pulse" or "hw:0"/"alsa"
MIC_DEVICE = os.environ.get("MIC_DEVICE", "default")
MIC_FORMAT = os.environ.get("MIC_FORMAT", "pulse")
# Where to write the partner's audio; unset means it is consumed and discarded
REMOTE_AUDIO_SINK = os.environ.get("REMOTE_AUDIO_SINK")

RECONNECT_DELAY_SEC = float(os.environ.get("RECONNECT_DELAY_SEC", "3"))
NEGOTIATION_TIMEOUT_SEC = float(os.environ.get("NEGOTIATION_TIMEOUT_SEC", "20"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()


def ice_server_entries() -> List[Dict[str, Union[str, List[str]]]]:
    entries: List[Dict[str, Union[str, List[str]]]] = []
    if STUN_URLS:
        entries.append({"urls": STUN_URLS})
    if TURN_URL:
        entries.append({"urls": [TURN_URL], "username": TURN_USERNAME or "", "credential": TURN_CREDENTIAL or ""})
    return entries


def stats_url(signaling_url: str) -> str:
    """Map ``ws[s]://host[:port]/ws`` to the service's ``http[s]://host[:port]/api/stats``."""
    base = signaling_url
    if base.startswith("wss://"):
        base = "https://" + base[len("wss://"):]
    elif base.startswith("ws://"):
        base = "http://" + base[len("ws://"):]
    if base.endswith("/ws"):
        base = base[:-len("/ws")]
    return base.rstrip("/") + "/api/stats"
