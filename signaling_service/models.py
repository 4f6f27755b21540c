"""
Data models and shared state for the signaling service
"""
import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional

from fastapi import WebSocket
from pydantic import BaseModel

from signaling_service import config


# Pydantic models for inbound client events
class JoinRequest(BaseModel):
    preferences: Optional[Dict[str, Any]] = None


class SignalRequest(BaseModel):
    partnerId: Optional[str] = None
    signalData: Dict[str, Any]


class HangupRequest(BaseModel):
    partnerId: Optional[str] = None


@dataclass
class ClientRecord:
    client_id: str
    websocket: WebSocket
    remote_host: Optional[str] = None
    remote_port: Optional[int] = None
    connected_at: float = field(default_factory=time.time)
    # Encoded frames waiting to be written, see broadcast.flush_client
    outbox: Deque[str] = field(default_factory=deque)
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class ServiceState:
    """Container for all service state.

    ``waiting_pool`` and ``partners`` are only touched while ``lock`` is held,
    so a client id is never in the pool and the directory at the same time.
    """
    def __init__(self, send_timeout: float = config.SEND_TIMEOUT_SEC):
        # Connection registry: client_id -> ClientRecord
        self.clients: Dict[str, ClientRecord] = {}

        # FIFO of client ids waiting for a partner
        self.waiting_pool: List[str] = []

        # Partner directory, symmetric: partners[a] == b  <=>  partners[b] == a
        self.partners: Dict[str, str] = {}

        self.lock = asyncio.Lock()

        # Upper bound on a single websocket write
        self.send_timeout = send_timeout

    def status_of(self, client_id: str) -> str:
        if client_id in self.partners:
            return "paired"
        if client_id in self.waiting_pool:
            return "waiting"
        return "idle"

    def stats(self) -> Dict[str, int]:
        return {
            "connected": len(self.clients),
            "waiting": len(self.waiting_pool),
            "paired": len(self.partners),
        }
