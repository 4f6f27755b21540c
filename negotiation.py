"""
Peer-connection negotiation for one voice + chat session.

The state machine never touches the network or a microphone itself. It talks
to a ``MediaBackend`` (``rtc_backend.AiortcBackend`` in production, fakes in
the tests) and to a ``send_signal(partner_id, signal_data)`` callable that
hands payloads to the signaling transport.

Peer connections are event emitters raising:

    "icecandidate"              candidate dict, or None when gathering ends
    "iceconnectionstatechange"  ICE state string ("checking", "connected", ...)
    "track"                     remote media track
    "datachannel"               data channel opened by the other side

Data channels follow aiortc's ``RTCDataChannel`` surface: ``readyState``,
``send()``, ``close()`` and "open" / "message" / "close" events.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pyee.asyncio import AsyncIOEventEmitter

from signaling_protocol import Role, role_for

logger = logging.getLogger(__name__)

DATA_CHANNEL_LABEL = "chat"

MIC_PERMISSION_DENIED_MESSAGE = (
    "Microphone access was denied. Please grant permission and try again."
)
MIC_UNAVAILABLE_MESSAGE = (
    "Could not access your microphone. Please ensure it is connected and not in use by another application."
)

ICE_LIVE_STATES = ("connected", "completed")
ICE_DEAD_STATES = ("disconnected", "failed", "closed")


class NegotiationState(str, Enum):
    IDLE = "idle"
    AWAITING_MATCH = "awaiting_match"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    CLOSED = "closed"
    FAILED = "failed"


TRANSITIONS = {
    NegotiationState.IDLE: {NegotiationState.AWAITING_MATCH},
    NegotiationState.AWAITING_MATCH: {NegotiationState.NEGOTIATING, NegotiationState.CLOSED},
    NegotiationState.NEGOTIATING: {NegotiationState.CONNECTED, NegotiationState.CLOSED, NegotiationState.FAILED},
    NegotiationState.CONNECTED: {NegotiationState.CLOSED, NegotiationState.FAILED},
    NegotiationState.CLOSED: {NegotiationState.AWAITING_MATCH, NegotiationState.IDLE},
    NegotiationState.FAILED: {NegotiationState.IDLE},
}


class InvalidTransition(RuntimeError):
    def __init__(self, current: NegotiationState, requested: NegotiationState):
        super().__init__(f"Invalid negotiation transition {current.value} -> {requested.value}")
        self.current = current
        self.requested = requested


class MediaAcquisitionError(Exception):
    PERMISSION_DENIED = "permission_denied"
    DEVICE_UNAVAILABLE = "device_unavailable"

    def __init__(self, reason: str, detail: str = ""):
        super().__init__(detail or reason)
        self.reason = reason

    @property
    def user_message(self) -> str:
        if self.reason == self.PERMISSION_DENIED:
            return MIC_PERMISSION_DENIED_MESSAGE
        return MIC_UNAVAILABLE_MESSAGE


class MediaBackend:
    """Abstract base for what the state machine needs from the media / transport layer.

    Not usable on its own: subclasses (``rtc_backend.AiortcBackend``, the test
    fakes) override both methods.
    """

    async def acquire_microphone(self) -> List[Any]:
        """Return local audio tracks. Raise ``MediaAcquisitionError`` on failure."""
        raise NotImplementedError(f"{type(self).__name__} does not provide a microphone")

    def create_peer_connection(self):
        """Return a new peer connection emitting the events listed in the module docstring."""
        raise NotImplementedError(f"{type(self).__name__} does not provide peer connections")


@dataclass
class NegotiationSession:
    partner_id: str
    role: Role
    peer_connection: Any = None
    local_tracks: List[Any] = field(default_factory=list)
    data_channel: Any = None
    ice_state: str = "new"
    remote_track: Any = None
    remote_description_set: bool = False
    pending_candidates: List[Dict[str, Any]] = field(default_factory=list)


class NegotiationStateMachine(AsyncIOEventEmitter):
    """Drives one client's peer connection from search to teardown.

    Events emitted: ``state_changed`` (NegotiationState), ``remote_stream_ready``
    (track), ``channel_open``, ``message`` (text), ``media_error`` (message),
    ``closed`` (reason) and ``failed`` (reason).
    """

    def __init__(self, backend: MediaBackend, send_signal: Callable[[str, Dict[str, Any]], None],
                 negotiation_timeout: Optional[float] = None):
        super().__init__()
        self.backend = backend
        self.send_signal = send_signal
        self.negotiation_timeout = negotiation_timeout
        self.client_id: Optional[str] = None
        self.session: Optional[NegotiationSession] = None
        self.muted = False
        self.last_media_error: Optional[str] = None
        self._state = NegotiationState.IDLE
        # Serializes matched / signal handling. Hang-up deliberately bypasses it.
        self._negotiation_lock = asyncio.Lock()
        self._timeout_task: Optional[asyncio.Task] = None

    @property
    def state(self) -> NegotiationState:
        return self._state

    @property
    def partner_id(self) -> Optional[str]:
        return self.session.partner_id if self.session else None

    @property
    def remote_track(self):
        return self.session.remote_track if self.session else None

    def _transition(self, new_state: NegotiationState) -> None:
        if new_state not in TRANSITIONS[self._state]:
            raise InvalidTransition(self._state, new_state)
        logger.info(f"Negotiation: {self._state.value} -> {new_state.value}")
        self._state = new_state
        self.emit("state_changed", new_state)

    def _is_live(self, session: Optional[NegotiationSession]) -> bool:
        return (session is not None and self.session is session
                and self._state in (NegotiationState.NEGOTIATING, NegotiationState.CONNECTED))

    # ---- user actions -------------------------------------------------

    def begin_search(self) -> None:
        self._transition(NegotiationState.AWAITING_MATCH)

    async def hang_up(self, reason: str = "hangup") -> None:
        """Close the current session from any state that has one.

        Safe while a media / description step is still pending: the state is
        ``CLOSED`` as soon as this returns and the pending step's result is
        thrown away when it completes.
        """
        if self._state in (NegotiationState.NEGOTIATING, NegotiationState.CONNECTED):
            await self._close(self.session, reason)
        elif self._state is NegotiationState.AWAITING_MATCH:
            self._transition(NegotiationState.CLOSED)
            self.emit("closed", reason)

    async def peer_left(self) -> None:
        await self.hang_up("peer left")

    async def reset(self) -> None:
        """Tear down whatever is active and return to ``IDLE``."""
        await self.hang_up("reset")
        if self._state in (NegotiationState.CLOSED, NegotiationState.FAILED):
            self._transition(NegotiationState.IDLE)
        self.muted = False
        self.last_media_error = None

    def send_text(self, text: str) -> bool:
        channel = self.session.data_channel if self.session else None
        if channel is None or channel.readyState != "open":
            logger.debug("Negotiation: Data channel not open, chat text dropped.")
            return False
        channel.send(text)
        return True

    def toggle_mute(self) -> bool:
        """Flip every local audio track on or off. Returns True when now muted."""
        if not self.session or not self.session.local_tracks:
            return self.muted
        for track in self.session.local_tracks:
            if getattr(track, "kind", "audio") == "audio":
                track.enabled = not track.enabled
                self.muted = not track.enabled
        return self.muted

    # ---- events from the signaling server -----------------------------

    async def on_matched(self, partner_id: str, caller_id: Optional[str] = None) -> None:
        async with self._negotiation_lock:
            if self.client_id is None:
                raise RuntimeError("Matched before the signaling server assigned a client id")
            role = role_for(self.client_id, partner_id, caller_id)
            self._transition(NegotiationState.NEGOTIATING)
            session = NegotiationSession(partner_id=partner_id, role=role)
            self.session = session
            self.muted = False
            logger.info(f"Negotiation: Matched with '{partner_id}' as {role.value}.")

            try:
                tracks = await self.backend.acquire_microphone()
            except MediaAcquisitionError as e:
                logger.warning(f"Negotiation: Microphone unavailable ({e.reason}): {e}")
                if self._is_live(session):
                    await self._fail(session, e.user_message, media_error=True)
                return

            if not self._is_live(session):
                logger.info("Negotiation: Session ended while acquiring the microphone. Releasing it.")
                _stop_tracks(tracks)
                return
            session.local_tracks = list(tracks)

            pc = self.backend.create_peer_connection()
            session.peer_connection = pc
            self._wire_peer_connection(session, pc)
            for track in session.local_tracks:
                pc.add_track(track)
            self._start_timeout(session)

            if role is Role.CALLER:
                try:
                    self._attach_data_channel(session, pc.create_data_channel(DATA_CHANNEL_LABEL))
                    offer = await pc.create_offer()
                    await pc.set_local_description(offer)
                except Exception as e:
                    logger.exception(f"Negotiation: Failed to create offer: {e}")
                    if self._is_live(session):
                        await self._fail(session, "negotiation failed")
                    return
                if self._is_live(session):
                    self.send_signal(session.partner_id, {"offer": offer})

    async def handle_signal(self, signal_data: Dict[str, Any]) -> None:
        async with self._negotiation_lock:
            session = self.session
            if not self._is_live(session) or session.peer_connection is None:
                logger.debug(f"Negotiation: Dropping signal in state {self._state.value}.")
                return
            pc = session.peer_connection

            if signal_data.get("offer") is not None:
                try:
                    await pc.set_remote_description(signal_data["offer"])
                    if not self._is_live(session):
                        return
                    session.remote_description_set = True
                    await self._flush_candidates(session)
                    answer = await pc.create_answer()
                    if not self._is_live(session):
                        return
                    await pc.set_local_description(answer)
                except Exception as e:
                    logger.exception(f"Negotiation: Failed to answer offer: {e}")
                    if self._is_live(session):
                        await self._fail(session, "negotiation failed")
                    return
                if self._is_live(session):
                    self.send_signal(session.partner_id, {"answer": answer})

            elif signal_data.get("answer") is not None:
                try:
                    await pc.set_remote_description(signal_data["answer"])
                except Exception as e:
                    logger.exception(f"Negotiation: Failed to apply answer: {e}")
                    if self._is_live(session):
                        await self._fail(session, "negotiation failed")
                    return
                if self._is_live(session):
                    session.remote_description_set = True
                    await self._flush_candidates(session)

            elif signal_data.get("candidate") is not None:
                if session.remote_description_set:
                    await self._apply_candidate(session, signal_data["candidate"])
                else:
                    session.pending_candidates.append(signal_data["candidate"])

            else:
                logger.warning(f"Negotiation: Ignoring signal with unknown keys: {sorted(signal_data)}")

    # ---- internals ----------------------------------------------------

    async def _apply_candidate(self, session: NegotiationSession, candidate: Dict[str, Any]) -> None:
        try:
            await session.peer_connection.add_ice_candidate(candidate)
        except Exception as e:
            logger.warning(f"Negotiation: Error adding received ICE candidate: {e}")

    async def _flush_candidates(self, session: NegotiationSession) -> None:
        pending, session.pending_candidates = session.pending_candidates, []
        for candidate in pending:
            if not self._is_live(session):
                return
            await self._apply_candidate(session, candidate)

    def _wire_peer_connection(self, session: NegotiationSession, pc) -> None:
        @pc.on("icecandidate")
        def on_ice_candidate(candidate):
            if candidate and self._is_live(session):
                self.send_signal(session.partner_id, {"candidate": candidate})

        @pc.on("iceconnectionstatechange")
        def on_ice_state(ice_state):
            if self.session is not session:
                return
            session.ice_state = ice_state
            logger.info(f"Negotiation: ICE connection state changed: {ice_state}")
            if ice_state in ICE_LIVE_STATES and self._state is NegotiationState.NEGOTIATING:
                self._cancel_timeout()
                self._transition(NegotiationState.CONNECTED)
            elif ice_state in ICE_DEAD_STATES:
                if self._state is NegotiationState.CONNECTED:
                    asyncio.ensure_future(self._close(session, "peer disconnected"))
                elif self._state is NegotiationState.NEGOTIATING and ice_state != "disconnected":
                    asyncio.ensure_future(self._fail(session, "connection failed"))

        @pc.on("track")
        def on_track(track):
            if self._is_live(session):
                session.remote_track = track
                self.emit("remote_stream_ready", track)

        @pc.on("datachannel")
        def on_data_channel(channel):
            if self._is_live(session):
                self._attach_data_channel(session, channel)

    def _attach_data_channel(self, session: NegotiationSession, channel) -> None:
        session.data_channel = channel

        @channel.on("open")
        def on_open():
            logger.info("Negotiation: Data channel opened")
            if self._is_live(session):
                self.emit("channel_open")

        @channel.on("message")
        def on_message(data):
            if self._is_live(session):
                self.emit("message", data)

        @channel.on("close")
        def on_close():
            logger.info("Negotiation: Data channel closed")

        if channel.readyState == "open":
            on_open()

    def _start_timeout(self, session: NegotiationSession) -> None:
        if self.negotiation_timeout is None:
            return
        self._cancel_timeout()
        self._timeout_task = asyncio.ensure_future(self._watch_negotiation(session))

    def _cancel_timeout(self) -> None:
        if self._timeout_task is not None and not self._timeout_task.done():
            if self._timeout_task is not asyncio.current_task():
                self._timeout_task.cancel()
        self._timeout_task = None

    async def _watch_negotiation(self, session: NegotiationSession) -> None:
        await asyncio.sleep(self.negotiation_timeout)
        if self.session is session and self._state is NegotiationState.NEGOTIATING:
            logger.warning(f"Negotiation: Not connected after {self.negotiation_timeout}s.")
            await self._fail(session, "connection timed out")

    def _detach(self, session: NegotiationSession):
        """Release the microphone and forget the session. Returns what still needs closing."""
        self._cancel_timeout()
        self.session = None
        _stop_tracks(session.local_tracks)
        session.local_tracks = []
        channel, session.data_channel = session.data_channel, None
        pc, session.peer_connection = session.peer_connection, None
        return channel, pc

    async def _release(self, channel, pc) -> None:
        if channel is not None and channel.readyState != "closed":
            try:
                channel.close()
            except Exception as e:
                logger.debug(f"Negotiation: Error closing data channel: {e}")
        if pc is not None:
            try:
                await pc.close()
            except Exception as e:
                logger.warning(f"Negotiation: Error closing peer connection: {e}")

    async def _close(self, session: Optional[NegotiationSession], reason: str) -> None:
        if session is None or self.session is not session:
            return
        channel, pc = self._detach(session)
        self._transition(NegotiationState.CLOSED)
        self.emit("closed", reason)
        await self._release(channel, pc)

    async def _fail(self, session: NegotiationSession, reason: str, media_error: bool = False) -> None:
        if self.session is not session:
            return
        channel, pc = self._detach(session)
        self._transition(NegotiationState.FAILED)
        if media_error:
            self.last_media_error = reason
            self.emit("media_error", reason)
        self.emit("failed", reason)
        await self._release(channel, pc)


def _stop_tracks(tracks) -> None:
    for track in tracks:
        try:
            track.stop()
        except Exception as e:
            logger.debug(f"Negotiation: Error stopping local track: {e}")
