"""
aiortc implementation of the media backend used by ``negotiation``.

aiortc gathers all local ICE candidates while setting the local description
and ships them inside the SDP, so ``AiortcPeerConnection`` never emits
"icecandidate" itself. Candidates trickled by a browser partner are still
applied as they arrive.
"""
import asyncio
import functools
import logging
from typing import Any, Dict, List, Optional

from av.error import FFmpegError
from aiortc import MediaStreamTrack, RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.contrib.media import MediaPlayer
from aiortc.sdp import candidate_from_sdp
from pyee.asyncio import AsyncIOEventEmitter

import client_config
from negotiation import MediaAcquisitionError, MediaBackend

logger = logging.getLogger(__name__)


class SwitchableAudioTrack(MediaStreamTrack):
    """Wraps the microphone track; while ``enabled`` is False it sends silence."""

    kind = "audio"

    def __init__(self, source: MediaStreamTrack):
        super().__init__()
        self._source = source
        self.enabled = True

    async def recv(self):
        frame = await self._source.recv()
        if not self.enabled:
            for plane in frame.planes:
                plane.update(bytes(plane.buffer_size))
        return frame

    def stop(self):
        super().stop()
        self._source.stop()


def build_configuration(ice_servers: List[Dict[str, Any]]) -> RTCConfiguration:
    return RTCConfiguration(iceServers=[
        RTCIceServer(urls=entry["urls"], username=entry.get("username"), credential=entry.get("credential"))
        for entry in ice_servers
    ])


def parse_remote_candidate(candidate: Dict[str, Any]):
    """Turn a browser-style ``RTCIceCandidateInit`` dict into an aiortc candidate.

    Returns None for the empty end-of-candidates marker.
    """
    line = candidate.get("candidate") or ""
    if not line:
        return None
    if line.startswith("candidate:"):
        line = line.split(":", 1)[1]
    ice_candidate = candidate_from_sdp(line)
    ice_candidate.sdpMid = candidate.get("sdpMid")
    ice_candidate.sdpMLineIndex = candidate.get("sdpMLineIndex")
    return ice_candidate


def description_to_dict(description: RTCSessionDescription) -> Dict[str, str]:
    return {"type": description.type, "sdp": description.sdp}


class AiortcPeerConnection(AsyncIOEventEmitter):
    def __init__(self, configuration: RTCConfiguration):
        super().__init__()
        self.pc = RTCPeerConnection(configuration)

        @self.pc.on("iceconnectionstatechange")
        def on_ice_state():
            self.emit("iceconnectionstatechange", self.pc.iceConnectionState)

        @self.pc.on("track")
        def on_track(track):
            self.emit("track", track)

        @self.pc.on("datachannel")
        def on_data_channel(channel):
            self.emit("datachannel", channel)

    async def create_offer(self) -> Dict[str, str]:
        return description_to_dict(await self.pc.createOffer())

    async def create_answer(self) -> Dict[str, str]:
        return description_to_dict(await self.pc.createAnswer())

    async def set_local_description(self, description: Dict[str, str]) -> None:
        await self.pc.setLocalDescription(RTCSessionDescription(sdp=description["sdp"], type=description["type"]))

    async def set_remote_description(self, description: Dict[str, str]) -> None:
        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=description["sdp"], type=description["type"]))

    async def add_ice_candidate(self, candidate: Dict[str, Any]) -> None:
        ice_candidate = parse_remote_candidate(candidate)
        if ice_candidate is not None:
            await self.pc.addIceCandidate(ice_candidate)

    def create_data_channel(self, label: str):
        return self.pc.createDataChannel(label, ordered=True)

    def add_track(self, track: MediaStreamTrack) -> None:
        self.pc.addTrack(track)

    async def close(self) -> None:
        await self.pc.close()


class AiortcBackend(MediaBackend):
    def __init__(self, ice_servers: Optional[List[Dict[str, Any]]] = None,
                 mic_device: str = client_config.MIC_DEVICE, mic_format: Optional[str] = client_config.MIC_FORMAT):
        self.ice_servers = ice_servers if ice_servers is not None else client_config.ice_server_entries()
        self.mic_device = mic_device
        self.mic_format = mic_format or None

    async def acquire_microphone(self) -> List[MediaStreamTrack]:
        # Opening the capture device blocks inside ffmpeg.
        loop = asyncio.get_running_loop()
        try:
            player = await loop.run_in_executor(
                None, functools.partial(MediaPlayer, self.mic_device, format=self.mic_format))
        except PermissionError as e:
            raise MediaAcquisitionError(MediaAcquisitionError.PERMISSION_DENIED, str(e)) from e
        except (OSError, FFmpegError) as e:
            raise MediaAcquisitionError(MediaAcquisitionError.DEVICE_UNAVAILABLE, str(e)) from e
        if player.audio is None:
            raise MediaAcquisitionError(MediaAcquisitionError.DEVICE_UNAVAILABLE,
                                        f"No audio stream on '{self.mic_device}'")
        logger.info(f"Microphone acquired from '{self.mic_device}' ({self.mic_format}).")
        return [SwitchableAudioTrack(player.audio)]

    def create_peer_connection(self) -> AiortcPeerConnection:
        return AiortcPeerConnection(build_configuration(self.ice_servers))
