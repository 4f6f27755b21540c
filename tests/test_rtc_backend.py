import threading
import unittest
from unittest import mock

from aiortc import MediaStreamTrack
from av import AudioFrame

import client_config
from negotiation import MediaAcquisitionError
from rtc_backend import AiortcBackend, SwitchableAudioTrack, build_configuration, parse_remote_candidate


class ToneTrack(MediaStreamTrack):
    kind = "audio"

    async def recv(self):
        frame = AudioFrame(format="s16", layout="mono", samples=160)
        for plane in frame.planes:
            plane.update(b"\x01" * plane.buffer_size)
        frame.sample_rate = 8000
        return frame


class TestSwitchableAudioTrack(unittest.IsolatedAsyncioTestCase):
    async def test_muted_track_sends_silence(self):
        track = SwitchableAudioTrack(ToneTrack())
        frame = await track.recv()
        self.assertTrue(any(bytes(frame.planes[0])))

        track.enabled = False
        frame = await track.recv()
        self.assertFalse(any(bytes(frame.planes[0])))
        track.stop()
        self.assertEqual(track.readyState, "ended")


class TestAcquireMicrophone(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.backend = AiortcBackend(ice_servers=[], mic_device="default", mic_format="pulse")

    async def test_device_is_opened_off_the_event_loop_thread(self):
        opened_on = []

        def open_player(device, format=None):
            opened_on.append(threading.current_thread())
            return mock.Mock(audio=ToneTrack())

        with mock.patch("rtc_backend.MediaPlayer", side_effect=open_player) as player_cls:
            tracks = await self.backend.acquire_microphone()
        player_cls.assert_called_once_with("default", format="pulse")
        self.assertIsNot(opened_on[0], threading.current_thread())
        self.assertEqual(len(tracks), 1)
        self.assertIsInstance(tracks[0], SwitchableAudioTrack)

    async def test_permission_error_is_reported_as_denied(self):
        with mock.patch("rtc_backend.MediaPlayer", side_effect=PermissionError("denied")):
            with self.assertRaises(MediaAcquisitionError) as ctx:
                await self.backend.acquire_microphone()
        self.assertEqual(ctx.exception.reason, MediaAcquisitionError.PERMISSION_DENIED)

    async def test_missing_device_is_reported_as_unavailable(self):
        with mock.patch("rtc_backend.MediaPlayer", side_effect=OSError("no such device")):
            with self.assertRaises(MediaAcquisitionError) as ctx:
                await self.backend.acquire_microphone()
        self.assertEqual(ctx.exception.reason, MediaAcquisitionError.DEVICE_UNAVAILABLE)

    async def test_player_without_audio_is_unavailable(self):
        with mock.patch("rtc_backend.MediaPlayer", return_value=mock.Mock(audio=None)):
            with self.assertRaises(MediaAcquisitionError) as ctx:
                await self.backend.acquire_microphone()
        self.assertEqual(ctx.exception.reason, MediaAcquisitionError.DEVICE_UNAVAILABLE)


class TestCandidates(unittest.TestCase):
    def test_browser_candidate_is_parsed(self):
        candidate = parse_remote_candidate({
            "candidate": "candidate:842163049 1 udp 1677729535 192.0.2.10 54321 typ srflx raddr 10.0.0.2 rport 54321",
            "sdpMid": "0",
            "sdpMLineIndex": 0,
        })
        self.assertEqual(candidate.ip, "192.0.2.10")
        self.assertEqual(candidate.port, 54321)
        self.assertEqual(candidate.type, "srflx")
        self.assertEqual(candidate.sdpMid, "0")
        self.assertEqual(candidate.sdpMLineIndex, 0)

    def test_end_of_candidates_marker(self):
        self.assertIsNone(parse_remote_candidate({"candidate": "", "sdpMid": "0"}))


class TestClientConfig(unittest.TestCase):
    def test_build_configuration(self):
        config = build_configuration([
            {"urls": ["stun:stun.example.org:3478"]},
            {"urls": ["turn:turn.example.org:3478"], "username": "u", "credential": "p"},
        ])
        self.assertEqual(len(config.iceServers), 2)
        self.assertEqual(config.iceServers[1].username, "u")

    def test_stats_url(self):
        self.assertEqual(client_config.stats_url("ws://localhost:3001/ws"), "http://localhost:3001/api/stats")
        self.assertEqual(client_config.stats_url("wss://chat.example.org/ws"), "https://chat.example.org/api/stats")
        self.assertEqual(client_config.stats_url("ws://localhost:3001/"), "http://localhost:3001/api/stats")


if __name__ == "__main__":
    unittest.main()
