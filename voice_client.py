#!/usr/bin/env python3
"""Headless voice + text client.

Connects to the signaling service, waits to be paired with a random partner,
streams the microphone to them and relays typed lines as chat.

Usage:
    python3 voice_client.py              # search immediately
    python3 voice_client.py --no-search  # wait for /next
    python3 voice_client.py --stats      # print pool statistics and exit

While running, stdin lines are sent as chat; commands are
/next, /hangup, /mute and /quit.
"""
import argparse
import asyncio
import logging
import signal
import sys

import requests
from aiortc.contrib.media import MediaBlackhole, MediaRecorder

import client_config
from rtc_backend import AiortcBackend
from session_orchestrator import AppState, ChatMessage, SessionOrchestrator, Sender
from signaling_client import SignalingClient
from signaling_protocol import CONNECTED

logger = logging.getLogger("voice_client")


def fetch_stats(signaling_url: str) -> dict:
    response = requests.get(client_config.stats_url(signaling_url), timeout=10)
    response.raise_for_status()
    return response.json()


class RemoteAudioSink:
    """Consumes the partner's audio so RTP keeps flowing; optionally records it."""

    def __init__(self, path=None):
        self.path = path
        self._sink = None

    async def start(self, track) -> None:
        await self.stop()
        self._sink = MediaRecorder(self.path) if self.path else MediaBlackhole()
        self._sink.addTrack(track)
        await self._sink.start()

    async def stop(self) -> None:
        if self._sink is not None:
            sink, self._sink = self._sink, None
            await sink.stop()


async def open_stdin_reader() -> asyncio.StreamReader:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    return reader


async def run_client(search_on_connect: bool) -> None:
    orchestrator = None
    first_connect = asyncio.Event()

    async def on_signaling_event(event, fields):
        await orchestrator.handle_event(event, fields)
        if event == CONNECTED:
            first_connect.set()

    client = SignalingClient(client_config.SIGNALING_SERVER_URL, on_signaling_event,
                             reconnect_delay=client_config.RECONNECT_DELAY_SEC)
    orchestrator = SessionOrchestrator(AiortcBackend(), client,
                                       negotiation_timeout=client_config.NEGOTIATION_TIMEOUT_SEC)
    sink = RemoteAudioSink(client_config.REMOTE_AUDIO_SINK)

    @orchestrator.on("state_changed")
    def on_state(state):
        print(f"[{state.value}] {orchestrator.status_message or ''}")
        if state is not AppState.CONNECTED:
            asyncio.ensure_future(sink.stop())

    @orchestrator.on("chat_message")
    def on_chat(message: ChatMessage):
        if message.sender is Sender.PEER:
            print(f"stranger> {message.text}")

    @orchestrator.on("remote_stream_ready")
    def on_remote_stream(track):
        asyncio.ensure_future(sink.start(track))

    @orchestrator.on("media_error")
    def on_media_error(message):
        print(f"[media error] {message}")

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    client_task = asyncio.create_task(client.run())
    stdin = await open_stdin_reader()
    stop_task = asyncio.create_task(stop_event.wait())

    await asyncio.wait([asyncio.create_task(first_connect.wait()), stop_task],
                       return_when=asyncio.FIRST_COMPLETED)
    if search_on_connect and not stop_event.is_set():
        await orchestrator.start_search()

    try:
        while not stop_event.is_set():
            line_task = asyncio.create_task(stdin.readline())
            done, _ = await asyncio.wait([line_task, stop_task], return_when=asyncio.FIRST_COMPLETED)
            if line_task not in done:
                line_task.cancel()
                break
            line = line_task.result().decode(errors="replace")
            if not line:
                break
            text = line.rstrip("\n")
            if text == "/quit":
                break
            elif text == "/next":
                await orchestrator.next_partner()
            elif text == "/hangup":
                await orchestrator.hang_up()
            elif text == "/mute":
                muted = orchestrator.toggle_mute()
                print("[muted]" if muted else "[unmuted]")
            elif text.strip():
                if not orchestrator.send_text(text):
                    print("[not sent: chat channel is not open]")
    finally:
        await orchestrator.hang_up()
        await sink.stop()
        await client.close()
        for task in (client_task, stop_task):
            task.cancel()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Random one-to-one voice chat client")
    parser.add_argument("--stats", action="store_true", help="print signaling pool statistics and exit")
    parser.add_argument("--no-search", action="store_true", help="do not start searching on connect")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=client_config.LOG_LEVEL,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
        handlers=[logging.StreamHandler()],
    )

    if args.stats:
        try:
            stats = fetch_stats(client_config.SIGNALING_SERVER_URL)
        except requests.RequestException as e:
            logger.error(f"Could not fetch stats: {e}")
            return 1
        print(f"connected={stats['connected']} waiting={stats['waiting']} paired={stats['paired']}")
        return 0

    asyncio.run(run_client(search_on_connect=not args.no_search))
    return 0


if __name__ == "__main__":
    sys.exit(main())
