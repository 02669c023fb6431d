#!/usr/bin/env python3
"""
Voice assistant front end: continuous listening, streaming answers, barge-in.

  Microphone -> Silero VAD (barge-in) + Deepgram STT (transcripts)
  -> SessionCoordinator -> generation channel (/ws) or POST /query
  -> POST /speak audio or local Piper -> PyAudio

The session starts immediately. SIGUSR1 toggles listening on and off (the
mic button); SIGINT/SIGTERM stop and exit.

Usage:
    voice-assistant [--config PATH] [--server URL] [--no-websocket] [--no-barge-in]
"""

import argparse
import asyncio
import signal
import time
from collections import Counter
from pathlib import Path

from backend_client import BackendClient
from config import get_deepgram_api_key, load_config, ws_url_for
from deepgram_recognizer import DeepgramRecognizer
from event_bus import EventBus, EventType
from generation_channel import GenerationChannel
from mic_stream import MicrophoneStream
from playback import PiperSynthesizer, PlaybackController, PyAudioOutput
from session_coordinator import SessionCoordinator
from speech_capture import SpeechCaptureSession
from vad_monitor import SileroVAD, VoiceActivityMonitor


class ConsoleDisplay:
    """Prints what a UI would show: status changes, the question, the answer."""

    def __init__(self):
        self._display = None
        self._last_user_text = ""

    def on_status(self, status):
        print(f"Status: {status}", flush=True)
        if self._display is not None and status in ("speaking", "error", "idle"):
            print(f"Assistant: {self._display.bot_text}", flush=True)

    def on_display(self, display):
        self._display = display
        if display.user_text and display.user_text != self._last_user_text:
            self._last_user_text = display.user_text
            print(f"You: {display.user_text}", flush=True)


def session_summary(events):
    """One line tallying a finished session from its logged events."""
    counts = Counter(evt.type for evt in events)
    return (f"Session: {counts[EventType.TRANSCRIPT.value]} questions, "
            f"{counts[EventType.BARGE_IN.value]} barge-ins, "
            f"{counts[EventType.FALLBACK_QUERY.value]} answered over HTTP, "
            f"{counts[EventType.REQUEST_LOST.value]} lost to a dropped connection")


def build_session(config, bus=None, display=None):
    """Construct every component from config and wire them to one coordinator.

    Returns (coordinator, backend_client).
    """
    display = display or ConsoleDisplay()
    server_url = config["server_url"]
    backend = BackendClient(server_url)
    channel = GenerationChannel(ws_url_for(server_url),
                                reconnect_delay=config["reconnect_delay"], bus=bus)

    coordinator = SessionCoordinator(
        channel,
        backend=backend,
        bus=bus,
        on_status=display.on_status,
        on_display=display.on_display,
        dead_zone=config["dead_zone_ms"] / 1000,
        settle_delay=config["settle_delay_ms"] / 1000,
        use_websocket=config["use_websocket"],
    )
    coordinator.barge_in_enabled = config["barge_in"]

    mic = MicrophoneStream()

    vad = SileroVAD(config["vad_model_path"])
    if vad.load():
        coordinator.attach_monitor(VoiceActivityMonitor(
            vad, mic,
            is_speaking=lambda: coordinator.speaking,
            on_speech=coordinator.handle_speech_detected,
            window_samples=config["window_samples"],
            speaking_threshold=config["speaking_threshold"],
            listening_threshold=config["listening_threshold"],
        ))
    else:
        print("Assistant: VAD unavailable, barge-in disabled", flush=True)

    api_key = get_deepgram_api_key()
    recognizer = None
    if api_key:
        recognizer = DeepgramRecognizer(api_key, mic, language=config["language"])
    else:
        print("Assistant: No Deepgram API key, speech recognition unavailable", flush=True)
    coordinator.attach_capture(SpeechCaptureSession(
        recognizer,
        on_transcript=coordinator.handle_transcript,
        should_restart=coordinator.should_restart_capture,
    ))

    output = PyAudioOutput()
    coordinator.attach_playback(PlaybackController(
        backend, output,
        fallback=PiperSynthesizer(output, cmd=config["piper_cmd"], model=config["piper_model"]),
        on_speaking_start=coordinator.handle_speaking_start,
        on_speaking_end=coordinator.handle_speaking_end,
    ))
    return coordinator, backend


async def run(config):
    session_id = time.strftime("%Y%m%d_%H%M%S")
    log_dir = Path(config["session_log_dir"]).expanduser() / session_id
    bus = EventBus("assistant", session_id, log_dir)
    bus.open()

    coordinator, backend = build_session(config, bus=bus)
    loop = asyncio.get_running_loop()
    shutdown = asyncio.Event()
    pending = set()

    def toggle():
        action = coordinator.stop() if coordinator.running else coordinator.start()
        task = asyncio.ensure_future(action)
        pending.add(task)
        task.add_done_callback(pending.discard)

    loop.add_signal_handler(signal.SIGUSR1, toggle)
    loop.add_signal_handler(signal.SIGINT, shutdown.set)
    loop.add_signal_handler(signal.SIGTERM, shutdown.set)

    try:
        await coordinator.start()
        await shutdown.wait()
        print("\nShutting down...", flush=True)
    finally:
        for sig in (signal.SIGUSR1, signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        await coordinator.stop()
        await backend.aclose()
        bus.close()
        if bus.bus_path is not None:
            print(session_summary(bus.read_recent(last_n=0)), flush=True)


def main():
    parser = argparse.ArgumentParser(description="Voice assistant with barge-in")
    parser.add_argument("--config", default=None, help="Path to config JSON")
    parser.add_argument("--server", default=None, help="Backend URL (default from config)")
    parser.add_argument("--no-websocket", action="store_true",
                        help="Ask over POST /query instead of the streaming channel")
    parser.add_argument("--no-barge-in", action="store_true",
                        help="Never interrupt playback on detected speech")
    args = parser.parse_args()

    config = load_config(args.config)
    if args.server:
        config["server_url"] = args.server
    if args.no_websocket:
        config["use_websocket"] = False
    if args.no_barge_in:
        config["barge_in"] = False

    asyncio.run(run(config))


if __name__ == "__main__":
    main()
