"""Shared microphone capture.

The capture device is exclusive, so one MicrophoneStream owns it and fans
chunks out to every subscriber (the VAD monitor and the recognizer). The
capture thread starts with the first subscriber and stops when the last one
unsubscribes, which is what releases the device when the assistant stops.

Audio format: 16kHz 16-bit mono PCM (linear16), the rate Silero VAD expects.
"""

import asyncio
import threading
import time
from typing import Callable

from audio_window import SAMPLE_RATE

CHANNELS = 1
CHUNK_SIZE = 1024  # bytes per read (~32ms at 16kHz 16-bit mono)
CAPTURE_RETRY_DELAY = 1.0


class MicrophoneStream:
    """Reference-counted PulseAudio/PipeWire capture with chunk fan-out.

    Args:
        sample_rate: Capture rate in Hz
        chunk_bytes: Bytes per read from the device
        device_name: PulseAudio source name (None = default mic)
    """

    def __init__(self, sample_rate=SAMPLE_RATE, chunk_bytes=CHUNK_SIZE, device_name=None):
        self.sample_rate = sample_rate
        self.chunk_bytes = chunk_bytes
        self.device_name = device_name
        self._subscribers: list[Callable[[bytes], None]] = []
        self._stop_event = None
        self._thread = None

    @property
    def running(self):
        return self._thread is not None

    def subscribe(self, callback: Callable[[bytes], None]) -> Callable[[], None]:
        """Receive every captured chunk on the event loop thread.

        Returns a callable that removes the subscription. Calling it more
        than once is harmless.
        """
        self._subscribers.append(callback)
        if self._thread is None:
            self._start()

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)
                if not self._subscribers:
                    self._stop()

        return unsubscribe

    def _start(self):
        # Fresh event per thread so a quick stop/start never revives the old reader
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._capture_thread,
            args=(asyncio.get_event_loop(), self._stop_event),
            daemon=True,
        )
        self._thread.start()
        print("Mic: Capture started", flush=True)

    def _stop(self):
        self._stop_event.set()
        self._thread = None
        print("Mic: Capture stopped", flush=True)

    def _deliver(self, data: bytes):
        """Fan a chunk out to the current subscribers (event loop thread)."""
        for callback in list(self._subscribers):
            try:
                callback(data)
            except Exception as e:
                print(f"Mic: Subscriber error: {e}", flush=True)

    def _capture_thread(self, loop, stop_event):
        """Record audio in a daemon thread and hand chunks to the loop."""
        import pasimple

        while not stop_event.is_set():
            try:
                with pasimple.PaSimple(
                    pasimple.PA_STREAM_RECORD,
                    pasimple.PA_SAMPLE_S16LE,
                    CHANNELS, self.sample_rate,
                    app_name='voice-assistant',
                    device_name=self.device_name,
                ) as pa:
                    while not stop_event.is_set():
                        data = pa.read(self.chunk_bytes)
                        if stop_event.is_set():
                            break
                        loop.call_soon_threadsafe(self._deliver, data)
            except Exception as e:
                if not stop_event.is_set():
                    print(f"Mic: Capture error: {e}, reopening...", flush=True)
                    time.sleep(CAPTURE_RETRY_DELAY)
