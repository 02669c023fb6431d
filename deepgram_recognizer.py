"""Deepgram streaming recognizer for the speech capture session.

Implements the recognizer contract described in speech_capture.py:
- Audio comes from the shared MicrophoneStream (16kHz 16-bit mono, linear16)
- Deepgram SDK manages its WebSocket thread and fires callbacks there
- Callbacks are marshalled to the asyncio loop via call_soon_threadsafe
- is_final chunks accumulate until speech_final, then one "result" fires
- The recognizer ends on its own after a stretch with no speech, when the
  connection drops, or on stop(); "end" fires exactly once per start()
"""

import asyncio
import time

from deepgram import DeepgramClient
from deepgram.core.events import EventType

from audio_window import SAMPLE_RATE

MODEL = "nova-3"
SILENCE_TIMEOUT = 10.0  # seconds without any transcript -> recognizer ends
AUDIO_QUEUE_SIZE = 200
POLL_INTERVAL = 0.1

EVENTS = ("result", "error", "end")


class DeepgramRecognizer:
    """Continuous Deepgram Nova-3 recognition that naturally terminates.

    Args:
        api_key: Deepgram API key (None = unavailable; start() raises)
        source: MicrophoneStream-like object with subscribe(callback)
        language: Recognition language
        silence_timeout: Seconds without a transcript before ending
    """

    def __init__(self, api_key, source, language="en", silence_timeout=SILENCE_TIMEOUT):
        self._api_key = api_key
        self._source = source
        self.language = language
        self.silence_timeout = silence_timeout

        self._callbacks: dict[str, list] = {event: [] for event in EVENTS}
        self._active = False
        self._task = None
        self._loop = None
        self._audio_q = None
        self._unsubscribe = None
        self._dg_context = None

        # Transcript accumulation (between is_final segments until speech_final)
        self._accumulated_finals = []
        self._last_activity = 0.0

    # ── Recognizer contract ───────────────────────────────────────

    @property
    def active(self):
        return self._active

    def on(self, event, callback):
        if event not in self._callbacks:
            raise ValueError(f"Unknown event: {event}. Valid: {list(EVENTS)}")
        self._callbacks[event].append(callback)

    def off(self, event, callback):
        if callback in self._callbacks.get(event, []):
            self._callbacks[event].remove(callback)

    def start(self):
        """Open a Deepgram session in the background."""
        if not self._api_key:
            raise RuntimeError("Deepgram API key not configured")
        if self._active:
            raise RuntimeError("Recognizer already active")
        self._active = True
        self._loop = asyncio.get_event_loop()
        self._audio_q = asyncio.Queue(maxsize=AUDIO_QUEUE_SIZE)
        self._accumulated_finals.clear()
        self._last_activity = time.time()
        self._task = asyncio.ensure_future(self._run())

    def stop(self):
        """Close the Deepgram session; "end" still fires once."""
        if self._task and not self._task.done():
            self._task.cancel()

    def _emit(self, event, *args):
        for callback in list(self._callbacks[event]):
            try:
                callback(*args)
            except Exception as e:
                print(f"Deepgram: {event} callback error: {e}", flush=True)

    # ── Session lifecycle ─────────────────────────────────────────

    async def _run(self):
        error = None
        try:
            await self._connect_and_stream()
        except asyncio.CancelledError:
            pass
        except Exception as e:
            error = e
            print(f"Deepgram: Session error: {e}", flush=True)
        finally:
            if self._unsubscribe:
                self._unsubscribe()
                self._unsubscribe = None
            self._active = False
            self._task = None
            if error is not None:
                self._emit("error", error)
            self._emit("end")

    async def _connect_and_stream(self):
        """Connect to Deepgram, register callbacks, forward microphone audio."""
        client = DeepgramClient(api_key=self._api_key)
        self._dg_context = client.listen.v1.connect(
            model=MODEL,
            encoding="linear16",
            sample_rate=str(SAMPLE_RATE),
            channels="1",
            interim_results="true",
            endpointing="300",
            utterance_end_ms="1000",
            smart_format="true",
            punctuate="true",
            language=self.language,
        )
        dg_connection = self._dg_context.__enter__()
        dg_connection.on(EventType.MESSAGE, self._on_message)
        dg_connection.on(EventType.CLOSE, self._on_close)
        dg_connection.on(EventType.ERROR, self._on_error)

        # start_listening() blocks its thread until the socket closes
        listener = self._loop.run_in_executor(None, dg_connection.start_listening)
        self._unsubscribe = self._source.subscribe(self._enqueue_audio)
        print(f"Deepgram: Connected to {MODEL}", flush=True)

        try:
            await self._audio_forward_loop(dg_connection, listener)
        finally:
            try:
                self._dg_context.__exit__(None, None, None)
            except Exception as e:
                print(f"Deepgram: Error closing connection: {e}", flush=True)
            self._dg_context = None

    async def _audio_forward_loop(self, dg_connection, listener):
        while self._active:
            if listener.done():
                listener.result()  # surfaces the listener's exception, if any
                raise ConnectionError("Deepgram connection closed")

            try:
                audio_data = await asyncio.wait_for(self._audio_q.get(), timeout=POLL_INTERVAL)
                dg_connection.send_media(audio_data)
            except asyncio.TimeoutError:
                pass

            if time.time() - self._last_activity > self.silence_timeout:
                print("Deepgram: Silence timeout, ending session", flush=True)
                return

    def _enqueue_audio(self, data):
        try:
            self._audio_q.put_nowait(data)
        except asyncio.QueueFull:
            pass  # Drop rather than block the microphone fan-out

    # ── Deepgram event handlers (SDK thread) ─────────────────────

    def _on_message(self, result, *args, **kwargs):
        loop = self._loop
        if loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(self._process_result, result)

    def _on_close(self, *args, **kwargs):
        print("Deepgram: WebSocket closed", flush=True)

    def _on_error(self, error, *args, **kwargs):
        print(f"Deepgram: Error: {error}", flush=True)

    def _process_result(self, result):
        """Accumulate is_final chunks and emit one result per speech_final.

        Deepgram sends:
        1. interim (is_final=False): speculative text, only refreshes activity
        2. final (is_final=True, speech_final=False): confirmed chunk
        3. speech_final (is_final=True, speech_final=True): end of utterance
        """
        try:
            alternatives = result.channel.alternatives
            if not alternatives:
                return
            transcript = (alternatives[0].transcript or "").strip()
        except AttributeError:
            return  # Metadata / UtteranceEnd messages carry no channel

        if transcript:
            self._last_activity = time.time()

        if not getattr(result, 'is_final', False):
            return
        if transcript:
            self._accumulated_finals.append(transcript)
        if getattr(result, 'speech_final', False):
            full_text = " ".join(self._accumulated_finals).strip()
            self._accumulated_finals.clear()
            if full_text and self._active:
                self._emit("result", full_text)
