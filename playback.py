"""Spoken answers: server synthesis with local Piper fallback, PyAudio output.

speak(text) signals speaking-start immediately, then:
1. asks the backend to synthesize the text
2. 204 (no content) or a transport/HTTP failure -> local Piper synthesis
3. audio bytes -> played through PyAudio; a playback error just ends it

Every speak() gets a token and produces exactly one speaking-start and,
eventually, exactly one speaking-end for that token, whichever branch ran
and even when stop() lands before the playback task got to run.
"""

import asyncio
import io
import threading
import time
import wave
from pathlib import Path
from typing import Callable, Optional

import httpx

# Raw (non-RIFF) server audio: 24kHz 16-bit mono PCM
SERVER_SAMPLE_RATE = 24000
CHANNELS = 1
SAMPLE_WIDTH = 2
FRAMES_PER_WRITE = 1024  # ~40ms at 24kHz; stop() lands within one write

# Piper TTS configuration
PIPER_CMD = str(Path.home() / ".local" / "share" / "voice-assistant" / "venv" / "bin" / "piper")
PIPER_MODEL = str(Path.home() / ".local" / "share" / "voice-assistant" / "piper-voices" / "en_US-lessac-medium.onnx")
PIPER_SAMPLE_RATE = 22050


class SynthesisBreaker:
    """Skip server synthesis after a streak of bad answers from /speak.

    Transport failures and 204 (no content) replies are counted as separate
    streaks; either one reaching its limit opens the breaker, and every
    answer goes straight to the local fallback until recovery_time passes.
    Audio coming back resets both streaks.
    """

    def __init__(self, max_failures=3, max_no_content=5, recovery_time=60):
        self.max_failures = max_failures
        self.max_no_content = max_no_content
        self.recovery_time = recovery_time
        self.failures = 0
        self.no_content = 0
        self.opened_at = None

    @property
    def open(self) -> bool:
        return self.opened_at is not None

    def record_audio(self):
        self.failures = 0
        self.no_content = 0

    def record_failure(self):
        self.failures += 1
        if self.failures >= self.max_failures:
            self._open(f"{self.failures} synthesis failures")

    def record_no_content(self):
        self.no_content += 1
        if self.no_content >= self.max_no_content:
            self._open(f"{self.no_content} empty synthesis replies")

    def allows_request(self) -> bool:
        if self.opened_at is None:
            return True
        if time.time() - self.opened_at < self.recovery_time:
            return False
        print("Playback: Retrying server synthesis", flush=True)
        self.opened_at = None
        self.failures = 0
        self.no_content = 0
        return True

    def _open(self, reason):
        if self.opened_at is None:
            self.opened_at = time.time()
            print(f"Playback: Server synthesis off for {self.recovery_time:g}s after {reason}",
                  flush=True)


def decode_audio(data: bytes):
    """Return (pcm, sample_rate, channels, sample_width) for server audio.

    RIFF payloads are parsed as WAV; anything else is raw 24kHz mono PCM16.

    Raises:
        wave.Error / EOFError: for a corrupt WAV payload
    """
    if data[:4] == b"RIFF":
        with wave.open(io.BytesIO(data), "rb") as wav:
            pcm = wav.readframes(wav.getnframes())
            return pcm, wav.getframerate(), wav.getnchannels(), wav.getsampwidth()
    return data, SERVER_SAMPLE_RATE, CHANNELS, SAMPLE_WIDTH


class PyAudioOutput:
    """Blocking PyAudio writes run in the default executor."""

    async def play(self, pcm: bytes, rate: int, channels: int, width: int,
                   cancel: threading.Event):
        loop = asyncio.get_event_loop()
        await loop.run_in_executor(None, self._play_blocking, pcm, rate, channels, width, cancel)

    @staticmethod
    def _play_blocking(pcm, rate, channels, width, cancel):
        import pyaudio

        pa = pyaudio.PyAudio()
        try:
            stream = pa.open(
                format=pa.get_format_from_width(width),
                channels=channels,
                rate=rate,
                output=True,
                frames_per_buffer=FRAMES_PER_WRITE,
            )
            try:
                step = FRAMES_PER_WRITE * channels * width
                for offset in range(0, len(pcm), step):
                    if cancel.is_set():
                        break
                    stream.write(pcm[offset:offset + step])
            finally:
                stream.stop_stream()
                stream.close()
        finally:
            pa.terminate()


class PiperSynthesizer:
    """Local fallback: Piper CLI to raw PCM, played through the same output."""

    def __init__(self, output, cmd=PIPER_CMD, model=PIPER_MODEL, sample_rate=PIPER_SAMPLE_RATE):
        self._output = output
        self.cmd = cmd
        self.model = model
        self.sample_rate = sample_rate

    async def speak(self, text: str, cancel: threading.Event):
        try:
            process = await asyncio.create_subprocess_exec(
                self.cmd, '--model', self.model, '--output-raw',
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL
            )
        except OSError as e:
            print(f"Playback: Piper unavailable ({e}), nothing spoken", flush=True)
            return

        try:
            stdout, _ = await process.communicate(input=text.encode())
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
            raise

        if stdout and not cancel.is_set():
            await self._output.play(stdout, self.sample_rate, CHANNELS, SAMPLE_WIDTH, cancel)


class PlaybackController:
    """Owns the single playback slot and its speaking-start/end signals.

    Args:
        synthesizer: object with async synthesize(text) -> bytes | None (BackendClient)
        output: object with async play(pcm, rate, channels, width, cancel)
        fallback: object with async speak(text, cancel) (PiperSynthesizer), or None
        on_speaking_start: callback(token)
        on_speaking_end: callback(token, interrupted)
    """

    def __init__(self, synthesizer, output, fallback=None,
                 on_speaking_start: Optional[Callable] = None,
                 on_speaking_end: Optional[Callable] = None,
                 breaker: Optional[SynthesisBreaker] = None):
        self._synthesizer = synthesizer
        self._output = output
        self._fallback = fallback
        self.on_speaking_start = on_speaking_start or (lambda token: None)
        self.on_speaking_end = on_speaking_end or (lambda token, interrupted: None)
        self.breaker = breaker or SynthesisBreaker()

        self._token = 0
        self._task = None
        self._cancel = None

    @property
    def current_token(self) -> int:
        return self._token

    @property
    def speaking(self) -> bool:
        return self._task is not None and not self._task.done()

    def speak(self, text: str) -> int:
        """Start speaking ``text``, replacing anything currently playing."""
        self.stop()
        self._token += 1
        token = self._token
        cancel = threading.Event()
        self._cancel = cancel

        self._notify(self.on_speaking_start, token)

        task = asyncio.ensure_future(self._play_answer(text, cancel))
        task.add_done_callback(lambda t: self._finished(token, t, cancel))
        self._task = task
        return token

    def stop(self):
        """Halt playback or fallback synthesis immediately."""
        task, cancel = self._task, self._cancel
        if task is None or task.done():
            return
        cancel.set()
        task.cancel()

    def _finished(self, token, task, cancel):
        if self._task is task:
            self._task = None
        interrupted = cancel.is_set() or task.cancelled()
        if not task.cancelled() and task.exception() is not None:
            print(f"Playback: Unexpected error: {task.exception()}", flush=True)
        self._notify(self.on_speaking_end, token, interrupted)

    @staticmethod
    def _notify(callback, *args):
        try:
            callback(*args)
        except Exception as e:
            print(f"Playback: Speaking callback error: {e}", flush=True)

    async def _play_answer(self, text: str, cancel: threading.Event):
        audio = None
        if self._synthesizer is not None and self.breaker.allows_request():
            try:
                audio = await self._synthesizer.synthesize(text)
                if audio:
                    self.breaker.record_audio()
                else:
                    self.breaker.record_no_content()
                    print("Playback: Server returned no content, using local fallback", flush=True)
            except httpx.HTTPError as e:
                self.breaker.record_failure()
                print(f"Playback: Synthesis failed ({e}), using local fallback", flush=True)

        if audio:
            try:
                pcm, rate, channels, width = decode_audio(audio)
                await self._output.play(pcm, rate, channels, width, cancel)
            except (wave.Error, EOFError, OSError) as e:
                print(f"Playback: Audio playback error: {e}", flush=True)
            return

        if self._fallback is None:
            print("Playback: No local synthesizer configured", flush=True)
            return
        await self._fallback.speak(text, cancel)
