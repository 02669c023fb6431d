"""Voice activity monitor driving barge-in.

Microphone audio is windowed (see audio_window.py) and each window is scored
by Silero VAD. A "speech observed" signal is raised when the probability
exceeds the active threshold: 0.80 while the assistant is speaking (playback
bleed and echo need stronger evidence), 0.65 otherwise.

The monitor keeps running while the assistant speaks; that is what makes
barge-in possible. Classifier failures count as "no speech" for that window
and never stop the monitor.
"""

import asyncio
from pathlib import Path
from typing import Callable

import numpy as np

from audio_window import SAMPLE_RATE, WINDOW_SAMPLES, AudioWindowBuffer, pcm16_to_float

SPEAKING_THRESHOLD = 0.80
LISTENING_THRESHOLD = 0.65

# Silero v5 consumes 512-sample frames at 16kHz with a 64-sample context
SILERO_FRAME = 512
SILERO_CONTEXT = 64

DEFAULT_MODEL_PATH = Path(__file__).parent / "models" / "silero_vad.onnx"


class SileroVAD:
    """Silero VAD ONNX model returning a speech probability per window."""

    def __init__(self, model_path=DEFAULT_MODEL_PATH):
        self.model_path = Path(model_path)
        self._session = None
        self._state = None

    @property
    def loaded(self):
        return self._session is not None

    def load(self) -> bool:
        """Load the ONNX session. Returns False (logged) if unavailable."""
        if not self.model_path.exists():
            print(f"VAD: Model not found at {self.model_path}", flush=True)
            return False

        try:
            import onnxruntime
            self._session = onnxruntime.InferenceSession(
                str(self.model_path),
                providers=['CPUExecutionProvider']
            )
            self.reset()
            print("VAD: Silero VAD loaded", flush=True)
            return True
        except Exception as e:
            print(f"VAD: Failed to load model: {e}", flush=True)
            self._session = None
            return False

    def reset(self):
        """Reset recurrent state and context between sessions."""
        self._state = {
            'state': np.zeros((2, 1, 128), dtype=np.float32),
            'sr': np.array(SAMPLE_RATE, dtype=np.int64),
            'context': np.zeros(SILERO_CONTEXT, dtype=np.float32),
        }

    def __call__(self, window: np.ndarray) -> float:
        """Return the max speech probability over the frames of ``window``.

        Raises if the model is not loaded or inference fails; the monitor
        turns that into a negative result.
        """
        if self._session is None:
            raise RuntimeError("Silero VAD model not loaded")

        samples = np.asarray(window, dtype=np.float32)
        if len(samples) < SILERO_FRAME:
            samples = np.pad(samples, (0, SILERO_FRAME - len(samples)))

        context = self._state['context']
        max_prob = 0.0
        for i in range(0, len(samples) - SILERO_FRAME + 1, SILERO_FRAME):
            frame = samples[i:i + SILERO_FRAME]
            input_data = np.concatenate([context, frame]).reshape(1, -1)
            ort_outputs = self._session.run(None, {
                'input': input_data,
                'state': self._state['state'],
                'sr': self._state['sr'],
            })
            prob = float(ort_outputs[0].item())
            self._state['state'] = ort_outputs[1]
            context = frame[-SILERO_CONTEXT:]
            if prob > max_prob:
                max_prob = prob

        self._state['context'] = context
        return max_prob


class VoiceActivityMonitor:
    """Classify microphone windows and report speech to the coordinator.

    Args:
        classifier: callable(window) -> probability in [0, 1]
        source: object with subscribe(callback) -> unsubscribe (MicrophoneStream)
        is_speaking: callable() -> bool, selects the active threshold
        on_speech: callback(probability) when speech is observed
        window_samples: samples per classification window
    """

    def __init__(self, classifier, source, is_speaking: Callable[[], bool],
                 on_speech: Callable[[float], None],
                 window_samples=WINDOW_SAMPLES,
                 speaking_threshold=SPEAKING_THRESHOLD,
                 listening_threshold=LISTENING_THRESHOLD):
        self._classifier = classifier
        self._source = source
        self._is_speaking = is_speaking
        self._on_speech = on_speech
        self.speaking_threshold = speaking_threshold
        self.listening_threshold = listening_threshold

        self._buffer = AudioWindowBuffer(window_samples)
        self._windows = None  # asyncio.Queue, created in start()
        self._worker = None
        self._unsubscribe = None
        self._running = False

    @property
    def running(self):
        return self._running

    def threshold(self) -> float:
        return self.speaking_threshold if self._is_speaking() else self.listening_threshold

    def start(self):
        """Subscribe to the microphone and start classifying. Idempotent."""
        if self._running:
            return
        self._running = True
        self._buffer.clear()
        self._windows = asyncio.Queue()
        self._worker = asyncio.ensure_future(self._classify_loop())
        if self._source is not None:
            self._unsubscribe = self._source.subscribe(self.feed)
        print("VAD: Monitor started", flush=True)

    def stop(self):
        """Stop classifying and release the microphone subscription. Idempotent."""
        if not self._running:
            return
        self._running = False
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        if self._worker and not self._worker.done():
            self._worker.cancel()
        self._worker = None
        self._windows = None
        self._buffer.clear()
        print("VAD: Monitor stopped", flush=True)

    def feed(self, pcm: bytes):
        """Append a PCM16 chunk; queue a window once enough audio arrived.

        Draining happens synchronously here, so no chunk can land between
        the drain and the next push.
        """
        if not self._running:
            return
        self._buffer.push(pcm16_to_float(pcm))
        if self._buffer.ready:
            self._windows.put_nowait(self._buffer.drain())

    async def classify(self, window) -> float:
        """Score one window off the event loop. Failures score 0.0."""
        try:
            loop = asyncio.get_event_loop()
            prob = await loop.run_in_executor(None, self._classifier, window)
            return float(prob)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            print(f"VAD: Classifier error: {e}", flush=True)
            return 0.0

    async def process_window(self, window) -> bool:
        """Classify a window and raise the speech signal if it qualifies."""
        prob = await self.classify(window)
        if not self._running:
            return False
        if prob > self.threshold():
            try:
                self._on_speech(prob)
            except Exception as e:
                print(f"VAD: Speech handler error: {e}", flush=True)
            return True
        return False

    async def _classify_loop(self):
        """Classify queued windows one at a time, in arrival order."""
        windows = self._windows
        while self._running:
            window = await windows.get()
            await self.process_window(window)
