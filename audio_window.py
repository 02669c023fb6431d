"""Fixed-size audio windows for voice-activity classification.

Microphone chunks arrive as 16-bit PCM. They are converted to float32 and
appended to an ordered buffer; once more than ``threshold`` samples have
accumulated the caller drains the buffer as one window. Windows never
overlap: everything pushed before a drain lands in that window, everything
pushed after it starts the next one.
"""

import numpy as np

SAMPLE_RATE = 16000
WINDOW_SAMPLES = 1600  # ~100ms at 16kHz


def pcm16_to_float(data: bytes) -> np.ndarray:
    """Convert little-endian 16-bit PCM bytes to float32 samples in [-1, 1)."""
    if len(data) % 2:
        data = data[:-1]
    return np.frombuffer(data, dtype=np.int16).astype(np.float32) / 32768.0


class AudioWindowBuffer:
    """Unbounded ordered sample buffer drained in windows.

    Args:
        threshold: Window is ready once the buffer holds MORE than this many samples
    """

    def __init__(self, threshold: int = WINDOW_SAMPLES):
        if threshold <= 0:
            raise ValueError("threshold must be positive")
        self.threshold = threshold
        self._chunks: list[np.ndarray] = []
        self._length = 0

    def push(self, samples) -> None:
        """Append samples (any float sequence) in arrival order."""
        arr = np.asarray(samples, dtype=np.float32).reshape(-1)
        if arr.size == 0:
            return
        self._chunks.append(arr)
        self._length += arr.size

    @property
    def ready(self) -> bool:
        return self._length > self.threshold

    def drain(self) -> np.ndarray:
        """Return everything buffered as one window and clear the buffer."""
        if not self._chunks:
            return np.zeros(0, dtype=np.float32)
        window = np.concatenate(self._chunks)
        self.clear()
        return window

    def clear(self) -> None:
        self._chunks = []
        self._length = 0

    def __len__(self) -> int:
        return self._length
