#!/usr/bin/env python3
"""Tests for the voice activity monitor and the Silero classifier wrapper.

The classifier is replaced by plain callables; the Silero wrapper is driven
with a mocked ONNX session. No model file or microphone is needed.

Run: python3 test_vad_monitor.py
"""

import asyncio
import sys
from pathlib import Path
from unittest.mock import MagicMock

import numpy as np

sys.path.insert(0, str(Path(__file__).parent))

from vad_monitor import (
    LISTENING_THRESHOLD, SPEAKING_THRESHOLD, SileroVAD, VoiceActivityMonitor,
)

PASSED = 0
FAILED = 0
ERRORS = []


def test(name):
    """Decorator to register and run a test."""
    def decorator(fn):
        fn._test_name = name
        return fn
    return decorator


def run_test(fn):
    global PASSED, FAILED
    name = getattr(fn, '_test_name', fn.__name__)
    try:
        if asyncio.iscoroutinefunction(fn):
            asyncio.run(fn())
        else:
            fn()
        PASSED += 1
        print(f"  PASS: {name}")
    except AssertionError as e:
        FAILED += 1
        ERRORS.append((name, str(e)))
        print(f"  FAIL: {name} -- {e}")
    except Exception as e:
        FAILED += 1
        ERRORS.append((name, f"{type(e).__name__}: {e}"))
        print(f"  ERROR: {name} -- {type(e).__name__}: {e}")


class FakeSource:
    """Microphone stand-in tracking subscriptions."""

    def __init__(self):
        self.subscribers = []

    def subscribe(self, callback):
        self.subscribers.append(callback)

        def unsubscribe():
            if callback in self.subscribers:
                self.subscribers.remove(callback)
        return unsubscribe


def make_monitor(probs=None, speaking=False, source=None, window_samples=1600):
    """Monitor whose classifier returns ``probs`` in order (or raises)."""
    state = {"speaking": speaking}
    detections = []
    values = list(probs or [])

    def classifier(window):
        value = values.pop(0)
        if isinstance(value, Exception):
            raise value
        return value

    monitor = VoiceActivityMonitor(
        classifier, source,
        is_speaking=lambda: state["speaking"],
        on_speech=detections.append,
        window_samples=window_samples,
    )
    return monitor, state, detections


def pcm(samples):
    return np.full(samples, 1000, dtype=np.int16).tobytes()


# ══════════════════════════════════════════════════════════════════
# Thresholds
# ══════════════════════════════════════════════════════════════════

@test("Thresholds are 0.80 while speaking and 0.65 otherwise")
def test_threshold_constants():
    monitor, state, _ = make_monitor()
    assert SPEAKING_THRESHOLD == 0.80
    assert LISTENING_THRESHOLD == 0.65
    assert monitor.threshold() == 0.65
    state["speaking"] = True
    assert monitor.threshold() == 0.80


@test("0.7 counts as speech while listening but not while speaking")
async def test_threshold_depends_on_speaking():
    monitor, state, detections = make_monitor(probs=[0.7, 0.7])
    monitor.start()
    try:
        assert await monitor.process_window(np.zeros(10)) is True
        state["speaking"] = True
        assert await monitor.process_window(np.zeros(10)) is False
    finally:
        monitor.stop()
    assert detections == [0.7]


@test("Probability must exceed the threshold, not just reach it")
async def test_threshold_is_strict():
    monitor, _, detections = make_monitor(probs=[0.80, 0.81], speaking=True)
    monitor.start()
    try:
        assert await monitor.process_window(np.zeros(10)) is False
        assert await monitor.process_window(np.zeros(10)) is True
    finally:
        monitor.stop()
    assert detections == [0.81]


@test("Threshold is read at reaction time, after classification")
async def test_threshold_read_after_classify():
    state = {"speaking": False}

    def classifier(window):
        # Assistant starts speaking while the window is being classified
        state["speaking"] = True
        return 0.7

    detections = []
    monitor = VoiceActivityMonitor(classifier, None, lambda: state["speaking"], detections.append)
    monitor.start()
    try:
        assert await monitor.process_window(np.zeros(10)) is False
    finally:
        monitor.stop()
    assert detections == []


# ══════════════════════════════════════════════════════════════════
# Failure handling
# ══════════════════════════════════════════════════════════════════

@test("Classifier errors count as no speech and are not raised")
async def test_classifier_error_is_negative():
    monitor, _, detections = make_monitor(probs=[RuntimeError("onnx exploded"), 0.9])
    monitor.start()
    try:
        assert await monitor.classify(np.zeros(10)) == 0.0
        assert await monitor.process_window(np.zeros(10)) is True
    finally:
        monitor.stop()
    assert detections == [0.9]


@test("Speech handler errors do not stop the monitor")
async def test_handler_error_isolated():
    def on_speech(prob):
        raise ValueError("handler bug")

    monitor = VoiceActivityMonitor(lambda w: 0.99, None, lambda: False, on_speech)
    monitor.start()
    try:
        assert await monitor.process_window(np.zeros(10)) is True
        assert monitor.running
    finally:
        monitor.stop()


@test("A stopped monitor never raises the speech signal")
async def test_stopped_monitor_is_silent():
    monitor, _, detections = make_monitor(probs=[0.99])
    assert await monitor.process_window(np.zeros(10)) is False
    assert detections == []


# ══════════════════════════════════════════════════════════════════
# Windowing worker
# ══════════════════════════════════════════════════════════════════

@test("Fed audio is windowed and classified in arrival order")
async def test_feed_classifies_in_order():
    monitor, _, detections = make_monitor(probs=[0.9, 0.1, 0.95], window_samples=4)
    monitor.start()
    try:
        for _ in range(3):
            monitor.feed(pcm(5))
        for _ in range(50):
            if len(detections) == 2:
                break
            await asyncio.sleep(0.01)
    finally:
        monitor.stop()
    assert detections == [0.9, 0.95], detections


@test("Audio below the window size is held until the window fills")
async def test_feed_waits_for_full_window():
    calls = []
    monitor = VoiceActivityMonitor(lambda w: calls.append(len(w)) or 0.0, None,
                                   lambda: False, lambda p: None, window_samples=8)
    monitor.start()
    try:
        monitor.feed(pcm(4))
        monitor.feed(pcm(4))
        await asyncio.sleep(0.05)
        assert calls == []
        monitor.feed(pcm(2))
        for _ in range(50):
            if calls:
                break
            await asyncio.sleep(0.01)
    finally:
        monitor.stop()
    assert calls == [10]


@test("Feeding a stopped monitor is ignored")
def test_feed_when_stopped():
    monitor, _, _ = make_monitor(window_samples=4)
    monitor.feed(pcm(10))  # must not raise


# ══════════════════════════════════════════════════════════════════
# Lifecycle
# ══════════════════════════════════════════════════════════════════

@test("start/stop subscribe and unsubscribe the audio source, idempotently")
async def test_start_stop_idempotent():
    source = FakeSource()
    monitor, _, _ = make_monitor(source=source)
    monitor.start()
    monitor.start()
    assert monitor.running
    assert len(source.subscribers) == 1
    monitor.stop()
    monitor.stop()
    assert not monitor.running
    assert source.subscribers == []


@test("Monitor can be restarted after stop")
async def test_restart_after_stop():
    source = FakeSource()
    monitor, _, detections = make_monitor(probs=[0.9], source=source)
    monitor.start()
    monitor.stop()
    monitor.start()
    try:
        assert len(source.subscribers) == 1
        assert await monitor.process_window(np.zeros(10)) is True
    finally:
        monitor.stop()


# ══════════════════════════════════════════════════════════════════
# SileroVAD wrapper
# ══════════════════════════════════════════════════════════════════

def make_silero(probs):
    vad = SileroVAD("/nonexistent/silero_vad.onnx")
    vad.reset()
    session = MagicMock()
    outputs = [(np.array([[p]], dtype=np.float32), np.zeros((2, 1, 128), dtype=np.float32))
               for p in probs]
    session.run.side_effect = outputs
    vad._session = session
    return vad, session


@test("SileroVAD load returns False when the model file is missing")
def test_silero_missing_model():
    vad = SileroVAD("/nonexistent/silero_vad.onnx")
    assert vad.load() is False
    assert not vad.loaded


@test("SileroVAD refuses to classify before loading")
def test_silero_not_loaded():
    vad = SileroVAD("/nonexistent/silero_vad.onnx")
    try:
        vad(np.zeros(1600, dtype=np.float32))
    except RuntimeError:
        return
    raise AssertionError("Expected RuntimeError")


@test("SileroVAD returns the max probability over 512-sample frames")
def test_silero_max_over_frames():
    vad, session = make_silero([0.2, 0.9, 0.4])
    prob = vad(np.zeros(1600, dtype=np.float32))
    assert session.run.call_count == 3
    assert abs(prob - 0.9) < 1e-6

    # Each frame is fed with a 64-sample context prefix
    first_input = session.run.call_args_list[0][0][1]['input']
    assert first_input.shape == (1, 576)


@test("SileroVAD pads short windows to one frame")
def test_silero_pads_short_window():
    vad, session = make_silero([0.3])
    prob = vad(np.zeros(100, dtype=np.float32))
    assert session.run.call_count == 1
    assert abs(prob - 0.3) < 1e-6


if __name__ == "__main__":
    print("=" * 60)
    print("Voice Activity Monitor Tests")
    print("=" * 60)

    tests = [
        obj for name, obj in sorted(globals().items())
        if callable(obj) and hasattr(obj, '_test_name')
    ]

    print(f"\nRunning {len(tests)} tests...\n")

    for fn in tests:
        run_test(fn)

    print(f"\n{'=' * 60}")
    print(f"Results: {PASSED} passed, {FAILED} failed out of {PASSED + FAILED}")

    if ERRORS:
        print(f"\nFailures:")
        for name, err in ERRORS:
            print(f"  - {name}: {err}")

    print("=" * 60)
    sys.exit(0 if FAILED == 0 else 1)
