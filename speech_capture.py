"""Continuous speech capture over a recognizer that stops on its own.

A recognizer is any object with:
- on(event, callback) / off(event, callback) for "result" (text),
  "error" (exception) and "end" ()
- start(): raises if the capability is unavailable or already active
- stop()
- active: True between start() and its "end"

Recognizers report final results only. The capture session trims them,
drops empty ones, and hands each utterance to on_transcript exactly once.
When the recognizer ends by itself (silence timeout, dropped connection)
the session restarts it as long as should_restart() says so, which turns a
naturally terminating recognizer into continuous capture.
"""

from typing import Callable


class SpeechCaptureSession:
    """Start/stop wrapper that keeps a recognizer listening.

    Every start() opens a new subscription epoch. Callbacks registered for
    an older epoch are detached on stop() and, should the recognizer still
    deliver something late, ignored because their epoch is stale.

    Args:
        recognizer: recognizer object, or None if speech recognition is unavailable
        on_transcript: callback(text) for each finalized utterance
        should_restart: callable() -> bool, consulted when the recognizer ends
    """

    def __init__(self, recognizer, on_transcript: Callable[[str], None],
                 should_restart: Callable[[], bool] = lambda: False):
        self._recognizer = recognizer
        self._on_transcript = on_transcript
        self._should_restart = should_restart
        self._epoch = 0
        self._handlers = None  # (epoch, {event: callback}) while attached
        self._pending_start = False  # attached, waiting for the previous run to end
        self.restarts = 0

    @property
    def available(self):
        return self._recognizer is not None

    @property
    def active(self):
        return self._handlers is not None

    def start(self) -> bool:
        """Begin capture. Idempotent; failures are logged, never raised."""
        if self._recognizer is None:
            print("Capture: Speech recognition not available", flush=True)
            return False
        if self._handlers is not None:
            return True

        self._epoch += 1
        epoch = self._epoch
        handlers = {
            "result": lambda text: self._handle_result(epoch, text),
            "error": lambda error: self._handle_error(epoch, error),
            "end": lambda: self._handle_end(epoch),
        }
        for event, callback in handlers.items():
            self._recognizer.on(event, callback)
        self._handlers = (epoch, handlers)

        if self._recognizer.active:
            # A stopped run is still winding down; its "end" starts the next one
            self._pending_start = True
            print("Capture: Waiting for the previous recognizer run to end", flush=True)
            return True
        return self._start_recognizer()

    def _start_recognizer(self) -> bool:
        try:
            self._recognizer.start()
        except Exception as e:
            print(f"Capture: Start failed: {e}", flush=True)
            self._detach()
            return False
        print("Capture: Started", flush=True)
        return True

    def stop(self):
        """Halt capture. Callbacks are detached before the recognizer stops."""
        attached = self._handlers is not None
        self._detach()
        if self._recognizer is None:
            return
        if attached or self._recognizer.active:
            try:
                self._recognizer.stop()
            except Exception as e:
                print(f"Capture: Stop failed: {e}", flush=True)
            print("Capture: Stopped", flush=True)

    def _detach(self):
        self._pending_start = False
        if self._handlers is None:
            return
        _, handlers = self._handlers
        self._handlers = None
        for event, callback in handlers.items():
            try:
                self._recognizer.off(event, callback)
            except Exception as e:
                print(f"Capture: Detach failed for {event}: {e}", flush=True)

    def _is_current(self, epoch):
        return self._handlers is not None and self._handlers[0] == epoch

    def _handle_result(self, epoch, text):
        if not self._is_current(epoch) or self._pending_start:
            return
        transcript = (text or "").strip()
        if not transcript:
            return
        self._on_transcript(transcript)

    def _handle_error(self, epoch, error):
        if not self._is_current(epoch):
            return
        print(f"Capture: Recognizer error: {error}", flush=True)

    def _handle_end(self, epoch):
        if not self._is_current(epoch):
            return
        if self._pending_start:
            self._pending_start = False
            self._start_recognizer()
            return
        self._detach()
        if self._should_restart():
            self.restarts += 1
            print("Capture: Recognizer ended, restarting", flush=True)
            self.start()
        else:
            print("Capture: Recognizer ended", flush=True)
