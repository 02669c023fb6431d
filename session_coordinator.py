"""
Session coordinator: the listen/speak/interrupt state machine.

States:
  idle       -> nothing running
  listening  -> capture + VAD running, no request outstanding
  speaking   -> a request is outstanding or its answer is playing;
                capture is stopped, VAD keeps running for barge-in

Transitions:
  start()                    idle -> listening (capture, VAD, channel)
  transcript while listening listening -> speaking: stop capture, supersede
                             the previous request, send a new one, arm
                             barge-in after the dead zone
  speech while armed         barge-in: stop playback, cancel the active
                             request, drop its partials, restart capture
  transcript while speaking  same teardown without the capture restart;
                             after the settle delay the transcript is asked
  playback ends naturally    speaking -> listening
  stop()                     any -> idle (idempotent)

Every reaction runs on the event loop thread and completes without awaiting,
so transitions never interleave. Events for ids other than the active one
are stale and dropped.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import httpx

from event_bus import EventType
from generation import new_request_id
from messages import MessageType

DEAD_ZONE = 0.35  # seconds after speaking starts before barge-in is armed
SETTLE_DELAY = 0.04  # seconds between teardown and re-asking a transcript

LISTENING_TEXT = "Listening..."
THINKING_TEXT = "Thinking..."
STOPPED_TEXT = "Stopped"
HTTP_FAILURE_TEXT = "Error contacting assistant."


class AssistantState(Enum):
    IDLE = "idle"
    LISTENING = "listening"
    SPEAKING = "speaking"


@dataclass
class Display:
    """What the user sees: their last utterance and the assistant's text."""
    user_text: str = ""
    bot_text: str = ""


class SessionCoordinator:
    """Single owner of session state; all mutation goes through its handlers.

    Args:
        channel: GenerationChannel (callbacks are registered here)
        capture: SpeechCaptureSession, or None until attach_capture()
        monitor: VoiceActivityMonitor, or None until attach_monitor()
        playback: PlaybackController, or None until attach_playback()
        backend: BackendClient for the non-streaming /query fallback
        bus: EventBus for the session log
        on_status: callback(status) with idle/listening/thinking/speaking/error
        on_display: callback(Display) on every display change
        dead_zone: Seconds before barge-in is armed
        settle_delay: Seconds between teardown and re-asking a transcript
        use_websocket: False sends every question over POST /query
    """

    def __init__(self, channel, capture=None, monitor=None, playback=None,
                 backend=None, bus=None,
                 on_status: Optional[Callable[[str], None]] = None,
                 on_display: Optional[Callable[[Display], None]] = None,
                 dead_zone=DEAD_ZONE, settle_delay=SETTLE_DELAY,
                 use_websocket=True):
        self._channel = channel
        self._capture = capture
        self._monitor = monitor
        self._playback = playback
        self._backend = backend
        self._bus = bus
        self._on_status = on_status
        self._on_display = on_display
        self.dead_zone = dead_zone
        self.settle_delay = settle_delay
        self.use_websocket = use_websocket
        self.barge_in_enabled = True

        # Session state
        self.running = False
        self.speaking = False
        self.barge_in_armed = False
        self.active_request_id: Optional[str] = None
        self.status = "idle"
        self.display = Display()

        self._dead_zone_timer = None
        self._settle_timer = None
        self._http_tasks = set()

        if channel is not None:
            channel.on("partial", self.handle_partial)
            channel.on("final", self.handle_final)
            channel.on("error", self.handle_error)
            channel.on("cancelled", self.handle_cancelled)
            channel.on("send_failed", self.handle_send_failed)
            channel.on("lost", self.handle_lost)

    # ── Wiring ────────────────────────────────────────────────────

    def attach_capture(self, capture):
        self._capture = capture

    def attach_monitor(self, monitor):
        self._monitor = monitor

    def attach_playback(self, playback):
        self._playback = playback

    @property
    def state(self) -> AssistantState:
        if not self.running:
            return AssistantState.IDLE
        if self.speaking:
            return AssistantState.SPEAKING
        return AssistantState.LISTENING

    def should_restart_capture(self) -> bool:
        """Consulted by the capture session when the recognizer ends."""
        return self.running and not self.speaking

    # ── Lifecycle ─────────────────────────────────────────────────

    async def start(self):
        """idle -> listening. No-op if already running."""
        if self.running:
            return
        self.running = True
        self.speaking = False
        self.barge_in_armed = False
        self.active_request_id = None
        self._emit(EventType.SESSION_START, websocket=self.use_websocket)
        print("Coordinator: Starting session", flush=True)

        if self.use_websocket and self._channel is not None:
            self._channel.open()
        if self._monitor is not None:
            self._monitor.start()

        self._set_display(bot_text=LISTENING_TEXT)
        self._set_status("listening")
        self._start_capture()

    async def stop(self):
        """any -> idle. Safe to call repeatedly."""
        if not self.running:
            return
        self.running = False
        print("Coordinator: Stopping session", flush=True)
        self._cancel_timers()

        if self._capture is not None:
            self._capture.stop()
        if self._monitor is not None:
            self._monitor.stop()
        if self._playback is not None:
            self._playback.stop()
        self._cancel_active()
        self.speaking = False
        self.barge_in_armed = False

        for task in list(self._http_tasks):
            task.cancel()
        if self._channel is not None:
            await self._channel.close()

        self._set_display(bot_text=STOPPED_TEXT)
        self._set_status("idle")
        self._emit(EventType.SESSION_END)

    # ── Capture / VAD input ───────────────────────────────────────

    def handle_transcript(self, text: str):
        """A finalized utterance from the capture session."""
        if not self.running:
            return
        text = (text or "").strip()
        if not text:
            return
        self._emit(EventType.TRANSCRIPT, chars=len(text), while_speaking=self.speaking)

        if self.speaking:
            print("Coordinator: Transcript while speaking, re-asking", flush=True)
            self._interrupt(restart_capture=False)
            self._cancel_settle()
            loop = asyncio.get_event_loop()
            self._settle_timer = loop.call_later(self.settle_delay, self._ask_settled, text)
            return

        self._ask(text)

    def handle_speech_detected(self, probability: float = 1.0):
        """Speech observed by the VAD monitor."""
        if not (self.running and self.speaking and self.barge_in_armed):
            return
        if not self.barge_in_enabled:
            return
        print(f"Coordinator: Barge-in (p={probability:.2f})", flush=True)
        self._emit(EventType.BARGE_IN, rid=self.active_request_id,
                   probability=round(float(probability), 3))
        self._interrupt(restart_capture=True)

    # ── Generation channel input ──────────────────────────────────

    def handle_partial(self, request_id: str, total: str):
        if not self._is_active(request_id):
            return
        self._emit(EventType.PARTIAL, rid=request_id, chars=len(total))
        self._set_display(bot_text=total)

    def handle_final(self, request_id: str, text: str):
        if not self._is_active(request_id):
            if self.running:
                print(f"Coordinator: Dropping stale final for {request_id}", flush=True)
            return
        self.active_request_id = None
        self._emit(EventType.FINAL, rid=request_id, chars=len(text))
        self._set_display(bot_text=text)

        if not text.strip() or self._playback is None:
            self._resume_listening()
            return
        self._playback.speak(text)

    def handle_error(self, request_id: str, message: str):
        if not self._is_active(request_id):
            return
        self.active_request_id = None
        print(f"Coordinator: Generation error: {message}", flush=True)
        self._emit(EventType.GENERATION_ERROR, rid=request_id, error=message)
        self._set_display(bot_text=f"Error: {message}")
        self._set_status("error")
        self._resume_listening()

    def handle_cancelled(self, request_id: str):
        self._emit(EventType.CANCELLED, rid=request_id)
        if not self._is_active(request_id):
            return
        # Cancelled without us asking: nothing more will come for it
        self.active_request_id = None
        self._resume_listening()

    def handle_send_failed(self, message):
        """A frame that never reached the server. Active queries go over HTTP."""
        if message.type is not MessageType.QUERY:
            return
        if not self._is_active(message.request_id):
            return
        print("Coordinator: Query not delivered, falling back to HTTP", flush=True)
        self._channel.discard(message.request_id)
        self._query_over_http(message.request_id, message.question or "")

    def handle_lost(self, request_id: str, question: str):
        """The connection dropped mid-generation. The active question is re-asked over HTTP."""
        if not self._is_active(request_id):
            return
        print("Coordinator: Connection lost mid-generation, re-asking over HTTP", flush=True)
        self._query_over_http(request_id, question)

    # ── Playback input ────────────────────────────────────────────

    def handle_speaking_start(self, token: int):
        if not self.running or token != self._playback.current_token:
            return
        self.speaking = True
        self._emit(EventType.SPEAKING_START, token=token)
        self._set_status("speaking")
        # Playback onset is the echo-prone moment; disarm until the dead zone passes
        self._arm_after_dead_zone()

    def handle_speaking_end(self, token: int, interrupted: bool = False):
        self._emit(EventType.SPEAKING_END, token=token, interrupted=interrupted)
        if not self.running or token != self._playback.current_token:
            return
        if interrupted or not self.speaking:
            return
        if self.active_request_id is not None:
            return
        self._resume_listening()

    # ── Transitions ───────────────────────────────────────────────

    def _ask(self, text: str):
        """listening -> speaking with a freshly minted request."""
        self._cancel_settle()
        if not self.running:
            return

        self._supersede()
        if self._capture is not None:
            self._capture.stop()
        self.speaking = True
        self._arm_after_dead_zone()

        request_id = new_request_id()
        self.active_request_id = request_id
        self._set_display(user_text=text, bot_text=THINKING_TEXT)
        self._set_status("thinking")

        if self.use_websocket and self._channel is not None and self._channel.ready:
            if self._channel.send_query(request_id, text):
                self._emit(EventType.QUERY_SENT, rid=request_id, chars=len(text))
                return
        self._query_over_http(request_id, text)

    def _ask_settled(self, text: str):
        self._settle_timer = None
        self._ask(text)

    def _supersede(self):
        previous = self.active_request_id
        if previous is None:
            return
        print(f"Coordinator: Superseding {previous}", flush=True)
        self._emit(EventType.SUPERSEDED, rid=previous)
        self._cancel_active()

    def _interrupt(self, restart_capture: bool):
        """Barge-in teardown: playback, then the request, then capture."""
        self.barge_in_armed = False
        self._cancel_dead_zone()
        if self._playback is not None:
            self._playback.stop()
        self._cancel_active()
        self.speaking = False
        if restart_capture:
            self._set_display(bot_text=LISTENING_TEXT)
            self._set_status("listening")
            self._start_capture()

    def _resume_listening(self):
        """speaking -> listening after an answer (or failure) is done."""
        self.speaking = False
        self.barge_in_armed = False
        self._cancel_dead_zone()
        if not self.running:
            return
        if self.status != "error":
            self._set_status("listening")
        self._emit(EventType.CAPTURE_RESTART)
        self._start_capture()

    def _cancel_active(self):
        request_id = self.active_request_id
        if request_id is None:
            return
        self.active_request_id = None
        if self._channel is None:
            return
        if self._channel.send_cancel(request_id):
            self._emit(EventType.CANCEL_SENT, rid=request_id)
        self._channel.discard(request_id)

    def _start_capture(self):
        if self._capture is not None:
            self._capture.start()

    # ── Non-streaming fallback ────────────────────────────────────

    def _query_over_http(self, request_id: str, question: str):
        if self._backend is None:
            print("Coordinator: No connection and no HTTP backend", flush=True)
            self._http_failed(request_id)
            return
        self._emit(EventType.FALLBACK_QUERY, rid=request_id, chars=len(question))
        task = asyncio.ensure_future(self._fetch_answer(request_id, question))
        self._http_tasks.add(task)
        task.add_done_callback(self._http_tasks.discard)

    async def _fetch_answer(self, request_id: str, question: str):
        try:
            answer = await self._backend.query(question)
        except httpx.HTTPError as e:
            print(f"Coordinator: HTTP query failed: {e}", flush=True)
            self._http_failed(request_id)
            return
        self.handle_final(request_id, answer)

    def _http_failed(self, request_id: str):
        if not self._is_active(request_id):
            return
        self.active_request_id = None
        self._emit(EventType.ERROR, rid=request_id, reason="http_query_failed")
        self._set_display(bot_text=HTTP_FAILURE_TEXT)
        self._set_status("error")
        self._resume_listening()

    # ── Timers ────────────────────────────────────────────────────

    def _arm_after_dead_zone(self):
        self.barge_in_armed = False
        self._cancel_dead_zone()
        loop = asyncio.get_event_loop()
        self._dead_zone_timer = loop.call_later(self.dead_zone, self._arm_barge_in)

    def _arm_barge_in(self):
        self._dead_zone_timer = None
        if self.running and self.speaking:
            self.barge_in_armed = True

    def _cancel_dead_zone(self):
        if self._dead_zone_timer is not None:
            self._dead_zone_timer.cancel()
            self._dead_zone_timer = None

    def _cancel_settle(self):
        if self._settle_timer is not None:
            self._settle_timer.cancel()
            self._settle_timer = None

    def _cancel_timers(self):
        self._cancel_dead_zone()
        self._cancel_settle()

    # ── Helpers ───────────────────────────────────────────────────

    def _is_active(self, request_id) -> bool:
        return self.running and request_id is not None and request_id == self.active_request_id

    def _set_status(self, status: str):
        if status == self.status:
            return
        self.status = status
        self._emit(EventType.STATUS, state=status)
        if self._on_status:
            try:
                self._on_status(status)
            except Exception as e:
                print(f"Coordinator: Status callback error: {e}", flush=True)

    def _set_display(self, user_text=None, bot_text=None):
        if user_text is not None:
            self.display.user_text = user_text
        if bot_text is not None:
            self.display.bot_text = bot_text
        if self._on_display:
            try:
                self._on_display(self.display)
            except Exception as e:
                print(f"Coordinator: Display callback error: {e}", flush=True)

    def _emit(self, event_type, rid=None, **payload):
        if self._bus:
            self._bus.emit(event_type, rid=rid, **payload)
