"""Reconnecting streaming link to the generation backend.

One persistent WebSocket carries JSON frames (see messages.py). Queries and
cancels are queued on a per-connection outbox drained by a single writer,
so frames leave in the order they were submitted. Inbound frames are
dispatched by type and keyed by request id:

- partial: appended to that id's accumulator, running total surfaced
- final: terminal text (accumulator used when the frame has none)
- error: terminal, message surfaced, never retried
- cancelled: terminal, bookkeeping only

Undecodable frames are logged and dropped. After any close the channel
reconnects after a fixed delay, forever, until close() is called.
Reconnecting does not resume requests that were in flight: queued frames
are reported through send_failed, requests already sent through lost.
"""

import asyncio
from contextlib import suppress
from typing import Callable, Optional

import websockets

import messages
from event_bus import EventType
from generation import GenerationRequest, PartialAccumulator, RequestStatus
from messages import ChannelMessage, MalformedMessage, MessageType

RECONNECT_DELAY = 2.0  # seconds, fixed, unbounded retries
PING_INTERVAL = 20
FLUSH_TIMEOUT = 1.0

EVENTS = ("open", "close", "partial", "final", "error", "cancelled", "send_failed", "lost")

_TERMINAL_STATUS = {
    MessageType.FINAL: RequestStatus.COMPLETED,
    MessageType.ERROR: RequestStatus.ERRORED,
    MessageType.CANCELLED: RequestStatus.CANCELLED,
}


class GenerationChannel:
    """Bidirectional generation stream multiplexed by request id.

    Args:
        url: WebSocket endpoint (ws://host/ws)
        reconnect_delay: Seconds to wait before reconnecting after a close
        bus: optional EventBus for channel_open/channel_closed/malformed_frame
    """

    def __init__(self, url, reconnect_delay=RECONNECT_DELAY, bus=None):
        self.url = url
        self.reconnect_delay = reconnect_delay
        self._bus = bus
        self._callbacks: dict[str, list[Callable]] = {event: [] for event in EVENTS}

        self.partials = PartialAccumulator()
        self._requests: dict[str, GenerationRequest] = {}

        self._wanted = False
        self._task = None
        self._ws = None
        self._outbox = None
        self.connect_attempts = 0

    # ── Subscription ──────────────────────────────────────────────

    def on(self, event: str, callback: Callable) -> None:
        """Register a callback: open(), close(), partial(id, total), final(id, text),
        error(id, message), cancelled(id), send_failed(ChannelMessage),
        lost(id, question)."""
        if event not in self._callbacks:
            raise ValueError(f"Unknown event: {event}. Valid: {list(EVENTS)}")
        self._callbacks[event].append(callback)

    def _fire(self, event: str, *args) -> None:
        for callback in list(self._callbacks[event]):
            try:
                callback(*args)
            except Exception as e:
                print(f"Channel: {event} callback error: {e}", flush=True)

    def _emit(self, event_type, rid=None, **payload):
        if self._bus:
            self._bus.emit(event_type, rid=rid, **payload)

    # ── State ─────────────────────────────────────────────────────

    @property
    def ready(self) -> bool:
        return self._ws is not None and self._outbox is not None

    @property
    def pending_ids(self) -> list[str]:
        return list(self._requests)

    def request(self, request_id: str) -> Optional[GenerationRequest]:
        return self._requests.get(request_id)

    # ── Lifecycle ─────────────────────────────────────────────────

    def open(self) -> None:
        """Start the connect/reconnect loop in the background. Idempotent."""
        if self._wanted:
            return
        self._wanted = True
        self._task = asyncio.ensure_future(self._connection_loop())

    async def close(self) -> None:
        """Close the connection and stop reconnecting. Idempotent."""
        if not self._wanted and self._task is None:
            return
        self._wanted = False
        task, self._task = self._task, None
        ws, outbox = self._ws, self._outbox
        if outbox is not None:
            # Let a trailing cancel leave before the socket goes away
            with suppress(asyncio.TimeoutError):
                await asyncio.wait_for(outbox.join(), FLUSH_TIMEOUT)
        if ws is not None:
            with suppress(OSError, websockets.exceptions.WebSocketException):
                await ws.close()
        if task is not None and not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        print("Channel: Closed by client", flush=True)

    async def _connection_loop(self):
        while self._wanted:
            self.connect_attempts += 1
            try:
                async with websockets.connect(self.url, ping_interval=PING_INTERVAL,
                                              max_size=None) as ws:
                    await self._serve(ws)
            except (OSError, asyncio.TimeoutError,
                    websockets.exceptions.WebSocketException) as e:
                print(f"Channel: Connection error: {e}", flush=True)

            if not self._wanted:
                break
            print(f"Channel: Closed, reconnecting in {self.reconnect_delay:g}s", flush=True)
            await asyncio.sleep(self.reconnect_delay)

    async def _serve(self, ws):
        """Pump one connection until it closes."""
        outbox = asyncio.Queue()
        self._ws = ws
        self._outbox = outbox
        print(f"Channel: Connected to {self.url}", flush=True)
        self._emit(EventType.CHANNEL_OPEN, attempt=self.connect_attempts)
        self._fire("open")

        writer = asyncio.ensure_future(self._write_loop(ws, outbox))
        try:
            async for raw in ws:
                self._dispatch(raw)
        except websockets.exceptions.ConnectionClosed as e:
            print(f"Channel: Connection lost: {e}", flush=True)
        finally:
            self._ws = None
            self._outbox = None
            writer.cancel()
            with suppress(asyncio.CancelledError):
                await writer
            # Frames that never left on this connection are not resumed
            while not outbox.empty():
                self._send_failed(outbox.get_nowait())
            self._abandon_in_flight()
            self._emit(EventType.CHANNEL_CLOSED)
            self._fire("close")

    async def _write_loop(self, ws, outbox):
        while True:
            message = await outbox.get()
            try:
                await ws.send(message.encode())
            except (OSError, websockets.exceptions.WebSocketException) as e:
                print(f"Channel: Send failed ({message.type.value} {message.request_id}): {e}",
                      flush=True)
                self._send_failed(message)
                # Force-close; the read side ends and the loop reconnects
                with suppress(OSError, websockets.exceptions.WebSocketException):
                    await ws.close()
                return
            finally:
                outbox.task_done()

    # ── Outbound ──────────────────────────────────────────────────

    def send_query(self, request_id: str, question: str) -> bool:
        """Queue a query frame. Returns False when no connection is ready.

        Raises:
            ValueError: if request_id is already tracked
        """
        if not self.ready:
            return False
        if request_id in self._requests:
            raise ValueError(f"Request id already tracked: {request_id}")
        self._requests[request_id] = GenerationRequest(request_id, question)
        self.partials.start(request_id)
        self._outbox.put_nowait(messages.query(request_id, question))
        return True

    def send_cancel(self, request_id: str) -> bool:
        """Queue a cancel frame (fire-and-forget). Returns False when not connected."""
        if not self.ready:
            return False
        self._outbox.put_nowait(messages.cancel(request_id))
        return True

    def discard(self, request_id: str) -> None:
        """Forget a request locally: drop its accumulator entry and mark it cancelled."""
        self.partials.discard(request_id)
        req = self._requests.pop(request_id, None)
        if req is not None and not req.terminal:
            req.advance(RequestStatus.CANCELLED)

    def _send_failed(self, message: ChannelMessage) -> None:
        if message.type is MessageType.QUERY:
            self.discard(message.request_id)
        self._fire("send_failed", message)

    def _abandon_in_flight(self) -> None:
        """End every request sent on a connection that just died.

        Nothing is resumed on the next connection, so each one is dropped
        here and reported through "lost" for the owner to re-issue.
        """
        for request_id in self.pending_ids:
            self.partials.discard(request_id)
            req = self._requests.pop(request_id)
            if not req.terminal:
                req.advance(RequestStatus.ERRORED)
            print(f"Channel: Request {request_id} lost with the connection", flush=True)
            self._emit(EventType.REQUEST_LOST, rid=request_id)
            self._fire("lost", request_id, req.question)

    # ── Inbound ───────────────────────────────────────────────────

    def _dispatch(self, raw) -> None:
        try:
            msg = ChannelMessage.decode(raw)
        except MalformedMessage as e:
            print(f"Channel: Dropping malformed frame: {e}", flush=True)
            self._emit(EventType.MALFORMED_FRAME, reason=str(e)[:200])
            return

        rid = msg.request_id
        if not rid:
            print(f"Channel: Dropping {msg.type.value} frame without id"
                  f"{': ' + msg.error if msg.error else ''}", flush=True)
            return

        if msg.type is MessageType.PARTIAL:
            total = self.partials.append(rid, msg.text)
            if total is None:
                return  # Superseded or unknown request
            req = self._requests.get(rid)
            if req is not None:
                req.advance(RequestStatus.STREAMING)
            self._fire("partial", rid, total)
            return

        if not msg.terminal:
            print(f"Channel: Unexpected {msg.type.value} frame from server", flush=True)
            return

        accumulated = self.partials.finish(rid)
        req = self._requests.pop(rid, None)
        if req is not None and not req.terminal:
            req.advance(_TERMINAL_STATUS[msg.type])

        if msg.type is MessageType.FINAL:
            self._fire("final", rid, msg.text or accumulated)
        elif msg.type is MessageType.ERROR:
            self._fire("error", rid, msg.error or "Unknown error")
        else:
            self._fire("cancelled", rid)
