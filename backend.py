#!/usr/bin/env python3
"""
Demo generation backend speaking the streaming protocol on /ws.

Client -> server: query {id, question}, cancel {id}
Server -> client: partial {id, text}, final {id, text}, error {id, error},
                  cancelled {id}

Each query runs as its own task, so one socket can carry several
generations. A cancel aborts the task and is acknowledged with exactly one
cancelled frame, also for ids that are not (or no longer) running. Closing
the socket cancels everything it started.

Generators are plain async iterators of text fragments: exhausting the
iterator completes the answer, raising fails it. Wrapping a real model SDK
into that shape is the generator's job.

Usage:
    voice-assistant-backend --host 127.0.0.1 --port 3000
"""

import argparse
import asyncio
import json
from contextlib import suppress
from typing import AsyncIterator, Callable

from websockets.asyncio.server import serve as ws_serve
from websockets.exceptions import ConnectionClosed

from messages import ChannelMessage, MessageType

Generator = Callable[[str], AsyncIterator[str]]

WS_PATH = "/ws"
DEMO_ANSWER = ('Demo mode: I heard "{question}". I can answer Revolt Motors '
               'questions like "Tell me about the RV400 range".')
DEMO_FRAGMENT_DELAY = 0.05


async def demo_generator(question: str, delay: float = DEMO_FRAGMENT_DELAY):
    """Stream the canned demo answer word by word."""
    words = DEMO_ANSWER.format(question=question).split(" ")
    for i, word in enumerate(words):
        await asyncio.sleep(delay)
        yield word if i == 0 else " " + word


class GenerationServer:
    """Per-socket request bookkeeping around a generator."""

    def __init__(self, generator: Generator = demo_generator):
        self.generator = generator
        self.connections = 0
        self._sends = set()

    async def handler(self, websocket):
        if websocket.request.path != WS_PATH:
            await websocket.close(1008, "Unknown path")
            return

        self.connections += 1
        print("Backend: Client connected", flush=True)
        active: dict[str, asyncio.Task] = {}
        try:
            async for raw in websocket:
                self._handle_frame(websocket, raw, active)
        except ConnectionClosed:
            pass
        finally:
            for task in active.values():
                task.cancel()
            active.clear()
            print("Backend: Client disconnected", flush=True)

    def _handle_frame(self, websocket, raw, active):
        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError("frame is not an object")
        except ValueError:
            print("Backend: Received non-JSON frame", flush=True)
            self._send_later(websocket, ChannelMessage(MessageType.ERROR, None, error="Invalid JSON"))
            return

        msg_type = data.get("type")
        request_id = data.get("id") or None

        if msg_type == MessageType.QUERY.value:
            question = data.get("question")
            if not request_id or not question:
                self._send_later(websocket, ChannelMessage(
                    MessageType.ERROR, request_id, error="Missing id or question"))
                return
            if request_id in active:
                self._send_later(websocket, ChannelMessage(
                    MessageType.ERROR, request_id, error="Request id already active"))
                return
            task = asyncio.ensure_future(self._generate(websocket, request_id, str(question)))
            active[request_id] = task
            task.add_done_callback(
                lambda t, rid=request_id: active.pop(rid) if active.get(rid) is t else None)

        elif msg_type == MessageType.CANCEL.value:
            if not request_id:
                return
            task = active.pop(request_id, None)
            if task is not None:
                task.cancel()
                print(f"Backend: Cancelled generation {request_id}", flush=True)
            self._send_later(websocket, ChannelMessage(MessageType.CANCELLED, request_id))

        else:
            self._send_later(websocket, ChannelMessage(
                MessageType.ERROR, request_id, error="Unknown message type"))

    async def _generate(self, websocket, request_id: str, question: str):
        accumulated = ""
        try:
            async for fragment in self.generator(question):
                if not fragment:
                    continue
                accumulated += fragment
                await self._send(websocket, ChannelMessage(MessageType.PARTIAL, request_id, text=fragment))
        except asyncio.CancelledError:
            # The cancel handler has already acknowledged
            raise
        except Exception as e:
            print(f"Backend: Generation {request_id} failed: {e}", flush=True)
            await self._send(websocket, ChannelMessage(MessageType.ERROR, request_id, error=str(e)))
            return
        await self._send(websocket, ChannelMessage(MessageType.FINAL, request_id, text=accumulated.strip()))

    def _send_later(self, websocket, message: ChannelMessage):
        task = asyncio.ensure_future(self._send(websocket, message))
        self._sends.add(task)
        task.add_done_callback(self._sends.discard)

    @staticmethod
    async def _send(websocket, message: ChannelMessage):
        with suppress(ConnectionClosed):
            await websocket.send(message.encode())

    async def start(self, host="127.0.0.1", port=3000):
        """Start listening and return the websockets Server (port=0 picks a free port)."""
        return await ws_serve(self.handler, host, port, max_size=None)


async def serve(host, port, generator: Generator = demo_generator):
    server = await GenerationServer(generator).start(host, port)
    print(f"Backend: Listening on ws://{host}:{port}{WS_PATH}", flush=True)
    try:
        await server.serve_forever()
    finally:
        server.close()
        await server.wait_closed()


def main():
    parser = argparse.ArgumentParser(description="Demo generation backend for the voice assistant")
    parser.add_argument("--host", default="127.0.0.1", help="Interface to bind")
    parser.add_argument("--port", type=int, default=3000, help="Port to listen on")
    args = parser.parse_args()

    try:
        asyncio.run(serve(args.host, args.port))
    except KeyboardInterrupt:
        print("Backend: Shutting down", flush=True)


if __name__ == "__main__":
    main()
