#!/usr/bin/env python3
"""Tests for wire envelopes, request lifecycle and partial accumulation.

Run: python3 test_generation.py
"""

import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent))

import messages
from generation import (
    GenerationRequest, InvalidTransition, PartialAccumulator, RequestStatus,
    new_request_id,
)
from messages import ChannelMessage, MalformedMessage, MessageType

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


def expect_malformed(raw):
    try:
        ChannelMessage.decode(raw)
    except MalformedMessage:
        return
    raise AssertionError(f"Expected MalformedMessage for {raw!r}")


# ══════════════════════════════════════════════════════════════════
# Envelopes
# ══════════════════════════════════════════════════════════════════

@test("query envelope carries type, id and question")
def test_query_encode():
    data = json.loads(messages.query("a1", "What is the range?").encode())
    assert data == {"type": "query", "id": "a1", "question": "What is the range?"}


@test("cancel envelope carries only type and id")
def test_cancel_encode():
    data = json.loads(messages.cancel("a1").encode())
    assert data == {"type": "cancel", "id": "a1"}


@test("Server frames decode by type")
def test_decode_server_frames():
    partial = ChannelMessage.decode('{"type": "partial", "id": "a1", "text": "Hel"}')
    assert partial.type is MessageType.PARTIAL
    assert partial.request_id == "a1"
    assert partial.text == "Hel"
    assert not partial.terminal

    error = ChannelMessage.decode(b'{"type": "error", "id": "a1", "error": "quota"}')
    assert error.type is MessageType.ERROR
    assert error.error == "quota"
    assert error.terminal

    cancelled = ChannelMessage.decode('{"type": "cancelled", "id": "a1"}')
    assert cancelled.terminal
    assert cancelled.text is None


@test("Error frames with a null id decode with request_id None")
def test_decode_null_id():
    msg = ChannelMessage.decode('{"type": "error", "id": null, "error": "Invalid JSON"}')
    assert msg.request_id is None
    assert msg.error == "Invalid JSON"


@test("Undecodable frames raise MalformedMessage")
def test_decode_malformed():
    expect_malformed("not json")
    expect_malformed("[1, 2, 3]")
    expect_malformed('{"type": "telemetry", "id": "a1"}')
    expect_malformed('{"id": "a1"}')
    expect_malformed(b"\xff\xfe")


@test("Non-string field values are coerced to strings")
def test_decode_coerces():
    msg = ChannelMessage.decode('{"type": "partial", "id": 42, "text": 150}')
    assert msg.request_id == "42"
    assert msg.text == "150"


# ══════════════════════════════════════════════════════════════════
# Request lifecycle
# ══════════════════════════════════════════════════════════════════

@test("Request ids are unique across many mints")
def test_request_ids_unique():
    ids = {new_request_id() for _ in range(10000)}
    assert len(ids) == 10000


@test("Requests move pending -> streaming -> completed")
def test_request_happy_path():
    req = GenerationRequest("a1", "hello")
    assert req.status is RequestStatus.PENDING
    req.advance(RequestStatus.STREAMING)
    req.advance(RequestStatus.STREAMING)
    req.advance(RequestStatus.COMPLETED)
    assert req.terminal
    assert req.completed_at is not None


@test("Requests may end straight from pending")
def test_request_pending_to_terminal():
    for status in (RequestStatus.COMPLETED, RequestStatus.CANCELLED, RequestStatus.ERRORED):
        req = GenerationRequest("a1", "hello")
        req.advance(status)
        assert req.status is status


@test("Terminal requests cannot move again")
def test_request_terminal_is_final():
    req = GenerationRequest("a1", "hello")
    req.advance(RequestStatus.CANCELLED)
    for status in RequestStatus:
        try:
            req.advance(status)
        except InvalidTransition:
            continue
        raise AssertionError(f"cancelled -> {status.value} should be rejected")


@test("Requests cannot go back to pending")
def test_request_no_backwards():
    req = GenerationRequest("a1", "hello")
    req.advance(RequestStatus.STREAMING)
    try:
        req.advance(RequestStatus.PENDING)
    except InvalidTransition:
        return
    raise AssertionError("streaming -> pending should be rejected")


# ══════════════════════════════════════════════════════════════════
# Partial accumulation
# ══════════════════════════════════════════════════════════════════

@test("Partials 'Range ', 'is 150 ', 'km' concatenate to 'Range is 150 km'")
def test_accumulator_concatenates():
    acc = PartialAccumulator()
    acc.start("r1")
    assert acc.append("r1", "Range ") == "Range "
    assert acc.append("r1", "is 150 ") == "Range is 150 "
    assert acc.append("r1", "km") == "Range is 150 km"
    assert acc.finish("r1") == "Range is 150 km"
    assert "r1" not in acc


@test("Fragments for untracked ids are refused, not recreated")
def test_accumulator_untracked():
    acc = PartialAccumulator()
    assert acc.append("ghost", "boo") is None
    assert "ghost" not in acc
    acc.start("a1")
    acc.discard("a1")
    assert acc.append("a1", "late") is None
    assert len(acc) == 0


@test("Entries for different ids accumulate independently")
def test_accumulator_multiple_ids():
    acc = PartialAccumulator()
    acc.start("old")
    acc.start("new")
    acc.append("old", "stale ")
    acc.append("new", "fresh")
    assert acc.get("old") == "stale "
    assert acc.get("new") == "fresh"
    assert len(acc) == 2
    assert acc.finish("missing") == ""


if __name__ == "__main__":
    print("=" * 60)
    print("Generation Model Tests")
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
