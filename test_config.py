#!/usr/bin/env python3
"""Tests for configuration loading.

Run: python3 test_config.py
"""

import asyncio
import json
import os
import sys
import tempfile
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).parent))

from config import default_config, get_deepgram_api_key, load_config, ws_url_for

PASSED = 0
FAILED = 0
ERRORS = []


def test(name):
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


CLEAN_ENV = {"VOICE_ASSISTANT_SERVER_URL": "", "VOICE_ASSISTANT_LANGUAGE": ""}


@test("Defaults carry the session timings and VAD thresholds")
def test_defaults():
    config = default_config()
    assert config["dead_zone_ms"] == 350
    assert config["settle_delay_ms"] == 40
    assert config["reconnect_delay"] == 2.0
    assert config["speaking_threshold"] == 0.80
    assert config["listening_threshold"] == 0.65
    assert config["use_websocket"] is True


@test("Missing config file yields the defaults")
def test_missing_file():
    with patch.dict(os.environ, CLEAN_ENV):
        config = load_config("/nonexistent/config.json")
    assert config == default_config()


@test("File values override defaults; unknown keys are kept")
def test_file_overrides():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "config.json"
        path.write_text(json.dumps({"server_url": "http://box:8080", "barge_in": False,
                                    "extra": 1}))
        with patch.dict(os.environ, CLEAN_ENV):
            config = load_config(path)
    assert config["server_url"] == "http://box:8080"
    assert config["barge_in"] is False
    assert config["extra"] == 1
    assert config["dead_zone_ms"] == 350


@test("Invalid JSON and non-object files are ignored")
def test_invalid_files():
    with tempfile.TemporaryDirectory() as tmpdir:
        broken = Path(tmpdir) / "broken.json"
        broken.write_text("{server_url: nope")
        listed = Path(tmpdir) / "list.json"
        listed.write_text("[1, 2, 3]")
        with patch.dict(os.environ, CLEAN_ENV):
            assert load_config(broken) == default_config()
            assert load_config(listed) == default_config()


@test("Environment variables win over the file")
def test_env_overrides():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "config.json"
        path.write_text(json.dumps({"server_url": "http://file:1"}))
        env = {"VOICE_ASSISTANT_SERVER_URL": "https://env.example", "VOICE_ASSISTANT_LANGUAGE": "de"}
        with patch.dict(os.environ, env):
            config = load_config(path)
    assert config["server_url"] == "https://env.example"
    assert config["language"] == "de"


@test("Streaming URL is derived from the server URL")
def test_ws_url_for():
    assert ws_url_for("http://localhost:3000") == "ws://localhost:3000/ws"
    assert ws_url_for("http://localhost:3000/api/") == "ws://localhost:3000/ws"
    assert ws_url_for("https://assistant.example") == "wss://assistant.example/ws"


@test("Deepgram key comes from the environment, then the key file")
def test_deepgram_key():
    with tempfile.TemporaryDirectory() as tmpdir:
        home = Path(tmpdir)
        with patch.dict(os.environ, {"DEEPGRAM_API_KEY": ""}), \
                patch("config.Path.home", return_value=home):
            assert get_deepgram_api_key() is None
            key_file = home / ".config" / "deepgram" / "api_key"
            key_file.parent.mkdir(parents=True)
            key_file.write_text("file-key\n")
            assert get_deepgram_api_key() == "file-key"
        with patch.dict(os.environ, {"DEEPGRAM_API_KEY": "env-key"}):
            assert get_deepgram_api_key() == "env-key"


if __name__ == "__main__":
    print("=" * 60)
    print("Config Tests")
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
