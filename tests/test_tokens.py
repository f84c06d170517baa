"""Tests for session keys and per-session locks."""

import asyncio
import re

import pytest

from lightning_gateway.locks import KeyedLock
from lightning_gateway.tokens import extract_session_key, generate_session_key, new_id


class TestSessionKeys:
    def test_format(self):
        key = generate_session_key()
        assert re.fullmatch(r"sk_[0-9a-f]{64}", key)

    def test_unique(self):
        assert len({generate_session_key() for _ in range(100)}) == 100

    def test_ids_are_url_safe(self):
        assert re.fullmatch(r"[A-Za-z0-9_-]+", new_id())


class TestExtractSessionKey:
    def test_header(self):
        assert extract_session_key({"x-session-key": "sk_a"}, {}) == "sk_a"

    def test_query_param(self):
        assert extract_session_key({}, {"session_key": "sk_b"}) == "sk_b"

    def test_header_wins(self):
        assert extract_session_key({"x-session-key": "sk_a"}, {"session_key": "sk_b"}) == "sk_a"

    def test_blank_is_absent(self):
        assert extract_session_key({"x-session-key": "  "}, {}) is None
        assert extract_session_key({}, {"session_key": ""}) is None

    def test_absent(self):
        assert extract_session_key({}, {}) is None


class TestKeyedLock:
    @pytest.mark.asyncio
    async def test_same_key_serializes(self):
        locks = KeyedLock()
        events = []

        async def worker(name):
            async with locks.hold("session-1"):
                events.append(f"{name}-in")
                await asyncio.sleep(0.01)
                events.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert events in (
            ["a-in", "a-out", "b-in", "b-out"],
            ["b-in", "b-out", "a-in", "a-out"],
        )

    @pytest.mark.asyncio
    async def test_different_keys_do_not_contend(self):
        locks = KeyedLock()
        inside = asyncio.Event()

        async def holder():
            async with locks.hold("session-1"):
                await inside.wait()

        task = asyncio.ensure_future(holder())
        await asyncio.sleep(0)
        async with locks.hold("session-2"):
            inside.set()
        await task

    @pytest.mark.asyncio
    async def test_entries_are_dropped_when_idle(self):
        locks = KeyedLock()
        async with locks.hold("session-1"):
            assert len(locks) == 1
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_released_on_error(self):
        locks = KeyedLock()
        with pytest.raises(RuntimeError):
            async with locks.hold("session-1"):
                raise RuntimeError("boom")
        assert len(locks) == 0
        async with locks.hold("session-1"):
            pass
