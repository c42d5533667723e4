"""
Event Bus Unit Tests
====================
"""

import pytest


class TestEventBus:
    """Test pub/sub delivery."""

    @pytest.mark.asyncio
    async def test_sync_and_async_subscribers(self):
        from core.events import ATTEMPT_RECORDED, EventBus

        bus = EventBus()
        received = []

        def sync_cb(payload):
            received.append(("sync", payload["n"]))

        async def async_cb(payload):
            received.append(("async", payload["n"]))

        await bus.subscribe(ATTEMPT_RECORDED, sync_cb)
        await bus.subscribe(ATTEMPT_RECORDED, async_cb)
        await bus.broadcast(ATTEMPT_RECORDED, {"n": 1})

        assert received == [("sync", 1), ("async", 1)]
        assert bus.subscriber_count(ATTEMPT_RECORDED) == 2

    @pytest.mark.asyncio
    async def test_failing_subscriber_isolated(self):
        from core.events import RESPONSE_READY, EventBus

        bus = EventBus()
        received = []

        async def broken(payload):
            raise RuntimeError("disk full")

        await bus.subscribe(RESPONSE_READY, broken)
        await bus.subscribe(RESPONSE_READY, received.append)
        await bus.broadcast(RESPONSE_READY, {"ok": True})

        assert received == [{"ok": True}]

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        from core.events import FUNDS_TOPPED_UP, EventBus

        bus = EventBus()
        received = []
        await bus.subscribe(FUNDS_TOPPED_UP, received.append)
        await bus.unsubscribe(FUNDS_TOPPED_UP, received.append)

        await bus.broadcast(FUNDS_TOPPED_UP, {"amount": "1"})

        assert received == []
        assert bus.subscriber_count(FUNDS_TOPPED_UP) == 0

    @pytest.mark.asyncio
    async def test_no_subscribers(self):
        from core.events import EventBus

        await EventBus().broadcast("unknown", {})


class TestLogging:
    """Test secret redaction in log output."""

    def test_redact(self):
        from core.logger import redact

        assert redact("") == ""
        assert redact("0x1234") == "0x1234"
        assert redact("0x" + "ab" * 32) == "0xabab..abab"

    def test_private_key_masked(self):
        import io
        import logging

        from conftest import TEST_PRIVATE_KEY
        from core.logger import configure_logging

        stream = io.StringIO()
        root = logging.getLogger()
        saved = (list(root.handlers), root.level)
        try:
            configure_logging(stream=stream)
            logging.getLogger("zeroute.test").info("key=%s", TEST_PRIVATE_KEY)
        finally:
            for handler in list(root.handlers):
                root.removeHandler(handler)
            for handler in saved[0]:
                root.addHandler(handler)
            root.setLevel(saved[1])

        output = stream.getvalue()
        assert TEST_PRIVATE_KEY not in output
        assert "0x4c08..2318" in output
