"""Tests for the security-event audit sink and background dispatch."""

import asyncio

import pytest

from authkernel.service.dispatch import BackgroundDispatcher
from authkernel.service.security_events import SecurityEventService, infer_severity
from authkernel.storage.models import SecuritySeverity


class FailingStore:
    def append_security_event(self, event):
        raise RuntimeError("disk full")


class TestSecurityEventService:
    """Tests for SecurityEventService."""

    @pytest.mark.asyncio
    async def test_log_persists_event(self, store, clock):
        service = SecurityEventService(store, now=clock)

        event = await service.log(
            "login_succeeded",
            user_id="u1",
            ip_address="203.0.113.9",
            user_agent="agent",
            payload={"session_id": "s1"},
        )

        assert event.created_at == clock()
        assert event.severity == SecuritySeverity.INFO
        stored = await service.list_for_user("u1")
        assert [e.type for e in stored] == ["login_succeeded"]
        assert stored[0].payload == {"session_id": "s1"}

    @pytest.mark.asyncio
    async def test_log_never_raises(self, clock):
        service = SecurityEventService(FailingStore(), now=clock)

        assert await service.log("account_locked", user_id="u1") is None

    @pytest.mark.asyncio
    async def test_explicit_severity_wins(self, store, clock):
        service = SecurityEventService(store, now=clock)

        event = await service.log("login_failed", severity=SecuritySeverity.CRITICAL)

        assert event.severity == SecuritySeverity.CRITICAL

    def test_severity_inference(self):
        assert infer_severity("refresh_token_replay_detected") == SecuritySeverity.CRITICAL
        assert infer_severity("account_locked") == SecuritySeverity.WARNING
        assert infer_severity("user_registered") == SecuritySeverity.INFO


class TestBackgroundDispatcher:
    """Tests for fire-and-forget dispatch."""

    @pytest.mark.asyncio
    async def test_submit_does_not_block_caller(self):
        dispatcher = BackgroundDispatcher()
        release = asyncio.Event()
        done = []

        async def slow():
            await release.wait()
            done.append(True)

        dispatcher.submit("slow", slow())
        assert dispatcher.pending == 1
        assert done == []

        release.set()
        await dispatcher.drain()
        assert done == [True]
        assert dispatcher.pending == 0

    @pytest.mark.asyncio
    async def test_failures_are_contained(self):
        dispatcher = BackgroundDispatcher()

        async def boom():
            raise RuntimeError("smtp down")

        def blocking_false():
            return False

        dispatcher.submit("boom", boom())
        dispatcher.submit_call("blocking", blocking_false)
        await dispatcher.drain()

        assert dispatcher.pending == 0

    @pytest.mark.asyncio
    async def test_drain_waits_for_nested_submissions(self):
        dispatcher = BackgroundDispatcher()
        seen = []

        async def child():
            seen.append("child")

        async def parent():
            dispatcher.submit("child", child())
            seen.append("parent")

        dispatcher.submit("parent", parent())
        await dispatcher.drain()

        assert seen == ["parent", "child"]

    @pytest.mark.asyncio
    async def test_cancel_all(self):
        dispatcher = BackgroundDispatcher()

        dispatcher.submit("forever", asyncio.sleep(3600))
        await dispatcher.cancel_all()

        assert dispatcher.pending == 0
