"""
Inference Executor Unit Tests
=============================

[CLASSIFY] One attempt against a real local HTTP server ends as exactly one
Outcome, within the per-attempt timeout.
"""

import time

import pytest

from conftest import ADDR_A


def fresh_header(n: int = 1):
    from core.security.auth import AuthHeader
    return AuthHeader(provider_address=ADDR_A, headers={"Signature": f"sig-{n}", "Nonce": str(n)}, content_hash="0x0")


class TestClassify:
    """Test status/body classification."""

    def test_success_parses_json(self):
        from core.transport import Outcome, classify

        outcome, payload = classify(200, '{"id": "x", "choices": [{"index": 0}]}')

        assert outcome is Outcome.SUCCESS
        assert payload["id"] == "x"

    @pytest.mark.parametrize("body", ['{"error": "upstream failed"}', '{"choices": []}', "[]", "null"])
    def test_success_without_completion_is_hard_error(self, body):
        from core.transport import Outcome, classify

        outcome, detail = classify(200, body)

        assert outcome is Outcome.HARD_ERROR
        assert "No completion choices" in detail

    def test_success_with_bad_json_is_hard_error(self):
        from core.transport import Outcome, classify

        outcome, detail = classify(200, "not json")

        assert outcome is Outcome.HARD_ERROR
        assert "Invalid JSON" in detail

    @pytest.mark.parametrize("status", [429, 503, 504])
    def test_busy_status_codes(self, status):
        from core.transport import Outcome, classify
        assert classify(status, "")[0] is Outcome.BUSY

    @pytest.mark.parametrize("body", ["Service busy", "model OVERLOADED", "provider offline", "upstream timeout"])
    def test_busy_markers(self, body):
        from core.transport import Outcome, classify
        assert classify(500, body)[0] is Outcome.BUSY

    def test_insufficient_balance_is_busy(self):
        from core.transport import Outcome, classify

        outcome, detail = classify(402, '{"error": "Insufficient balance"}')

        assert outcome is Outcome.BUSY
        assert detail.startswith("Insufficient balance at provider")

    def test_other_status_is_hard_error(self):
        from core.transport import Outcome, classify

        outcome, detail = classify(400, "bad request")

        assert outcome is Outcome.HARD_ERROR
        assert detail == "HTTP 400: bad request"

    def test_detail_truncated(self):
        from core.transport import DETAIL_LIMIT, classify

        _, detail = classify(400, "x" * 5000)

        assert len(detail) <= DETAIL_LIMIT + len("HTTP 400: ")


class TestAttemptRecord:
    """Test AttemptRecord helpers."""

    def test_from_error_maps_outcome(self, make_provider):
        from core.errors import AuthenticationFailed, ProviderTimeout
        from core.transport import AttemptRecord, Outcome

        provider = make_provider(ADDR_A)

        auth = AttemptRecord.from_error(provider, AuthenticationFailed("no"), time.time(), stage="auth")
        slow = AttemptRecord.from_error(provider, ProviderTimeout("late"), time.time(), stage="execute")

        assert auth.outcome is Outcome.HARD_ERROR
        assert auth.stage == "auth"
        assert slow.outcome is Outcome.TIMEOUT

    def test_to_dict(self, make_provider):
        from core.transport import AttemptRecord, Outcome

        record = AttemptRecord(make_provider(ADDR_A), Outcome.BUSY, 10.0, 10.5, status_code=503)
        data = record.to_dict()

        assert data["provider"] == ADDR_A
        assert data["outcome"] == "busy"
        assert data["latency"] == 0.5


class TestInferenceExecutor:
    """Test one attempt end to end."""

    @pytest.mark.asyncio
    async def test_success_records_usage(self, provider_server, make_provider, chat_request):
        from core.transport import InferenceExecutor, Outcome

        executor = InferenceExecutor(default_timeout=5)
        provider = make_provider(ADDR_A, endpoint=provider_server.endpoint("a"), model="llama-a")
        try:
            record = await executor.execute(provider, fresh_header(), chat_request)
        finally:
            await executor.close()

        assert record.outcome is Outcome.SUCCESS
        assert record.payload["choices"][0]["message"]["content"] == "reply from a"
        assert record.usage.total_tokens == 12
        assert record.request_id == chat_request.request_id

        call = provider_server.calls_for("a")[0]
        assert call.headers["Signature"] == "sig-1"
        assert call.body["model"] == "llama-a"
        assert call.body["stream"] is False
        assert call.body["messages"][0]["role"] == "system"

    @pytest.mark.asyncio
    async def test_overloaded_is_busy(self, provider_server, make_provider, chat_request):
        from core.transport import InferenceExecutor, Outcome

        provider_server.behaviours["a"] = "overloaded"
        executor = InferenceExecutor(default_timeout=5)
        try:
            record = await executor.execute(
                make_provider(ADDR_A, endpoint=provider_server.endpoint("a")), fresh_header(), chat_request,
            )
        finally:
            await executor.close()

        assert record.outcome is Outcome.BUSY
        assert record.status_code == 503

    @pytest.mark.asyncio
    async def test_empty_503_is_busy(self, provider_server, make_provider, chat_request):
        from core.transport import InferenceExecutor, Outcome

        provider_server.behaviours["a"] = "unavailable"
        executor = InferenceExecutor(default_timeout=5)
        try:
            record = await executor.execute(
                make_provider(ADDR_A, endpoint=provider_server.endpoint("a")), fresh_header(), chat_request,
            )
        finally:
            await executor.close()

        assert record.outcome is Outcome.BUSY

    @pytest.mark.asyncio
    async def test_insufficient_balance_is_busy(self, provider_server, make_provider, chat_request):
        from core.transport import InferenceExecutor, Outcome

        provider_server.behaviours["a"] = "insufficient"
        executor = InferenceExecutor(default_timeout=5)
        try:
            record = await executor.execute(
                make_provider(ADDR_A, endpoint=provider_server.endpoint("a")), fresh_header(), chat_request,
            )
        finally:
            await executor.close()

        assert record.outcome is Outcome.BUSY
        assert record.status_code == 402

    @pytest.mark.parametrize("behaviour", ["error500", "badjson", "badbytes", "errorjson"])
    @pytest.mark.asyncio
    async def test_hard_errors(self, provider_server, make_provider, chat_request, behaviour):
        from core.transport import InferenceExecutor, Outcome

        provider_server.behaviours["a"] = behaviour
        executor = InferenceExecutor(default_timeout=5)
        try:
            record = await executor.execute(
                make_provider(ADDR_A, endpoint=provider_server.endpoint("a")), fresh_header(), chat_request,
            )
        finally:
            await executor.close()

        assert record.outcome is Outcome.HARD_ERROR
        assert record.payload is None
        assert record.status_code in (200, 500)
        assert record.error_detail

    @pytest.mark.asyncio
    async def test_undecodable_body_does_not_raise(self, provider_server, make_provider, chat_request):
        """A 500 whose body is not UTF-8 is still classified, with replacement characters."""
        from core.transport import InferenceExecutor, Outcome

        provider_server.behaviours["a"] = "badbytes"
        executor = InferenceExecutor(default_timeout=5)
        try:
            record = await executor.execute(
                make_provider(ADDR_A, endpoint=provider_server.endpoint("a")), fresh_header(), chat_request,
            )
        finally:
            await executor.close()

        assert record.outcome is Outcome.HARD_ERROR
        assert record.status_code == 500
        assert "�" in record.error_detail
        assert record.error_detail.endswith(" bad")

    @pytest.mark.asyncio
    async def test_slow_provider_times_out_in_bound(self, provider_server, make_provider, chat_request):
        from core.transport import InferenceExecutor, Outcome

        provider_server.behaviours["a"] = "slow"
        executor = InferenceExecutor(default_timeout=5)
        start = time.monotonic()
        try:
            record = await executor.execute(
                make_provider(ADDR_A, endpoint=provider_server.endpoint("a")),
                fresh_header(),
                chat_request,
                timeout=0.2,
            )
        finally:
            await executor.close()

        assert record.outcome is Outcome.TIMEOUT
        assert time.monotonic() - start < 2.0
        assert await provider_server.wait_cancelled("a")

    @pytest.mark.asyncio
    async def test_unreachable_is_busy(self, make_provider, chat_request):
        from core.transport import InferenceExecutor, Outcome

        executor = InferenceExecutor(default_timeout=5)
        try:
            record = await executor.execute(
                make_provider(ADDR_A, endpoint="http://127.0.0.1:9/none"), fresh_header(), chat_request,
            )
        finally:
            await executor.close()

        assert record.outcome in (Outcome.BUSY, Outcome.TIMEOUT)
        assert record.error_detail

    @pytest.mark.asyncio
    async def test_consumed_header_never_sent(self, provider_server, make_provider, chat_request):
        from core.errors import HeaderReuseError
        from core.transport import InferenceExecutor

        header = fresh_header()
        header.consume()
        executor = InferenceExecutor(default_timeout=5)
        try:
            with pytest.raises(HeaderReuseError):
                await executor.execute(
                    make_provider(ADDR_A, endpoint=provider_server.endpoint("a")), header, chat_request,
                )
        finally:
            await executor.close()

        assert provider_server.calls == []

    @pytest.mark.asyncio
    async def test_shared_session_not_closed(self, provider_server, make_provider, chat_request):
        import aiohttp
        from core.transport import InferenceExecutor

        async with aiohttp.ClientSession() as session:
            executor = InferenceExecutor(default_timeout=5, session=session)
            await executor.execute(
                make_provider(ADDR_A, endpoint=provider_server.endpoint("a")), fresh_header(), chat_request,
            )
            await executor.close()

            assert not session.closed
