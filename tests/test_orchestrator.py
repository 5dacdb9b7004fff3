import asyncio
import json

import httpx
import pytest

from tierchat.errors import AllTiersExhaustedError, UpstreamError
from tierchat.orchestrator import FallbackOrchestrator
from tierchat.provider import ProviderPool
from tierchat.registry import ModelRegistry
from tierchat.router_contracts import NormalizedMessage, ProviderTier
from tierchat.tiering import ProviderKind


def _tiers(official_key="sk-a", aggregator_key="sk-b", inference_key=None) -> list[ProviderTier]:
    return [
        ProviderTier("deepseek", ProviderKind.OFFICIAL, 1, "https://a.test", "m-a", official_key),
        ProviderTier("deepseek", ProviderKind.AGGREGATOR, 2, "https://b.test", "m-b", aggregator_key),
        ProviderTier("deepseek", ProviderKind.INFERENCE, 3, "https://c.test", "m-c", inference_key),
    ]


class ScriptedAdapter:
    """Per tier id: a string, an exception, or (for streams) a list of both."""

    def __init__(self, script):
        self.script = script
        self.calls = []
        self.closed = []

    async def complete_once(self, tier, messages):
        self.calls.append(tier.id)
        outcome = self.script[tier.id]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def stream(self, tier, messages):
        self.calls.append(tier.id)
        try:
            for item in self.script[tier.id]:
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            self.closed.append(tier.id)


def _orchestrator(adapter, tiers=None) -> FallbackOrchestrator:
    registry = ModelRegistry({"deepseek": tiers or _tiers()}, default_model="deepseek")
    adapters = {kind: adapter for kind in ProviderKind}
    return FallbackOrchestrator(registry, ProviderPool(adapters=adapters))


MESSAGES = [NormalizedMessage(role="user", content="hello")]


@pytest.mark.asyncio
async def test_first_success_short_circuits_later_tiers():
    adapter = ScriptedAdapter(
        {
            "deepseek:official": UpstreamError("boom", http_status=500),
            "deepseek:aggregator": "hi there",
            "deepseek:inference": "never",
        }
    )
    result = await _orchestrator(adapter).complete("deepseek", MESSAGES)
    assert result.text == "hi there"
    assert result.source_tier == "deepseek:aggregator"
    assert result.succeeded_on_attempt == 2
    assert adapter.calls == ["deepseek:official", "deepseek:aggregator"]


@pytest.mark.asyncio
async def test_exhaustion_raises_one_aggregated_error_counting_every_tier():
    adapter = ScriptedAdapter(
        {
            "deepseek:official": UpstreamError("a down"),
            "deepseek:aggregator": UpstreamError("b down"),
            "deepseek:inference": UpstreamError("c down"),
        }
    )
    with pytest.raises(AllTiersExhaustedError) as exc:
        await _orchestrator(adapter).complete("deepseek", MESSAGES)
    assert exc.value.attempts == 3
    assert [tier for tier, _ in exc.value.failures] == [
        "deepseek:official",
        "deepseek:aggregator",
        "deepseek:inference",
    ]
    assert "c down" in str(exc.value.last_error)
    assert exc.value.last_error.tier == "deepseek:inference"


@pytest.mark.asyncio
async def test_credentialless_tiers_are_skipped_but_keyless_final_tier_runs():
    adapter = ScriptedAdapter({"deepseek:inference": "from the keyless tier"})
    orch = _orchestrator(adapter, _tiers(official_key=None, aggregator_key=None, inference_key=None))
    result = await orch.complete("deepseek", MESSAGES)
    assert result.text == "from the keyless tier"
    assert result.source_tier == "deepseek:inference"
    assert result.succeeded_on_attempt == 3
    assert adapter.calls == ["deepseek:inference"]


@pytest.mark.asyncio
async def test_skipped_tiers_count_toward_exhaustion_attempts():
    adapter = ScriptedAdapter({"deepseek:inference": UpstreamError("c down")})
    orch = _orchestrator(adapter, _tiers(official_key=None, aggregator_key=None))
    with pytest.raises(AllTiersExhaustedError) as exc:
        await orch.complete("deepseek", MESSAGES)
    assert exc.value.attempts == 3
    assert exc.value.failures[0] == ("deepseek:official", "no credential configured")


@pytest.mark.asyncio
async def test_unknown_model_uses_default_family_tiers():
    adapter = ScriptedAdapter({"deepseek:official": "ok"})
    result = await _orchestrator(adapter).complete("unknown-xyz", MESSAGES)
    assert result.source_tier == "deepseek:official"


@pytest.mark.asyncio
async def test_non_upstream_errors_propagate_without_fallback():
    adapter = ScriptedAdapter({"deepseek:official": RuntimeError("bug"), "deepseek:aggregator": "x"})
    with pytest.raises(RuntimeError):
        await _orchestrator(adapter).complete("deepseek", MESSAGES)
    assert adapter.calls == ["deepseek:official"]


@pytest.mark.asyncio
async def test_open_stream_falls_back_when_tier_fails_before_first_increment():
    adapter = ScriptedAdapter(
        {
            "deepseek:official": [UpstreamError("refused", http_status=500)],
            "deepseek:aggregator": ["Hel", "lo"],
            "deepseek:inference": ["never"],
        }
    )
    stream = await _orchestrator(adapter).open_stream("deepseek", MESSAGES)
    assert stream.source_tier == "deepseek:aggregator"
    assert stream.attempt == 2
    assert [p async for p in stream] == ["Hel", "lo"]
    assert adapter.calls == ["deepseek:official", "deepseek:aggregator"]


@pytest.mark.asyncio
async def test_open_stream_treats_empty_stream_as_tier_failure():
    adapter = ScriptedAdapter(
        {
            "deepseek:official": ["", ""],
            "deepseek:aggregator": ["ok"],
            "deepseek:inference": ["never"],
        }
    )
    stream = await _orchestrator(adapter).open_stream("deepseek", MESSAGES)
    assert stream.source_tier == "deepseek:aggregator"
    assert "deepseek:official" in adapter.closed


@pytest.mark.asyncio
async def test_open_stream_commits_after_first_increment():
    adapter = ScriptedAdapter(
        {
            "deepseek:official": ["Hel", "lo", UpstreamError("dropped")],
            "deepseek:aggregator": ["never"],
            "deepseek:inference": ["never"],
        }
    )
    stream = await _orchestrator(adapter).open_stream("deepseek", MESSAGES)
    received = []
    with pytest.raises(UpstreamError):
        async for piece in stream:
            received.append(piece)
    assert received == ["Hel", "lo"]
    assert adapter.calls == ["deepseek:official"]


@pytest.mark.asyncio
async def test_open_stream_exhaustion_raises_before_any_increment():
    adapter = ScriptedAdapter(
        {
            "deepseek:official": [UpstreamError("a")],
            "deepseek:aggregator": [UpstreamError("b")],
            "deepseek:inference": [UpstreamError("c")],
        }
    )
    with pytest.raises(AllTiersExhaustedError) as exc:
        await _orchestrator(adapter).open_stream("deepseek", MESSAGES)
    assert exc.value.attempts == 3


@pytest.mark.asyncio
async def test_tiered_stream_aclose_closes_upstream():
    adapter = ScriptedAdapter(
        {"deepseek:official": ["a", "b", "c"], "deepseek:aggregator": [], "deepseek:inference": []}
    )
    stream = await _orchestrator(adapter).open_stream("deepseek", MESSAGES)
    assert await stream.__anext__() == "a"
    await stream.aclose()
    assert adapter.closed == ["deepseek:official"]


@pytest.mark.asyncio
async def test_open_stream_abandons_a_tier_that_only_sends_keep_alives():
    async def keep_alives():
        while True:
            yield b": PROCESSING\n\n"
            await asyncio.sleep(0.02)

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "a.test":
            return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=keep_alives())
        events = [json.dumps({"choices": [{"delta": {"content": "ok"}}]}), "[DONE]"]
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            text="".join(f"data: {e}\n\n" for e in events),
        )

    tiers = [
        ProviderTier("deepseek", ProviderKind.OFFICIAL, 1, "https://a.test", "m-a", "sk-a", timeout_seconds=0.2),
        ProviderTier("deepseek", ProviderKind.AGGREGATOR, 2, "https://b.test", "m-b", "sk-b", timeout_seconds=0.2),
        ProviderTier("deepseek", ProviderKind.INFERENCE, 3, "https://c.test", "m-c", None, timeout_seconds=0.2),
    ]
    registry = ModelRegistry({"deepseek": tiers}, default_model="deepseek")
    pool = ProviderPool(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    stream = await asyncio.wait_for(FallbackOrchestrator(registry, pool).open_stream("deepseek", MESSAGES), 2.0)

    assert stream.source_tier == "deepseek:aggregator"
    assert stream.attempt == 2
    assert [p async for p in stream] == ["ok"]
    await pool.close()


class SlowAdapter(ScriptedAdapter):
    async def complete_once(self, tier, messages):
        if tier.kind is ProviderKind.OFFICIAL:
            self.calls.append(tier.id)
            await asyncio.sleep(10)
        return await super().complete_once(tier, messages)

    async def stream(self, tier, messages):
        if tier.kind is ProviderKind.OFFICIAL:
            self.calls.append(tier.id)
            try:
                await asyncio.sleep(10)
                yield "too late"
            finally:
                self.closed.append(tier.id)
            return
        async for piece in super().stream(tier, messages):
            yield piece


def _quick_tiers() -> list[ProviderTier]:
    return [
        ProviderTier("deepseek", ProviderKind.OFFICIAL, 1, "https://a.test", "m-a", "sk-a", timeout_seconds=0.05),
        ProviderTier("deepseek", ProviderKind.AGGREGATOR, 2, "https://b.test", "m-b", "sk-b", timeout_seconds=0.05),
        ProviderTier("deepseek", ProviderKind.INFERENCE, 3, "https://c.test", "m-c", None, timeout_seconds=0.05),
    ]


@pytest.mark.asyncio
async def test_complete_times_out_a_hanging_tier_and_falls_back():
    adapter = SlowAdapter({"deepseek:aggregator": "fallback answer", "deepseek:inference": "never"})
    result = await _orchestrator(adapter, _quick_tiers()).complete("deepseek", MESSAGES)
    assert result.text == "fallback answer"
    assert result.source_tier == "deepseek:aggregator"


@pytest.mark.asyncio
async def test_stream_deadline_failure_is_recorded_and_upstream_closed():
    adapter = SlowAdapter({"deepseek:aggregator": [UpstreamError("b down")], "deepseek:inference": [UpstreamError("c")]})
    with pytest.raises(AllTiersExhaustedError) as exc:
        await _orchestrator(adapter, _quick_tiers()).open_stream("deepseek", MESSAGES)
    assert exc.value.failures[0][0] == "deepseek:official"
    assert "No response within 0.05s" in exc.value.failures[0][1]
    assert "deepseek:official" in adapter.closed
