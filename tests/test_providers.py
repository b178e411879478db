import pytest

from codepilot.engine.errors import TransportError
from codepilot.engine.providers.base import ModelRequest, RetryingProvider, StreamEnd, TextDelta

from conftest import ScriptedProvider, text_turn

REQUEST = ModelRequest(system_prompt="sys", messages=[])


async def _collect(provider):
    return [chunk async for chunk in provider.stream(REQUEST)]


@pytest.mark.asyncio
async def test_retries_until_success():
    inner = ScriptedProvider([ConnectionError("reset"), TimeoutError("slow"), text_turn("hi")])
    provider = RetryingProvider(inner, max_attempts=3, base_delay=0.0)
    chunks = await _collect(provider)
    assert chunks[0] == TextDelta("hi")
    assert isinstance(chunks[-1], StreamEnd)
    assert len(inner.requests) == 3
    assert provider.name == "scripted"


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts():
    inner = ScriptedProvider([ConnectionError("reset")] * 3)
    provider = RetryingProvider(inner, max_attempts=2, base_delay=0.0)
    with pytest.raises(TransportError, match="after 2 attempt") as info:
        await _collect(provider)
    assert info.value.attempts == 2
    assert len(inner.requests) == 2


@pytest.mark.asyncio
async def test_non_retriable_fails_fast():
    inner = ScriptedProvider([ValueError("bad request"), text_turn("never")])
    provider = RetryingProvider(
        inner, max_attempts=5, base_delay=0.0,
        is_retriable=lambda exc: not isinstance(exc, ValueError),
    )
    with pytest.raises(TransportError, match="after 1 attempt"):
        await _collect(provider)
    assert len(inner.requests) == 1


class _BreaksMidStream(ScriptedProvider):

    async def stream(self, request):
        self.requests.append(request)
        yield TextDelta("partial")
        raise ConnectionError("dropped")


@pytest.mark.asyncio
async def test_failure_after_output_is_not_retried():
    inner = _BreaksMidStream([])
    provider = RetryingProvider(inner, max_attempts=5, base_delay=0.0)
    seen = []
    with pytest.raises(TransportError, match="mid-response"):
        async for chunk in provider.stream(REQUEST):
            seen.append(chunk)
    assert seen == [TextDelta("partial")]
    assert len(inner.requests) == 1
