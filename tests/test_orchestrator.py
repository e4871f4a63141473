import asyncio
from unittest.mock import AsyncMock

import pytest

from provider_orchestration.backends.base import BackendAdapter
from provider_orchestration.core.credentials import CredentialPool
from provider_orchestration.core.exceptions import AllBackendsExhaustedError
from provider_orchestration.core.health import HealthScorer
from provider_orchestration.core.orchestrator import Orchestrator
from provider_orchestration.core.quota import QuotaTracker
from provider_orchestration.core.types import BackendConfig, Completion, ErrorKind


class MockError(Exception):
    def __init__(self, status, message=''):
        super().__init__(message or f"HTTP {status}")
        self.status_code = status


class FakeAdapter(BackendAdapter):
    def __init__(self, name, behaviour=None, models=None, prefixes=(), rpm=None, delay=0.0):
        super().__init__(BackendConfig(
            name=name,
            models=models or [f"{name}-default"],
            model_prefixes=prefixes,
            requests_per_minute=rpm
        ))
        self.behaviour = behaviour or (lambda prompt, model, key: f"{self.name}:{prompt}")
        self.delay = delay
        self.calls = []

    async def complete(self, prompt, model, api_key):
        self.calls.append((model, api_key))
        if self.delay:
            await asyncio.sleep(self.delay)
        result = self.behaviour(prompt, model, api_key)
        if isinstance(result, Exception):
            raise result
        return Completion(text=result, tokens=len(result))


def failing(error):
    return lambda prompt, model, key: error


def build(clock, adapters, keys=None, primary=None, request_timeout=None):
    keys = keys or {}
    quota = QuotaTracker(clock=clock)
    for a in adapters:
        quota.register(a.name, a.config.requests_per_minute)
    pools = {
        a.name: CredentialPool(a.name, keys.get(a.name, [f"{a.name}-key-000001"]), clock=clock)
        for a in adapters
    }
    health = HealthScorer(clock=clock)
    orchestrator = Orchestrator(adapters, pools, quota, health, primary=primary, request_timeout=request_timeout, clock=clock)
    return orchestrator, pools, quota, health


@pytest.mark.asyncio
async def test_fails_over_from_broken_primary_after_one_attempt(clock):
    a = FakeAdapter('a', failing(MockError(500, 'internal error')))
    b = FakeAdapter('b')
    orchestrator, pools, quota, health = build(clock, [a, b], primary='a')

    result = await orchestrator.generate('hello')

    assert result == 'b:hello'
    assert len(a.calls) == 1
    assert len(b.calls) == 1
    assert health.snapshot('a').failure_count == 1
    assert health.snapshot('b').success_count == 1
    assert quota.snapshot('a').requests_this_minute == 1
    assert pools['a'].credentials[0].cooldown_until is None


@pytest.mark.asyncio
async def test_all_credentials_cooling_down_fails_without_network_call(clock):
    a = FakeAdapter('a')
    orchestrator, pools, _, _ = build(clock, [a], keys={'a': ['a-key-000001', 'a-key-000002']}, primary='a')
    for _ in range(2):
        pools['a'].mark_quota_exceeded(pools['a'].next())

    with pytest.raises(AllBackendsExhaustedError) as exc_info:
        await orchestrator.generate('hello')

    assert a.calls == []
    assert [r.kind for r in exc_info.value.attempts] == [ErrorKind.NO_CREDENTIAL_AVAILABLE]


@pytest.mark.asyncio
async def test_quota_error_cools_down_credential_and_moves_on(clock):
    a = FakeAdapter('a', failing(MockError(429)))
    b = FakeAdapter('b')
    orchestrator, pools, quota, health = build(clock, [a, b], primary='a')

    assert await orchestrator.generate('x') == 'b:x'

    key = pools['a'].credentials[0]
    assert key.cooldown_until == clock() + 300
    assert key.error_count == 1
    assert quota.snapshot('a').exceeded is True
    assert health.snapshot('a').quota_exceeded is True


@pytest.mark.asyncio
async def test_non_quota_error_does_not_cool_down(clock):
    a = FakeAdapter('a', failing(RuntimeError('connection reset')))
    orchestrator, pools, quota, _ = build(clock, [a], primary='a')

    with pytest.raises(AllBackendsExhaustedError) as exc_info:
        await orchestrator.generate('x')

    assert pools['a'].credentials[0].cooldown_until is None
    assert quota.snapshot('a').exceeded is False
    assert exc_info.value.attempts[0].kind == ErrorKind.BACKEND_CALL_FAILED


@pytest.mark.asyncio
async def test_call_order_preferred_then_primary_then_rest(clock):
    adapters = [FakeAdapter(n) for n in ('a', 'b', 'c', 'd')]
    orchestrator, _, _, health = build(clock, adapters, primary='c')
    health.record_success('b', 900)

    assert orchestrator.call_order('d') == ['d', 'c', 'a', 'b']
    assert orchestrator.call_order('c') == ['c', 'a', 'd', 'b']
    assert orchestrator.call_order(None) == ['c', 'a', 'd', 'b']
    assert orchestrator.call_order('unknown') == ['c', 'a', 'd', 'b']


@pytest.mark.asyncio
async def test_preferred_backend_is_used_first(clock):
    a, b = FakeAdapter('a'), FakeAdapter('b')
    orchestrator, _, _, _ = build(clock, [a, b], primary='a')

    assert await orchestrator.generate('x', preferred_backend='b') == 'b:x'
    assert a.calls == []


@pytest.mark.asyncio
async def test_backend_without_keys_is_disabled(clock):
    a, b = FakeAdapter('a'), FakeAdapter('b')
    orchestrator, _, _, _ = build(clock, [a, b], keys={'a': []}, primary='a')

    assert orchestrator.call_order() == ['b']
    assert orchestrator.status()['a'].available is False
    assert await orchestrator.generate('x', preferred_backend='a') == 'b:x'


@pytest.mark.asyncio
async def test_rate_limited_backend_skipped_without_failure(clock):
    a = FakeAdapter('a', rpm=1)
    b = FakeAdapter('b')
    orchestrator, _, _, health = build(clock, [a, b], primary='a')

    assert await orchestrator.generate('1') == 'a:1'
    assert await orchestrator.generate('2') == 'b:2'
    assert len(a.calls) == 1
    assert health.snapshot('a').failure_count == 0

    clock.advance(60)
    assert await orchestrator.generate('3') == 'a:3'


@pytest.mark.asyncio
async def test_blacklisted_backend_dropped_but_used_when_it_is_the_only_one(clock):
    a, b = FakeAdapter('a'), FakeAdapter('b')
    orchestrator, _, _, health = build(clock, [a, b], primary='a')
    for _ in range(4):
        health.record_failure('a', 'down')

    assert orchestrator.call_order() == ['b']
    for _ in range(4):
        health.record_failure('b', 'down')
    assert orchestrator.call_order() == ['a']
    assert await orchestrator.generate('x') == 'a:x'


@pytest.mark.asyncio
async def test_preferred_model_only_applies_to_matching_backend(clock):
    gem = FakeAdapter('gemini', models=['gemini-2.0-flash', 'gemini-2.5-pro'], prefixes=('gemini',))
    oai = FakeAdapter('openai', models=['gpt-3.5-turbo'], prefixes=('gpt', 'o1'))
    orchestrator, _, _, _ = build(clock, [gem, oai], primary='gemini')

    await orchestrator.generate('x', preferred_model='gemini-2.5-pro')
    await orchestrator.generate('x', preferred_backend='openai', preferred_model='gemini-2.5-pro')

    assert gem.calls[0][0] == 'gemini-2.5-pro'
    assert oai.calls[0][0] == 'gpt-3.5-turbo'


@pytest.mark.asyncio
async def test_keys_rotate_across_calls(clock):
    a = FakeAdapter('a')
    orchestrator, _, _, _ = build(clock, [a], keys={'a': ['a-key-000001', 'a-key-000002']}, primary='a')

    for _ in range(3):
        await orchestrator.generate('x')
    assert [k for _, k in a.calls] == ['a-key-000001', 'a-key-000002', 'a-key-000001']


@pytest.mark.asyncio
async def test_request_timeout_counts_as_backend_failure(clock):
    slow = FakeAdapter('slow', delay=0.5)
    fast = FakeAdapter('fast')
    orchestrator, _, _, health = build(clock, [slow, fast], primary='slow', request_timeout=0.05)

    assert await orchestrator.generate('x') == 'fast:x'
    assert 'timed out' in health.snapshot('slow').last_error


@pytest.mark.asyncio
async def test_events_emitted_and_listener_errors_contained(clock):
    a = FakeAdapter('a', failing(MockError(500)))
    orchestrator, _, _, _ = build(clock, [a], primary='a')
    seen = []
    orchestrator.on('attempt', lambda backend, model: seen.append(('attempt', backend)))
    orchestrator.on('failed', lambda backend, err: seen.append(('failed', backend)))
    orchestrator.on('exhausted', lambda attempts: seen.append(('exhausted', len(attempts))))
    orchestrator.on('failed', lambda backend, err: 1 / 0)

    with pytest.raises(AllBackendsExhaustedError):
        await orchestrator.generate('x')
    assert seen == [('attempt', 'a'), ('failed', 'a'), ('exhausted', 1)]


@pytest.mark.asyncio
async def test_empty_error_message_falls_back_to_exception_name(clock):
    a = FakeAdapter('a')
    a.complete = AsyncMock(side_effect=RuntimeError())
    orchestrator, _, quota, health = build(clock, [a], primary='a')

    with pytest.raises(AllBackendsExhaustedError) as exc_info:
        await orchestrator.generate('x')

    a.complete.assert_awaited_once_with('x', 'a-default', 'a-key-000001')
    assert exc_info.value.attempts[0].message == 'a call failed: RuntimeError'
    assert quota.snapshot('a').last_error == 'RuntimeError'
    assert health.snapshot('a').last_error == 'RuntimeError'


@pytest.mark.asyncio
async def test_backend_name_does_not_leak_into_quota_classification(clock):
    proxy = FakeAdapter('quota-exceeded-proxy')
    proxy.complete = AsyncMock(side_effect=MockError(500, 'internal error'))
    orchestrator, pools, quota, health = build(clock, [proxy], primary='quota-exceeded-proxy')

    with pytest.raises(AllBackendsExhaustedError):
        await orchestrator.generate('x')

    snapshot = quota.snapshot('quota-exceeded-proxy')
    assert snapshot.exceeded is False
    assert snapshot.last_error == 'internal error'
    assert health.snapshot('quota-exceeded-proxy').quota_exceeded is False
    assert pools['quota-exceeded-proxy'].credentials[0].cooldown_until is None


@pytest.mark.asyncio
async def test_status_code_429_marks_quota_even_with_plain_message(clock):
    a = FakeAdapter('a')
    a.complete = AsyncMock(side_effect=MockError(429, 'slow down please'))
    orchestrator, pools, quota, _ = build(clock, [a], primary='a')

    with pytest.raises(AllBackendsExhaustedError) as exc_info:
        await orchestrator.generate('x')

    assert exc_info.value.attempts[0].kind == ErrorKind.QUOTA_EXCEEDED
    assert quota.snapshot('a').exceeded is True
    assert pools['a'].credentials[0].cooldown_until == clock() + 300


@pytest.mark.asyncio
async def test_adapter_timeout_error_keeps_its_own_message(clock):
    a = FakeAdapter('a', failing(TimeoutError('read timeout from upstream')))
    b = FakeAdapter('b')
    orchestrator, _, _, health = build(clock, [a, b], primary='a', request_timeout=5)

    assert await orchestrator.generate('x') == 'b:x'
    assert health.snapshot('a').last_error == 'read timeout from upstream'
