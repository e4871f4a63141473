import asyncio

import pytest

from provider_orchestration.core.cache import (
    MISS,
    ApiResponseCache,
    EmbeddingCache,
    GenerationCache,
    ResultCache,
)


@pytest.fixture
def cache(clock):
    return ResultCache(default_ttl_seconds=60, clock=clock)


def test_key_is_independent_of_param_order():
    a = ResultCache.make_key('generation', {'prompt': 'hi', 'model': 'gpt-4', 'opts': {'x': 1, 'y': 2}})
    b = ResultCache.make_key('generation', {'opts': {'y': 2, 'x': 1}, 'model': 'gpt-4', 'prompt': 'hi'})
    assert a == b
    assert a.startswith('generation:')
    assert a != ResultCache.make_key('embedding', {'prompt': 'hi', 'model': 'gpt-4', 'opts': {'x': 1, 'y': 2}})


def test_get_set_and_hit_accounting(cache):
    assert cache.get('generation', {'prompt': 'p'}) is MISS
    cache.set('generation', {'prompt': 'p'}, 'text')

    assert cache.get('generation', {'prompt': 'p'}) == 'text'
    assert cache.get('generation', {'prompt': 'p'}) == 'text'

    stats = cache.stats()
    assert stats.hits == 2
    assert stats.misses == 1
    assert stats.hit_rate == pytest.approx(66.67)
    assert stats.size == 1


def test_expired_entry_is_a_miss_without_sweep(cache, clock):
    cache.set('generation', {'prompt': 'p'}, 'text', ttl_seconds=10)
    clock.advance(9)
    assert cache.get('generation', {'prompt': 'p'}) == 'text'

    clock.advance(1)
    assert cache.get('generation', {'prompt': 'p'}) is MISS
    assert cache.stats().size == 0
    assert cache.evictions == 1


def test_sweep_removes_only_expired(cache, clock):
    cache.set('generation', {'prompt': 'short'}, 'a', ttl_seconds=5)
    cache.set('generation', {'prompt': 'long'}, 'b', ttl_seconds=500)
    clock.advance(10)

    assert cache.sweep() == 1
    assert cache.has('generation', {'prompt': 'long'})
    assert not cache.has('generation', {'prompt': 'short'})


def test_invalidate_by_category_and_key(cache):
    key = cache.set('generation', {'prompt': 'a'}, 1)
    cache.set('generation', {'prompt': 'b'}, 2)
    cache.set('embedding', {'text': 'a'}, [0.1])

    assert cache.invalidate_key(key) is True
    assert cache.invalidate_key(key) is False
    assert cache.invalidate('generation') == 1
    assert cache.stats().size == 1
    assert cache.invalidate_pattern('^embedding:') == 1
    assert cache.stats().size == 0


def test_falsy_values_are_cached(cache):
    cache.set('api', {'q': 1}, '')
    assert cache.get('api', {'q': 1}) == ''
    assert cache.get('api', {'q': 1}) is not MISS


def test_hot_keys_sorted_by_hits(cache):
    cache.set('generation', {'prompt': 'cold'}, 'c')
    cache.set('generation', {'prompt': 'hot'}, 'h')
    for _ in range(3):
        cache.get('generation', {'prompt': 'hot'})
    cache.get('generation', {'prompt': 'cold'})

    hot = cache.hot_keys(limit=1)
    assert len(hot) == 1
    assert hot[0].hits == 3
    assert hot[0].category == 'generation'


def test_clear_and_delete(cache):
    cache.set('generation', {'prompt': 'a'}, 1)
    cache.set('generation', {'prompt': 'b'}, 2)
    assert cache.delete('generation', {'prompt': 'a'}) is True
    assert cache.clear() == 1
    assert cache.stats().memory_size_estimate == '0 Bytes'


def test_category_views_share_store_with_their_ttls(cache, clock):
    generations = GenerationCache(cache)
    embeddings = EmbeddingCache(cache)
    responses = ApiResponseCache(cache)

    generations.set('explain photosynthesis', 'text', backend='gemini', model=None)
    embeddings.set('x' * 150, [0.1, 0.2])
    responses.set('openai', '/chat/completions', {'b': 2, 'a': 1}, {'ok': True})

    assert embeddings.get('x' * 100 + 'different tail') == [0.1, 0.2]
    assert responses.get('openai', '/chat/completions', {'a': 1, 'b': 2}) == {'ok': True}
    assert cache.stats().size == 3

    clock.advance(31 * 60)
    assert responses.get('openai', '/chat/completions', {'a': 1, 'b': 2}) is MISS
    assert generations.has('explain photosynthesis', backend='gemini', model=None)

    clock.advance(90 * 60)
    assert generations.get('explain photosynthesis', backend='gemini', model=None) is MISS
    assert embeddings.has('x' * 100)


@pytest.mark.asyncio
async def test_background_sweep_runs_periodically(clock):
    cache = ResultCache(default_ttl_seconds=1, sweep_interval=0.01, clock=clock)
    cache.set('generation', {'prompt': 'p'}, 'text')
    clock.advance(2)

    cache.start()
    await asyncio.sleep(0.05)
    await cache.stop()

    assert cache.entries == {}
    assert cache.evictions == 1


def test_invalidate_matches_whole_category_only(cache):
    cache.set('a', {'q': 1}, 'short category')
    cache.set('a:b', {'q': 1}, 'nested category')

    assert cache.invalidate('a') == 1
    assert cache.get('a:b', {'q': 1}) == 'nested category'
    assert cache.get('a', {'q': 1}) is MISS
