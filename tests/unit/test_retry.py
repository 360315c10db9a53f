import pytest

from resumable.retry import RetryPolicy


def test_delay_grows_with_attempt():
    policy = RetryPolicy(retries=3, backoff_base=2, jitter=0)
    assert policy.delay_for(1) == 2
    assert policy.delay_for(2) == 4


def test_delay_jitter_bounds():
    policy = RetryPolicy(retries=1, backoff_base=2, jitter=0.5)
    for _ in range(20):
        assert 2 <= policy.delay_for(1) <= 2.5


def test_delay_is_capped():
    policy = RetryPolicy(retries=10, backoff_base=2, jitter=0, max_delay=5)
    assert policy.delay_for(8) == 5


def test_coerce_accepts_count_or_policy():
    assert RetryPolicy.coerce(3).retries == 3
    assert RetryPolicy.coerce(None).retries == 0
    policy = RetryPolicy(retries=1, jitter=0)
    assert RetryPolicy.coerce(policy) is policy


def test_allows_only_configured_retries():
    policy = RetryPolicy(retries=2)
    assert policy.allows(1)
    assert policy.allows(2)
    assert not policy.allows(3)


def test_negative_retries_rejected():
    with pytest.raises(ValueError):
        RetryPolicy(retries=-1)


@pytest.mark.asyncio
async def test_wait_sleeps_for_computed_delay(monkeypatch):
    slept = []

    async def fake_sleep(delay):
        slept.append(delay)

    monkeypatch.setattr("resumable.retry.asyncio.sleep", fake_sleep)

    await RetryPolicy(retries=2, backoff_base=3, jitter=0).wait(2)
    assert slept == [9]
