from datetime import datetime, timedelta, timezone

from homestead.service.runtime import check_rate_limit, get_runtime


async def test_bucket_spends_then_refuses():
    runtime = get_runtime()
    results = [await check_rate_limit(runtime, "login:alice", 3) for _ in range(4)]
    assert results == [True, True, True, False]
    assert await check_rate_limit(runtime, "login:bob", 3) is True


async def test_zero_limit_disables():
    runtime = get_runtime()
    assert all([await check_rate_limit(runtime, "login:alice", 0) for _ in range(50)])
    assert runtime._local_rate_limits == {}


async def test_idle_buckets_are_evicted():
    runtime = get_runtime()
    long_ago = datetime.now(timezone.utc) - timedelta(minutes=5)
    for n in range(100):
        runtime._local_rate_limits[f"login:attacker-{n}"] = (0.0, long_ago, 60)
    runtime._local_rate_limits["login:recent"] = (1.0, datetime.now(timezone.utc), 60)
    runtime._local_rate_limit_swept_at = long_ago

    assert await check_rate_limit(runtime, "login:alice", 10) is True

    assert set(runtime._local_rate_limits) == {"login:recent", "login:alice"}


async def test_sweep_waits_for_a_full_window():
    runtime = get_runtime()
    stale = datetime.now(timezone.utc) - timedelta(minutes=5)
    runtime._local_rate_limits["login:attacker"] = (0.0, stale, 60)
    runtime._local_rate_limit_swept_at = datetime.now(timezone.utc)

    await check_rate_limit(runtime, "login:alice", 10)

    assert "login:attacker" in runtime._local_rate_limits
