import asyncio
from dataclasses import replace
from datetime import timedelta

import pytest

from meshvpn.cache import SafeCache
from meshvpn.core.config import Settings
from meshvpn.core.errors import ClaimTooSoon, NotFound
from meshvpn.core.time import ensure_aware_utc
from meshvpn.db.models import Node, RewardTier
from meshvpn.db.session import session_scope
from meshvpn.services.registry.service import NodeInfo
from meshvpn.services.rewards.service import RewardEngine, reward_tier, rewards_cache_key

HOST = "HOST_WALLET_0001"


async def _host(services, **info):
    info.setdefault("bandwidth", 50)
    return await services.registry.connect(HOST, NodeInfo(**info), is_host=True)


@pytest.mark.asyncio
async def test_first_calculation_uses_formula(services):
    await _host(services)

    res = await services.rewards.calculate_rewards(HOST)

    # (50 * 0.01 + 0) * 1.0 quality * 1.0 location * 1.5 demand
    assert res.daily_reward == pytest.approx(0.75)
    assert res.total_earned == pytest.approx(0.0)
    assert res.demand_multiplier == pytest.approx(1.5)
    assert res.reward_tier == RewardTier.STARTER.value


@pytest.mark.asyncio
async def test_underserved_location_and_cached_demand(services):
    await _host(services, country="AF", region="africa")
    await services.rewards.set_demand_multiplier("africa", 2.0)

    res = await services.rewards.calculate_rewards(HOST)
    assert res.location_multiplier == pytest.approx(1.2)
    assert res.daily_reward == pytest.approx(50 * 0.01 * 1.2 * 2.0)


@pytest.mark.asyncio
async def test_cached_result_returned_verbatim(services, cache):
    await _host(services)
    first = await services.rewards.calculate_rewards(HOST)

    await services.registry.connect(HOST, NodeInfo(bandwidth=500), is_host=True)
    second = await services.rewards.calculate_rewards(HOST)

    assert second == first
    assert await cache.get_json(rewards_cache_key(HOST)) is not None


@pytest.mark.asyncio
async def test_throttled_within_the_hour(services, cache, clock, fetch_node):
    await _host(services)
    first = await services.rewards.calculate_rewards(HOST)
    await cache.delete(rewards_cache_key(HOST))

    clock.advance(minutes=30)
    second = await services.rewards.calculate_rewards(HOST)

    assert second.daily_reward == first.daily_reward
    assert second.total_earned == first.total_earned
    node = await fetch_node(HOST)
    assert ensure_aware_utc(node.last_reward_calculation) == clock.now - timedelta(minutes=30)


@pytest.mark.asyncio
async def test_total_earned_accrues_by_elapsed_time(services, cache, clock):
    await _host(services)
    first = await services.rewards.calculate_rewards(HOST)

    for _ in range(3):
        clock.advance(hours=2)
        await cache.delete(rewards_cache_key(HOST))
        res = await services.rewards.calculate_rewards(HOST)

    assert res.total_earned == pytest.approx(first.daily_reward * 6 / 24)
    assert res.total_earned >= first.total_earned


@pytest.mark.asyncio
async def test_non_host_gets_zero_result(services):
    await services.registry.connect("USER_WALLET", NodeInfo(bandwidth=10))

    res = await services.rewards.calculate_rewards("USER_WALLET")
    assert res.daily_reward == 0
    assert res.message == "Node is not a host"


@pytest.mark.asyncio
async def test_unknown_node(services):
    with pytest.raises(NotFound):
        await services.rewards.get_rewards("NOPE")


def test_tier_thresholds_are_strict():
    s = Settings(database_url="sqlite+aiosqlite://")
    assert reward_tier(1000, s) is RewardTier.STARTER
    assert reward_tier(1000.01, s) is RewardTier.PRO
    assert reward_tier(5000, s) is RewardTier.PRO
    assert reward_tier(5001, s) is RewardTier.ELITE


@pytest.mark.asyncio
async def test_tier_follows_total(services, sessions, clock):
    await _host(services)
    async with session_scope(sessions) as session:
        node = await session.get(Node, HOST)
        node.total_earned = 1200.0

    clock.advance(hours=2)
    res = await services.rewards.calculate_rewards(HOST)
    assert res.reward_tier == RewardTier.PRO.value


@pytest.mark.asyncio
async def test_daily_claim_gate(services, clock, cache):
    await _host(services, bandwidth=100)
    clock.advance(hours=1)
    await services.registry.disconnect(HOST)

    first = await services.rewards.claim(HOST)
    assert first.claimed_amount == pytest.approx(1.0)
    assert first.next_claim_time == clock.now + timedelta(hours=24)
    assert await cache.get(rewards_cache_key(HOST)) is None

    clock.advance(hours=23)
    with pytest.raises(ClaimTooSoon) as exc:
        await services.rewards.claim(HOST)
    assert exc.value.remaining == timedelta(hours=1)

    clock.advance(hours=1)
    second = await services.rewards.claim(HOST)
    # only the uptime bonus accrued since: 1h * 0.005 * 1.5 over 24h
    assert second.claimed_amount == pytest.approx(0.0075)

    status = await services.rewards.claim_status(HOST)
    assert status["canClaim"] is False
    assert status["totalRewardsClaimed"] == pytest.approx(1.0075)
    assert [c["amount"] for c in status["claimHistory"]] == pytest.approx([0.0075, 1.0])


@pytest.mark.asyncio
async def test_cache_failure_degrades_to_store(settings, sessions, services, clock, failing_cache):
    await _host(services)
    broken = SafeCache(failing_cache)
    engine = RewardEngine(sessions, settings, broken, clock=clock)

    res = await engine.calculate_rewards(HOST)
    assert res.daily_reward == pytest.approx(0.75)
    assert "redis down" in broken.last_error

    claimed = await engine.claim(HOST)
    assert claimed.claimed_amount == pytest.approx(0.0)


@pytest.mark.asyncio
async def test_shared_bytes_drive_bandwidth_term(services, clock):
    await _host(services, bandwidth=50)
    await services.connections.open(HOST, "CLIENT_WALLET_0001")
    await services.connections.record_activity(HOST, "CLIENT_WALLET_0001", bandwidth_bytes=1024 * 1024)

    clock.advance(hours=2)
    res = await services.rewards.calculate_rewards(HOST)

    # 1 MiB shared outweighs the 50 reported on connect
    assert res.daily_reward == pytest.approx(1024 * 1024 * 0.01 * 1.5)


@pytest.mark.asyncio
async def test_recalc_interval_is_configurable(settings, sessions, services, cache, clock):
    await _host(services)
    engine = RewardEngine(sessions, replace(settings, reward_recalc_interval_seconds=600), cache, clock=clock)
    first = await engine.calculate_rewards(HOST)
    await cache.delete(rewards_cache_key(HOST))

    clock.advance(minutes=5)
    throttled = await engine.calculate_rewards(HOST)
    assert throttled.last_calculation == first.last_calculation
    await cache.delete(rewards_cache_key(HOST))

    clock.advance(minutes=6)
    fresh = await engine.calculate_rewards(HOST)
    assert fresh.last_calculation == clock.now.isoformat()
    assert fresh.total_earned == pytest.approx(first.daily_reward * (11 / 60) / 24)


@pytest.mark.asyncio
async def test_concurrent_claims_pay_once(services, clock):
    await _host(services, bandwidth=100)
    clock.advance(hours=1)
    await services.registry.disconnect(HOST)

    results = await asyncio.gather(
        services.rewards.claim(HOST),
        services.rewards.claim(HOST),
        return_exceptions=True,
    )

    paid = [r for r in results if not isinstance(r, Exception)]
    refused = [r for r in results if isinstance(r, ClaimTooSoon)]
    assert len(paid) == 1 and len(refused) == 1
    assert paid[0].claimed_amount == pytest.approx(1.0)

    status = await services.rewards.claim_status(HOST)
    assert status["totalRewardsClaimed"] == pytest.approx(1.0)
    assert len(status["claimHistory"]) == 1
