from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any

from meshvpn import repo
from meshvpn.cache import SafeCache
from meshvpn.core.config import Settings
from meshvpn.core.errors import ClaimTooSoon, NotFound, ValidationError
from meshvpn.core.time import Clock, ensure_aware_utc, utcnow
from meshvpn.db.locks import KeyedLocks, advisory_xact_lock
from meshvpn.db.models import Node, RewardClaim, RewardTier
from meshvpn.db.session import SessionFactory, session_scope
from meshvpn.services.registry.service import require_wallet

log = logging.getLogger(__name__)


def rewards_cache_key(wallet_address: str) -> str:
    return f"rewards:{wallet_address}"


def demand_cache_key(region: str | None) -> str:
    return f"demand:{region or 'Unknown'}"


def reward_tier(total_earned: float, settings: Settings) -> RewardTier:
    """The one tier table. Thresholds are strict: exactly 1000 is still STARTER."""
    if total_earned > settings.tier_elite_threshold:
        return RewardTier.ELITE
    if total_earned > settings.tier_pro_threshold:
        return RewardTier.PRO
    return RewardTier.STARTER


@dataclass(frozen=True)
class RewardResult:
    wallet_address: str
    daily_reward: float
    total_earned: float
    reward_tier: str
    node_stats: dict[str, Any] = field(default_factory=dict)
    quality_multiplier: float = 0.0
    location_multiplier: float = 1.0
    demand_multiplier: float = 1.0
    uptime_bonus: float = 0.0
    last_calculation: str | None = None
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "RewardResult":
        return cls(
            wallet_address=d["wallet_address"],
            daily_reward=float(d["daily_reward"]),
            total_earned=float(d["total_earned"]),
            reward_tier=d["reward_tier"],
            node_stats=dict(d.get("node_stats") or {}),
            quality_multiplier=float(d.get("quality_multiplier", 0.0)),
            location_multiplier=float(d.get("location_multiplier", 1.0)),
            demand_multiplier=float(d.get("demand_multiplier", 1.0)),
            uptime_bonus=float(d.get("uptime_bonus", 0.0)),
            last_calculation=d.get("last_calculation"),
            message=d.get("message"),
        )


@dataclass(frozen=True)
class ClaimResult:
    wallet_address: str
    claimed_amount: float
    next_claim_time: datetime


class RewardEngine:
    """Hourly-throttled reward accrual for HOST nodes, plus the daily claim gate.

    Results are cached under ``rewards:{wallet}``. A cached result is returned
    as-is, so figures can lag behind a claim or reconnect for up to the cache
    TTL.
    """

    def __init__(
        self,
        sessions: SessionFactory,
        settings: Settings,
        cache: SafeCache,
        *,
        locks: KeyedLocks | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.sessions = sessions
        self.settings = settings
        self.cache = cache
        self.locks = locks or KeyedLocks()
        self.clock = clock

    @property
    def claim_interval(self) -> timedelta:
        return timedelta(hours=self.settings.claim_interval_hours)

    async def calculate_rewards(self, wallet_address: str) -> RewardResult:
        wallet_address = require_wallet(wallet_address)
        key = rewards_cache_key(wallet_address)

        cached = await self.cache.get_json(key)
        if isinstance(cached, dict):
            try:
                return RewardResult.from_dict(cached)
            except (KeyError, TypeError, ValueError):
                log.warning("rewards_cache_corrupt wallet=%s", wallet_address)

        async with self.locks.hold(wallet_address):
            async with session_scope(self.sessions) as session:
                await advisory_xact_lock(session, wallet_address)
                node = await repo.get_node(session, wallet_address)
                if not node:
                    raise NotFound("Node not found")
                result, recomputed = await self._accrue(node, self.clock())
                if recomputed:
                    await session.flush()

        if recomputed:
            await self.cache.set_json(key, result.to_dict(), self.settings.reward_cache_ttl_seconds)
        return result

    async def get_rewards(self, wallet_address: str) -> RewardResult:
        return await self.calculate_rewards(wallet_address)

    async def claim(self, wallet_address: str) -> ClaimResult:
        wallet_address = require_wallet(wallet_address)
        now = self.clock()

        async with self.locks.hold(wallet_address):
            async with session_scope(self.sessions) as session:
                await advisory_xact_lock(session, wallet_address)
                account = await repo.ensure_account(session, wallet_address, now=now)

                last = ensure_aware_utc(account.last_reward_claim)
                if last is not None and now - last < self.claim_interval:
                    next_claim = last + self.claim_interval
                    raise ClaimTooSoon(remaining=next_claim - now, next_claim_time=next_claim)

                node = await repo.get_node(session, wallet_address)
                if not node:
                    raise NotFound("Node not found")
                result, _ = await self._accrue(node, now)

                claimed_total = float(account.total_rewards_claimed or 0)
                amount = max(0.0, result.total_earned - claimed_total)

                account.last_reward_claim = now
                account.total_rewards_claimed = claimed_total + amount
                session.add(RewardClaim(wallet_address=wallet_address, amount=amount, claimed_at=now))
                await session.flush()

        await self.cache.delete(rewards_cache_key(wallet_address))
        log.info("rewards_claimed wallet=%s amount=%.6f", wallet_address, amount)
        return ClaimResult(
            wallet_address=wallet_address,
            claimed_amount=amount,
            next_claim_time=now + self.claim_interval,
        )

    async def claim_status(self, wallet_address: str) -> dict[str, Any]:
        wallet_address = require_wallet(wallet_address)
        rewards = await self.calculate_rewards(wallet_address)
        now = self.clock()

        async with session_scope(self.sessions) as session:
            account = await repo.ensure_account(session, wallet_address, now=now)
            history = await repo.list_reward_claims(session, wallet_address)

        claimed = float(account.total_rewards_claimed or 0)
        last = ensure_aware_utc(account.last_reward_claim)
        can_claim = last is None or now - last >= self.claim_interval
        return {
            "availableRewards": max(0.0, rewards.total_earned - claimed),
            "totalRewardsClaimed": claimed,
            "lastClaimDate": last,
            "canClaim": can_claim,
            "nextClaimTime": None if can_claim else last + self.claim_interval,
            "claimHistory": [
                {
                    "amount": c.amount,
                    "timestamp": ensure_aware_utc(c.claimed_at),
                    "status": c.status,
                }
                for c in history
            ],
            "rewardDetails": {
                "dailyReward": rewards.daily_reward,
                "uptimeBonus": rewards.uptime_bonus,
                "qualityMultiplier": rewards.quality_multiplier,
                "locationMultiplier": rewards.location_multiplier,
                "demandMultiplier": rewards.demand_multiplier,
            },
        }

    async def set_demand_multiplier(self, region: str, value: float, ttl_seconds: int = 3600) -> None:
        if value <= 0:
            raise ValidationError("demand multiplier must be positive")
        await self.cache.set(demand_cache_key(region), repr(float(value)), ttl_seconds)
        log.info("demand_multiplier_set region=%s value=%s ttl=%s", region, value, ttl_seconds)

    # ---- internals -------------------------------------------------------------

    async def _demand_multiplier(self, region: str | None) -> float:
        value = await self.cache.get_float(demand_cache_key(region))
        if value is None or value <= 0:
            return self.settings.reward_default_demand
        return value

    def _location_multiplier(self, country: str | None) -> float:
        if country and country.upper() in self.settings.underserved_countries:
            return self.settings.reward_location_multiplier
        return 1.0

    async def _accrue(self, node: Node, now: datetime) -> tuple[RewardResult, bool]:
        """Recompute and apply rewards on a locked node. Returns (result, changed)."""
        stats = node.stats_snapshot()
        s = self.settings

        if not node.is_host:
            return (
                RewardResult(
                    wallet_address=node.wallet_address,
                    daily_reward=0.0,
                    total_earned=0.0,
                    reward_tier=RewardTier.STARTER.value,
                    node_stats=stats,
                    message="Node is not a host",
                ),
                False,
            )

        since = ensure_aware_utc(node.last_reward_calculation) or ensure_aware_utc(node.created_at) or now
        delta_hours = max(0.0, (now - since).total_seconds() / 3600)
        daily_stored = float(node.daily_reward or 0)

        if delta_hours * 3600 < s.reward_recalc_interval_seconds and daily_stored > 0:
            return (
                RewardResult(
                    wallet_address=node.wallet_address,
                    daily_reward=daily_stored,
                    total_earned=float(node.total_earned or 0),
                    reward_tier=node.reward_tier,
                    node_stats=stats,
                    last_calculation=since.isoformat(),
                ),
                False,
            )

        uptime_hours = float(node.connection_uptime or 0) / 3600
        bandwidth = float(node.bandwidth_shared or 0) or float(node.perf_bandwidth or 0)
        quality = (float(node.connection_quality) if node.connection_quality is not None else 100.0) / 100
        location = self._location_multiplier(node.country)
        demand = await self._demand_multiplier(node.region)

        uptime_bonus = uptime_hours * s.reward_uptime_factor
        daily = (bandwidth * s.reward_bandwidth_factor + uptime_bonus) * quality * location * demand
        total = float(node.total_earned or 0) + daily * (delta_hours / 24)
        tier = reward_tier(total, s)

        node.daily_reward = daily
        node.total_earned = total
        node.reward_tier = tier.value
        node.last_reward_calculation = now
        node.updated_at = now

        log.info(
            "rewards_calculated wallet=%s daily=%.6f total=%.6f tier=%s dh=%.2f",
            node.wallet_address,
            daily,
            total,
            tier.value,
            delta_hours,
        )
        return (
            RewardResult(
                wallet_address=node.wallet_address,
                daily_reward=daily,
                total_earned=total,
                reward_tier=tier.value,
                node_stats=stats,
                quality_multiplier=quality,
                location_multiplier=location,
                demand_multiplier=demand,
                uptime_bonus=uptime_bonus,
                last_calculation=now.isoformat(),
            ),
            True,
        )
