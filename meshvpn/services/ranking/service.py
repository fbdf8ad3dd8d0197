from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from meshvpn import repo
from meshvpn.core.config import Settings
from meshvpn.core.time import Clock, ensure_aware_utc, seconds_since, utcnow, within
from meshvpn.db.locks import KeyedLocks, advisory_xact_lock
from meshvpn.db.models import Node, NodeStatus
from meshvpn.db.session import SessionFactory, session_scope
from meshvpn.services.registry.service import repair_consistency

log = logging.getLogger(__name__)

W_BANDWIDTH = 0.3
W_LATENCY = 0.3
W_OCCUPANCY = 0.2
W_FRESHNESS = 0.2


def _clamp(x: float) -> float:
    return max(0.0, min(1.0, x))


def score_node(node: Node, now: datetime) -> float:
    """Weighted availability score in [0, 1], rounded to 2 decimals."""
    bandwidth = node.perf_bandwidth
    latency = node.perf_latency

    bandwidth_score = _clamp(bandwidth / 100) if bandwidth else 0.5
    latency_score = _clamp(1 - latency / 200) if latency else 0.5
    occupancy_score = _clamp(1 - (node.connected_users or 0) / 10)

    age = seconds_since(node.last_seen, now)
    freshness_score = _clamp(1 - age / 86400) if age is not None else 0.0

    total = (
        W_BANDWIDTH * bandwidth_score
        + W_LATENCY * latency_score
        + W_OCCUPANCY * occupancy_score
        + W_FRESHNESS * freshness_score
    )
    return round(total, 2)


@dataclass(frozen=True)
class ScoredNode:
    wallet_address: str
    score: float
    status: str
    active: bool
    ip: str | None
    bandwidth: float
    latency: float
    connected_users: int
    country: str | None
    region: str | None
    latitude: float | None
    longitude: float | None
    last_seen: datetime | None

    @classmethod
    def of(cls, node: Node, score: float) -> "ScoredNode":
        return cls(
            wallet_address=node.wallet_address,
            score=score,
            status=node.status,
            active=node.active,
            ip=node.ip,
            bandwidth=float(node.perf_bandwidth or 0),
            latency=float(node.perf_latency or 0),
            connected_users=int(node.connected_users or 0),
            country=node.country,
            region=node.region,
            latitude=node.latitude,
            longitude=node.longitude,
            last_seen=ensure_aware_utc(node.last_seen),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "walletAddress": self.wallet_address,
            "score": self.score,
            "status": self.status,
            "active": self.active,
            "ip": self.ip,
            "bandwidth": self.bandwidth,
            "latency": self.latency,
            "connectedUsers": self.connected_users,
            "country": self.country,
            "region": self.region,
            "coordinates": {"lat": self.latitude, "lng": self.longitude},
            "lastSeen": self.last_seen,
        }


class AvailabilityRanker:
    def __init__(
        self,
        sessions: SessionFactory,
        settings: Settings,
        *,
        locks: KeyedLocks | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.sessions = sessions
        self.settings = settings
        self.locks = locks or KeyedLocks()
        self.clock = clock

    @property
    def freshness_window(self) -> timedelta:
        return timedelta(minutes=self.settings.freshness_window_minutes)

    async def list_available(self) -> list[ScoredNode]:
        now = self.clock()
        window = self.freshness_window

        async with session_scope(self.sessions) as session:
            candidates = await repo.list_host_candidates(session, fresh_since=now - window)

        diverged = [n.wallet_address for n in candidates if n.active != (n.status == NodeStatus.ACTIVE.value)]
        if diverged:
            fixed = {wallet: await self._repair(wallet, now) for wallet in diverged}
            candidates = [fixed.get(n.wallet_address, n) for n in candidates]
            candidates = [n for n in candidates if n is not None and n.is_host]

        scored = [ScoredNode.of(node, score_node(node, now)) for node in candidates]
        scored = [
            s for s in scored
            if s.status == NodeStatus.ACTIVE.value or within(s.last_seen, now, window)
        ]
        # sorted() is stable, equal scores keep candidate order
        scored = sorted(scored, key=lambda s: s.score, reverse=True)
        log.info("available_nodes candidates=%s listed=%s", len(candidates), len(scored))
        return scored

    async def _repair(self, wallet: str, now: datetime) -> Node | None:
        # the row may have moved on since the candidate read, so re-read under the wallet lock
        async with self.locks.hold(wallet):
            async with session_scope(self.sessions) as session:
                await advisory_xact_lock(session, wallet)
                node = await repo.get_node(session, wallet)
                if node is not None and repair_consistency(node):
                    node.updated_at = now
                    await session.flush()
                    log.warning("available_node_repaired wallet=%s status=%s", wallet, node.status)
        return node
