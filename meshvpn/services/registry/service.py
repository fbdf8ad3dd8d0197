from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping

from meshvpn import repo
from meshvpn.core.config import Settings
from meshvpn.core.errors import NotFound, UpstreamUnavailable, ValidationError
from meshvpn.core.time import Clock, ensure_aware_utc, utcnow
from meshvpn.db.locks import KeyedLocks, advisory_xact_lock
from meshvpn.db.models import Node, NodeStatus, NodeType
from meshvpn.db.session import SessionFactory, session_scope

log = logging.getLogger(__name__)

BandwidthProbe = Callable[[], float]
Pinger = Callable[[str | None], Awaitable[float]]


def simulate_bandwidth() -> float:
    # no real measurement yet: 10..109 MB
    return float(random.randint(10, 109))


async def simulate_ping(ip: str | None) -> float:
    # no real ping yet: 10..99 ms, one attempt in ten fails
    latency = random.randint(10, 99)
    await asyncio.sleep(latency / 1000)
    if random.random() < 0.1:
        raise UpstreamUnavailable("Failed to connect to the node")
    return float(latency)


@dataclass(frozen=True)
class NodeInfo:
    """Partial update for a node. Only fields that are set get merged."""

    country: str | None = None
    region: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    ip: str | None = None
    bandwidth: float | None = None
    latency: float | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "NodeInfo":
        if not data:
            return cls()
        coords = data.get("coordinates") or {}
        if not isinstance(coords, Mapping):
            raise ValidationError("coordinates must be an object with lat/lng")
        try:
            return cls(
                country=(str(data["country"]).strip() or None) if data.get("country") else None,
                region=(str(data["region"]).strip() or None) if data.get("region") else None,
                latitude=float(coords["lat"]) if coords.get("lat") is not None else None,
                longitude=float(coords["lng"]) if coords.get("lng") is not None else None,
                ip=(str(data["ip"]).strip() or None) if data.get("ip") else None,
                bandwidth=float(data["bandwidth"]) if data.get("bandwidth") is not None else None,
                latency=float(data["latency"]) if data.get("latency") is not None else None,
            )
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid node info: {e}") from e

    def merge_into(self, node: Node) -> None:
        if self.country:
            node.country = self.country
        if self.region:
            node.region = self.region
        if self.latitude is not None:
            node.latitude = self.latitude
        if self.longitude is not None:
            node.longitude = self.longitude
        if self.ip:
            node.ip = self.ip
        if self.latency is not None:
            node.perf_latency = max(0.0, self.latency)


@dataclass(frozen=True)
class RewardsSnapshot:
    daily: float
    total: float


@dataclass(frozen=True)
class DisconnectResult:
    wallet_address: str
    node_type: str
    uptime_seconds: int
    reward_added: float
    rewards: RewardsSnapshot | None


def repair_consistency(node: Node) -> bool:
    """Bring `status` and `active` back in line. Returns True if anything changed.

    INACTIVE with active=True resolves towards ACTIVE: a node that still
    reports itself active stays listed for clients.
    """
    changed = False
    if node.status == NodeStatus.ACTIVE.value and not node.active:
        node.active = True
        changed = True
    elif node.status == NodeStatus.INACTIVE.value and node.active:
        node.status = NodeStatus.ACTIVE.value
        changed = True
    elif node.status == NodeStatus.SUSPENDED.value and node.active:
        node.active = False
        changed = True
    return changed


class NodeRegistry:
    def __init__(
        self,
        sessions: SessionFactory,
        settings: Settings,
        *,
        locks: KeyedLocks | None = None,
        clock: Clock = utcnow,
        bandwidth_probe: BandwidthProbe = simulate_bandwidth,
        pinger: Pinger = simulate_ping,
    ) -> None:
        self.sessions = sessions
        self.settings = settings
        self.locks = locks or KeyedLocks()
        self.clock = clock
        self.bandwidth_probe = bandwidth_probe
        self.pinger = pinger

    async def connect(self, wallet_address: str, node_info: NodeInfo | None = None, is_host: bool = False) -> Node:
        wallet_address = require_wallet(wallet_address)
        info = node_info or NodeInfo()
        bandwidth = info.bandwidth if info.bandwidth is not None else self.bandwidth_probe()
        now = self.clock()

        async with self.locks.hold(wallet_address):
            async with session_scope(self.sessions) as session:
                await advisory_xact_lock(session, wallet_address)
                node = await repo.get_node(session, wallet_address)
                if node:
                    node.set_status(NodeStatus.ACTIVE)
                    node.node_type = (NodeType.HOST if is_host else NodeType.USER).value
                    node.perf_bandwidth = float(bandwidth)
                    node.start_time = now
                    node.last_seen = now
                    node.updated_at = now
                    info.merge_into(node)
                    log.info("node_reactivated wallet=%s type=%s", wallet_address, node.node_type)
                else:
                    node = Node(
                        wallet_address=wallet_address,
                        node_type=(NodeType.HOST if is_host else NodeType.USER).value,
                        perf_bandwidth=float(bandwidth),
                        perf_latency=0.0,
                        perf_packet_loss=0.0,
                        country="Unknown",
                        region="Unknown",
                        latitude=0.0,
                        longitude=0.0,
                        start_time=now,
                        last_seen=now,
                        created_at=now,
                        updated_at=now,
                    )
                    node.set_status(NodeStatus.ACTIVE)
                    info.merge_into(node)
                    session.add(node)
                    log.info("node_created wallet=%s type=%s", wallet_address, node.node_type)
                await session.flush()

        log.info("node_connect wallet=%s ip=%s bandwidth=%s", wallet_address, node.ip, bandwidth)
        return node

    async def disconnect(self, wallet_address: str) -> DisconnectResult:
        wallet_address = require_wallet(wallet_address)
        now = self.clock()

        async with self.locks.hold(wallet_address):
            async with session_scope(self.sessions) as session:
                await advisory_xact_lock(session, wallet_address)
                node = await repo.get_node(session, wallet_address)
                if not node:
                    raise NotFound("Node not found")

                start = ensure_aware_utc(node.start_time) or now
                uptime_seconds = max(0, int((now - start).total_seconds()))
                # captured before the session metrics are zeroed
                bandwidth = float(node.perf_bandwidth or 0)

                node.set_status(NodeStatus.INACTIVE)
                node.last_disconnected = now
                node.connection_uptime = int(node.connection_uptime or 0) + uptime_seconds
                node.connected_users = 0
                node.reset_performance()
                node.updated_at = now

                reward = 0.0
                snapshot = None
                if node.is_host:
                    reward = bandwidth * self.settings.reward_bandwidth_factor * (uptime_seconds / 3600)
                    node.daily_reward = float(node.daily_reward or 0) + reward
                    node.total_earned = float(node.total_earned or 0) + reward
                    node.last_reward_calculation = now
                    snapshot = RewardsSnapshot(daily=node.daily_reward, total=node.total_earned)
                    await session.flush()
                else:
                    await session.delete(node)
                    log.info("node_user_deleted wallet=%s", wallet_address)

        log.info(
            "node_disconnect wallet=%s type=%s uptime=%s reward=%.4f",
            wallet_address,
            node.node_type,
            uptime_seconds,
            reward,
        )
        return DisconnectResult(
            wallet_address=wallet_address,
            node_type=node.node_type,
            uptime_seconds=uptime_seconds,
            reward_added=reward,
            rewards=snapshot,
        )

    async def get_status(self, wallet_address: str) -> Node:
        wallet_address = require_wallet(wallet_address)
        async with self.locks.hold(wallet_address):
            async with session_scope(self.sessions) as session:
                node = await repo.get_node(session, wallet_address)
                if not node:
                    raise NotFound("Node not found")
                if repair_consistency(node):
                    log.warning("node_status_repaired wallet=%s status=%s", wallet_address, node.status)
                    node.updated_at = self.clock()
                    await session.flush()
        return node

    async def reset_ip(self, wallet_address: str, new_ip: str | None) -> Node:
        wallet_address = require_wallet(wallet_address)
        async with self.locks.hold(wallet_address):
            async with session_scope(self.sessions) as session:
                node = await repo.get_node(session, wallet_address)
                if not node:
                    raise NotFound("Node not found")
                node.ip = new_ip
                node.updated_at = self.clock()
                await session.flush()
        log.info("node_ip_reset wallet=%s ip=%s", wallet_address, new_ip)
        return node

    async def check_connection(self, wallet_address: str) -> tuple[Node, float]:
        """Measure round-trip latency to the node and record it as its current latency."""
        wallet_address = require_wallet(wallet_address)
        async with session_scope(self.sessions) as session:
            node = await repo.get_node(session, wallet_address)
            if not node:
                raise NotFound("Node not found")
            ip = node.ip

        try:
            latency = await self.pinger(ip)
        except OSError as e:
            raise UpstreamUnavailable(f"Failed to connect to the node: {e}") from e

        now = self.clock()
        async with self.locks.hold(wallet_address):
            async with session_scope(self.sessions) as session:
                await advisory_xact_lock(session, wallet_address)
                node = await repo.get_node(session, wallet_address)
                if not node:
                    raise NotFound("Node not found")
                node.perf_latency = max(0.0, latency)
                node.last_seen = now
                node.updated_at = now
                await session.flush()
        log.info("node_connection_checked wallet=%s ip=%s latency=%.1f", wallet_address, ip, latency)
        return node, latency

    async def suspend(self, wallet_address: str) -> Node:
        wallet_address = require_wallet(wallet_address)
        async with self.locks.hold(wallet_address):
            async with session_scope(self.sessions) as session:
                await advisory_xact_lock(session, wallet_address)
                node = await repo.get_node(session, wallet_address)
                if not node:
                    raise NotFound("Node not found")
                node.set_status(NodeStatus.SUSPENDED)
                node.updated_at = self.clock()
                await session.flush()
        log.warning("node_suspended wallet=%s", wallet_address)
        return node

    async def network_stats(self) -> dict[str, Any]:
        async with session_scope(self.sessions) as session:
            counts = await repo.node_counts(session)
            shared, earned, current = await repo.node_totals(session)
            active_connections = await repo.count_active_connections(session)

        def _count(node_type: str | None = None, status: str | None = None) -> int:
            return sum(
                c for (t, s), c in counts.items()
                if (node_type is None or t == node_type) and (status is None or s == status)
            )

        return {
            "totalNodes": _count(),
            "hosts": _count(NodeType.HOST.value),
            "users": _count(NodeType.USER.value),
            "activeHosts": _count(NodeType.HOST.value, NodeStatus.ACTIVE.value),
            "activeUsers": _count(NodeType.USER.value, NodeStatus.ACTIVE.value),
            "suspended": _count(status=NodeStatus.SUSPENDED.value),
            "activeConnections": active_connections,
            "currentBandwidth": current,
            "totalBandwidthShared": shared,
            "totalRewardsEarned": earned,
        }


def node_status_view(node: Node) -> dict[str, Any]:
    return {
        "walletAddress": node.wallet_address,
        "nodeType": node.node_type,
        "status": node.status,
        "active": node.active,
        "ip": node.ip,
        "bandwidth": node.perf_bandwidth,
        "connectedUsers": node.connected_users or 0,
        "connectedToHost": node.connected_to_host,
        "uptime": node.connection_uptime or 0,
        "lastSeen": ensure_aware_utc(node.last_seen),
        "lastDisconnected": ensure_aware_utc(node.last_disconnected),
        "location": {
            "country": node.country,
            "region": node.region,
            "coordinates": {"lat": node.latitude, "lng": node.longitude},
        },
        "metrics": {
            "uptime": node.connection_uptime or 0,
            "latency": node.perf_latency or 0,
            "packetLoss": node.perf_packet_loss or 0,
        },
        "rewards": {
            "dailyReward": node.daily_reward,
            "totalEarned": node.total_earned,
            "rewardTier": node.reward_tier,
        },
    }


def require_wallet(wallet_address: str | None) -> str:
    wallet = (wallet_address or "").strip()
    if not wallet:
        raise ValidationError("Wallet address is required")
    return wallet
