from __future__ import annotations

from dataclasses import dataclass

from meshvpn.auth import Authenticator
from meshvpn.cache import SafeCache
from meshvpn.core.config import Settings
from meshvpn.core.time import Clock, utcnow
from meshvpn.db.locks import KeyedLocks
from meshvpn.db.session import SessionFactory
from meshvpn.services.connections.service import ConnectionTracker
from meshvpn.services.ranking.service import AvailabilityRanker
from meshvpn.services.registry.service import NodeRegistry
from meshvpn.services.rewards.service import RewardEngine
from meshvpn.services.tunnel.provisioner import TunnelProvisioner
from meshvpn.services.tunnel.service import TunnelConfigManager


@dataclass
class Services:
    settings: Settings
    sessions: SessionFactory
    cache: SafeCache
    locks: KeyedLocks
    auth: Authenticator
    registry: NodeRegistry
    connections: ConnectionTracker
    rewards: RewardEngine
    ranking: AvailabilityRanker
    tunnel: TunnelConfigManager


def build_services(
    settings: Settings,
    sessions: SessionFactory,
    cache: SafeCache,
    provisioner: TunnelProvisioner | None,
    *,
    clock: Clock = utcnow,
) -> Services:
    # one lock table so a wallet is serialized across every component
    locks = KeyedLocks()
    return Services(
        settings=settings,
        sessions=sessions,
        cache=cache,
        locks=locks,
        auth=Authenticator(settings),
        registry=NodeRegistry(sessions, settings, locks=locks, clock=clock),
        connections=ConnectionTracker(sessions, settings, cache, locks=locks, clock=clock),
        rewards=RewardEngine(sessions, settings, cache, locks=locks, clock=clock),
        ranking=AvailabilityRanker(sessions, settings, locks=locks, clock=clock),
        tunnel=TunnelConfigManager(sessions, settings, provisioner, locks=locks, clock=clock),
    )
