from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, DateTime, Float, Integer, String, false, func
from sqlalchemy.orm import Mapped, mapped_column

from meshvpn.core.time import utcnow
from meshvpn.db.base import Base


class NodeType(str, Enum):
    HOST = "HOST"
    USER = "USER"


class NodeStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    SUSPENDED = "SUSPENDED"


class RewardTier(str, Enum):
    STARTER = "STARTER"
    PRO = "PRO"
    ELITE = "ELITE"


class Node(Base):
    """A network participant, keyed by wallet address.

    `status` and `active` are both persisted for existing consumers. Writers
    go through `set_status()`; readers call the registry's
    `repair_consistency()` before surfacing either field.
    """

    __tablename__ = "nodes"

    wallet_address: Mapped[str] = mapped_column(String(128), primary_key=True)
    node_type: Mapped[str] = mapped_column(String(8), default=NodeType.USER.value, server_default=NodeType.USER.value, nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), default=NodeStatus.INACTIVE.value, server_default=NodeStatus.INACTIVE.value, nullable=False, index=True)
    active: Mapped[bool] = mapped_column(Boolean, default=False, server_default=false(), nullable=False)

    ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    connected_users: Mapped[int] = mapped_column(Integer, default=0, server_default="0", nullable=False)
    connected_to_host: Mapped[str | None] = mapped_column(String(128), nullable=True)

    # current session
    perf_bandwidth: Mapped[float] = mapped_column(Float, default=0.0, server_default="0", nullable=False)
    perf_latency: Mapped[float] = mapped_column(Float, default=0.0, server_default="0", nullable=False)
    perf_packet_loss: Mapped[float] = mapped_column(Float, default=0.0, server_default="0", nullable=False)

    # cumulative
    bandwidth_shared: Mapped[float] = mapped_column(Float, default=0.0, server_default="0", nullable=False)  # cumulative bytes
    connection_uptime: Mapped[int] = mapped_column(Integer, default=0, server_default="0", nullable=False)
    connection_quality: Mapped[float] = mapped_column(Float, default=100.0, server_default="100", nullable=False)
    start_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    daily_reward: Mapped[float] = mapped_column(Float, default=0.0, server_default="0", nullable=False)
    total_earned: Mapped[float] = mapped_column(Float, default=0.0, server_default="0", nullable=False)
    reward_tier: Mapped[str] = mapped_column(String(16), default=RewardTier.STARTER.value, server_default=RewardTier.STARTER.value, nullable=False)
    last_reward_calculation: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    country: Mapped[str | None] = mapped_column(String(64), nullable=True)
    region: Mapped[str | None] = mapped_column(String(64), nullable=True)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)

    last_seen: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_disconnected: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def set_status(self, status: NodeStatus) -> None:
        self.status = NodeStatus(status).value
        self.active = self.status == NodeStatus.ACTIVE.value

    def reset_performance(self) -> None:
        self.perf_bandwidth = 0.0
        self.perf_latency = 0.0
        self.perf_packet_loss = 0.0

    @property
    def is_host(self) -> bool:
        return self.node_type == NodeType.HOST.value

    def stats_snapshot(self) -> dict:
        return {
            "uptime": int(self.connection_uptime or 0),
            "bandwidth": float(self.perf_bandwidth or 0),
            "quality": float(self.connection_quality if self.connection_quality is not None else 100),
        }
