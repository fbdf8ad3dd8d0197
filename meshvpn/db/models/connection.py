from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, Float, Index, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column

from meshvpn.core.time import ensure_aware_utc
from meshvpn.db.base import Base


class ConnectionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    DISCONNECTED = "DISCONNECTED"
    FAILED = "FAILED"


class Connection(Base):
    """A session between one HOST and one USER."""

    __tablename__ = "connections"
    __table_args__ = (
        Index("ix_connections_host_status", "host_wallet_address", "status"),
        Index("ix_connections_client_status", "client_wallet_address", "status"),
        # at most one ACTIVE connection per (host, client)
        Index(
            "ux_connections_active_pair",
            "host_wallet_address",
            "client_wallet_address",
            unique=True,
            postgresql_where=text("status = 'ACTIVE'"),
            sqlite_where=text("status = 'ACTIVE'"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    host_wallet_address: Mapped[str] = mapped_column(String(128), nullable=False)
    client_wallet_address: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=ConnectionStatus.ACTIVE.value, server_default=ConnectionStatus.ACTIVE.value, nullable=False)

    connected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    disconnected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_activity: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    total_bandwidth: Mapped[float] = mapped_column(Float, default=0.0, server_default="0", nullable=False)  # bytes
    average_latency: Mapped[float] = mapped_column(Float, default=0.0, server_default="0", nullable=False)  # ms
    packet_loss: Mapped[float] = mapped_column(Float, default=0.0, server_default="0", nullable=False)  # %
    connection_quality: Mapped[float] = mapped_column(Float, default=100.0, server_default="100", nullable=False)

    session_duration: Mapped[int] = mapped_column(Integer, default=0, server_default="0", nullable=False)  # seconds

    def mark_disconnected(self, now: datetime) -> None:
        self.status = ConnectionStatus.DISCONNECTED.value
        self.disconnected_at = now
        self.last_activity = now
        self.session_duration = self.calculate_session_duration(now)

    def calculate_session_duration(self, now: datetime) -> int:
        start = ensure_aware_utc(self.connected_at)
        end = ensure_aware_utc(self.disconnected_at) if self.status == ConnectionStatus.DISCONNECTED.value else None
        end = end or now
        return max(0, int((end - start).total_seconds()))
