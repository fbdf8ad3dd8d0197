from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.exc import IntegrityError

from meshvpn import repo
from meshvpn.cache import SafeCache
from meshvpn.core.config import Settings
from meshvpn.core.errors import ConflictError, NotFound, ValidationError
from meshvpn.core.time import Clock, ensure_aware_utc, utcnow
from meshvpn.db.locks import KeyedLocks, advisory_xact_lock
from meshvpn.db.models import Connection, Node, NodeStatus, NodeType
from meshvpn.db.session import SessionFactory, session_scope
from meshvpn.services.registry.service import require_wallet

log = logging.getLogger(__name__)


def clients_cache_key(host_wallet: str) -> str:
    return f"connected_clients:{host_wallet}"


@dataclass(frozen=True)
class ClientSummary:
    connection_id: int
    wallet_address: str
    ip: str
    connected_since: str
    last_activity: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "connectionId": self.connection_id,
            "walletAddress": self.wallet_address,
            "ip": self.ip,
            "connectedSince": self.connected_since,
            "lastActivity": self.last_activity,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "ClientSummary":
        return cls(
            connection_id=int(d["connectionId"]),
            wallet_address=d["walletAddress"],
            ip=d.get("ip") or "Unknown",
            connected_since=d["connectedSince"],
            last_activity=d["lastActivity"],
        )


def _iso(dt: datetime | None) -> str:
    aware = ensure_aware_utc(dt)
    return aware.isoformat() if aware else ""


class ConnectionTracker:
    """HOST/USER sessions: open, close, activity metrics and cached client lists."""

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

    async def open(self, host_wallet: str, client_wallet: str) -> Connection:
        host_wallet = require_wallet(host_wallet)
        client_wallet = require_wallet(client_wallet)
        if host_wallet == client_wallet:
            raise ValidationError("A node cannot connect to itself")
        now = self.clock()

        async with self.locks.hold(host_wallet, client_wallet):
            try:
                async with session_scope(self.sessions) as session:
                    for key in sorted((host_wallet, client_wallet)):
                        await advisory_xact_lock(session, key)

                    host = await repo.get_active_host(session, host_wallet)
                    if not host:
                        raise NotFound("Host node not found or not active")

                    if await repo.get_active_connection(session, host_wallet, client_wallet):
                        raise ConflictError("An active connection already exists for this host and client")

                    client = await repo.get_node(session, client_wallet)
                    if client:
                        client.node_type = NodeType.USER.value
                        client.set_status(NodeStatus.ACTIVE)
                        client.connected_to_host = host_wallet
                        client.last_seen = now
                        client.updated_at = now
                    else:
                        client = Node(
                            wallet_address=client_wallet,
                            node_type=NodeType.USER.value,
                            connected_to_host=host_wallet,
                            start_time=now,
                            last_seen=now,
                            created_at=now,
                            updated_at=now,
                        )
                        client.set_status(NodeStatus.ACTIVE)
                        session.add(client)

                    host.connected_users = int(host.connected_users or 0) + 1
                    host.updated_at = now

                    conn = Connection(
                        host_wallet_address=host_wallet,
                        client_wallet_address=client_wallet,
                        connected_at=now,
                        last_activity=now,
                    )
                    session.add(conn)
                    await session.flush()
            except IntegrityError as e:
                # lost a race against another process on the unique index
                raise ConflictError("An active connection already exists for this host and client") from e

        await self.cache.delete(clients_cache_key(host_wallet))
        log.info("connection_open host=%s client=%s id=%s", host_wallet, client_wallet, conn.id)
        return conn

    async def close(self, host_wallet: str, client_wallet: str) -> Connection:
        host_wallet = require_wallet(host_wallet)
        client_wallet = require_wallet(client_wallet)
        now = self.clock()

        async with self.locks.hold(host_wallet, client_wallet):
            async with session_scope(self.sessions) as session:
                for key in sorted((host_wallet, client_wallet)):
                    await advisory_xact_lock(session, key)

                conn = await repo.get_active_connection(session, host_wallet, client_wallet)
                if not conn:
                    raise NotFound("Active connection not found")

                conn.mark_disconnected(now)

                host = await repo.get_node(session, host_wallet)
                if host:
                    host.connected_users = max(0, int(host.connected_users or 0) - 1)
                    host.updated_at = now

                client = await repo.get_node(session, client_wallet)
                if client:
                    client.connected_to_host = None
                    client.set_status(NodeStatus.INACTIVE)
                    client.updated_at = now
                await session.flush()

        await self.cache.delete(clients_cache_key(host_wallet))
        log.info(
            "connection_close host=%s client=%s duration=%s",
            host_wallet,
            client_wallet,
            conn.session_duration,
        )
        return conn

    async def list_active(self, host_wallet: str) -> list[ClientSummary]:
        host_wallet = require_wallet(host_wallet)
        key = clients_cache_key(host_wallet)

        cached = await self.cache.get_json(key)
        if isinstance(cached, list):
            try:
                return [ClientSummary.from_dict(d) for d in cached]
            except (KeyError, TypeError, ValueError):
                log.warning("connected_clients_cache_corrupt host=%s", host_wallet)

        async with session_scope(self.sessions) as session:
            rows = await repo.list_active_connections(session, host_wallet)

        clients = [
            ClientSummary(
                connection_id=conn.id,
                wallet_address=conn.client_wallet_address,
                ip=ip or "Unknown",
                connected_since=_iso(conn.connected_at),
                last_activity=_iso(conn.last_activity or conn.connected_at),
            )
            for conn, ip in rows
        ]
        await self.cache.set_json(key, [c.to_dict() for c in clients], self.settings.connected_clients_ttl_seconds)
        return clients

    async def record_activity(
        self,
        host_wallet: str,
        client_wallet: str,
        *,
        bandwidth_bytes: int = 0,
        latency_ms: float | None = None,
        packet_loss: float | None = None,
    ) -> Connection:
        """Fold a traffic sample (bytes moved since the last one) into the session and the host counter."""
        host_wallet = require_wallet(host_wallet)
        client_wallet = require_wallet(client_wallet)
        if bandwidth_bytes < 0:
            raise ValidationError("bandwidth must be non-negative")
        now = self.clock()

        async with self.locks.hold(host_wallet, client_wallet):
            async with session_scope(self.sessions) as session:
                conn = await repo.get_active_connection(session, host_wallet, client_wallet)
                if not conn:
                    raise NotFound("Active connection not found")

                conn.total_bandwidth = float(conn.total_bandwidth or 0) + bandwidth_bytes
                if latency_ms is not None:
                    prev = float(conn.average_latency or 0)
                    conn.average_latency = latency_ms if prev == 0 else (prev + latency_ms) / 2
                if packet_loss is not None:
                    conn.packet_loss = max(0.0, min(100.0, packet_loss))
                    conn.connection_quality = max(0.0, 100.0 - conn.packet_loss)
                conn.last_activity = now

                host = await repo.get_node(session, host_wallet)
                if host:
                    host.bandwidth_shared = float(host.bandwidth_shared or 0) + bandwidth_bytes
                    host.last_seen = now
                    if latency_ms is not None:
                        host.perf_latency = latency_ms
                await session.flush()
        return conn

    # ---- transport-facing operations ------------------------------------------

    async def connect_to_host(self, client_wallet: str, host_wallet: str) -> tuple[Connection, str | None]:
        conn = await self.open(host_wallet, client_wallet)
        async with session_scope(self.sessions) as session:
            host = await repo.get_node(session, host_wallet)
        return conn, host.ip if host else None

    async def client_disconnect(self, client_wallet: str) -> Connection:
        client_wallet = require_wallet(client_wallet)
        async with session_scope(self.sessions) as session:
            conn = await repo.get_client_active_connection(session, client_wallet)
        if not conn:
            raise NotFound("Active connection not found")
        return await self.close(conn.host_wallet_address, client_wallet)

    async def get_connected_clients(self, host_wallet: str) -> list[ClientSummary]:
        await self._require_active_host(host_wallet)
        return await self.list_active(host_wallet)

    async def disconnect_client(self, host_wallet: str, client_wallet: str) -> Connection:
        await self._require_active_host(host_wallet)
        return await self.close(host_wallet, client_wallet)

    async def _require_active_host(self, host_wallet: str) -> None:
        host_wallet = require_wallet(host_wallet)
        async with session_scope(self.sessions) as session:
            host = await repo.get_active_host(session, host_wallet)
        if not host:
            raise NotFound("Active host node not found")
