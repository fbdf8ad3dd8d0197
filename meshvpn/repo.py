from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from meshvpn.db.models import (Account, AppSetting, Connection, ConnectionStatus, Node,
                               NodeStatus, NodeType, RewardClaim, TunnelConfig)

log = logging.getLogger(__name__)


# ---- Settings KV ---------------------------------------------------------------
async def get_app_setting_int(session: AsyncSession, key: str, *, default: int) -> int:
    row = await session.get(AppSetting, key)
    if not row or row.int_value is None:
        return int(default)
    return int(row.int_value)


async def set_app_setting_int(session: AsyncSession, key: str, value: int, *, now: datetime) -> None:
    row = await session.get(AppSetting, key)
    if not row:
        row = AppSetting(key=key)
        session.add(row)
    row.int_value = int(value)
    row.touch(now)
    await session.flush()


# ---- Nodes ---------------------------------------------------------------------
async def get_node(session: AsyncSession, wallet_address: str) -> Node | None:
    q = select(Node).where(Node.wallet_address == wallet_address).with_for_update().limit(1)
    res = await session.execute(q)
    return res.scalar_one_or_none()


async def get_active_host(session: AsyncSession, wallet_address: str) -> Node | None:
    q = (
        select(Node)
        .where(
            Node.wallet_address == wallet_address,
            Node.node_type == NodeType.HOST.value,
            Node.status == NodeStatus.ACTIVE.value,
        )
        .limit(1)
    )
    res = await session.execute(q)
    return res.scalar_one_or_none()


async def list_host_candidates(session: AsyncSession, *, fresh_since: datetime) -> list[Node]:
    """HOST nodes that are ACTIVE, recently seen, or recently disconnected."""
    q = select(Node).where(
        Node.node_type == NodeType.HOST.value,
        or_(
            Node.status == NodeStatus.ACTIVE.value,
            Node.last_seen >= fresh_since,
            and_(
                Node.last_disconnected >= fresh_since,
                Node.status == NodeStatus.INACTIVE.value,
            ),
        ),
    ).order_by(Node.created_at, Node.wallet_address)
    res = await session.execute(q)
    return list(res.scalars().all())


async def node_counts(session: AsyncSession) -> dict[tuple[str, str], int]:
    q = select(Node.node_type, Node.status, func.count()).group_by(Node.node_type, Node.status)
    res = await session.execute(q)
    return {(t, s): int(c) for t, s, c in res.all()}


async def node_totals(session: AsyncSession) -> tuple[float, float, float]:
    """Returns (bandwidth_shared, total_earned, active_bandwidth) over all nodes."""
    q = select(
        func.coalesce(func.sum(Node.bandwidth_shared), 0),
        func.coalesce(func.sum(Node.total_earned), 0),
        func.coalesce(func.sum(Node.perf_bandwidth), 0),
    )
    res = await session.execute(q)
    shared, earned, current = res.one()
    return float(shared or 0), float(earned or 0), float(current or 0)


# ---- Connections ---------------------------------------------------------------
async def get_active_connection(session: AsyncSession, host: str, client: str) -> Connection | None:
    q = (
        select(Connection)
        .where(
            Connection.host_wallet_address == host,
            Connection.client_wallet_address == client,
            Connection.status == ConnectionStatus.ACTIVE.value,
        )
        .order_by(Connection.id.desc())
        .limit(1)
    )
    res = await session.execute(q)
    return res.scalar_one_or_none()


async def get_client_active_connection(session: AsyncSession, client: str) -> Connection | None:
    q = (
        select(Connection)
        .where(
            Connection.client_wallet_address == client,
            Connection.status == ConnectionStatus.ACTIVE.value,
        )
        .order_by(Connection.id.desc())
        .limit(1)
    )
    res = await session.execute(q)
    return res.scalar_one_or_none()


async def list_active_connections(session: AsyncSession, host: str) -> list[tuple[Connection, str | None]]:
    """Active connections of a host together with each client's ip."""
    q = (
        select(Connection, Node.ip)
        .outerjoin(Node, Node.wallet_address == Connection.client_wallet_address)
        .where(
            Connection.host_wallet_address == host,
            Connection.status == ConnectionStatus.ACTIVE.value,
        )
        .order_by(Connection.connected_at.asc())
    )
    res = await session.execute(q)
    return [(row[0], row[1]) for row in res.all()]


async def count_active_connections(session: AsyncSession) -> int:
    q = select(func.count(Connection.id)).where(Connection.status == ConnectionStatus.ACTIVE.value)
    return int(await session.scalar(q) or 0)


# ---- Accounts / claims -----------------------------------------------------------
async def ensure_account(session: AsyncSession, wallet_address: str, *, now: datetime) -> Account:
    account = await session.get(Account, wallet_address, with_for_update=True)
    if not account:
        account = Account(wallet_address=wallet_address, created_at=now, last_login=now)
        session.add(account)
        await session.flush()
    return account


async def list_reward_claims(session: AsyncSession, wallet_address: str, *, limit: int = 50) -> list[RewardClaim]:
    q = (
        select(RewardClaim)
        .where(RewardClaim.wallet_address == wallet_address)
        .order_by(RewardClaim.claimed_at.desc(), RewardClaim.id.desc())
        .limit(limit)
    )
    res = await session.execute(q)
    return list(res.scalars().all())


# ---- Tunnel configs --------------------------------------------------------------
async def get_tunnel_config(session: AsyncSession, user_id: str) -> TunnelConfig | None:
    q = select(TunnelConfig).where(TunnelConfig.user_id == user_id).limit(1)
    res = await session.execute(q)
    return res.scalar_one_or_none()


async def list_active_tunnel_configs(session: AsyncSession) -> list[TunnelConfig]:
    q = select(TunnelConfig).where(TunnelConfig.is_active == True).order_by(TunnelConfig.id)  # noqa: E712
    res = await session.execute(q)
    return list(res.scalars().all())


async def tunnel_configs_by_public_key(session: AsyncSession, public_keys: list[str]) -> dict[str, TunnelConfig]:
    if not public_keys:
        return {}
    q = select(TunnelConfig).where(TunnelConfig.public_key.in_(public_keys))
    res = await session.execute(q)
    return {c.public_key: c for c in res.scalars().all()}
