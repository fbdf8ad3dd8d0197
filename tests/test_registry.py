import pytest

from meshvpn.core.errors import NotFound, UpstreamUnavailable, ValidationError
from meshvpn.core.time import ensure_aware_utc
from meshvpn.db.models import Node, NodeStatus, NodeType
from meshvpn.db.session import session_scope
from meshvpn.services.registry.service import NodeInfo, repair_consistency

HOST = "HOST_WALLET_0001"
USER = "USER_WALLET_0001"


@pytest.mark.asyncio
async def test_connect_creates_active_node(services, fetch_node):
    node = await services.registry.connect(HOST, NodeInfo(bandwidth=80, country="FR", ip="1.2.3.4"), is_host=True)

    assert node.status == NodeStatus.ACTIVE.value
    assert node.active is True
    assert node.node_type == NodeType.HOST.value

    stored = await fetch_node(HOST)
    assert stored.perf_bandwidth == 80
    assert stored.country == "FR"
    assert stored.region == "Unknown"
    assert stored.ip == "1.2.3.4"


@pytest.mark.asyncio
async def test_reconnect_merges_only_supplied_location(services, fetch_node):
    await services.registry.connect(HOST, NodeInfo(bandwidth=10, country="FR", region="EU"), is_host=True)
    await services.registry.disconnect(HOST)
    await services.registry.connect(HOST, NodeInfo(bandwidth=30, region="West"), is_host=True)

    stored = await fetch_node(HOST)
    assert stored.country == "FR"
    assert stored.region == "West"
    assert stored.perf_bandwidth == 30
    assert stored.active is True


@pytest.mark.asyncio
async def test_connect_requires_wallet(services):
    with pytest.raises(ValidationError):
        await services.registry.connect("  ", None)


@pytest.mark.asyncio
async def test_host_round_trip_accrues_bandwidth_reward(services, clock, fetch_node):
    await services.registry.connect(HOST, NodeInfo(bandwidth=100), is_host=True)
    clock.advance(seconds=2)

    res = await services.registry.disconnect(HOST)

    assert res.uptime_seconds == 2
    assert res.reward_added == pytest.approx(100 * 0.01 * 2 / 3600)
    assert res.rewards.total == pytest.approx(100 * 0.01 * 2 / 3600)

    stored = await fetch_node(HOST)
    assert stored.status == NodeStatus.INACTIVE.value
    assert stored.active is False
    assert stored.connection_uptime == 2
    assert stored.perf_bandwidth == 0
    assert stored.connected_users == 0
    assert stored.total_earned == pytest.approx(res.reward_added)


@pytest.mark.asyncio
async def test_user_disconnect_deletes_node(services, fetch_node):
    await services.registry.connect(USER, NodeInfo(bandwidth=5))
    res = await services.registry.disconnect(USER)

    assert res.rewards is None
    assert await fetch_node(USER) is None


@pytest.mark.asyncio
async def test_disconnect_unknown_node(services):
    with pytest.raises(NotFound):
        await services.registry.disconnect("NOPE")


def test_repair_consistency_rules():
    n = Node(wallet_address="x", status=NodeStatus.ACTIVE.value, active=False)
    assert repair_consistency(n) is True
    assert n.active is True

    n = Node(wallet_address="x", status=NodeStatus.INACTIVE.value, active=True)
    assert repair_consistency(n) is True
    # resolves towards ACTIVE, not towards clearing the flag
    assert n.status == NodeStatus.ACTIVE.value

    n = Node(wallet_address="x", status=NodeStatus.SUSPENDED.value, active=True)
    assert repair_consistency(n) is True
    assert n.active is False

    n = Node(wallet_address="x", status=NodeStatus.INACTIVE.value, active=False)
    assert repair_consistency(n) is False


@pytest.mark.asyncio
async def test_get_status_persists_repair(services, sessions, fetch_node):
    await services.registry.connect(HOST, NodeInfo(bandwidth=10), is_host=True)
    async with session_scope(sessions) as session:
        node = await session.get(Node, HOST)
        node.active = False

    node = await services.registry.get_status(HOST)
    assert node.active is True
    assert (await fetch_node(HOST)).active is True


@pytest.mark.asyncio
async def test_suspend_and_reset_ip(services):
    await services.registry.connect(HOST, NodeInfo(bandwidth=10), is_host=True)

    node = await services.registry.suspend(HOST)
    assert (node.status, node.active) == (NodeStatus.SUSPENDED.value, False)

    node = await services.registry.reset_ip(HOST, "9.9.9.9")
    assert node.ip == "9.9.9.9"

    with pytest.raises(NotFound):
        await services.registry.reset_ip("NOPE", "1.1.1.1")


@pytest.mark.asyncio
async def test_network_stats(services):
    await services.registry.connect(HOST, NodeInfo(bandwidth=40), is_host=True)
    await services.registry.connect("HOST_WALLET_0002", NodeInfo(bandwidth=60), is_host=True)
    await services.registry.connect(USER, NodeInfo(bandwidth=1))

    stats = await services.registry.network_stats()
    assert stats["totalNodes"] == 3
    assert stats["hosts"] == 2
    assert stats["activeHosts"] == 2
    assert stats["activeUsers"] == 1
    assert stats["currentBandwidth"] == pytest.approx(101)
    assert stats["activeConnections"] == 0


@pytest.mark.asyncio
async def test_check_connection_records_current_latency(services, clock, fetch_node):
    await services.registry.connect(HOST, NodeInfo(bandwidth=50, ip="1.2.3.4"), is_host=True)
    seen = []

    async def ping(ip):
        seen.append(ip)
        return 42.0

    services.registry.pinger = ping
    clock.advance(minutes=5)
    node, latency = await services.registry.check_connection(HOST)

    assert seen == ["1.2.3.4"]
    assert latency == 42.0
    stored = await fetch_node(HOST)
    assert stored.perf_latency == 42.0
    assert ensure_aware_utc(stored.last_seen) == clock.now


@pytest.mark.asyncio
async def test_check_connection_failure_leaves_node_alone(services, fetch_node):
    await services.registry.connect(HOST, NodeInfo(bandwidth=50, latency=80), is_host=True)

    async def unreachable(ip):
        raise ConnectionRefusedError("refused")

    services.registry.pinger = unreachable
    with pytest.raises(UpstreamUnavailable):
        await services.registry.check_connection(HOST)
    assert (await fetch_node(HOST)).perf_latency == 80

    with pytest.raises(NotFound):
        await services.registry.check_connection("NOPE")
