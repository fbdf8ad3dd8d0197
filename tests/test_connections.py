import asyncio

import pytest
import pytest_asyncio

from meshvpn.core.errors import ConflictError, NotFound, ValidationError
from meshvpn.db.models import ConnectionStatus, NodeStatus
from meshvpn.services.connections.service import clients_cache_key
from meshvpn.services.registry.service import NodeInfo

HOST = "HOST_WALLET_0001"
CLIENT = "CLIENT_WALLET_0001"
MIB = 1024 * 1024


@pytest_asyncio.fixture
async def host(services):
    return await services.registry.connect(HOST, NodeInfo(bandwidth=50, ip="5.5.5.5"), is_host=True)


@pytest.mark.asyncio
async def test_open_and_close_cascade(services, host, clock, fetch_node):
    conn = await services.connections.open(HOST, CLIENT)
    assert conn.status == ConnectionStatus.ACTIVE.value

    assert (await fetch_node(HOST)).connected_users == 1
    client = await fetch_node(CLIENT)
    assert client.connected_to_host == HOST
    assert (client.status, client.active) == (NodeStatus.ACTIVE.value, True)

    clock.advance(seconds=90)
    closed = await services.connections.close(HOST, CLIENT)

    assert closed.status == ConnectionStatus.DISCONNECTED.value
    assert closed.session_duration == 90
    assert (await fetch_node(HOST)).connected_users == 0
    client = await fetch_node(CLIENT)
    assert client.connected_to_host is None
    assert (client.status, client.active) == (NodeStatus.INACTIVE.value, False)


@pytest.mark.asyncio
async def test_connected_users_never_negative(services, host, fetch_node):
    await services.connections.open(HOST, CLIENT)
    # host restarted in between: counter already reset
    await services.registry.disconnect(HOST)
    await services.registry.connect(HOST, NodeInfo(bandwidth=50), is_host=True)

    await services.connections.close(HOST, CLIENT)
    assert (await fetch_node(HOST)).connected_users == 0


@pytest.mark.asyncio
async def test_second_active_connection_conflicts(services, host):
    await services.connections.open(HOST, CLIENT)
    with pytest.raises(ConflictError):
        await services.connections.open(HOST, CLIENT)


@pytest.mark.asyncio
async def test_reopen_after_close(services, host):
    await services.connections.open(HOST, CLIENT)
    await services.connections.close(HOST, CLIENT)
    again = await services.connections.open(HOST, CLIENT)
    assert again.status == ConnectionStatus.ACTIVE.value


@pytest.mark.asyncio
async def test_open_requires_active_host(services):
    with pytest.raises(NotFound):
        await services.connections.open(HOST, CLIENT)

    await services.registry.connect(HOST, NodeInfo(bandwidth=50), is_host=True)
    await services.registry.suspend(HOST)
    with pytest.raises(NotFound):
        await services.connections.open(HOST, CLIENT)


@pytest.mark.asyncio
async def test_cannot_connect_to_self(services, host):
    with pytest.raises(ValidationError):
        await services.connections.open(HOST, HOST)


@pytest.mark.asyncio
async def test_close_without_connection(services, host):
    with pytest.raises(NotFound):
        await services.connections.close(HOST, CLIENT)


@pytest.mark.asyncio
async def test_client_list_is_cached_and_invalidated(services, host, cache):
    await services.connections.open(HOST, CLIENT)

    clients = await services.connections.list_active(HOST)
    assert [c.wallet_address for c in clients] == [CLIENT]
    assert await cache.get_json(clients_cache_key(HOST)) is not None

    await services.connections.open(HOST, "CLIENT_WALLET_0002")
    assert await cache.get(clients_cache_key(HOST)) is None

    clients = await services.connections.get_connected_clients(HOST)
    assert {c.wallet_address for c in clients} == {CLIENT, "CLIENT_WALLET_0002"}


@pytest.mark.asyncio
async def test_record_activity_feeds_bandwidth_shared(services, host, fetch_node):
    await services.connections.open(HOST, CLIENT)
    await services.connections.record_activity(HOST, CLIENT, bandwidth_bytes=12 * MIB, latency_ms=40, packet_loss=2)
    conn = await services.connections.record_activity(HOST, CLIENT, bandwidth_bytes=8 * MIB)

    assert conn.total_bandwidth == 20 * MIB
    assert conn.connection_quality == pytest.approx(98)
    assert (await fetch_node(HOST)).bandwidth_shared == 20 * MIB


@pytest.mark.asyncio
async def test_transport_operations(services, host):
    conn, host_ip = await services.connections.connect_to_host(CLIENT, HOST)
    assert host_ip == "5.5.5.5"

    closed = await services.connections.client_disconnect(CLIENT)
    assert closed.id == conn.id

    with pytest.raises(NotFound):
        await services.connections.client_disconnect(CLIENT)

    await services.connections.connect_to_host(CLIENT, HOST)
    await services.connections.disconnect_client(HOST, CLIENT)
    assert await services.connections.get_connected_clients(HOST) == []

    with pytest.raises(NotFound):
        await services.connections.get_connected_clients(CLIENT)


@pytest.mark.asyncio
async def test_concurrent_opens_on_one_host_count_every_client(services, host, fetch_node):
    clients = [f"CLIENT_WALLET_{i:04d}" for i in range(8)]

    await asyncio.gather(*(services.connections.open(HOST, c) for c in clients))

    assert (await fetch_node(HOST)).connected_users == len(clients)
    listed = await services.connections.list_active(HOST)
    assert {c.wallet_address for c in listed} == set(clients)


@pytest.mark.asyncio
async def test_concurrent_duplicate_open_keeps_one_session(services, host, fetch_node):
    results = await asyncio.gather(
        services.connections.open(HOST, CLIENT),
        services.connections.open(HOST, CLIENT),
        return_exceptions=True,
    )

    assert sum(isinstance(r, ConflictError) for r in results) == 1
    assert (await fetch_node(HOST)).connected_users == 1
