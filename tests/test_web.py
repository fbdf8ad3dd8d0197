from dataclasses import replace

import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer

from meshvpn.services.container import build_services
from meshvpn.web.app import create_app

HOST = {"X-Wallet-Address": "HOST_WALLET_0001"}
CLIENT = {"X-Wallet-Address": "CLIENT_WALLET_0001"}


@pytest_asyncio.fixture
async def client(services):
    async with TestClient(TestServer(create_app(services))) as c:
        yield c


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status == 200
    body = await resp.json()
    assert body["success"] is True
    assert body["status"] == "healthy"
    assert body["tunnel"]["mode"] == "mock"
    assert "X-Request-Id" in resp.headers


@pytest.mark.asyncio
async def test_node_lifecycle_over_http(client, clock):
    resp = await client.post("/api/connect", json={"isHost": True, "nodeInfo": {"bandwidth": 100, "country": "SA"}}, headers=HOST)
    assert resp.status == 200
    node = (await resp.json())["node"]
    assert (node["status"], node["active"], node["nodeType"]) == ("ACTIVE", True, "HOST")

    resp = await client.get("/api/available-nodes", headers=CLIENT)
    nodes = (await resp.json())["nodes"]
    assert [n["walletAddress"] for n in nodes] == ["HOST_WALLET_0001"]

    resp = await client.post("/api/connect-to-node", json={"hostWalletAddress": "HOST_WALLET_0001"}, headers=CLIENT)
    assert resp.status == 200

    resp = await client.post("/api/connect-to-node", json={"hostWalletAddress": "HOST_WALLET_0001"}, headers=CLIENT)
    assert resp.status == 409
    assert (await resp.json())["success"] is False

    resp = await client.get("/api/connected-clients", headers=HOST)
    clients = (await resp.json())["clients"]
    assert [c["walletAddress"] for c in clients] == ["CLIENT_WALLET_0001"]

    resp = await client.post("/api/client-disconnect", json={}, headers=CLIENT)
    assert resp.status == 200

    clock.advance(hours=1)
    resp = await client.post("/api/disconnect", json={}, headers=HOST)
    body = await resp.json()
    assert body["uptime"] == 3600
    assert body["rewards"]["totalEarned"] == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_status_not_found(client):
    resp = await client.get("/api/status", headers={"X-Wallet-Address": "NOPE"})
    assert resp.status == 404
    assert await resp.json() == {"success": False, "error": "Node not found"}


@pytest.mark.asyncio
async def test_invalid_json_body(client):
    resp = await client.post("/api/connect", data="not json", headers={**HOST, "Content-Type": "application/json"})
    assert resp.status == 400


@pytest.mark.asyncio
async def test_claim_twice_is_429(client):
    await client.post("/api/connect", json={"isHost": True, "nodeInfo": {"bandwidth": 10}}, headers=HOST)

    resp = await client.post("/api/dailyClaims/claim", headers=HOST)
    assert resp.status == 200
    assert "nextClaimTime" in await resp.json()

    resp = await client.post("/api/dailyClaims/claim", headers=HOST)
    assert resp.status == 429
    body = await resp.json()
    assert body["remainingSeconds"] == 24 * 3600

    resp = await client.get("/api/dailyClaims", headers=HOST)
    body = await resp.json()
    assert body["canClaim"] is False
    assert len(body["claimHistory"]) == 1


@pytest.mark.asyncio
async def test_wireguard_config_endpoints(client):
    resp = await client.get("/api/wireguard/config", headers=CLIENT)
    body = await resp.json()
    assert body["config"]["clientIp"] == "10.8.0.2"
    assert "PrivateKey = " in body["configFile"]
    assert "privateKeyEnc" not in body["config"]

    resp = await client.get("/api/wireguard/config?format=qr", headers=CLIENT)
    assert resp.content_type == "image/png"

    resp = await client.post("/api/wireguard/config", headers=CLIENT)
    assert (await resp.json())["config"]["clientIp"] == "10.8.0.3"

    resp = await client.delete("/api/wireguard/config", headers=CLIENT)
    assert resp.status == 200

    resp = await client.get("/api/wireguard/connected-clients", headers=CLIENT)
    assert resp.status == 403

    resp = await client.get("/api/wireguard/connected-clients", headers={"X-Wallet-Address": "ADMIN_WALLET"})
    assert resp.status == 200


@pytest.mark.asyncio
async def test_production_rejects_anonymous(settings, sessions, cache, provisioner, clock):
    services = build_services(replace(settings, env="production"), sessions, cache, provisioner, clock=clock)
    async with TestClient(TestServer(create_app(services))) as c:
        resp = await c.get("/api/status")
        assert resp.status == 401

        resp = await c.get("/api/network-stats")
        assert resp.status == 200


@pytest.mark.asyncio
async def test_node_connection_check(client, services):
    async def ping(ip):
        return 25.0

    services.registry.pinger = ping
    await client.post("/api/connect", json={"isHost": True, "nodeInfo": {"bandwidth": 10, "ip": "9.9.9.9"}}, headers=HOST)

    resp = await client.get("/api/test-node-connection", headers=HOST)
    assert resp.status == 200
    body = await resp.json()
    assert (body["latency"], body["ip"]) == (25.0, "9.9.9.9")

    resp = await client.get("/api/available-nodes", headers=CLIENT)
    assert (await resp.json())["nodes"][0]["latency"] == 25.0
