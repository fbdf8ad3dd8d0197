from __future__ import annotations

import logging
from typing import Any

from aiohttp import web

from meshvpn.auth import Identity
from meshvpn.core.errors import ValidationError
from meshvpn.services.container import Services
from meshvpn.services.registry.service import NodeInfo, node_status_view
from meshvpn.services.tunnel.service import tunnel_config_view
from meshvpn.web.middlewares import json_ok

log = logging.getLogger(__name__)

SERVICES_KEY = web.AppKey("services", Services)

routes = web.RouteTableDef()


def _services(request: web.Request) -> Services:
    return request.app[SERVICES_KEY]


def _identity(request: web.Request) -> Identity:
    return request["identity"]


async def _body(request: web.Request) -> dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        data = await request.json()
    except ValueError as e:
        raise ValidationError("Request body must be JSON") from e
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _wallet(request: web.Request, body: dict[str, Any] | None = None, field: str = "walletAddress") -> str:
    """Explicit wallet from the body or query, else the caller's own."""
    explicit = (body or {}).get(field) or request.query.get(field)
    return str(explicit).strip() if explicit else _identity(request).wallet_address


# ---- nodes ------------------------------------------------------------------------

@routes.post("/api/connect")
async def connect(request: web.Request) -> web.Response:
    body = await _body(request)
    node_info = body.get("nodeInfo")
    if node_info is not None and not isinstance(node_info, dict):
        raise ValidationError("nodeInfo must be an object")
    node = await _services(request).registry.connect(
        _wallet(request, body),
        NodeInfo.from_dict(node_info),
        is_host=bool(body.get("isHost")),
    )
    return json_ok({"message": "Node connected", "node": node_status_view(node)})


@routes.post("/api/disconnect")
async def disconnect(request: web.Request) -> web.Response:
    body = await _body(request)
    res = await _services(request).registry.disconnect(_wallet(request, body))
    payload: dict[str, Any] = {
        "message": "Node disconnected",
        "walletAddress": res.wallet_address,
        "nodeType": res.node_type,
        "uptime": res.uptime_seconds,
        "rewardAdded": res.reward_added,
    }
    if res.rewards is not None:
        payload["rewards"] = {"dailyReward": res.rewards.daily, "totalEarned": res.rewards.total}
    return json_ok(payload)


@routes.get("/api/status")
async def status(request: web.Request) -> web.Response:
    wallet = request.headers.get("X-Wallet-Address") or _wallet(request)
    node = await _services(request).registry.get_status(wallet)
    return json_ok({"node": node_status_view(node)})


@routes.get("/api/test-node-connection")
async def test_node_connection(request: web.Request) -> web.Response:
    wallet = request.headers.get("X-Wallet-Address") or _wallet(request)
    node, latency = await _services(request).registry.check_connection(wallet)
    return json_ok({"message": "Connection successful", "latency": latency, "ip": node.ip})


@routes.post("/api/reset-node-ip")
async def reset_node_ip(request: web.Request) -> web.Response:
    body = await _body(request)
    new_ip = body.get("ip")
    if new_ip is not None and not isinstance(new_ip, str):
        raise ValidationError("ip must be a string")
    node = await _services(request).registry.reset_ip(_wallet(request, body), new_ip)
    return json_ok({"message": "Node IP reset", "ip": node.ip})


@routes.get("/api/network-stats")
async def network_stats(request: web.Request) -> web.Response:
    stats = await _services(request).registry.network_stats()
    return json_ok({"stats": stats})


# ---- discovery & connections --------------------------------------------------------

@routes.get("/api/available-nodes")
async def available_nodes(request: web.Request) -> web.Response:
    nodes = await _services(request).ranking.list_available()
    return json_ok({"nodes": [n.to_dict() for n in nodes], "count": len(nodes)})


@routes.post("/api/connect-to-node")
async def connect_to_node(request: web.Request) -> web.Response:
    body = await _body(request)
    host = str(body.get("hostWalletAddress") or "").strip()
    if not host:
        raise ValidationError("hostWalletAddress is required")
    client = _wallet(request, body, "clientWalletAddress")
    conn, host_ip = await _services(request).connections.connect_to_host(client, host)
    return json_ok({
        "message": "Connected to host",
        "connectionId": conn.id,
        "hostWalletAddress": host,
        "clientWalletAddress": client,
        "hostIp": host_ip,
        "connectedAt": conn.connected_at,
    })


@routes.post("/api/client-disconnect")
async def client_disconnect(request: web.Request) -> web.Response:
    body = await _body(request)
    conn = await _services(request).connections.client_disconnect(_wallet(request, body, "clientWalletAddress"))
    return json_ok({
        "message": "Disconnected from host",
        "hostWalletAddress": conn.host_wallet_address,
        "sessionDuration": conn.session_duration,
    })


@routes.get("/api/connected-clients")
async def connected_clients(request: web.Request) -> web.Response:
    clients = await _services(request).connections.get_connected_clients(_identity(request).wallet_address)
    return json_ok({"clients": [c.to_dict() for c in clients], "count": len(clients)})


@routes.post("/api/disconnect-client")
async def disconnect_client(request: web.Request) -> web.Response:
    body = await _body(request)
    client = str(body.get("clientWalletAddress") or "").strip()
    if not client:
        raise ValidationError("clientWalletAddress is required")
    conn = await _services(request).connections.disconnect_client(_identity(request).wallet_address, client)
    return json_ok({
        "message": "Client disconnected",
        "clientWalletAddress": client,
        "sessionDuration": conn.session_duration,
    })


# ---- rewards ----------------------------------------------------------------------

@routes.get("/api/node-rewards/{wallet}")
async def node_rewards(request: web.Request) -> web.Response:
    wallet = request.match_info["wallet"]
    rewards = await _services(request).rewards.get_rewards(wallet)
    return json_ok({"walletAddress": wallet, "rewards": rewards.to_dict()})


@routes.get("/api/dailyClaims")
async def daily_claims(request: web.Request) -> web.Response:
    info = await _services(request).rewards.claim_status(_identity(request).wallet_address)
    return json_ok(info)


@routes.post("/api/dailyClaims/claim")
async def daily_claims_claim(request: web.Request) -> web.Response:
    res = await _services(request).rewards.claim(_identity(request).wallet_address)
    return json_ok({
        "message": "Rewards claimed successfully",
        "claimedAmount": res.claimed_amount,
        "nextClaimTime": res.next_claim_time,
    })


# ---- tunnel -----------------------------------------------------------------------

def _tunnel_response(request: web.Request, config) -> web.Response:
    tunnel = _services(request).tunnel
    if request.query.get("format") == "conf":
        return web.Response(
            text=tunnel.render_client_config(config),
            content_type="text/plain",
            headers={"Content-Disposition": f'attachment; filename="wg-{config.client_ip}.conf"'},
        )
    if request.query.get("format") == "qr":
        return web.Response(body=tunnel.render_qr_png(config), content_type="image/png")
    return json_ok({
        "config": tunnel_config_view(config),
        "configFile": tunnel.render_client_config(config),
    })


@routes.get("/api/wireguard/config")
async def wireguard_get_config(request: web.Request) -> web.Response:
    config = await _services(request).tunnel.get_or_create(_identity(request).wallet_address)
    return _tunnel_response(request, config)


@routes.post("/api/wireguard/config")
async def wireguard_regenerate(request: web.Request) -> web.Response:
    config = await _services(request).tunnel.regenerate(_identity(request).wallet_address)
    return _tunnel_response(request, config)


@routes.delete("/api/wireguard/config")
async def wireguard_deactivate(request: web.Request) -> web.Response:
    await _services(request).tunnel.deactivate(_identity(request).wallet_address)
    return json_ok({"message": "Tunnel configuration deactivated"})


@routes.get("/api/wireguard/status")
async def wireguard_status(request: web.Request) -> web.Response:
    return json_ok({"status": _services(request).tunnel.status()})


@routes.get("/api/wireguard/connected-clients")
async def wireguard_connected_clients(request: web.Request) -> web.Response:
    _identity(request).require_admin()
    window = request.query.get("window", "180")
    try:
        window_seconds = int(window)
    except ValueError as e:
        raise ValidationError("window must be an integer number of seconds") from e
    clients = await _services(request).tunnel.connected_clients(window_seconds)
    return json_ok({"clients": clients, "count": len(clients)})


# ---- health -----------------------------------------------------------------------

@routes.get("/health")
async def health(request: web.Request) -> web.Response:
    services = _services(request)
    tunnel = services.tunnel.status()
    return json_ok({
        "status": "healthy" if tunnel["sync"]["ok"] else "degraded",
        "tunnel": tunnel,
        "cache": {"lastError": services.cache.last_error},
    })
