from __future__ import annotations

import io
import ipaddress
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import qrcode
from sqlalchemy.ext.asyncio import AsyncSession

from meshvpn import repo
from meshvpn.core.config import Settings
from meshvpn.core.errors import NotFound, PoolExhausted, ValidationError
from meshvpn.core.time import Clock, utcnow, within
from meshvpn.db.locks import KeyedLocks, advisory_xact_lock
from meshvpn.db.models import TunnelConfig
from meshvpn.db.session import SessionFactory, session_scope
from meshvpn.services.tunnel.crypto import KeyBox, gen_keys
from meshvpn.services.tunnel.provisioner import Peer, TunnelProvisioner

log = logging.getLogger(__name__)

IP_CURSOR_KEY = "tunnel_ip_cursor"
POOL_LOCK = "tunnel:ip-pool"
SYNC_LOCK = "tunnel:sync"


@dataclass
class SyncHealth:
    last_sync_at: datetime | None = None
    last_success_at: datetime | None = None
    last_error: str | None = None
    failures: int = 0

    @property
    def ok(self) -> bool:
        return self.last_error is None


class TunnelConfigManager:
    """Per-user WireGuard credentials and the server's peer list.

    The database is the source of truth. Every mutation is followed by a
    full resync of active peers; a failed resync leaves the config change in
    place and shows up in `status()` until the next successful sync.
    """

    def __init__(
        self,
        sessions: SessionFactory,
        settings: Settings,
        provisioner: TunnelProvisioner | None,
        *,
        locks: KeyedLocks | None = None,
        clock: Clock = utcnow,
        keybox: KeyBox | None = None,
    ) -> None:
        self.sessions = sessions
        self.settings = settings
        self.provisioner = provisioner
        self.locks = locks or KeyedLocks()
        self.clock = clock
        self.keybox = keybox or KeyBox(settings.tunnel_key_secret)
        self.network = ipaddress.ip_network(settings.tunnel_network, strict=False)
        self.health = SyncHealth()

    @property
    def server_ip(self) -> str:
        return str(self.network.network_address + 1)

    @property
    def max_host_offset(self) -> int:
        # excludes the broadcast address
        return self.network.num_addresses - 2

    async def get_or_create(self, user_id: str) -> TunnelConfig:
        user_id = _require_user(user_id)
        async with self.locks.hold(POOL_LOCK, _user_key(user_id)):
            async with session_scope(self.sessions) as session:
                config = await repo.get_tunnel_config(session, user_id)
                if config:
                    return config
                config = await self._create(session, user_id)

        await self.resync()
        return config

    async def regenerate(self, user_id: str) -> TunnelConfig:
        user_id = _require_user(user_id)
        async with self.locks.hold(POOL_LOCK, _user_key(user_id)):
            async with session_scope(self.sessions) as session:
                existing = await repo.get_tunnel_config(session, user_id)
                if existing:
                    await session.delete(existing)
                    await session.flush()
                    log.info("tunnel_config_deleted user=%s ip=%s", user_id, existing.client_ip)
                config = await self._create(session, user_id)

        await self.resync()
        return config

    async def deactivate(self, user_id: str) -> TunnelConfig:
        user_id = _require_user(user_id)
        async with self.locks.hold(_user_key(user_id)):
            async with session_scope(self.sessions) as session:
                config = await repo.get_tunnel_config(session, user_id)
                if not config:
                    raise NotFound("Tunnel configuration not found")
                config.is_active = False
                config.updated_at = self.clock()
                await session.flush()
        log.info("tunnel_config_deactivated user=%s ip=%s", user_id, config.client_ip)

        await self.resync()
        return config

    async def resync(self) -> bool:
        """Push the full active peer set. Returns False on failure (recorded in health)."""
        if self.provisioner is None:
            return True

        async with self.locks.hold(SYNC_LOCK):
            now = self.clock()
            self.health.last_sync_at = now
            async with session_scope(self.sessions) as session:
                configs = await repo.list_active_tunnel_configs(session)
            peers = [Peer(public_key=c.public_key, allowed_ip=c.client_ip) for c in configs]
            try:
                await self.provisioner.apply_full_peer_set(peers)
            except Exception as e:
                self.health.last_error = f"{type(e).__name__}: {e}"
                self.health.failures += 1
                log.exception("tunnel_resync_failed peers=%s failures=%s", len(peers), self.health.failures)
                return False

            self.health.last_error = None
            self.health.last_success_at = now
            log.info("tunnel_resync_ok peers=%s", len(peers))
            return True

    def status(self) -> dict[str, Any]:
        h = self.health
        return {
            "mode": self.provisioner.mode if self.provisioner is not None else "disabled",
            "available": self.provisioner is not None,
            "interface": self.settings.wg_interface,
            "port": self.settings.tunnel_port,
            "network": str(self.network),
            "serverIp": self.server_ip,
            "serverEndpoint": self.settings.server_endpoint,
            "sync": {
                "ok": h.ok,
                "lastSyncAt": h.last_sync_at,
                "lastSuccessAt": h.last_success_at,
                "lastError": h.last_error,
                "failures": h.failures,
            },
        }

    async def connected_clients(self, window_seconds: int = 180) -> list[dict[str, Any]]:
        if self.provisioner is None:
            return []
        now = self.clock()
        window = timedelta(seconds=window_seconds)
        peers = await self.provisioner.list_active_peers()
        recent = [p for p in peers if within(p.last_handshake_at, now, window)]

        async with session_scope(self.sessions) as session:
            by_key = await repo.tunnel_configs_by_public_key(session, [p.public_key for p in recent])

        res = []
        for p in recent:
            config = by_key.get(p.public_key)
            res.append({
                "userId": config.user_id if config else None,
                "publicKey": p.public_key,
                "clientIp": config.client_ip if config else None,
                "lastHandshake": p.last_handshake_at,
            })
        return res

    def render_client_config(self, config: TunnelConfig) -> str:
        private_key = self.keybox.decrypt(config.private_key_enc)
        return (
            "[Interface]\n"
            f"PrivateKey = {private_key}\n"
            f"Address = {config.client_ip}/{self.network.prefixlen}\n"
            f"DNS = {config.dns}\n\n"
            "[Peer]\n"
            f"PublicKey = {config.server_public_key}\n"
            f"Endpoint = {config.server_endpoint}\n"
            f"AllowedIPs = {config.allowed_ips}\n"
            f"PersistentKeepalive = {config.persistent_keepalive}\n"
        )

    def render_qr_png(self, config: TunnelConfig) -> bytes:
        img = qrcode.make(self.render_client_config(config))
        buf = io.BytesIO()
        img.save(buf, format="PNG")
        return buf.getvalue()

    # ---- internals -------------------------------------------------------------

    async def _allocate_ip(self, session: AsyncSession) -> str:
        await advisory_xact_lock(session, POOL_LOCK)
        last = await repo.get_app_setting_int(session, IP_CURSOR_KEY, default=1)
        offset = last + 1
        if offset > self.max_host_offset:
            raise PoolExhausted(f"No free tunnel address left in {self.network}")
        await repo.set_app_setting_int(session, IP_CURSOR_KEY, offset, now=self.clock())
        return str(self.network.network_address + offset)

    async def _create(self, session: AsyncSession, user_id: str) -> TunnelConfig:
        s = self.settings
        now = self.clock()
        client_ip = await self._allocate_ip(session)
        private_key, public_key = gen_keys()

        config = TunnelConfig(
            user_id=user_id,
            private_key_enc=self.keybox.encrypt(private_key),
            public_key=public_key,
            client_ip=client_ip,
            server_public_key=s.server_public_key,
            server_endpoint=s.server_endpoint,
            server_ip=self.server_ip,
            allowed_ips=s.tunnel_allowed_ips,
            dns=s.tunnel_dns,
            persistent_keepalive=s.tunnel_keepalive,
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        session.add(config)
        await session.flush()
        log.info("tunnel_config_created user=%s ip=%s", user_id, client_ip)
        return config


def tunnel_config_view(config: TunnelConfig) -> dict[str, Any]:
    """Public fields of a config. The private key is only ever sent inside the rendered .conf."""
    return {
        "userId": config.user_id,
        "publicKey": config.public_key,
        "clientIp": config.client_ip,
        "serverPublicKey": config.server_public_key,
        "serverEndpoint": config.server_endpoint,
        "serverIp": config.server_ip,
        "allowedIps": config.allowed_ips,
        "dns": config.dns,
        "persistentKeepalive": config.persistent_keepalive,
        "isActive": config.is_active,
    }


def _user_key(user_id: str) -> str:
    return f"tunnel:{user_id}"


def _require_user(user_id: str | None) -> str:
    user_id = (user_id or "").strip()
    if not user_id:
        raise ValidationError("User id is required")
    return user_id
