from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from meshvpn.core.config import Settings
from meshvpn.core.errors import ValidationError
from meshvpn.core.time import Clock, utcnow

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Peer:
    public_key: str
    allowed_ip: str


@dataclass(frozen=True)
class PeerHandshake:
    public_key: str
    last_handshake_at: datetime | None


class TunnelProvisioner(Protocol):
    mode: str

    async def create_peer(self, public_key: str, allowed_ip: str) -> None: ...

    async def remove_peer(self, public_key: str) -> None: ...

    async def list_active_peers(self) -> list[PeerHandshake]: ...

    async def apply_full_peer_set(self, peers: list[Peer]) -> None: ...


class MockProvisioner:
    """In-memory peer table. Used in development and tests."""

    mode = "mock"

    def __init__(self, clock: Clock = utcnow) -> None:
        self.clock = clock
        self.peers: dict[str, str] = {}
        self.handshakes: dict[str, datetime] = {}
        self.applied: list[list[Peer]] = []
        self.fail_next: Exception | None = None

    def _maybe_fail(self) -> None:
        if self.fail_next is not None:
            err, self.fail_next = self.fail_next, None
            raise err

    async def create_peer(self, public_key: str, allowed_ip: str) -> None:
        self._maybe_fail()
        self.peers[public_key] = allowed_ip
        log.info("mock_peer_created key=%s ip=%s", public_key, allowed_ip)

    async def remove_peer(self, public_key: str) -> None:
        self._maybe_fail()
        self.peers.pop(public_key, None)
        self.handshakes.pop(public_key, None)

    async def list_active_peers(self) -> list[PeerHandshake]:
        self._maybe_fail()
        return [PeerHandshake(public_key=k, last_handshake_at=self.handshakes.get(k)) for k in self.peers]

    async def apply_full_peer_set(self, peers: list[Peer]) -> None:
        self._maybe_fail()
        self.peers = {p.public_key: p.allowed_ip for p in peers}
        self.handshakes = {k: v for k, v in self.handshakes.items() if k in self.peers}
        self.applied.append(list(peers))
        log.info("mock_peer_set_applied peers=%s", len(peers))

    def handshake(self, public_key: str, at: datetime | None = None) -> None:
        self.handshakes[public_key] = at or self.clock()


def build_provisioner(settings: Settings) -> TunnelProvisioner:
    mode = settings.tunnel_mode
    if mode == "mock":
        log.warning("tunnel_provisioner_mock")
        return MockProvisioner()
    if mode == "ssh":
        from meshvpn.services.tunnel.ssh_provider import WireGuardSSHProvider

        if not settings.wg_ssh_host:
            raise ValidationError("WG_SSH_HOST is required when TUNNEL_MODE=ssh")
        return WireGuardSSHProvider(
            host=settings.wg_ssh_host,
            port=settings.wg_ssh_port,
            user=settings.wg_ssh_user,
            password=settings.wg_ssh_password,
            interface=settings.wg_interface,
        )
    raise ValidationError(f"Unknown TUNNEL_MODE: {mode}")
