from __future__ import annotations

import asyncio
import base64
import logging
import os
from datetime import datetime, timezone
from typing import Optional

import asyncssh

from meshvpn.services.tunnel.provisioner import Peer, PeerHandshake

log = logging.getLogger(__name__)

WG_BIN = "/usr/bin/wg"
ENV_PATH = "PATH=/usr/sbin:/usr/bin:/sbin:/bin"


def parse_latest_handshakes(out: str) -> list[PeerHandshake]:
    """Parse `wg show <iface> latest-handshakes`: `<pubkey>\\t<unix_ts>`, 0 if never."""
    res: list[PeerHandshake] = []
    for ln in (out or "").splitlines():
        parts = ln.strip().split()
        if len(parts) < 2 or not parts[0]:
            continue
        try:
            ts = int(parts[1])
        except ValueError:
            ts = 0
        at = datetime.fromtimestamp(ts, tz=timezone.utc) if ts > 0 else None
        res.append(PeerHandshake(public_key=parts[0], last_handshake_at=at))
    return res


class WireGuardSSHProvider:
    """Drives `wg` on the tunnel server over SSH."""

    mode = "ssh"

    def __init__(self, host: str, port: int, user: str, password: Optional[str], interface: str = "wg0"):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.interface = interface

        self.connect_timeout = 15
        self.login_timeout = 15
        self.cmd_timeout = 10
        self.retries = 2

        self._key_obj = None

        key_b64 = os.environ.get("WG_SSH_PRIVATE_KEY_B64")
        if key_b64:
            key_text = base64.b64decode(key_b64.encode()).decode()
            self._key_obj = asyncssh.import_private_key(key_text.strip())
            log.info("wg_ssh_key_loaded")

    async def _connect(self) -> asyncssh.SSHClientConnection:
        return await asyncssh.connect(
            self.host,
            port=self.port,
            username=self.user,
            password=self.password,
            client_keys=[self._key_obj] if self._key_obj else None,
            known_hosts=None,
            connect_timeout=self.connect_timeout,
            login_timeout=self.login_timeout,
        )

    async def _run_output(self, cmd: str, *, check: bool = True) -> str:
        last: Exception | None = None
        for _ in range(self.retries):
            try:
                async with await self._connect() as conn:
                    result = await conn.run(f"{ENV_PATH} {cmd}", timeout=self.cmd_timeout, check=check)
                    if result.stderr:
                        log.warning("wg_ssh_stderr %s", str(result.stderr).strip())
                    return str(result.stdout or "").strip()
            except (OSError, asyncssh.Error, asyncio.TimeoutError) as e:
                last = e
                await asyncio.sleep(0.5)
        assert last is not None
        raise last

    async def create_peer(self, public_key: str, allowed_ip: str) -> None:
        await self._run_output(f"{WG_BIN} set {self.interface} peer {public_key} allowed-ips {allowed_ip}/32")
        log.info("wg_peer_created key=%s ip=%s", public_key, allowed_ip)

    async def remove_peer(self, public_key: str) -> None:
        await self._run_output(f"{WG_BIN} set {self.interface} peer {public_key} remove")
        log.info("wg_peer_removed key=%s", public_key)

    async def list_active_peers(self) -> list[PeerHandshake]:
        out = await self._run_output(f"{WG_BIN} show {self.interface} latest-handshakes", check=False)
        return parse_latest_handshakes(out)

    async def apply_full_peer_set(self, peers: list[Peer]) -> None:
        """Make the interface carry exactly `peers`: add or refresh wanted ones, drop the rest."""
        out = await self._run_output(f"{WG_BIN} show {self.interface} peers", check=False)
        current = {ln.strip() for ln in out.splitlines() if ln.strip()}
        wanted = {p.public_key for p in peers}

        for key in sorted(current - wanted):
            await self.remove_peer(key)
        for p in peers:
            await self.create_peer(p.public_key, p.allowed_ip)
        log.info("wg_peer_set_applied peers=%s removed=%s", len(peers), len(current - wanted))
