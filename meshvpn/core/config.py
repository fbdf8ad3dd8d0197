import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in ("1", "true", "yes", "y", "on")


def _env_csv(name: str, default: str) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        raw = default
    return tuple(x.strip() for x in raw.split(",") if x.strip())


def make_async_db_url(url: str) -> str:
    """Accepts Heroku/Railway-style DATABASE_URL and returns sqlalchemy async url."""
    if url.startswith("postgresql+asyncpg://") or url.startswith("sqlite+aiosqlite://"):
        return url
    if url.startswith("postgres://"):
        return "postgresql+asyncpg://" + url[len("postgres://") :]
    if url.startswith("postgresql://"):
        return "postgresql+asyncpg://" + url[len("postgresql://") :]
    if url.startswith("sqlite://"):
        return "sqlite+aiosqlite://" + url[len("sqlite://") :]
    raise RuntimeError("Unsupported DATABASE_URL format")


@dataclass(frozen=True)
class Settings:
    database_url: str
    # production | development
    env: str = "production"

    # HTTP
    web_host: str = "0.0.0.0"
    web_port: int = 3000

    # Auth
    jwt_secret: str = "vpn-network-secret-key"
    admin_wallets: tuple[str, ...] = ()
    test_wallet_address: str = "TEST_WALLET_ADDRESS"

    # Cache: no REDIS_URL -> disabled; CACHE_BACKEND=memory -> single-worker TTL cache
    redis_url: str = ""
    cache_backend: str = ""

    # Rewards
    reward_bandwidth_factor: float = 0.01
    reward_uptime_factor: float = 0.005
    reward_location_multiplier: float = 1.2
    reward_default_demand: float = 1.5
    underserved_countries: tuple[str, ...] = ("AF", "SA")
    reward_cache_ttl_seconds: int = 300
    reward_recalc_interval_seconds: int = 3600
    # canonical tier table (strictly greater than)
    tier_pro_threshold: float = 1000.0
    tier_elite_threshold: float = 5000.0
    claim_interval_hours: int = 24

    # Connections / discovery
    connected_clients_ttl_seconds: int = 30
    freshness_window_minutes: int = 30

    # Tunnel (WireGuard)
    # mock: in-memory peers (dev/test), ssh: wg over asyncssh
    tunnel_mode: str = "mock"
    tunnel_network: str = "10.8.0.0/24"
    tunnel_port: int = 51820
    server_public_ip: str = "localhost"
    server_public_key: str = "server_public_key_simulated"
    tunnel_allowed_ips: str = "0.0.0.0/0, ::/0"
    tunnel_dns: str = "1.1.1.1, 8.8.8.8"
    tunnel_keepalive: int = 25
    # Fernet secret for private keys at rest; empty stores plaintext
    tunnel_key_secret: str = ""
    wg_interface: str = "wg0"
    wg_ssh_host: str = ""
    wg_ssh_port: int = 22
    wg_ssh_user: str = "root"
    wg_ssh_password: str | None = None

    @property
    def is_development(self) -> bool:
        return self.env == "development"

    @property
    def server_endpoint(self) -> str:
        return f"{self.server_public_ip}:{self.tunnel_port}"


def load_settings() -> Settings:
    database_url_raw = os.getenv("DATABASE_URL", "").strip()
    if not database_url_raw:
        raise RuntimeError("DATABASE_URL is missing")

    return Settings(
        database_url=make_async_db_url(database_url_raw),
        env=os.getenv("NODE_ENV", os.getenv("APP_ENV", "production")).strip().lower(),
        web_host=os.getenv("HOST", "0.0.0.0").strip(),
        web_port=int(os.getenv("PORT", "3000")),
        jwt_secret=os.getenv("JWT_SECRET", "vpn-network-secret-key").strip(),
        admin_wallets=_env_csv("ADMIN_WALLETS", ""),
        redis_url=(os.getenv("REDIS_URL") or os.getenv("REDIS_URI") or "").strip(),
        cache_backend=os.getenv("CACHE_BACKEND", "").strip().lower(),
        # Rewards
        reward_bandwidth_factor=float(os.getenv("REWARD_BANDWIDTH_FACTOR", "0.01")),
        reward_uptime_factor=float(os.getenv("REWARD_UPTIME_FACTOR", "0.005")),
        reward_location_multiplier=float(os.getenv("REWARD_LOCATION_MULTIPLIER", "1.2")),
        reward_default_demand=float(os.getenv("REWARD_DEFAULT_DEMAND", "1.5")),
        underserved_countries=_env_csv("UNDERSERVED_COUNTRIES", "AF,SA"),
        reward_cache_ttl_seconds=int(os.getenv("REWARD_CACHE_TTL_SECONDS", "300")),
        reward_recalc_interval_seconds=int(os.getenv("REWARD_RECALC_INTERVAL_SECONDS", "3600")),
        tier_pro_threshold=float(os.getenv("TIER_PRO_THRESHOLD", "1000")),
        tier_elite_threshold=float(os.getenv("TIER_ELITE_THRESHOLD", "5000")),
        claim_interval_hours=int(os.getenv("CLAIM_INTERVAL_HOURS", "24")),
        connected_clients_ttl_seconds=int(os.getenv("CONNECTED_CLIENTS_TTL_SECONDS", "30")),
        freshness_window_minutes=int(os.getenv("FRESHNESS_WINDOW_MINUTES", "30")),
        # Tunnel
        tunnel_mode=os.getenv("TUNNEL_MODE", "mock").strip().lower(),
        tunnel_network=os.getenv("TUNNEL_NETWORK", "10.8.0.0/24").strip(),
        tunnel_port=int(os.getenv("WG_PORT", "51820")),
        server_public_ip=os.getenv("SERVER_PUBLIC_IP", "localhost").strip(),
        server_public_key=os.getenv("WG_SERVER_PUBLIC_KEY", "server_public_key_simulated").strip(),
        tunnel_allowed_ips=os.getenv("WG_ALLOWED_IPS", "0.0.0.0/0, ::/0").strip(),
        tunnel_dns=os.getenv("WG_DNS", "1.1.1.1, 8.8.8.8").strip(),
        tunnel_keepalive=int(os.getenv("WG_PERSISTENT_KEEPALIVE", "25")),
        tunnel_key_secret=os.getenv("TUNNEL_KEY_ENC_SECRET", "").strip(),
        wg_interface=os.getenv("WG_INTERFACE", "wg0").strip(),
        wg_ssh_host=os.getenv("WG_SSH_HOST", "").strip(),
        wg_ssh_port=int(os.getenv("WG_SSH_PORT", "22")),
        wg_ssh_user=os.getenv("WG_SSH_USER", "root").strip(),
        wg_ssh_password=(os.getenv("WG_SSH_PASSWORD") or "").strip() or None,
    )
