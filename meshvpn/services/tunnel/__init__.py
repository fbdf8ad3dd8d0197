"""WireGuard tunnel credentials: key generation, IP allocation and peer sync."""
