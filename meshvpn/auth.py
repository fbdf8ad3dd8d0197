from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Mapping

import jwt

from meshvpn.core.config import Settings
from meshvpn.core.errors import AuthError, Forbidden
from meshvpn.core.time import utcnow

log = logging.getLogger(__name__)

ALGORITHM = "HS256"
# an unverifiable bearer longer than this is taken as a raw wallet address
WALLET_TOKEN_MIN_LEN = 30


@dataclass(frozen=True)
class Identity:
    wallet_address: str
    is_admin: bool = False
    # jwt | token-wallet | header | test
    method: str = "jwt"

    def require_admin(self) -> None:
        if not self.is_admin:
            raise Forbidden("Admin access required")


def issue_token(
    settings: Settings,
    wallet_address: str,
    *,
    is_admin: bool = False,
    ttl: timedelta = timedelta(days=7),
    now: datetime | None = None,
) -> str:
    now = now or utcnow()
    payload = {
        "walletAddress": wallet_address,
        "isAdmin": is_admin,
        "iat": int(now.timestamp()),
        "exp": int((now + ttl).timestamp()),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=ALGORITHM)


class Authenticator:
    """Resolves request headers to an Identity.

    Order: valid bearer JWT, then a long bearer value used as the wallet
    itself, then the X-Wallet-Address header. With nothing usable the
    development env falls back to the test wallet; production rejects.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.admin_wallets = frozenset(settings.admin_wallets)

    def authenticate(self, headers: Mapping[str, str]) -> Identity:
        auth_header = (headers.get("Authorization") or "").strip()
        header_wallet = (headers.get("X-Wallet-Address") or "").strip()

        token = auth_header[len("Bearer "):].strip() if auth_header.startswith("Bearer ") else ""

        if token:
            try:
                payload = jwt.decode(token, self.settings.jwt_secret, algorithms=[ALGORITHM])
            except jwt.PyJWTError as e:
                log.warning("auth_jwt_invalid err=%s", e)
            else:
                wallet = str(payload.get("walletAddress") or "").strip()
                if not wallet:
                    raise AuthError("Token carries no wallet address")
                return self._identity(wallet, "jwt", bool(payload.get("isAdmin")))

            if len(token) > WALLET_TOKEN_MIN_LEN:
                return self._identity(token, "token-wallet")

        if header_wallet:
            return self._identity(header_wallet, "header")

        if self.settings.is_development:
            log.info("auth_test_identity wallet=%s", self.settings.test_wallet_address)
            return self._identity(self.settings.test_wallet_address, "test")

        raise AuthError("Authentication required")

    def _identity(self, wallet: str, method: str, admin_claim: bool = False) -> Identity:
        return Identity(
            wallet_address=wallet,
            is_admin=admin_claim or wallet in self.admin_wallets,
            method=method,
        )
