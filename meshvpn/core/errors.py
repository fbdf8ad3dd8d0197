from __future__ import annotations

from datetime import datetime, timedelta


class MeshError(Exception):
    """Base for errors the transport maps onto a response."""

    http_status = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class ValidationError(MeshError):
    http_status = 400


class AuthError(MeshError):
    http_status = 401


class Forbidden(MeshError):
    http_status = 403


class NotFound(MeshError):
    http_status = 404


class ConflictError(MeshError):
    http_status = 409


class PoolExhausted(ConflictError):
    pass


class ClaimTooSoon(MeshError):
    http_status = 429

    def __init__(self, remaining: timedelta, next_claim_time: datetime) -> None:
        super().__init__("You can only claim rewards once per day")
        self.remaining = remaining
        self.next_claim_time = next_claim_time


class UpstreamUnavailable(MeshError):
    """A dependency outside the store (cache, provisioner, node ping) did not answer."""

    http_status = 503
