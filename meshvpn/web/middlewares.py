from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime
from functools import partial
from typing import Any, Awaitable, Callable

from aiohttp import web

from meshvpn.core.errors import ClaimTooSoon, MeshError
from meshvpn.core.logging import bind_request, clear_request

log = logging.getLogger(__name__)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

# paths served without an identity
PUBLIC_PATHS = frozenset({"/health", "/api/network-stats"})


def _json_default(o: Any) -> Any:
    if isinstance(o, datetime):
        return o.isoformat()
    return str(o)


dumps = partial(json.dumps, default=_json_default, ensure_ascii=False)


def json_ok(payload: dict[str, Any] | None = None, *, status: int = 200) -> web.Response:
    return web.json_response({"success": True, **(payload or {})}, status=status, dumps=dumps)


def json_error(message: str, *, status: int, **extra: Any) -> web.Response:
    return web.json_response({"success": False, "error": message, **extra}, status=status, dumps=dumps)


@web.middleware
async def correlation_id_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Tags the request with corr_id (X-Request-Id if the caller sent one) and logs the outcome."""
    corr_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex[:12]
    request["corr_id"] = corr_id
    clear_request()
    bind_request(corr_id=corr_id, method=request.method, path=request.path)
    resp = await handler(request)
    resp.headers["X-Request-Id"] = corr_id
    log.info("http_request", extra={"status": resp.status})
    return resp


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except ClaimTooSoon as e:
        return json_error(
            e.message,
            status=e.http_status,
            nextClaimTime=e.next_claim_time,
            remainingSeconds=int(e.remaining.total_seconds()),
        )
    except MeshError as e:
        if e.http_status >= 500:
            log.warning("request_degraded path=%s err=%s", request.path, e.message)
        return json_error(e.message, status=e.http_status)
    except Exception:
        log.exception("request_failed path=%s", request.path)
        return json_error("Internal server error", status=500)


def auth_middleware_factory(authenticate: Callable[[Any], Any]):
    @web.middleware
    async def auth_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
        if request.path not in PUBLIC_PATHS:
            identity = authenticate(request.headers)
            request["identity"] = identity
            bind_request(wallet=identity.wallet_address, auth=identity.method)
        return await handler(request)

    return auth_middleware
