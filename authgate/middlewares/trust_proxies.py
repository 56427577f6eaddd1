import ipaddress
import logging

from starlette.types import ASGIApp, Receive, Scope, Send

logger = logging.getLogger(__name__)


def resolve_client_ip(forwarded_for: str, proxies_count: int) -> str | None:
    """Pick the caller from ``X-Forwarded-For`` given how many proxies we sit behind.

    The header reads ``client, proxy1, proxy2``; with N trusted proxies the
    caller is the entry N+1 from the right. Anything earlier is client-supplied
    and ignored. Returns None when the header is too short or not an IP.
    """
    hops = [hop.strip() for hop in forwarded_for.split(",") if hop.strip()]
    if proxies_count <= 0 or len(hops) <= proxies_count:
        return None
    candidate = hops[-(proxies_count + 1)]
    try:
        return str(ipaddress.ip_address(candidate))
    except ValueError:
        logger.debug("Ignoring non-IP forwarded hop %r", candidate)
        return None


class TrustedProxiesMiddleware:
    """Rewrite ``scope["client"]`` so rate limits, audit rows and device prefixes see the real caller."""

    def __init__(self, app: ASGIApp, proxies_count: int = 1) -> None:
        self.app = app
        self.proxies_count = proxies_count

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http" and self.proxies_count > 0:
            headers = dict(scope.get("headers", []))
            forwarded_for = headers.get(b"x-forwarded-for", b"").decode("latin-1")
            if forwarded_for:
                real_ip = resolve_client_ip(forwarded_for, self.proxies_count)
                if real_ip is not None:
                    port = scope["client"][1] if scope.get("client") else 0
                    scope["client"] = (real_ip, port)

        await self.app(scope, receive, send)
