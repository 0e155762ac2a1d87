from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Optional
from urllib.parse import urlsplit, urlunsplit

import httpx


logger = logging.getLogger("mediator_loadtest.probe")


@dataclass
class ProbeResult:
    url: str
    reachable: bool
    http_status: Optional[int]
    latency_ms: Optional[float]
    error: Optional[str]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def mediator_base_url(invitation_url: str) -> str:
    """Strip the invitation query (``?oob=...``) so only the endpoint is probed."""
    parts = urlsplit(invitation_url)
    if parts.scheme not in {"http", "https"} or not parts.netloc:
        raise ValueError(f"Not an http(s) URL: {invitation_url}")
    return urlunsplit((parts.scheme, parts.netloc, parts.path or "/", "", ""))


async def probe_mediator(
    invitation_url: str,
    timeout_s: float = 10.0,
    client: Optional[httpx.AsyncClient] = None,
) -> ProbeResult:
    url = mediator_base_url(invitation_url)
    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(timeout=timeout_s, follow_redirects=True)
    started = time.monotonic()
    try:
        response = await client.head(url, timeout=timeout_s)
        if response.status_code == 405:
            response = await client.get(url, timeout=timeout_s)
        latency_ms = (time.monotonic() - started) * 1000.0
        reachable = response.status_code < 500
        result = ProbeResult(
            url=url,
            reachable=reachable,
            http_status=int(response.status_code),
            latency_ms=latency_ms,
            error=None if reachable else f"HTTP {response.status_code}",
        )
    except httpx.TimeoutException as exc:
        result = ProbeResult(url, False, None, None, f"timeout: {exc}")
    except httpx.HTTPError as exc:
        result = ProbeResult(url, False, None, None, str(exc) or type(exc).__name__)
    finally:
        if owns_client:
            await client.aclose()
    logger.info(
        "probe url=%s reachable=%s status=%s latency_ms=%s",
        result.url, result.reachable, result.http_status,
        f"{result.latency_ms:.1f}" if result.latency_ms is not None else "-",
    )
    return result
