"""Proxy pool — parsing, persistence, per-session assignment and health checks."""

from __future__ import annotations

import re
import uuid
from urllib.parse import quote, urlparse

import httpx

from replyfleet.db import queries
from replyfleet.db.models import ProxyConfig
from replyfleet.utils.logger import get_logger

logger = get_logger("replyfleet.sessions.proxies")

PROTOCOLS = ("http", "https", "socks5")
CHECK_URL = "https://api.ipify.org?format=json"
CHECK_TIMEOUT_S = 10.0

_HOST_RE = re.compile(r"^[A-Za-z0-9.\-]+$")


def parse_proxy(line: str) -> ProxyConfig | None:
    """Parse one proxy line.

    Accepted forms: ``host:port``, ``host:port:user:pass`` and
    ``scheme://[user:pass@]host:port``.

    Returns:
        A ProxyConfig with a fresh id, or None if the line is invalid.
    """
    text = line.strip()
    if not text or text.startswith("#"):
        return None

    if "://" in text:
        parsed = urlparse(text)
        protocol = (parsed.scheme or "").lower()
        try:
            port = parsed.port
        except ValueError:
            return None
        host, user, password = parsed.hostname, parsed.username, parsed.password
    else:
        parts = text.split(":")
        if len(parts) not in (2, 4):
            return None
        protocol = "http"
        host = parts[0]
        try:
            port = int(parts[1])
        except ValueError:
            return None
        user, password = (parts[2], parts[3]) if len(parts) == 4 else (None, None)

    if protocol not in PROTOCOLS or not host or not _HOST_RE.match(host):
        return None
    if port is None or not 0 < port < 65536:
        return None
    return ProxyConfig(
        id=uuid.uuid4().hex[:12],
        host=host,
        port=port,
        protocol=protocol,
        username=user or None,
        password=password or None,
    )


def proxy_url(proxy: ProxyConfig) -> str:
    """Full proxy URL with credentials, for HTTP clients."""
    auth = ""
    if proxy.username:
        auth = f"{quote(proxy.username, safe='')}:{quote(proxy.password or '', safe='')}@"
    return f"{proxy.protocol}://{auth}{proxy.host}:{proxy.port}"


class ProxyPool:
    """The configured egress proxies and which session holds each one."""

    def __init__(self) -> None:
        self._proxies: dict[str, ProxyConfig] = {}
        self._assignments: dict[str, str] = {}  # proxy id -> session id

    async def load(self) -> None:
        """Load the pool from the database."""
        self._proxies = {p.id: p for p in await queries.get_all_proxies()}
        logger.info(f"Loaded {len(self._proxies)} proxies")

    async def add(self, line: str) -> ProxyConfig:
        """Parse and persist one proxy.

        Raises:
            ValueError: If the line is not a valid proxy.
        """
        proxy = parse_proxy(line)
        if proxy is None:
            raise ValueError(f"Invalid proxy: {line!r}")
        await queries.add_proxy(proxy)
        self._proxies[proxy.id] = proxy
        return proxy

    async def import_text(self, text: str) -> tuple[list[ProxyConfig], list[str]]:
        """Add every valid line of ``text``.

        Returns:
            ``(added, rejected_lines)``.
        """
        added, rejected = [], []
        for line in text.splitlines():
            if not line.strip() or line.strip().startswith("#"):
                continue
            try:
                added.append(await self.add(line))
            except ValueError:
                rejected.append(line.strip())
        return added, rejected

    async def remove(self, proxy_id: str) -> bool:
        if proxy_id not in self._proxies:
            return False
        self._proxies.pop(proxy_id)
        self._assignments.pop(proxy_id, None)
        await queries.delete_proxy(proxy_id)
        return True

    def get(self, proxy_id: str) -> ProxyConfig | None:
        return self._proxies.get(proxy_id)

    def all(self) -> list[ProxyConfig]:
        return list(self._proxies.values())

    def available(self) -> list[ProxyConfig]:
        """Unassigned proxies that have not failed their last check."""
        return [
            p
            for p in self._proxies.values()
            if p.id not in self._assignments and p.status != "failed"
        ]

    def assign(self, proxy_id: str, session_id: str) -> ProxyConfig:
        """Bind a proxy to a session.

        Raises:
            ValueError: If the proxy is unknown or held by another session.
        """
        proxy = self._proxies.get(proxy_id)
        if proxy is None:
            raise ValueError(f"Unknown proxy: {proxy_id}")
        holder = self._assignments.get(proxy_id)
        if holder is not None and holder != session_id:
            raise ValueError(f"Proxy {proxy_id} is assigned to another session")
        self._assignments[proxy_id] = session_id
        return proxy

    def unassign(self, session_id: str) -> None:
        for pid, sid in list(self._assignments.items()):
            if sid == session_id:
                del self._assignments[pid]

    def assigned_to(self, proxy_id: str) -> str | None:
        return self._assignments.get(proxy_id)

    async def check(
        self, proxy: ProxyConfig, client: httpx.AsyncClient | None = None
    ) -> bool:
        """Probe connectivity through ``proxy`` and persist the outcome.

        Args:
            proxy: Proxy to test.
            client: Preconfigured client, used instead of one routed
                through the proxy (tests).

        Returns:
            True if the probe succeeded.
        """
        own_client = client is None
        if own_client:
            client = httpx.AsyncClient(proxy=proxy_url(proxy), timeout=CHECK_TIMEOUT_S)
        try:
            resp = await client.get(CHECK_URL)
            resp.raise_for_status()
            proxy.status, proxy.last_error = "connected", None
        except httpx.HTTPError as e:
            proxy.status, proxy.last_error = "failed", str(e) or type(e).__name__
            logger.warning(f"Proxy {proxy.host}:{proxy.port} failed check: {proxy.last_error}")
        finally:
            if own_client:
                await client.aclose()
        await queries.update_proxy_status(proxy.id, proxy.status, proxy.last_error)
        return proxy.status == "connected"
