"""Caller admission: IP allow-list, per-client rate limiting, bearer token."""

from __future__ import annotations

import hmac
import ipaddress
import logging
import math
import threading
import time
from collections import deque
from collections.abc import Callable, Iterable

from buildgate.core.config import PLACEHOLDER_TOKEN
from buildgate.core.errors import ForbiddenError, RateLimitedError, UnauthenticatedError

logger = logging.getLogger(__name__)


class AuthGate:
    """Checks an ``Authorization`` header against the configured secret.

    With no secret configured (or the shipped placeholder) every request is
    rejected. The comparison is constant-time.
    """

    def __init__(self, secret: str) -> None:
        self._secret = secret if secret and secret != PLACEHOLDER_TOKEN else ""

    @property
    def configured(self) -> bool:
        return bool(self._secret)

    def check(self, authorization: str | None, client: str = "unknown") -> None:
        """Raise ``UnauthenticatedError`` unless the header carries the secret."""
        if not authorization:
            logger.warning(f"Missing authorization header from {client}")
            raise UnauthenticatedError("Authorization header required")

        scheme, _, token = authorization.strip().partition(" ")
        token = token.strip()
        if scheme.lower() != "bearer" or not token:
            logger.warning(f"Malformed authorization header from {client}")
            raise UnauthenticatedError("Invalid authorization token")

        if not self._secret:
            logger.warning(f"Rejected request from {client}: no token configured")
            raise UnauthenticatedError("Invalid authorization token")

        if not hmac.compare_digest(token.encode("utf-8"), self._secret.encode("utf-8")):
            logger.warning(f"Invalid token from {client}")
            raise UnauthenticatedError("Invalid authorization token")


class IpAllowList:
    """Admits only callers whose address falls in one of the given networks.

    An empty list admits everyone. Client identifiers that are not IP
    addresses never match a non-empty list.
    """

    def __init__(self, networks: Iterable[ipaddress.IPv4Network | ipaddress.IPv6Network]) -> None:
        self.networks = tuple(networks)

    @property
    def enabled(self) -> bool:
        return bool(self.networks)

    def allows(self, client: str) -> bool:
        if not self.networks:
            return True
        try:
            address = ipaddress.ip_address(client)
        except ValueError:
            return False
        if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped:
            address = address.ipv4_mapped
        return any(address in network for network in self.networks)

    def check(self, client: str) -> None:
        if not self.allows(client):
            logger.warning(f"IP access denied for {client}")
            raise ForbiddenError("Access denied from this IP address")


class RateLimiter:
    """Sliding-window request counter keyed by client address.

    ``max_requests`` of 0 disables limiting. All state lives behind a single
    lock, so concurrent hits from one client are counted exactly. Clients
    idle for a full window are forgotten, at most once per window.
    """

    def __init__(
        self,
        max_requests: int = 60,
        window_ms: int = 60_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window = window_ms / 1000
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._lock = threading.Lock()
        self._last_prune = clock()

    @property
    def enabled(self) -> bool:
        return self.max_requests > 0

    def hit(self, client: str) -> int:
        """Record one request from ``client``.

        Returns:
            Requests remaining in the current window.

        Raises:
            RateLimitedError: The client is over its limit. The rejected
                request is not counted.
        """
        if not self.enabled:
            return -1

        now = self._clock()
        with self._lock:
            if now - self._last_prune >= self.window:
                self._drop_idle(now)
            hits = self._hits.setdefault(client, deque())
            while hits and now - hits[0] >= self.window:
                hits.popleft()

            if len(hits) >= self.max_requests:
                retry_after = max(1, math.ceil(self.window - (now - hits[0])))
                logger.warning(f"Rate limit exceeded for {client}")
                raise RateLimitedError("Rate limit exceeded", retry_after=retry_after)

            hits.append(now)
            return self.max_requests - len(hits)

    @property
    def tracked_clients(self) -> int:
        with self._lock:
            return len(self._hits)

    def _drop_idle(self, now: float) -> int:
        stale = [
            client
            for client, hits in self._hits.items()
            if not hits or now - hits[-1] >= self.window
        ]
        for client in stale:
            del self._hits[client]
        self._last_prune = now
        return len(stale)

    def prune(self) -> int:
        """Drop clients with no hits inside the window. Returns how many."""
        now = self._clock()
        with self._lock:
            return self._drop_idle(now)
