"""Tests for bearer-token authentication, the IP allow-list and rate limiting."""

from __future__ import annotations

import ipaddress
import threading

import pytest

from buildgate.core.auth import AuthGate, IpAllowList, RateLimiter
from buildgate.core.config import PLACEHOLDER_TOKEN
from buildgate.core.errors import ForbiddenError, RateLimitedError, UnauthenticatedError

SECRET = "s3cret-token-value-1234"


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


# =============================================================================
# AuthGate
# =============================================================================


class TestAuthGate:
    """Authorization header checks."""

    def test_valid_token(self):
        AuthGate(SECRET).check(f"Bearer {SECRET}")

    def test_scheme_is_case_insensitive(self):
        AuthGate(SECRET).check(f"bearer {SECRET}")

    def test_missing_header(self):
        with pytest.raises(UnauthenticatedError, match="Authorization header required"):
            AuthGate(SECRET).check(None)

    def test_wrong_token(self):
        with pytest.raises(UnauthenticatedError, match="Invalid authorization token"):
            AuthGate(SECRET).check("Bearer invalid-token")

    @pytest.mark.parametrize("header", [SECRET, f"Basic {SECRET}", "Bearer", "Bearer   "])
    def test_malformed_header(self, header):
        with pytest.raises(UnauthenticatedError, match="Invalid authorization token"):
            AuthGate(SECRET).check(header)

    def test_prefix_of_secret_is_rejected(self):
        with pytest.raises(UnauthenticatedError):
            AuthGate(SECRET).check(f"Bearer {SECRET[:-1]}")

    @pytest.mark.parametrize("secret", ["", PLACEHOLDER_TOKEN])
    def test_unconfigured_secret_rejects_everything(self, secret):
        gate = AuthGate(secret)

        assert not gate.configured
        with pytest.raises(UnauthenticatedError):
            gate.check(f"Bearer {secret}")

    def test_uses_constant_time_compare(self, mocker):
        spy = mocker.patch("buildgate.core.auth.hmac.compare_digest", return_value=True)

        AuthGate(SECRET).check("Bearer anything")

        spy.assert_called_once()

    def test_error_status_is_401(self):
        with pytest.raises(UnauthenticatedError) as exc_info:
            AuthGate(SECRET).check(None)
        assert exc_info.value.http_status == 401


# =============================================================================
# RateLimiter
# =============================================================================


class TestRateLimiter:
    """Sliding-window counting per client."""

    def test_allows_up_to_limit(self):
        limiter = RateLimiter(3, 60_000, clock=FakeClock())

        assert [limiter.hit("a") for _ in range(3)] == [2, 1, 0]

    def test_rejects_over_limit(self):
        limiter = RateLimiter(2, 60_000, clock=FakeClock())
        limiter.hit("a")
        limiter.hit("a")

        with pytest.raises(RateLimitedError, match="Rate limit exceeded") as exc_info:
            limiter.hit("a")
        assert exc_info.value.http_status == 429
        assert exc_info.value.retry_after == 60

    def test_clients_are_independent(self):
        limiter = RateLimiter(1, 60_000, clock=FakeClock())
        limiter.hit("a")

        assert limiter.hit("b") == 0

    def test_window_slides(self):
        clock = FakeClock()
        limiter = RateLimiter(1, 10_000, clock=clock)
        limiter.hit("a")

        clock.now += 9
        with pytest.raises(RateLimitedError) as exc_info:
            limiter.hit("a")
        assert exc_info.value.retry_after == 1

        clock.now += 1
        assert limiter.hit("a") == 0

    def test_rejected_hits_are_not_counted(self):
        clock = FakeClock()
        limiter = RateLimiter(1, 10_000, clock=clock)
        limiter.hit("a")
        for _ in range(5):
            with pytest.raises(RateLimitedError):
                limiter.hit("a")

        clock.now += 10
        assert limiter.hit("a") == 0

    def test_zero_disables(self):
        limiter = RateLimiter(0, 60_000)

        assert not limiter.enabled
        for _ in range(100):
            limiter.hit("a")

    def test_prune_drops_idle_clients(self):
        clock = FakeClock()
        limiter = RateLimiter(5, 10_000, clock=clock)
        limiter.hit("a")
        clock.now += 5
        limiter.hit("b")
        clock.now += 6

        assert limiter.prune() == 1
        assert limiter.hit("b") == 3

    def test_idle_clients_are_forgotten(self):
        clock = FakeClock()
        limiter = RateLimiter(5, 60_000, clock=clock)
        for n in range(10_000):
            limiter.hit(f"10.0.{n // 256}.{n % 256}")
        assert limiter.tracked_clients == 10_000

        clock.now += 3600
        limiter.hit("192.168.1.1")

        assert limiter.tracked_clients == 1

    def test_active_clients_survive_pruning(self):
        clock = FakeClock()
        limiter = RateLimiter(3, 10_000, clock=clock)
        limiter.hit("idle")
        clock.now += 6
        limiter.hit("busy")
        clock.now += 5

        limiter.hit("other")

        assert limiter.tracked_clients == 2
        assert limiter.hit("busy") == 1

    def test_concurrent_hits_are_counted_exactly(self):
        limiter = RateLimiter(100, 60_000)
        allowed = []
        rejected = []

        def worker() -> None:
            for _ in range(25):
                try:
                    limiter.hit("shared")
                    allowed.append(1)
                except RateLimitedError:
                    rejected.append(1)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(allowed) == 100
        assert len(rejected) == 100


# =============================================================================
# IpAllowList
# =============================================================================


def _allow_list(*entries: str) -> IpAllowList:
    return IpAllowList(ipaddress.ip_network(e, strict=False) for e in entries)


class TestIpAllowList:
    """Exact addresses and CIDR ranges."""

    def test_empty_admits_everyone(self):
        allow_list = _allow_list()

        assert not allow_list.enabled
        assert allow_list.allows("203.0.113.9")
        assert allow_list.allows("testclient")

    def test_exact_address(self):
        allow_list = _allow_list("192.168.1.10")

        assert allow_list.allows("192.168.1.10")
        assert not allow_list.allows("192.168.1.11")

    def test_cidr_range(self):
        allow_list = _allow_list("10.20.0.0/16", "2001:db8::/32")

        assert allow_list.allows("10.20.255.1")
        assert allow_list.allows("2001:db8::1")
        assert not allow_list.allows("10.21.0.1")

    def test_ipv4_mapped_ipv6(self):
        assert _allow_list("10.0.0.0/8").allows("::ffff:10.1.2.3")

    def test_non_address_client_is_denied(self):
        assert not _allow_list("10.0.0.0/8").allows("unknown")

    def test_check_raises_403(self):
        with pytest.raises(ForbiddenError, match="Access denied from this IP address") as exc_info:
            _allow_list("10.0.0.1").check("10.0.0.2")
        assert exc_info.value.http_status == 403
