"""Tests for rate limiting, admin auth, and CORS helpers."""

from __future__ import annotations

import time
from unittest.mock import MagicMock, patch

import pytest
from fastapi import HTTPException

from pt_minter.api.middleware import RateLimiter, TokenBucket, get_cors_origins, require_admin_token


class TestTokenBucket:
    def test_allows_up_to_capacity(self) -> None:
        bucket = TokenBucket(capacity=3, refill_rate=0.0)
        assert [bucket.take() for _ in range(4)] == [True, True, True, False]

    def test_refills_over_time(self) -> None:
        bucket = TokenBucket(capacity=1, refill_rate=10.0)
        assert bucket.take() is True
        assert bucket.take() is False
        bucket.updated_at = time.monotonic() - 0.5
        assert bucket.take() is True

    def test_wait_time(self) -> None:
        bucket = TokenBucket(capacity=1, refill_rate=2.0)
        assert bucket.wait_time() == 0.0
        bucket.take()
        assert 0.0 < bucket.wait_time() <= 0.5
        assert TokenBucket(capacity=0, refill_rate=0.0).wait_time() == float("inf")


class TestRateLimiter:
    def test_per_client_buckets(self) -> None:
        limiter = RateLimiter(default_capacity=1, default_rate=0.001)
        assert limiter.allow("1.1.1.1", "/v1/pt-mint") is True
        assert limiter.allow("1.1.1.1", "/v1/pt-mint") is False
        assert limiter.allow("2.2.2.2", "/v1/pt-mint") is True

    def test_path_group_shared_across_suffixes(self) -> None:
        limiter = RateLimiter(default_capacity=1, default_rate=0.001)
        limiter.set_path_limit("/v1/nonce", capacity=3, rate=0.001)
        results = [limiter.allow("1.1.1.1", f"/v1/nonce/0x{i}") for i in range(4)]
        assert results == [True, True, True, False]

    def test_longest_prefix_wins(self) -> None:
        limiter = RateLimiter(default_capacity=1, default_rate=0.001)
        limiter.set_path_limit("/v1", capacity=1, rate=0.001)
        limiter.set_path_limit("/v1/mints", capacity=2, rate=0.001)
        assert limiter.bucket("1.1.1.1", "/v1/mints/debt").capacity == 2
        assert limiter.bucket("1.1.1.1", "/v1/pt-mint").capacity == 1

    def test_least_recently_used_evicted(self) -> None:
        limiter = RateLimiter(default_capacity=1, default_rate=0.001, max_clients=2)
        limiter.allow("1.1.1.1", "/x")
        limiter.allow("2.2.2.2", "/x")
        limiter.allow("1.1.1.1", "/x")
        limiter.allow("3.3.3.3", "/x")
        assert ("2.2.2.2", "") not in limiter._buckets
        assert ("1.1.1.1", "") in limiter._buckets
        assert len(limiter._buckets) == 2


def _request(headers: dict[str, str]) -> MagicMock:
    request = MagicMock()
    request.headers = headers
    request.url.path = "/v1/mints/reconcile"
    return request


class TestRequireAdminToken:
    def test_accepts_matching_token(self) -> None:
        require_admin_token(_request({"X-Admin-Token": "secret"}), "secret")

    def test_disabled_when_unset(self) -> None:
        with pytest.raises(HTTPException) as exc:
            require_admin_token(_request({"X-Admin-Token": "secret"}), "")
        assert exc.value.status_code == 403

    @pytest.mark.parametrize("headers", [{}, {"X-Admin-Token": ""}, {"X-Admin-Token": "nope"}])
    def test_rejects_bad_token(self, headers: dict[str, str]) -> None:
        with pytest.raises(HTTPException) as exc:
            require_admin_token(_request(headers), "secret")
        assert exc.value.status_code == 401


class TestCorsOrigins:
    def test_wildcard_when_unset(self) -> None:
        assert get_cors_origins("", "development") == ["*"]

    def test_parses_list(self) -> None:
        assert get_cors_origins("https://a.example, https://b.example,", "production") == [
            "https://a.example",
            "https://b.example",
        ]

    def test_warns_in_production(self) -> None:
        with patch("pt_minter.api.middleware.log") as mock_log:
            assert get_cors_origins("", "production") == ["*"]
        mock_log.warning.assert_called_once()
