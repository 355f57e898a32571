from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError

import src.api.main as api_main
from src.core.metrics import reset_metrics_for_tests
from src.core.rate_limit import InMemoryIPRateLimiter, RateLimitDecision, RedisIPRateLimiter


class _StaticLimiter:
    def __init__(self, decision: RateLimitDecision) -> None:
        self._decision = decision

    def check(self, *, ip: str) -> RateLimitDecision:  # noqa: ARG002
        return self._decision


def test_rate_limit_blocks_request_and_sets_headers(monkeypatch) -> None:
    reset_metrics_for_tests()
    monkeypatch.setattr(api_main.settings, "env", "production")
    monkeypatch.setattr(api_main.settings, "ip_rate_limit_enabled", True)
    monkeypatch.setattr(
        api_main,
        "get_ip_rate_limiter",
        lambda: _StaticLimiter(
            RateLimitDecision(
                allowed=False,
                limit=10,
                remaining=0,
                reset_seconds=30,
            )
        ),
    )

    client = TestClient(api_main.app)
    response = client.get("/version")

    assert response.status_code == 429
    assert response.json()["detail"] == "Rate limit exceeded"
    assert response.headers["x-rate-limit-limit"] == "10"
    assert response.headers["x-rate-limit-remaining"] == "0"
    assert response.headers["x-rate-limit-reset"] == "30"


def test_rate_limit_allows_request_and_sets_headers(monkeypatch) -> None:
    monkeypatch.setattr(api_main.settings, "env", "production")
    monkeypatch.setattr(api_main.settings, "ip_rate_limit_enabled", True)
    monkeypatch.setattr(
        api_main,
        "get_ip_rate_limiter",
        lambda: _StaticLimiter(
            RateLimitDecision(
                allowed=True,
                limit=10,
                remaining=9,
                reset_seconds=60,
            )
        ),
    )

    client = TestClient(api_main.app)
    response = client.get("/version")

    assert response.status_code == 200
    assert response.headers["x-rate-limit-limit"] == "10"
    assert response.headers["x-rate-limit-remaining"] == "9"
    assert response.headers["x-rate-limit-reset"] == "60"


def test_in_memory_limiter_counts_per_ip_and_window() -> None:
    now = {"value": 1_000.0}
    limiter = InMemoryIPRateLimiter(requests_per_window=2, window_seconds=60, clock=lambda: now["value"])

    assert limiter.check(ip="1.1.1.1").remaining == 1
    assert limiter.check(ip="1.1.1.1").allowed is True
    blocked = limiter.check(ip="1.1.1.1")
    assert blocked.allowed is False
    assert blocked.reset_seconds == 20
    assert limiter.check(ip="2.2.2.2").allowed is True

    now["value"] = 1_080.0
    assert limiter.check(ip="1.1.1.1").allowed is True


class _BrokenPipeline:
    def incr(self, key):  # noqa: ARG002
        return self

    def expire(self, key, seconds):  # noqa: ARG002
        return self

    def execute(self):
        raise RedisConnectionError("redis down")


class _BrokenRedis:
    def pipeline(self):
        return _BrokenPipeline()


def test_redis_limiter_fails_open() -> None:
    limiter = RedisIPRateLimiter(redis_client=_BrokenRedis(), requests_per_window=5, window_seconds=60)

    decision = limiter.check(ip="3.3.3.3")

    assert decision.allowed is True
    assert decision.remaining == 5
