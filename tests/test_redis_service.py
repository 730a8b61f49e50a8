import redis

from tests.factories import USER
from yieldtrace.core.entities.breakdown import PortfolioTotals
from yieldtrace.core.entities.queries import PeriodYieldQuery
from yieldtrace.infrastructure.cache import redis_service
from yieldtrace.infrastructure.cache.redis_service import RedisService, cache_key


class FakeRedis:
    def __init__(self, fail: bool = False):
        self.data = {}
        self.fail = fail

    def ping(self):
        return True

    def get(self, key):
        if self.fail:
            raise redis.ConnectionError("down")
        return self.data.get(key)

    def setex(self, key, ttl, value):
        if self.fail:
            raise redis.ConnectionError("down")
        self.data[key] = value

    def delete(self, key):
        self.data.pop(key, None)


def test_no_url_means_no_op():
    cache = RedisService(None)
    cache.set("k", {"a": 1})
    assert cache.get("k") is None


def test_round_trip_uses_camel_case(monkeypatch):
    fake = FakeRedis()
    monkeypatch.setattr(redis_service.redis, "from_url", lambda url, decode_responses: fake)
    cache = RedisService("redis://localhost:6379/0")

    cache.set("totals", PortfolioTotals(total_earned_usd=12.5), ttl_seconds=30)
    assert cache.get("totals")["totalEarnedUsd"] == 12.5
    cache.delete("totals")
    assert cache.get("totals") is None


def test_redis_errors_degrade_to_miss(monkeypatch, caplog):
    fake = FakeRedis(fail=True)
    monkeypatch.setattr(redis_service.redis, "from_url", lambda url, decode_responses: fake)
    cache = RedisService("redis://localhost:6379/0")
    cache.set("k", {"a": 1})
    assert cache.get("k") is None
    assert "Redis get error" in caplog.text


def test_cache_key_is_stable_across_field_order():
    a = PeriodYieldQuery(user_address=USER, sdk_prices={"A": 1.0, "B": 2.0})
    b = PeriodYieldQuery(user_address=USER, sdk_prices={"B": 2.0, "A": 1.0})
    c = PeriodYieldQuery(user_address=USER, period="1W")
    assert cache_key("period-yield", a) == cache_key("period-yield", b)
    assert cache_key("period-yield", a) != cache_key("period-yield", c)
