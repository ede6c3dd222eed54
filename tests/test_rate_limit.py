from educhain.rate_limit import RateLimiter
from educhain.security import extract_client_id


def test_limit_per_key_within_window():
    limiter = RateLimiter(2, window_seconds=60)
    assert limiter.check("ip:a", now=100).allowed
    assert limiter.check("ip:a", now=101).allowed
    denied = limiter.check("ip:a", now=102)
    assert not denied.allowed
    assert denied.retry_after == 58
    assert limiter.check("ip:b", now=102).allowed
    assert limiter.check("ip:a", now=161).allowed

def test_idle_keys_are_swept():
    limiter = RateLimiter(1, window_seconds=60)
    for n in range(5):
        limiter.check(f"ip:10.0.0.{n}", now=100)
    assert len(limiter) == 5
    limiter.check("ip:10.0.0.9", now=200)
    assert len(limiter) == 1

def test_forwarded_for_ignored_from_untrusted_peer():
    headers = {"x-forwarded-for": "1.2.3.4"}
    assert extract_client_id(headers, "10.0.0.7") == "ip:10.0.0.7"
    assert extract_client_id({"x-api-key": "rotating"}, "10.0.0.7") == "ip:10.0.0.7"
    assert extract_client_id({}, None) == "anonymous"

def test_forwarded_for_from_trusted_proxy():
    proxies = {"10.0.0.1", "10.0.0.2"}
    headers = {"x-forwarded-for": "6.6.6.6, 1.2.3.4, 10.0.0.2"}
    assert extract_client_id(headers, "10.0.0.1", proxies) == "ip:1.2.3.4"
    assert extract_client_id({}, "10.0.0.1", proxies) == "ip:10.0.0.1"
