import pytest

from jobqueue.errors import RateLimitExceeded
from jobqueue.models import RateLimit
from jobqueue.ratelimit import RateLimiter


def test_window_caps_starts(clock):
    limiter = RateLimiter({"email": RateLimit(max=5, duration_ms=1000)}, clock=clock)
    assert all(limiter.try_acquire("email") for _ in range(5))
    assert limiter.try_acquire("email") is False
    assert limiter.time_until_available("email") == pytest.approx(1.0)

    clock.advance(0.25)
    assert limiter.try_acquire("email") is False
    assert limiter.time_until_available("email") == pytest.approx(0.75)

    clock.advance(0.75)
    assert limiter.try_acquire("email") is True


def test_window_slides(clock):
    limiter = RateLimiter({"q": RateLimit(max=2, duration_ms=1000)}, clock=clock)
    assert limiter.try_acquire("q")
    clock.advance(0.5)
    assert limiter.try_acquire("q")
    clock.advance(0.75)
    # first start aged out, second is still inside the window
    assert limiter.try_acquire("q")
    assert limiter.try_acquire("q") is False


def test_release_refunds_last_start(clock):
    limiter = RateLimiter({"q": RateLimit(max=1, duration_ms=1000)}, clock=clock)
    assert limiter.try_acquire("q")
    limiter.release("q")
    assert limiter.try_acquire("q")


def test_unlimited_queue_never_throttles(clock):
    limiter = RateLimiter(clock=clock)
    assert all(limiter.try_acquire("free") for _ in range(1000))
    assert limiter.time_until_available("free") == 0.0


def test_acquire_or_raise(clock):
    limiter = RateLimiter({"q": RateLimit(max=1, duration_ms=2000)}, clock=clock)
    limiter.acquire_or_raise("q")
    with pytest.raises(RateLimitExceeded) as exc:
        limiter.acquire_or_raise("q")
    assert exc.value.retry_after_s == pytest.approx(2.0)


def test_configure(clock):
    limiter = RateLimiter(clock=clock)
    with pytest.raises(ValueError):
        limiter.configure("q", RateLimit(max=0, duration_ms=1000))
    limiter.configure("q", RateLimit(max=1, duration_ms=1000))
    assert limiter.try_acquire("q")
    assert not limiter.try_acquire("q")
    limiter.configure("q", None)
    assert limiter.limit_for("q") is None
    assert limiter.try_acquire("q")
