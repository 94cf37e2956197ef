import random

from chat_core.infrastructure.logging.logger import EventLogger
from chat_core.infrastructure.ratelimit.rate_limiter import RateLimitConfig, RateLimiter


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_limiter(max_requests=2, window=60.0, clock=None, logger=None):
    clock = clock or FakeClock()
    cfg = RateLimitConfig(max_requests=max_requests, window_seconds=window)
    return RateLimiter(cfg, logger=logger or EventLogger(), clock=clock), clock


def test_third_request_within_window_is_denied():
    limiter, clock = make_limiter(max_requests=2, window=60.0)

    assert limiter.check_admission() is True
    limiter.record_admission()
    clock.advance(0.4)
    assert limiter.check_admission() is True
    limiter.record_admission()
    clock.advance(0.4)
    assert limiter.check_admission() is False

    wait = limiter.time_until_next_slot()
    assert wait > 0
    # 拒绝后窗口被放宽，等待时间以当前有效窗口为上限
    assert wait <= limiter.window
    assert limiter.remaining_capacity() == 0


def test_check_admission_does_not_record():
    limiter, _ = make_limiter(max_requests=2)
    for _ in range(5):
        assert limiter.check_admission() is True
    assert limiter.remaining_capacity() == 2


def test_admissions_never_exceed_limit_in_trailing_window():
    rng = random.Random(7)
    window = 60.0
    limiter, clock = make_limiter(max_requests=3, window=window)
    recorded = []
    for _ in range(500):
        clock.advance(rng.uniform(0.0, 15.0))
        if rng.random() < 0.2:
            limiter.on_provider_rate_limit_signal()
        if limiter.check_admission():
            limiter.record_admission()
            recorded.append(clock.now)
        in_span = [t for t in recorded if clock.now - t < window]
        assert len(in_span) <= 3


def test_denial_grows_multiplier_up_to_cap_and_admission_decays_it():
    limiter, clock = make_limiter(max_requests=1, window=60.0)
    assert limiter.check_admission()
    limiter.record_admission()

    seen = []
    for _ in range(6):
        assert limiter.check_admission() is False
        seen.append(limiter.backoff_multiplier)
    assert seen[:3] == [1.5, 2.25, 3.375]
    assert seen[-1] == 4.0

    clock.advance(60.0 * 4.0 + 1)
    assert limiter.check_admission() is True
    assert limiter.backoff_multiplier == 4.0 * 0.9


def test_multiplier_never_decays_below_one():
    limiter, _ = make_limiter(max_requests=5)
    for _ in range(3):
        assert limiter.check_admission()
    assert limiter.backoff_multiplier == 1.0


def test_provider_signal_is_steeper_and_capped_higher():
    limiter, _ = make_limiter()
    for expected in (2.0, 4.0, 8.0, 8.0):
        limiter.on_provider_rate_limit_signal()
        assert limiter.backoff_multiplier == expected


def test_local_denial_does_not_lower_provider_multiplier():
    limiter, _ = make_limiter(max_requests=1)
    limiter.record_admission()
    limiter.on_provider_rate_limit_signal()
    limiter.on_provider_rate_limit_signal()
    limiter.on_provider_rate_limit_signal()
    assert limiter.backoff_multiplier == 8.0
    assert limiter.check_admission() is False
    assert limiter.backoff_multiplier == 8.0


def test_provider_signal_never_shortens_wait():
    a, clock_a = make_limiter(max_requests=2, window=60.0)
    b, clock_b = make_limiter(max_requests=2, window=60.0)
    for limiter, clock in ((a, clock_a), (b, clock_b)):
        limiter.record_admission()
        clock.advance(10)
        limiter.record_admission()
        clock.advance(5)

    b.on_provider_rate_limit_signal()
    assert b.time_until_next_slot() >= a.time_until_next_slot()
    assert a.time_until_next_slot() == 60.0 - 15.0


def test_time_until_next_slot_is_zero_under_capacity():
    limiter, _ = make_limiter(max_requests=2)
    limiter.record_admission()
    assert limiter.time_until_next_slot() == 0.0
    assert limiter.remaining_capacity() == 1


def test_timestamps_age_out_of_window():
    limiter, clock = make_limiter(max_requests=2, window=60.0)
    limiter.record_admission()
    limiter.record_admission()
    assert limiter.remaining_capacity() == 0
    clock.advance(60.0)
    assert limiter.remaining_capacity() == 2
    assert limiter.check_admission() is True


def test_denial_is_logged():
    logger = EventLogger()
    limiter, _ = make_limiter(max_requests=1, logger=logger)
    limiter.record_admission()
    limiter.check_admission()
    warnings = logger.get_logs(level="warn")
    assert warnings and warnings[0].message == "Rate limit admission denied"
    assert warnings[0].data["limit"] == 1


def test_reset_and_status():
    limiter, _ = make_limiter(max_requests=2)
    limiter.record_admission()
    limiter.on_provider_rate_limit_signal()
    status = limiter.status()
    assert status["live"] == 1
    assert status["remaining"] == 1
    assert status["backoff_multiplier"] == 2.0
    assert status["window_seconds"] == 120.0

    limiter.reset()
    assert limiter.backoff_multiplier == 1.0
    assert limiter.remaining_capacity() == 2
