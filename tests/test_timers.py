import pytest

from sqengine.stats import ProgramStats
from sqengine.timers import Timer, TimerQueue, ms_passed_since, set_timeout


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock(7_000_000)


@pytest.fixture
def queue(clock):
    return TimerQueue(ProgramStats(), clock)


@pytest.mark.parametrize("timeout", [0, 1, 250, 999, 1000, 2500, 30000])
def test_set_timeout_round_trip(timeout):
    now = 7_123_456
    assert ms_passed_since(now, set_timeout(timeout, now)) == timeout


def test_set_timeout_moves_forward():
    now = 7_000_000
    assert set_timeout(10, now) > now


def test_ms_passed_since_unset_start():
    assert ms_passed_since(0, 9_000_000) == 2147483647


def test_new_timer_is_reused(queue):
    first = queue.new_timer(5_000_000)
    assert queue.new_timer(5_000_000) is first
    assert queue.find_timer(5_000_000) is first
    assert queue.find_timer(5_000_001) is None


def test_timer_stats_count_seconds_and_instants(queue):
    whens = [5_000_000, 5_000_100, 6_000_000]
    for when in whens:
        queue.new_timer(when)
    assert queue.stats.active_timers_usec == len(whens)
    assert queue.stats.total_timers_usec == len(whens)
    assert queue.stats.active_timers_sec == len({w // 1_000_000 for w in whens})


def test_cleanup_keeps_busy_timer(queue):
    timer = queue.new_timer(5_000_000)
    timer.timed_out_sids.append("pending")
    assert queue.cleanup_timer(timer) is False
    assert queue.find_timer(5_000_000) is timer


def test_cleanup_removes_empty_timer(queue):
    timer = queue.new_timer(5_000_000)
    assert queue.cleanup_timer(timer) is True
    assert queue.find_timer(5_000_000) is None
    assert queue.stats.active_timers_usec == 0
    assert queue.stats.active_timers_sec == 0
    assert queue.cleanup_timer(None) is True


def test_next_timer_skips_empty_timers(queue):
    queue.new_timer(4_000_000)
    later = queue.new_timer(6_000_000)
    later.throttled_destinations.append("dest")
    assert queue.next_timer() is later
    assert queue.find_timer(4_000_000) is None


def test_next_timer_orders_by_deadline(queue):
    late = queue.new_timer(9_000_000)
    early = queue.new_timer(8_000_000)
    late.timed_out_sids.append("a")
    early.timed_out_sids.append("b")
    assert queue.next_timer() is early
    early.timed_out_sids.clear()
    assert queue.next_timer() is late


def test_timer_can_be_recreated_after_cleanup(queue):
    timer = queue.new_timer(5_000_000)
    queue.cleanup_timer(timer)
    again = queue.new_timer(5_000_000)
    again.timed_out_sids.append("x")
    assert again is not timer
    assert queue.next_timer() is again


def test_ms_to_next_timer_without_timers(queue):
    assert queue.ms_to_next_timer() == 1000


def test_ms_to_next_timer_upcoming(queue, clock):
    timer = queue.new_timer(set_timeout(250, clock.now))
    timer.timed_out_sids.append("sid")
    assert queue.ms_to_next_timer() == 250


def test_ms_to_next_timer_past_due(queue, clock):
    timer = queue.new_timer(clock.now - 1_500_000)
    timer.timed_out_sids.append("sid")
    assert queue.ms_to_next_timer() == 0


def test_ms_to_next_timer_far_away_is_capped(queue, clock):
    timer = queue.new_timer(set_timeout(60_000, clock.now))
    timer.timed_out_sids.append("sid")
    assert queue.ms_to_next_timer() == 1000


def test_timer_empty_flag():
    timer = Timer(1)
    assert timer.empty
    timer.throttled_destinations.append("dest")
    assert not timer.empty