"""
Unit tests for the RunScheduler driver, using a fake clock.
"""
import os
import sys
import pytest
from unittest.mock import Mock

# Add parent directory to path to import search_digest
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from search_digest import (
    RunScheduler,
    Pager,
    SearchConfig,
    TransportError,
    format_wait_estimate,
    STATUS_DONE,
    STATUS_IN_PROGRESS,
)


SEARCH = SearchConfig(base_url="https://api.example.com/s", begin_date="20190101",
                      end_date="20190107", api_key="k")


class FakeClock:
    """Monotonic clock that only moves when sleep() is called or a fetch takes time."""
    
    def __init__(self):
        self.now = 0.0
        self.sleeps = []
    
    def __call__(self):
        return self.now
    
    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def make_doc(n):
    return {
        "pub_date": "2019-01-02T08:00:00+0000",
        "byline": {"person": []},
        "word_count": n,
        "headline": {"main": f"H{n}"},
        "abstract": "",
        "web_url": f"https://example.com/{n}",
        "news_desk": "Foreign",
        "multimedia": [],
    }


class TimedApi:
    """Records the clock time of every request; each request takes `latency` seconds."""
    
    def __init__(self, clock, hits, latency=0.0, failing=()):
        self.clock = clock
        self.hits = hits
        self.latency = latency
        self.failing = set(failing)
        self.calls = []
    
    def __call__(self, url):
        page = int(url.rsplit("page=", 1)[1])
        self.calls.append((page, self.clock.now))
        self.clock.now += self.latency
        if page in self.failing:
            raise TransportError("boom")
        docs = [make_doc(page * 10 + i) for i in range(min(10, self.hits - page * 10))]
        return {"response": {"meta": {"hits": self.hits}, "docs": docs}}


def make_scheduler(api, clock, on_finish=None, on_wait_estimate=None):
    pager = Pager(SEARCH, api)
    return RunScheduler(
        pager,
        on_finish=on_finish or Mock(),
        sleep=clock.sleep,
        clock=clock,
        on_wait_estimate=on_wait_estimate or Mock(),
    )


class TestFormatWaitEstimate:
    """Test the estimated wait message."""
    
    def test_two_lines_with_one_decimal(self):
        message = format_wait_estimate(23, SEARCH)
        lines = message.rstrip("\n").split("\n")
        
        assert len(lines) == 2
        assert "10 requests per minute" in lines[0]
        assert "roughly 13.8 seconds" in lines[1]
    
    def test_zero_hits(self):
        assert "roughly 0.0 seconds" in format_wait_estimate(0, SEARCH)


class TestRunScheduler:
    """Test the end-to-end run driver."""
    
    def test_one_request_per_interval(self):
        clock = FakeClock()
        api = TimedApi(clock, hits=23)
        scheduler = make_scheduler(api, clock)
        
        assert scheduler.begin() is True
        
        assert [page for page, _ in api.calls] == [0, 1, 2]
        assert [at for _, at in api.calls] == [0.0, 6.0, 12.0]
        assert scheduler.ticks == 3
        assert scheduler.pager.state.status == STATUS_DONE
    
    def test_slow_fetches_keep_requests_an_interval_apart(self):
        clock = FakeClock()
        api = TimedApi(clock, hits=40, latency=2.5)
        scheduler = make_scheduler(api, clock)
        
        scheduler.begin()
        
        times = [at for _, at in api.calls]
        assert len(times) == 4
        gaps = [b - a for a, b in zip(times, times[1:])]
        assert all(gap >= SEARCH.interval_seconds for gap in gaps)
    
    def test_reports_wait_estimate_after_first_page(self):
        clock = FakeClock()
        estimates = []
        scheduler = make_scheduler(TimedApi(clock, hits=23), clock, on_wait_estimate=estimates.append)
        
        scheduler.begin()
        
        assert len(estimates) == 1
        assert "13.8 seconds" in estimates[0]
    
    def test_hands_off_once_with_missing_pages(self):
        clock = FakeClock()
        on_finish = Mock()
        scheduler = make_scheduler(TimedApi(clock, hits=23, failing={1}), clock, on_finish=on_finish)
        
        scheduler.begin()
        
        on_finish.assert_called_once()
        result, missing = on_finish.call_args[0]
        assert missing == [1]
        assert len(result.data["Foreign"].articles) == 13
    
    def test_first_page_failure_skips_schedule(self):
        clock = FakeClock()
        on_finish = Mock()
        on_wait_estimate = Mock()
        api = TimedApi(clock, hits=23, failing={0})
        scheduler = make_scheduler(api, clock, on_finish=on_finish, on_wait_estimate=on_wait_estimate)
        
        scheduler.begin()
        
        assert api.calls == [(0, 0.0)]
        assert clock.sleeps == []
        on_wait_estimate.assert_not_called()
        on_finish.assert_called_once()
        assert on_finish.call_args[0][1] == [0]
    
    def test_begin_while_in_progress_is_ignored(self):
        clock = FakeClock()
        api = TimedApi(clock, hits=23)
        on_finish = Mock()
        scheduler = make_scheduler(api, clock, on_finish=on_finish)
        scheduler.pager.start()
        
        assert scheduler.begin() is False
        
        assert api.calls == []
        on_finish.assert_not_called()
        assert scheduler.pager.state.status == STATUS_IN_PROGRESS
    
    def test_begin_after_done_displays_without_refetching(self):
        clock = FakeClock()
        api = TimedApi(clock, hits=23)
        on_finish = Mock()
        scheduler = make_scheduler(api, clock, on_finish=on_finish)
        scheduler.begin()
        
        assert scheduler.begin() is False
        
        assert len(api.calls) == 3
        assert on_finish.call_count == 2
    
    def test_independent_runs(self):
        clock = FakeClock()
        first = make_scheduler(TimedApi(clock, hits=5), clock)
        second = make_scheduler(TimedApi(clock, hits=5), clock)
        
        first.begin()
        
        assert second.pager.state.total_hits is None
        assert second.begin() is True
