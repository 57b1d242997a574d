from gallery_scraper.failure_monitor import FailureRateMonitor


def _feed(mon, outcomes):
    for ok in outcomes:
        mon.record(ok)


def test_five_consecutive_failures_trip():
    mon = FailureRateMonitor(window=10, consecutive_threshold=5, ratio_threshold=0.8)
    _feed(mon, [True, False, False, False, False])
    assert not mon.should_auto_pause()
    mon.record(False)
    assert mon.should_auto_pause()
    assert "5 consecutive" in mon.last_reason


def test_success_resets_consecutive_count():
    mon = FailureRateMonitor()
    _feed(mon, [False] * 4 + [True] + [False] * 4)
    assert mon.consecutive_failures == 4
    assert not mon.should_auto_pause()


def test_ratio_needs_full_window():
    mon = FailureRateMonitor(window=10, consecutive_threshold=50, ratio_threshold=0.8)
    # 4 of 5 failed, but the window is not full yet
    _feed(mon, [False, False, True, False, False])
    assert not mon.should_auto_pause()


def test_ratio_eight_of_ten_trips_seven_does_not():
    mon = FailureRateMonitor(window=10, consecutive_threshold=50, ratio_threshold=0.8)
    _feed(mon, [True, False, False, False, True, False, False, True, False, False])
    assert round(mon.failure_ratio, 2) == 0.7
    assert not mon.should_auto_pause()

    mon.record(False)  # oldest (True) slides out -> 8/10
    assert round(mon.failure_ratio, 2) == 0.8
    assert mon.should_auto_pause()
    assert "80%" in mon.last_reason


def test_reset_consecutive_keeps_window():
    mon = FailureRateMonitor(window=4, consecutive_threshold=3)
    _feed(mon, [False, False, False])
    mon.reset_consecutive()
    assert mon.consecutive_failures == 0
    assert mon.snapshot()["window"] == [False, False, False]

    mon.reset()
    assert mon.snapshot()["window"] == []
    assert mon.failure_ratio == 0.0


def test_timeouts_are_counted():
    mon = FailureRateMonitor()
    mon.record(False, is_timeout=True)
    mon.record(False)
    snap = mon.snapshot()
    assert snap["timeout_count"] == 1
    assert snap["total_failures"] == 2
