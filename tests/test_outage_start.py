from datetime import datetime, timedelta, timezone

import pytest
from pulse.outagegen.models import Device, PowerEvent
from pulse.outagegen.outage_start import densest_window_start, infer_outage_start, latest_power_off


NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def device(id, *hours_ago, event_type="Power Off"):
    events = tuple(PowerEvent(event_type, NOW - timedelta(hours=h)) for h in hours_ago)
    return Device(id, -33.87, 151.21, True, events)


def test_latest_power_off_ignores_other_events():
    d = Device(
        "d", 0.0, 0.0, True,
        (
            PowerEvent("Power Off", NOW - timedelta(hours=5)),
            PowerEvent("Power On", NOW - timedelta(hours=1)),
            PowerEvent("Power Off", NOW - timedelta(hours=3)),
        ),
    )
    assert latest_power_off(d) == NOW - timedelta(hours=3)


def test_latest_power_off_without_events():
    assert latest_power_off(Device("d", 0.0, 0.0)) is None


def test_no_events_falls_back_to_now():
    start = infer_outage_start([device("a"), device("b")], NOW)
    assert start.start == NOW
    assert start.recent_devices == 0


def test_fewer_than_three_events_uses_most_recent():
    start = infer_outage_start([device("a", 5), device("b", 3)], NOW)
    assert start.start == NOW - timedelta(hours=3)
    assert start.recent_devices == 2


def test_long_term_anomalies_are_ignored():
    devices = [device("a", 24 * 10), device("b", 4), device("c", 3.5), device("d", 3)]
    start = infer_outage_start(devices, NOW)
    assert start.start == NOW - timedelta(hours=4)
    assert start.recent_devices == 3


def test_densest_window_wins_over_earliest_event():
    devices = [
        device("early", 30),
        device("a", 6),
        device("b", 5.5),
        device("c", 5),
        device("d", 4.5),
    ]
    start = infer_outage_start(devices, NOW)
    assert start.start == NOW - timedelta(hours=6)
    # only the four in the last 24 hours count as recent
    assert start.recent_devices == 4


def test_only_anomalies_falls_back_to_now():
    devices = [device("a", 24 * 8), device("b", 24 * 9), device("c", 24 * 30)]
    assert infer_outage_start(devices, NOW).start == NOW


@pytest.mark.parametrize(
    "hours,expected",
    [
        ([10, 9.5, 9, 1], 10),
        ([10, 4, 3.5, 3], 4),
        ([10, 8, 6, 4], 10),
    ],
)
def test_densest_window_start(hours, expected):
    times = [NOW - timedelta(hours=h) for h in hours]
    assert densest_window_start(times, timedelta(hours=2)) == NOW - timedelta(hours=expected)


def test_naive_times_are_treated_as_utc():
    naive_now = NOW.replace(tzinfo=None)
    devices = [
        Device("a", 0.0, 0.0, True, (PowerEvent("Power Off", naive_now - timedelta(hours=3)),)),
        device("b", 5),
    ]
    start = infer_outage_start(devices, NOW)
    assert start.start == NOW - timedelta(hours=3)
    assert start.start.tzinfo is not None
    assert infer_outage_start(devices, naive_now).start == NOW - timedelta(hours=3)
