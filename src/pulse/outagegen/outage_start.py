"""
Outage start inference from device power events.

A cluster's outage start is not simply its earliest "Power Off" event:
devices that have been dark for a week are long-term anomalies (unplugged,
decommissioned) and would drag the start date back. Instead, the start is the
beginning of the densest two-hour window of recent power-off events.
"""

import dataclasses
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from pulse.outagegen import constants
from pulse.outagegen.models import Device, as_utc


@dataclasses.dataclass(frozen=True)
class OutageStart:
    start: datetime
    recent_devices: int  # devices whose power-off happened in the last 24 hours


def latest_power_off(device: Device) -> Optional[datetime]:
    """The device's most recent power-off event time."""
    times = [e.timestamp for e in device.events if e.is_power_off]
    return max(times) if times else None


def densest_window_start(times: List[datetime], window: timedelta) -> datetime:
    """Start of the ``window``-long interval holding the most events (earliest on ties)."""
    times = sorted(times)
    best_start, best_count = times[0], 0
    end = 0
    for start_index, start in enumerate(times):
        while end < len(times) and times[end] <= start + window:
            end += 1
        count = end - start_index
        if count > best_count:
            best_start, best_count = start, count
    return best_start


def infer_outage_start(devices: Iterable[Device], now: datetime) -> OutageStart:
    """
    Infer when an outage affecting ``devices`` began.

    Events at least 7 days old are ignored. With 3 or more usable events the
    densest 2-hour window wins; with fewer, the most recent event is used;
    with none, ``now`` is returned.
    """
    now = as_utc(now)
    anomaly_cutoff = now - timedelta(days=constants.LONG_TERM_ANOMALY_DAYS)
    recent_cutoff = now - timedelta(hours=constants.RECENT_OUTAGE_HOURS)

    usable = [
        t for t in (latest_power_off(d) for d in devices)
        if t is not None and t > anomaly_cutoff
    ]
    if not usable:
        return OutageStart(now, 0)

    recent = sum(1 for t in usable if t >= recent_cutoff)
    if len(usable) >= constants.MIN_EVENTS_FOR_WINDOW:
        start = densest_window_start(usable, timedelta(hours=constants.OUTAGE_WINDOW_HOURS))
    else:
        start = max(usable)
    return OutageStart(start, recent)
