"""
Reading device snapshots from CSV and writing polygons as GeoJSON.

The devices file has ``id``, ``latitude``, ``longitude`` and ``offline``
columns; ``offline`` may be blank when the status is unknown. The optional
events file has ``device_id``, ``event_type`` and ``timestamp`` columns.
"""

import json
import logging
from collections import defaultdict
from typing import Dict, List, Optional, Sequence

import pandas as pd
from dateutil.parser import parse
from funcy import lpluck_attr

from pulse.outagegen.errors import DeviceSourceError
from pulse.outagegen.models import Device, OutagePolygon, PowerEvent, as_utc

logger = logging.getLogger(__name__)

DEVICE_COLUMNS = ["id", "latitude", "longitude", "offline"]
EVENT_COLUMNS = ["device_id", "event_type", "timestamp"]

TRUE_VALUES = {"true", "1", "yes", "y", "offline"}
FALSE_VALUES = {"false", "0", "no", "n", "online"}


def parse_offline(value) -> Optional[bool]:
    """Tri-state status: True, False, or None when blank or unrecognized."""
    if value is None or pd.isna(value):
        return None
    if isinstance(value, (bool, int, float)):
        return bool(value)
    text = str(value).strip().lower()
    if text in TRUE_VALUES:
        return True
    if text in FALSE_VALUES:
        return False
    return None


def parse_timestamp(value):
    """Parse a timestamp, assuming UTC when no zone is given."""
    return as_utc(parse(str(value)))


def _read_csv(path, columns):
    try:
        df = pd.read_csv(path, dtype={"id": str, "device_id": str})
    except (OSError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise DeviceSourceError(f"Unable to read {path}: {e}") from e
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise DeviceSourceError(f"{path} is missing columns: {', '.join(missing)}")
    return df


def read_events(events_file) -> Dict[str, List[PowerEvent]]:
    df = _read_csv(events_file, EVENT_COLUMNS)
    events = defaultdict(list)
    skipped = 0
    for device_id, event_type, timestamp in zip(df["device_id"], df["event_type"], df["timestamp"]):
        try:
            events[str(device_id)].append(PowerEvent(str(event_type), parse_timestamp(timestamp)))
        except (ValueError, OverflowError):
            skipped += 1
            logger.debug(f"Skipped event for {device_id}: unparseable timestamp {timestamp!r}")
    if skipped:
        logger.warning(f"Skipped {skipped} events with unparseable timestamps")
    return events


def read_devices(devices_file, events_file=None) -> List[Device]:
    """
    Read a device snapshot from CSV.

    Args:
        devices_file: Path to the devices CSV
        events_file: Optional path to a power events CSV

    Returns:
        List of Device; rows with non-numeric coordinates are skipped
    """
    df = _read_csv(devices_file, DEVICE_COLUMNS)
    events = read_events(events_file) if events_file else {}

    lats = pd.to_numeric(df["latitude"], errors="coerce")
    lons = pd.to_numeric(df["longitude"], errors="coerce")

    devices = []
    skipped = 0
    for device_id, lat, lon, offline in zip(df["id"], lats, lons, df["offline"]):
        if pd.isna(lat) or pd.isna(lon):
            skipped += 1
            continue
        devices.append(
            Device(
                id=str(device_id),
                lat=float(lat),
                lon=float(lon),
                offline=parse_offline(offline),
                events=tuple(sorted(events.get(str(device_id), []), key=lambda e: e.timestamp)),
            )
        )
    if skipped:
        logger.warning(f"Skipped {skipped} rows with non-numeric coordinates")
    logger.info(f"Read {len(devices)} devices from {devices_file}")
    return devices


def _isoformat(dt):
    return dt.isoformat() if dt is not None else None


def polygon_feature(polygon: OutagePolygon) -> dict:
    """GeoJSON Feature for one polygon; positions are [longitude, latitude]."""
    return {
        "type": "Feature",
        "id": polygon.id,
        "geometry": {
            "type": "Polygon",
            "coordinates": [[[c.lon, c.lat] for c in polygon.coordinates]],
        },
        "properties": {
            "confidence": round(polygon.confidence, 4),
            "affected_device_count": polygon.affected_device_count,
            "online_device_count": polygon.online_device_count,
            "outage_percentage": round(polygon.outage_percentage, 1),
            "outage_start_date": _isoformat(polygon.outage_start_date),
            "recent_outage_devices": polygon.recent_outage_devices,
            "hull_method": polygon.hull_method.value,
            "quality": polygon.quality.score if polygon.quality is not None else None,
            "is_merged": polygon.is_merged,
            "contributing_polygon_ids": list(polygon.contributing_polygon_ids),
            "individual_confidences": list(polygon.individual_confidences),
            "individual_device_counts": list(polygon.individual_device_counts),
            "aggregated_device_count": polygon.aggregated_device_count,
            "aggregated_confidence": polygon.aggregated_confidence,
            "earliest_outage_start_date": _isoformat(polygon.earliest_outage_start_date),
            "overlap_coefficient": round(polygon.overlap_coefficient, 4),
            "description": polygon.merge_description,
        },
    }


def feature_collection(polygons: Sequence[OutagePolygon]) -> dict:
    return {
        "type": "FeatureCollection",
        "features": [polygon_feature(p) for p in polygons],
    }


def write_geojson(polygons: Sequence[OutagePolygon], output_file) -> str:
    with open(output_file, "tw") as file:
        json.dump(feature_collection(polygons), file, indent=2)
    logger.info(f"Wrote {len(polygons)} polygons to {output_file}")
    logger.debug(f"Polygon ids: {', '.join(lpluck_attr('id', polygons))}")
    return output_file
