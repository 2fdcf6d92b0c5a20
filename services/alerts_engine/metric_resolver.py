"""
Latest-value lookup for rule metrics.

Two backends are tried in order: the structured telemetry_points samples
fetched in one batch for the cycle, then the device snapshot blob written by
older ingest paths (``data.metrics.<metric>`` and ``data.raw.sensor.<alias>``).
"""

from __future__ import annotations

from typing import Iterable, Optional

from shared.utils import to_float

from alerts_engine.models import DeviceSnapshot, TelemetrySample

LEGACY_SENSOR_KEYS = {
    "supply_temp": "supply_temperature_c",
    "return_temp": "return_temperature_c",
    "power_kw": "power_kw",
    "flow_rate": "flow_rate_lpm",
    "cop": "cop",
}


def snapshot_metric_value(data: dict, metric: str) -> Optional[float]:
    metrics = data.get("metrics")
    if isinstance(metrics, dict):
        value = to_float(metrics.get(metric))
        if value is not None:
            return value
    sensor_key = LEGACY_SENSOR_KEYS.get(metric)
    if sensor_key is None:
        return None
    raw = data.get("raw")
    sensor = raw.get("sensor") if isinstance(raw, dict) else None
    if not isinstance(sensor, dict):
        return None
    return to_float(sensor.get(sensor_key))


class MetricResolver:
    def __init__(
        self,
        samples: Iterable[TelemetrySample] = (),
        snapshots: Iterable[DeviceSnapshot] = (),
    ):
        self._latest: dict[tuple[str, str], TelemetrySample] = {}
        for sample in samples:
            key = (sample.device_id, sample.metric)
            current = self._latest.get(key)
            if current is None or sample.ts > current.ts:
                self._latest[key] = sample
        self._snapshots = {snap.id: snap for snap in snapshots}

    def value_for(self, device_id: str, metric: str) -> Optional[float]:
        """Latest value or None; None means no decision, never zero."""
        sample = self._latest.get((device_id, metric))
        if sample is not None:
            return sample.value
        snapshot = self._snapshots.get(device_id)
        if snapshot is None:
            return None
        return snapshot_metric_value(snapshot.data, metric)
