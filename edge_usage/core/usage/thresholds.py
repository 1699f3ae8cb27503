from __future__ import annotations

from dataclasses import dataclass
from typing import Final, Mapping

from edge_usage.core.usage import round_half_up

ALERT_THRESHOLD_PERCENT: Final[float] = 90.0

# Evaluation order and display names.
METRIC_NAMES: Final[dict[str, str]] = {
    "zones": "Enterprise Zones",
    "requests": "HTTP Requests",
    "bandwidth": "Data Transfer",
    "dnsQueries": "DNS Queries",
    "botManagement": "Bot Management (Likely Human)",
    "apiShield": "API Shield (HTTP Requests)",
    "pageShield": "Page Shield (HTTP Requests)",
    "advancedRateLimiting": "Advanced Rate Limiting (HTTP Requests)",
}


@dataclass(frozen=True, slots=True)
class ThresholdAlert:
    metric: str
    metric_key: str
    current: float
    threshold: float
    percentage: float


def usage_percent(current: float, threshold: float) -> float:
    return current * 100.0 / threshold


def evaluate_thresholds(
    values: Mapping[str, float | None],
    thresholds: Mapping[str, float | None],
) -> list[ThresholdAlert]:
    alerts: list[ThresholdAlert] = []
    for key, name in METRIC_NAMES.items():
        current = values.get(key)
        threshold = thresholds.get(key)
        if not current or not threshold:
            continue
        percentage = usage_percent(current, threshold)
        if percentage < ALERT_THRESHOLD_PERCENT:
            continue
        alerts.append(
            ThresholdAlert(
                metric=name,
                metric_key=key,
                current=current,
                threshold=threshold,
                percentage=round_half_up(percentage, 1),
            )
        )
    return alerts


def format_metric_value(metric_key: str, value: float) -> str:
    if metric_key == "bandwidth":
        return f"{value / 1024**4:.2f} TB"
    if metric_key == "zones":
        return f"{int(value)}"
    if value >= 1e6:
        return f"{value / 1e6:.2f}M"
    return f"{int(value):,}"
