from __future__ import annotations

import math
from typing import Iterable, Literal

from edge_usage.core.usage.models import ConfidenceInterval

PRIMARY_ZONE_THRESHOLD_BYTES = 50 * 1024**3

ZoneClass = Literal["primary", "secondary"]


def classify_zone(bytes_sent: int | float) -> ZoneClass:
    if bytes_sent >= PRIMARY_ZONE_THRESHOLD_BYTES:
        return "primary"
    return "secondary"


def is_primary_zone(bytes_sent: int | float) -> bool:
    return classify_zone(bytes_sent) == "primary"


def round_half_up(value: float, digits: int = 1) -> float:
    factor = 10**digits
    return math.floor(value * factor + 0.5) / factor


def confidence_percent(
    estimate: float | None,
    lower: float | None = None,
    upper: float | None = None,
) -> float | None:
    """Collapse a sampling interval into a 0-100 score; wider interval, lower score."""
    if not estimate:
        return None
    lower_bound = estimate if lower is None else lower
    upper_bound = estimate if upper is None else upper
    relative_width = (upper_bound - lower_bound) / (2 * estimate)
    percent = max(0.0, min(100.0, 100.0 * (1.0 - relative_width)))
    return round_half_up(percent, 1)


def with_percent(interval: ConfidenceInterval) -> ConfidenceInterval:
    return interval.model_copy(
        update={"percent": confidence_percent(interval.estimate, interval.lower, interval.upper)}
    )


def normalize_interval(interval: ConfidenceInterval | None, fallback: float) -> ConfidenceInterval | None:
    """Fill zeroed bounds from the observed count, the way the source reports unsampled zones."""
    if interval is None:
        return None
    return ConfidenceInterval(
        estimate=interval.estimate or fallback,
        lower=interval.lower or fallback,
        upper=interval.upper or fallback,
        sample_size=interval.sample_size or 0,
    )


def combine_intervals(intervals: Iterable[ConfidenceInterval | None]) -> ConfidenceInterval | None:
    """Sum interval components, then derive the percentage from the combined bounds."""
    present = [interval for interval in intervals if interval is not None]
    if not present:
        return None
    combined = ConfidenceInterval(
        estimate=sum(interval.estimate for interval in present),
        lower=sum(interval.lower for interval in present),
        upper=sum(interval.upper for interval in present),
        sample_size=sum(interval.sample_size for interval in present),
    )
    return with_percent(combined)
