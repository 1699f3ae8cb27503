from __future__ import annotations

from typing import Iterable, Sequence

from edge_usage.core.usage import combine_intervals
from edge_usage.core.usage.models import (
    AccountMetrics,
    AddonAccountMetrics,
    AddonMetrics,
    AddonUsage,
    AddonUsagePoint,
    AddonZoneUsage,
    AggregateMetrics,
    MonthlyUsagePoint,
    UsageConfidence,
    UsageTotals,
    ZoneBreakdown,
)


def sum_totals(totals: Sequence[UsageTotals], *, with_confidence: bool) -> UsageTotals:
    combined = UsageTotals(
        requests=sum(item.requests for item in totals),
        bytes=sum(item.bytes for item in totals),
        dns_queries=sum(item.dns_queries for item in totals),
    )
    if not with_confidence:
        return combined
    confidences = [item.confidence for item in totals if item.confidence is not None]
    combined.confidence = UsageConfidence(
        requests=combine_intervals(confidence.requests for confidence in confidences),
        bytes=combine_intervals(confidence.bytes for confidence in confidences),
        dns_queries=combine_intervals(confidence.dns_queries for confidence in confidences),
    )
    return combined


def merge_breakdowns(breakdowns: Iterable[ZoneBreakdown]) -> ZoneBreakdown:
    merged = ZoneBreakdown()
    for breakdown in breakdowns:
        merged.primary_count += breakdown.primary_count
        merged.secondary_count += breakdown.secondary_count
        merged.zones.extend(breakdown.zones)
    return merged


def merge_time_series(series: Iterable[Sequence[MonthlyUsagePoint]]) -> list[MonthlyUsagePoint]:
    by_month: dict[str, MonthlyUsagePoint] = {}
    for points in series:
        for point in points:
            existing = by_month.get(point.month)
            if existing is None:
                by_month[point.month] = point.model_copy()
                continue
            existing.requests += point.requests
            existing.bytes += point.bytes
            existing.dns_queries += point.dns_queries
    return sorted(by_month.values(), key=lambda point: point.timestamp)


def merge_addon_time_series(series: Iterable[Sequence[AddonUsagePoint]]) -> list[AddonUsagePoint]:
    by_month: dict[str, AddonUsagePoint] = {}
    for points in series:
        for point in points:
            existing = by_month.get(point.month)
            if existing is None:
                by_month[point.month] = point.model_copy()
            else:
                existing.requests += point.requests
    return sorted(by_month.values(), key=lambda point: point.timestamp)


def aggregate_account_metrics(
    metrics: Sequence[AccountMetrics],
    *,
    failed_accounts: Sequence[str] = (),
) -> AggregateMetrics:
    return AggregateMetrics(
        current=sum_totals([item.current for item in metrics], with_confidence=True),
        previous=sum_totals([item.previous for item in metrics], with_confidence=False),
        time_series=merge_time_series(item.time_series for item in metrics),
        zone_breakdown=merge_breakdowns(item.zone_breakdown for item in metrics),
        previous_month_zone_breakdown=merge_breakdowns(item.previous_month_zone_breakdown for item in metrics),
        per_account_data=list(metrics),
        failed_accounts=list(failed_accounts),
    )


def dedupe_zones(zones: Iterable[AddonZoneUsage]) -> list[AddonZoneUsage]:
    seen: set[str] = set()
    unique: list[AddonZoneUsage] = []
    for zone in zones:
        if zone.zone_id in seen:
            continue
        seen.add(zone.zone_id)
        unique.append(zone)
    return unique


def _sum_addon_usage(usages: Sequence[AddonUsage], *, dedupe: bool) -> AddonUsage:
    zones = [zone for usage in usages for zone in usage.zones]
    if dedupe:
        zones = dedupe_zones(zones)
    return AddonUsage(
        requests=sum(usage.requests for usage in usages),
        zones=zones,
        confidence=combine_intervals(usage.confidence for usage in usages),
    )


def aggregate_addon_metrics(
    per_account: Sequence[AddonAccountMetrics],
    *,
    threshold: int | None,
    dedupe_zone_ids: bool = False,
) -> AddonMetrics:
    if not per_account:
        return AddonMetrics(enabled=True, threshold=threshold, current=None, previous=None)
    return AddonMetrics(
        enabled=True,
        threshold=threshold,
        current=_sum_addon_usage([item.current for item in per_account], dedupe=dedupe_zone_ids),
        previous=_sum_addon_usage([item.previous for item in per_account], dedupe=dedupe_zone_ids),
        time_series=merge_addon_time_series(item.time_series for item in per_account),
        per_account_data=list(per_account),
    )
