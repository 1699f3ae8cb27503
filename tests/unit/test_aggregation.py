from __future__ import annotations

from datetime import datetime

import pytest

from edge_usage.core.usage.aggregation import (
    aggregate_account_metrics,
    aggregate_addon_metrics,
    merge_time_series,
)
from edge_usage.core.usage.models import (
    AccountMetrics,
    AddonAccountMetrics,
    AddonUsage,
    AddonZoneUsage,
    ConfidenceInterval,
    MonthlyUsagePoint,
    UsageConfidence,
    UsageTotals,
    ZoneBreakdown,
    ZoneMetrics,
)

pytestmark = pytest.mark.unit


def _point(month: str, requests: int, bytes_sent: int = 0, dns: int = 0) -> MonthlyUsagePoint:
    return MonthlyUsagePoint(
        month=month,
        timestamp=datetime.strptime(month, "%Y-%m"),
        requests=requests,
        bytes=bytes_sent,
        dns_queries=dns,
    )


def test_merge_time_series_sums_matching_months_and_sorts():
    merged = merge_time_series(
        [
            [_point("2025-02", 10, 100, 1), _point("2025-03", 20, 200, 2)],
            [_point("2025-01", 5), _point("2025-03", 7, 70, 3)],
        ]
    )
    assert [point.month for point in merged] == ["2025-01", "2025-02", "2025-03"]
    march = merged[-1]
    assert (march.requests, march.bytes, march.dns_queries) == (27, 270, 5)


def test_merge_time_series_leaves_inputs_untouched():
    first = [_point("2025-03", 1)]
    merge_time_series([first, [_point("2025-03", 2)]])
    assert first[0].requests == 1


def _account(account_id: str, requests: int, lower: float, upper: float, zones: list[ZoneMetrics]) -> AccountMetrics:
    primary = sum(1 for zone in zones if zone.is_primary)
    return AccountMetrics(
        account_id=account_id,
        current=UsageTotals(
            requests=requests,
            bytes=requests * 10,
            dns_queries=requests // 10,
            confidence=UsageConfidence(
                requests=ConfidenceInterval(estimate=requests, lower=lower, upper=upper),
            ),
        ),
        previous=UsageTotals(requests=requests // 2),
        time_series=[_point("2025-03", requests)],
        zone_breakdown=ZoneBreakdown(primary_count=primary, secondary_count=len(zones) - primary, zones=zones),
    )


def test_aggregate_account_metrics():
    first = _account("acc-1", 100, 90, 110, [ZoneMetrics(zone_id="z1", zone_name="a", requests=100, is_primary=True)])
    second = _account(
        "acc-2",
        200,
        180,
        220,
        [
            ZoneMetrics(zone_id="z2", zone_name="b", requests=150),
            ZoneMetrics(zone_id="z3", zone_name="c", requests=50),
        ],
    )

    aggregate = aggregate_account_metrics([first, second], failed_accounts=["acc-3"])

    assert aggregate.current.requests == 300
    assert aggregate.current.bytes == 3000
    assert aggregate.current.dns_queries == 30
    assert aggregate.previous.requests == 150
    assert aggregate.previous.confidence is None
    assert aggregate.current.confidence is not None
    requests_confidence = aggregate.current.confidence.requests
    assert requests_confidence is not None
    assert (requests_confidence.estimate, requests_confidence.lower, requests_confidence.upper) == (300, 270, 330)
    assert requests_confidence.percent == 90.0
    assert aggregate.current.confidence.bytes is None

    assert aggregate.zone_breakdown.primary_count == 1
    assert aggregate.zone_breakdown.secondary_count == 2
    assert [zone.zone_id for zone in aggregate.zone_breakdown.zones] == ["z1", "z2", "z3"]
    assert [point.requests for point in aggregate.time_series] == [300]
    assert [account.account_id for account in aggregate.per_account_data] == ["acc-1", "acc-2"]
    assert aggregate.failed_accounts == ["acc-3"]


def test_aggregate_addon_metrics_dedupes_zone_ids_on_request():
    shared = AddonZoneUsage(zone_id="z1", zone_name="a", requests=5)
    per_account = [
        AddonAccountMetrics(account_id="acc-1", current=AddonUsage(requests=5, zones=[shared])),
        AddonAccountMetrics(
            account_id="acc-2",
            current=AddonUsage(requests=7, zones=[shared, AddonZoneUsage(zone_id="z2", zone_name="b", requests=2)]),
        ),
    ]

    deduped = aggregate_addon_metrics(per_account, threshold=1000, dedupe_zone_ids=True)
    assert deduped.current.requests == 12
    assert [zone.zone_id for zone in deduped.current.zones] == ["z1", "z2"]
    assert deduped.threshold == 1000
    assert deduped.enabled is True

    kept = aggregate_addon_metrics(per_account, threshold=None)
    assert [zone.zone_id for zone in kept.current.zones] == ["z1", "z1", "z2"]


def test_aggregate_addon_metrics_with_no_accounts_is_not_applicable():
    empty = aggregate_addon_metrics([], threshold=500)
    assert empty.current is None
    assert empty.previous is None
    assert empty.threshold == 500
    assert empty.time_series == []
    assert empty.per_account_data == []
