from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Sequence

from edge_usage.core.usage.thresholds import ALERT_THRESHOLD_PERCENT, ThresholdAlert, format_metric_value
from edge_usage.core.utils.time import to_epoch_seconds, to_iso_z

_ALERT_HEADER = ":warning: Usage Alert"
_TEST_HEADER = ":test_tube: Test Notification"


def _mrkdwn(text: str) -> dict[str, str]:
    return {"type": "mrkdwn", "text": text}


def _timestamp_context(label: str, now: datetime, suffix: str = "") -> dict[str, Any]:
    epoch = int(to_epoch_seconds(now))
    text = f":clock1: {label}: <!date^{epoch}^{{date_short_pretty}} at {{time}}|{to_iso_z(now)}>{suffix}"
    return {"type": "context", "elements": [_mrkdwn(text)]}


def accounts_display(account_ids: Sequence[str]) -> str:
    if len(account_ids) > 1:
        return f"{len(account_ids)} accounts"
    if account_ids:
        return account_ids[0]
    return "Unknown"


def build_alert_message(
    alerts: Sequence[ThresholdAlert],
    *,
    now: datetime,
    dashboard_url: str | None,
) -> dict[str, Any]:
    blocks: list[dict[str, Any]] = [
        {"type": "header", "text": {"type": "plain_text", "text": _ALERT_HEADER, "emoji": True}},
        {
            "type": "section",
            "text": _mrkdwn(
                f"*Threshold Warning: {ALERT_THRESHOLD_PERCENT:.0f}% Reached*\n"
                f"Usage has reached *{ALERT_THRESHOLD_PERCENT:.0f}% or more* of the contracted thresholds:"
            ),
        },
        {"type": "divider"},
    ]
    for alert in alerts:
        blocks.append(
            {
                "type": "section",
                "fields": [
                    _mrkdwn(f"*{alert.metric}*\n{alert.percentage:.1f}% used"),
                    _mrkdwn(
                        f"*Current:* {format_metric_value(alert.metric_key, alert.current)}\n"
                        f"*Threshold:* {format_metric_value(alert.metric_key, alert.threshold)}"
                    ),
                ],
            }
        )
    blocks.append({"type": "divider"})
    blocks.append(_timestamp_context("Alert triggered", now))
    if dashboard_url:
        blocks.append(
            {
                "type": "actions",
                "elements": [
                    {
                        "type": "button",
                        "text": {"type": "plain_text", "text": "View Dashboard", "emoji": True},
                        "url": dashboard_url,
                        "style": "primary",
                    }
                ],
            }
        )
    summary = ", ".join(f"{alert.metric} {alert.percentage:.1f}%" for alert in alerts)
    return {"text": f"Usage alert: {summary}", "blocks": blocks}


def build_test_message(
    values: Mapping[str, float | None],
    account_ids: Sequence[str],
    *,
    now: datetime,
) -> dict[str, Any]:
    fields = [
        _mrkdwn(f"*Current Zones:*\n{format_metric_value('zones', values.get('zones') or 0)}"),
        _mrkdwn(f"*Current Requests:*\n{format_metric_value('requests', values.get('requests') or 0)}"),
        _mrkdwn(f"*Current Bandwidth:*\n{format_metric_value('bandwidth', values.get('bandwidth') or 0)}"),
        _mrkdwn(
            "*Bot Management (Likely Human):*\n"
            f"{format_metric_value('botManagement', values.get('botManagement') or 0)}"
        ),
    ]
    return {
        "text": "Test notification from the usage dashboard",
        "blocks": [
            {"type": "header", "text": {"type": "plain_text", "text": _TEST_HEADER, "emoji": True}},
            {
                "type": "section",
                "text": _mrkdwn(
                    "*This is a test notification from your usage dashboard.*\n\n"
                    "The webhook is configured correctly. :white_check_mark:"
                ),
            },
            {"type": "section", "fields": fields},
            _timestamp_context("Sent", now, f" | Account(s): {accounts_display(account_ids)}"),
        ],
    }
