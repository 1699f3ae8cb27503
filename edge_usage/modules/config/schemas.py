from __future__ import annotations

from typing import Any, Final, Sequence

from pydantic import Field, field_validator, model_validator

from edge_usage.modules.shared.schemas import DashboardModel

# Wire key -> attribute name on ApplicationServicesConfig.
ADDON_FIELDS: Final[dict[str, str]] = {
    "botManagement": "bot_management",
    "apiShield": "api_shield",
    "pageShield": "page_shield",
    "advancedRateLimiting": "advanced_rate_limiting",
}
ZONE_FILTERED_ADDONS: Final[tuple[str, ...]] = ("apiShield", "pageShield", "advancedRateLimiting")

_LEGACY_CORE_FIELDS: Final[tuple[str, ...]] = (
    "thresholdZones",
    "primaryZones",
    "secondaryZones",
    "thresholdRequests",
    "thresholdBandwidth",
    "thresholdDnsQueries",
)


def normalize_account_ids(value: Sequence[str]) -> list[str]:
    normalized: list[str] = []
    seen: set[str] = set()
    for raw in value:
        account_id = raw.strip()
        if not account_id or account_id in seen:
            continue
        seen.add(account_id)
        normalized.append(account_id)
    return normalized


class CoreServiceConfig(DashboardModel):
    enabled: bool = True
    threshold_zones: int | None = None
    primary_zones: int | None = None
    secondary_zones: int | None = None
    threshold_requests: int | None = None
    threshold_bandwidth: int | None = None
    threshold_dns_queries: int | None = None


class AddonServiceConfig(DashboardModel):
    enabled: bool = False
    threshold: int | None = None
    zones: list[str] = Field(default_factory=list)

    @property
    def active(self) -> bool:
        return self.enabled and bool(self.zones)


class ApplicationServicesConfig(DashboardModel):
    core: CoreServiceConfig = Field(default_factory=CoreServiceConfig)
    bot_management: AddonServiceConfig = Field(default_factory=AddonServiceConfig)
    api_shield: AddonServiceConfig = Field(default_factory=AddonServiceConfig)
    page_shield: AddonServiceConfig = Field(default_factory=AddonServiceConfig)
    advanced_rate_limiting: AddonServiceConfig = Field(default_factory=AddonServiceConfig)

    def addon(self, key: str) -> AddonServiceConfig:
        return getattr(self, ADDON_FIELDS[key])


class DashboardConfig(DashboardModel):
    account_ids: list[str] = Field(default_factory=list)
    application_services: ApplicationServicesConfig = Field(default_factory=ApplicationServicesConfig)
    slack_webhook: str | None = None
    alerts_enabled: bool = False

    @model_validator(mode="before")
    @classmethod
    def _migrate_legacy_fields(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        migrated = dict(data)

        legacy_account = migrated.pop("accountId", None) or migrated.pop("account_id", None)
        account_ids = migrated.get("accountIds") or migrated.get("account_ids")
        if not account_ids and isinstance(legacy_account, str) and legacy_account.strip():
            migrated["accountIds"] = [legacy_account]
            migrated.pop("account_ids", None)

        legacy_core = {name: migrated.pop(name) for name in _LEGACY_CORE_FIELDS if name in migrated}
        if legacy_core:
            services = dict(migrated.get("applicationServices") or migrated.pop("application_services", None) or {})
            core = dict(services.get("core") or {})
            for name, value in legacy_core.items():
                if core.get(name) is None:
                    core[name] = value
            services["core"] = core
            migrated["applicationServices"] = services
        return migrated

    @field_validator("account_ids")
    @classmethod
    def _normalize_account_ids(cls, value: list[str]) -> list[str]:
        return normalize_account_ids(value)

    @field_validator("slack_webhook")
    @classmethod
    def _blank_webhook(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip()

    def thresholds(self) -> dict[str, int | None]:
        core = self.application_services.core
        values: dict[str, int | None] = {
            "zones": core.threshold_zones,
            "requests": core.threshold_requests,
            "bandwidth": core.threshold_bandwidth,
            "dnsQueries": core.threshold_dns_queries,
        }
        for key in ADDON_FIELDS:
            addon = self.application_services.addon(key)
            values[key] = addon.threshold if addon.enabled else None
        return values
