from __future__ import annotations

from typing import TypedDict


class DashboardErrorDetail(TypedDict):
    code: str
    message: str


class DashboardErrorEnvelope(TypedDict):
    error: DashboardErrorDetail


def dashboard_error(code: str, message: str) -> DashboardErrorEnvelope:
    return {"error": {"code": code, "message": message}}


class ConfigurationError(Exception):
    """Operator-fixable setup problem. Reported to the caller, never retried."""

    code = "configuration_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class MissingApiTokenError(ConfigurationError):
    code = "missing_api_token"

    def __init__(self) -> None:
        super().__init__("Analytics API token is not configured. Set EDGE_USAGE_API_TOKEN.")


class NoAccountsConfiguredError(ConfigurationError):
    code = "no_accounts"

    def __init__(self) -> None:
        super().__init__("No account IDs configured")


class AllAccountsFailedError(Exception):
    def __init__(self, account_ids: list[str], last_error: BaseException | None = None) -> None:
        detail = f": {last_error}" if last_error is not None else ""
        super().__init__(f"Failed to fetch metrics for all {len(account_ids)} account(s){detail}")
        self.account_ids = account_ids
        self.last_error = last_error
