"""Exceptions raised by the reconciliation engine.

CRM transport problems are not exceptions; the CRM client returns
CrmResult values. Exceptions here mark conditions that no retry can fix.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for reconciliation errors."""


class ConfigurationError(SyncError):
    """Deployment configuration is incomplete. Fail immediately, never retry."""


class MappingMissing(ConfigurationError):
    """No CRM stage is configured for a canonical business state."""

    def __init__(self, state: str) -> None:
        self.state = state
        super().__init__(f"No stage mapping configured for state '{state}'")


class CredentialMissing(ConfigurationError):
    """No CRM access token is configured."""

    def __init__(self) -> None:
        super().__init__("CRM access token is not configured")


class BusinessNotFound(SyncError):
    """The requested business does not exist."""

    def __init__(self, business_id: str) -> None:
        self.business_id = business_id
        super().__init__(f"Business not found: {business_id}")


class BudgetLocked(SyncError):
    """An invoiced budget was edited without an administrative correction flag."""

    def __init__(self, budget_id: str) -> None:
        self.budget_id = budget_id
        super().__init__(
            f"Budget {budget_id} is invoiced; changes require admin_correction"
        )
