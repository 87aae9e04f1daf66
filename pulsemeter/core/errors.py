from __future__ import annotations


class PulseMeterError(Exception):
    """Base error for PulseMeter."""


class LedgerNotFoundError(PulseMeterError):
    """Write against a tenant that has no Pulse ledger."""

    def __init__(self, tenant_id: str) -> None:
        super().__init__(f"Pulse ledger not found for tenant {tenant_id}")
        self.tenant_id = tenant_id


class ModelNotAllowedError(PulseMeterError):
    """Model is outside the tenant tier or explicit allow-list."""

    def __init__(self, tenant_id: str, model: str, tier: str) -> None:
        super().__init__(f"Model {model} is not allowed for tenant {tenant_id} (tier={tier})")
        self.tenant_id = tenant_id
        self.model = model
        self.tier = tier


class QuotaExceededError(PulseMeterError):
    """Commit would push used Pulses past the tenant limit.

    Raised after the metered work already happened, so callers must flag the
    usage for billing reconciliation instead of discarding it.
    """

    def __init__(self, tenant_id: str, *, used: int, limit: int, requested: int) -> None:
        super().__init__(
            f"Pulse limit exceeded for tenant {tenant_id}: used={used} limit={limit} requested={requested}"
        )
        self.tenant_id = tenant_id
        self.used = used
        self.limit = limit
        self.requested = requested


class RateNotFoundError(PulseMeterError):
    """No rate entry for a model; recovered locally with fallback pricing."""

    def __init__(self, model: str) -> None:
        super().__init__(f"No Pulse rate configured for model {model}")
        self.model = model


class DatabaseError(PulseMeterError):
    """Database layer failure."""
