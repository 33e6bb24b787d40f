"""Domain-specific exceptions for the API access layer.

Expected authentication outcomes (unknown key, missing scope, quota
exhausted) are returned as values by the authenticator and never raised.
The exceptions here cover the administrative operations.
"""

from __future__ import annotations

import uuid


class BusinessNotFoundError(Exception):
    """Raised when a business (tenant) does not exist."""


class IntegrationNotFoundError(Exception):
    """Raised when a platform integration does not exist."""


class IntegrationSlugTakenError(Exception):
    """Raised when an integration slug is already registered."""


class ApiKeyNotFoundError(Exception):
    """Raised when an API key does not exist or belongs to another business."""


class ApiKeyRevokedError(Exception):
    """Raised when regenerating or revoking a key that is already revoked."""


class PlanRestrictedError(Exception):
    """The business subscription plan does not include API access."""

    def __init__(self, business_id: uuid.UUID, plan: str) -> None:
        self.business_id = business_id
        self.plan = plan
        super().__init__(f"API access requires an eligible plan (current: {plan})")


class KeyLimitExceededError(Exception):
    """The business already holds the maximum number of active keys."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        super().__init__(
            f"Maximum {limit} active API keys allowed. Revoke an existing key first."
        )
