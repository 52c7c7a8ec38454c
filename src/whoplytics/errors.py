"""Domain exception types for tenant resolution, OAuth and sessions.

Codec failures are raised internally and converted to ``None`` by the
session layer. Store and lookup failures propagate so that an outage is
never mistaken for a tenant that simply has not installed the app yet.
"""

from typing import Optional


class WhoplyticsError(Exception):
    """Base exception for all Whoplytics errors."""

    # Short machine-readable code used in login redirects (?error=<code>)
    code = "internal_error"


class MalformedCredential(WhoplyticsError):
    """Session credential is not validly encoded, signed, or shaped."""

    code = "invalid_session"


class MalformedState(WhoplyticsError):
    """OAuth state parameter is corrupt, forged, or missing fields."""

    code = "invalid_state"


class ExpiredState(WhoplyticsError):
    """OAuth state is older than the configured maximum age."""

    code = "expired_state"

    def __init__(self, message: str, age_ms: Optional[int] = None):
        self.age_ms = age_ms
        super().__init__(message)


class ReplayedState(WhoplyticsError):
    """OAuth state nonce has already been consumed once."""

    code = "replayed_state"


class InstallationNotFound(WhoplyticsError):
    """No installation record exists for the requested tenant."""

    code = "installation_not_found"

    def __init__(self, tenant_id: str):
        self.tenant_id = tenant_id
        super().__init__(f"Installation not found for {tenant_id}")


class StoreUnavailable(WhoplyticsError):
    """The installation store could not be read or written."""

    code = "store_unavailable"


class ResolutionFailed(WhoplyticsError):
    """Tenant resolution hit a store error (distinct from "no match")."""

    code = "store_unavailable"


class MissingRequiredField(WhoplyticsError):
    """A request omitted a field the operation cannot proceed without."""

    code = "missing_params"

    def __init__(self, *fields: str):
        self.fields = fields
        super().__init__(f"{' and '.join(fields)} required")


class UnresolvedTenant(WhoplyticsError):
    """Handshake completed but no tenant could be bound to it."""

    code = "no_company"


class PlatformExchangeError(WhoplyticsError):
    """Code exchange or identity lookup against the platform failed."""

    code = "token_exchange_failed"

    def __init__(self, message: str, status_code: int = 0):
        self.status_code = status_code
        super().__init__(message)
