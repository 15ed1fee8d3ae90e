from typing import Optional, Dict, Any


class SiteWiseException(Exception):
    """Base exception for all SiteWise errors."""
    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}


class ScopeViolation(SiteWiseException):
    """
    Raised when a unit of work cannot be scoped to the requested tenant.
    Always fatal to the calling unit of work; never retried silently.
    """
    def __init__(self, message: str, code: str = "scope_violation", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=403, details=details)


class TenantNotAccessible(SiteWiseException):
    """Raised while resolving tenant contexts for a batch job; aborts the whole batch."""
    def __init__(self, tenant_id: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            f"Tenant {tenant_id} is not accessible or does not exist",
            code="tenant_not_accessible",
            status_code=404,
            details={"tenant_id": str(tenant_id), **(details or {})},
        )


class TenantIsolationError(SiteWiseException):
    """Raised when a statement would run on a connection without its tenant context."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="rls_enforcement_failed", status_code=500, details=details)


class InvalidSignature(SiteWiseException):
    """Webhook signature missing, mismatched or outside the replay window."""
    def __init__(self, message: str = "Invalid webhook signature", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="invalid_signature", status_code=401, details=details)


class MalformedPayload(SiteWiseException):
    """Webhook body is authentic but cannot be parsed into a canonical event."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="malformed_payload", status_code=400, details=details)


class ConfigurationError(SiteWiseException):
    """Raised when application configuration is invalid or missing."""
    def __init__(self, message: str, code: str = "config_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=500, details=details)


class BillingError(SiteWiseException):
    """Raised when payment or subscription processing fails."""
    def __init__(self, message: str, code: str = "billing_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=400, details=details)


class BillingEventDeferred(SiteWiseException):
    """
    Authentic event that cannot be applied yet (e.g. its org is not linked).
    Nothing is recorded, so the provider's redelivery gets another attempt.
    """
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="billing_event_deferred", status_code=409, details=details)


class UsageAggregationError(SiteWiseException):
    """Some tenants failed during AV30 aggregation; their orgs were left unwritten."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="usage_aggregation_failed", status_code=500, details=details)
