"""
Typed errors raised by the access-control engine.

The engine never builds HTTP responses itself; app.main maps these onto
status codes (401/403/400/404/409) with exception handlers.
"""
from typing import Any, Dict, Optional


class AccessControlError(Exception):
    """Base class for every error the engine surfaces to callers."""

    default_detail = "Access control error"

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class Unauthenticated(AccessControlError):
    """No valid principal could be resolved for the request."""

    default_detail = "Authentication required"


class PermissionDenied(AccessControlError):
    """Principal resolved, decision was deny."""

    default_detail = "Permission denied"

    def __init__(self, detail: Optional[str] = None, resource: Optional[str] = None, action: Optional[str] = None):
        if detail is None and resource and action:
            detail = f"Permission denied: {action} on {resource}"
        super().__init__(detail)
        self.resource = resource
        self.action = action


class ValidationFailed(AccessControlError):
    """Malformed input to an administrative operation. Carries field-level detail."""

    default_detail = "Validation failed"

    def __init__(self, detail: Optional[str] = None, fields: Optional[Dict[str, Any]] = None):
        super().__init__(detail)
        self.fields = fields or {}


class NotFound(AccessControlError):
    """Referenced role, permission, rule or audit entry does not exist."""

    default_detail = "Resource not found"


class Conflict(AccessControlError):
    """Duplicate role, role still assigned, or system role protected."""

    default_detail = "Resource conflict"
