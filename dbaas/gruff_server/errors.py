"""
Error types for the Gruff graph query core.

This module defines all exception types raised by the core:
- GruffError: Base exception
- ValidationError: Malformed path, filter or traversal parameters
- NotFoundError: Missing entity, link or ACL
- AccessDeniedError: ACL denial (the Forbidden outcome)
- NoPathFoundError: Shortest-path search exhausted without reaching target

Invariants:
    - All errors inherit from GruffError
    - NotFoundError and AccessDeniedError are never folded together
    - Error messages are actionable
"""

from __future__ import annotations

from typing import Any


class GruffError(Exception):
    """Base exception for all Gruff errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "GRUFF_ERROR"
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to the error body handed to the transport layer."""
        return {"error": self.message, "code": self.code, "details": self.details}


class ValidationError(GruffError):
    """Input validation failed.

    Raised when:
    - A JSON path is malformed
    - A filter operator does not accept the supplied value
    - A filter tree or traversal exceeds its depth limit
    """

    def __init__(
        self,
        message: str,
        field_name: str | None = None,
        errors: list[str] | None = None,
    ) -> None:
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            details={"field": field_name, "errors": errors or []},
        )
        self.field_name = field_name
        self.errors = errors or []


class NotFoundError(GruffError):
    """Resource not found.

    Raised when:
    - No member of an entity or link version chain exists
    - An ACL id does not exist
    """

    def __init__(
        self,
        message: str,
        resource_type: str,
        resource_id: str,
    ) -> None:
        super().__init__(
            message,
            code="NOT_FOUND",
            details={
                "resource_type": resource_type,
                "resource_id": resource_id,
            },
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class AccessDeniedError(GruffError):
    """Access denied.

    Raised when:
    - An authenticated actor lacks the required permission
    - An unauthenticated actor touches a resource with a non-null ACL
    """

    def __init__(
        self,
        message: str,
        actor: str | None,
        resource_id: str,
        required_permission: str | None = None,
    ) -> None:
        super().__init__(
            message,
            code="ACCESS_DENIED",
            details={
                "actor": actor,
                "resource_id": resource_id,
                "required_permission": required_permission,
            },
        )
        self.actor = actor
        self.resource_id = resource_id
        self.required_permission = required_permission


class NoPathFoundError(GruffError):
    """No path exists between two entities within the depth limit."""

    def __init__(self, from_id: str, to_id: str, max_depth: int) -> None:
        super().__init__(
            "No path found between the specified entities",
            code="NO_PATH_FOUND",
            details={"from": from_id, "to": to_id, "max_depth": max_depth},
        )
        self.from_id = from_id
        self.to_id = to_id
        self.max_depth = max_depth
