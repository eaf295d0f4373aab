"""
Engine-wide exception hierarchy.

Services raise these types and nothing else for expected failures.
Blueprints register handlers against ``ChangeflowError`` once and get a
consistent ``{"error", "code", "details"}`` body with the right HTTP
status everywhere.

Usage:
    from changeflow.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="ApprovalStep", resource_id=42)
    raise ValidationError("status is invalid", details={"status": "..."})
"""


class ChangeflowError(Exception):
    """Base class. ``code`` is machine-readable, ``status`` is the HTTP mapping."""

    code = "ERR_INTERNAL"
    status = 500

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(ChangeflowError):
    """Bad or missing fields, or an enum value outside its closed set.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown. Keys are field names.
    """

    code = "ERR_VALIDATION"
    status = 400


class PermissionDeniedError(ChangeflowError):
    """The caller lacks the role an operation requires."""

    code = "ERR_FORBIDDEN"
    status = 403


class NotFoundError(ChangeflowError):
    """Raised when a document, step, approver or template is absent.

    Soft-deleted documents are reported as not found as well.

    Args:
        resource: Human-readable entity name (e.g. "ProposedChange").
        resource_id: The key that was looked up.
    """

    code = "ERR_NOT_FOUND"
    status = 404

    def __init__(self, resource: str, resource_id: int | str | None = None, details: dict | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg, details)


class ConflictError(ChangeflowError):
    """The operation is illegal for the current state.

    Re-deciding an approved step, bypassing a chain with no eligible
    steps, or acting on a completed document.
    """

    code = "ERR_CONFLICT_STATE"
    status = 409


class ConcurrencyError(ChangeflowError):
    """Serialization conflicts persisted past the retry budget.

    Rendered to clients as a generic failure; the cause stays in logs.
    """

    code = "ERR_CONCURRENCY"
    status = 500

    def __init__(self, message: str = "The request could not be completed, please retry", details: dict | None = None) -> None:
        super().__init__(message, details)


class TransactionTimeoutError(ChangeflowError):
    """One transaction attempt exceeded its wall-clock budget. Retryable."""

    code = "ERR_CONCURRENCY"
    status = 500


class NotificationError(ChangeflowError):
    """Delivery failed. Caught and logged by the dispatcher, never propagated."""

    code = "ERR_NOTIFICATION"
    status = 500
