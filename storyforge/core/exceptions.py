"""
Service-wide exception hierarchy.

Services raise these types; blueprints register handlers against them
once and get consistent HTTP status codes everywhere.

Usage:
    from storyforge.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Run", resource_id=run_id)
    raise ValidationError("itemIds is required", details={"itemIds": "..."})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "Run", "Project").
        resource_id: The key that was looked up. Included in logs, not in HTTP response.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is well-formed but violates a business rule.

    Maps to HTTP 400 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation is not allowed in the resource's current state.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(f"{resource} with {field}={value!r} conflicts with current state")


class ConfigurationError(Exception):
    """Raised when a tracker, credential or model provider is not configured.

    Fatal for the whole operation: nothing is attempted. Maps to HTTP 400.
    """


class UpstreamError(Exception):
    """A failed call to a model provider or tracker backend.

    Carries whatever the upstream told us so run items can record a
    diagnosable error payload.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retry_after: float | None = None,
        request_id: str | None = None,
    ) -> None:
        self.status_code = status_code
        self.retry_after = retry_after
        self.request_id = request_id
        super().__init__(message)


class ModelTimeoutError(UpstreamError):
    """A single model attempt exceeded its time budget. Retriable."""


class MalformedOutputError(Exception):
    """The model answered but returned no usable structured output."""
