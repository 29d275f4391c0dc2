"""
Custom exceptions for the storage abstraction layer.

Configuration and programming-contract errors are raised. Per-operation
failures (query execution, migration batches, security denials on writes)
are carried inside result objects instead of being raised.
"""


class StorageLayerError(Exception):
    """Base exception for all storage layer errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigValidationError(StorageLayerError):
    """Raised when a provider configuration is malformed.

    Never reaches a backend: validation runs before any factory or network call.
    """


class InvalidConfigError(ConfigValidationError):
    """Raised when a configuration fails its provider's schema."""

    def __init__(self, provider_type: str, errors: list[str]):
        super().__init__(
            f"Invalid configuration for provider '{provider_type}': {'; '.join(errors)}",
            {"provider_type": provider_type, "errors": list(errors)},
        )
        self.provider_type = provider_type
        self.errors = list(errors)


class UnknownProviderError(ConfigValidationError):
    """Raised when a configuration names a provider type nobody registered."""

    def __init__(self, provider_type: str, available: list[str] | None = None):
        details: dict = {"provider_type": provider_type}
        if available is not None:
            details["available"] = list(available)
        super().__init__(f"Unknown provider type: {provider_type}", details)
        self.provider_type = provider_type
        self.available = list(available or [])


class StorageConnectionError(StorageLayerError):
    """Raised when a backend is unreachable or rejects authentication.

    Note: Named StorageConnectionError to avoid shadowing the builtin ConnectionError.
    """

    def __init__(self, endpoint: str, cause: Exception | str | None = None):
        details = {"endpoint": endpoint}
        if cause:
            details["cause"] = str(cause)
        message = f"Connection failed to {endpoint}"
        if cause:
            message += f": {cause}"
        super().__init__(message, details)
        self.endpoint = endpoint
        self.cause = cause


class QueryExecutionError(StorageLayerError):
    """A specific operation failed on the backend.

    Returned in ``QueryResult.error``; never raised across the builder boundary.
    """

    def __init__(
        self,
        message: str,
        table: str | None = None,
        operation: str | None = None,
        code: str | None = None,
        hint: str | None = None,
    ):
        details: dict = {}
        if table:
            details["table"] = table
        if operation:
            details["operation"] = operation
        if code:
            details["code"] = code
        if hint:
            details["hint"] = hint
        super().__init__(message, details)
        self.table = table
        self.operation = operation
        self.code = code
        self.hint = hint


class SecurityDenialError(QueryExecutionError):
    """A mutating call was refused by row-level security.

    Denied reads are never reported this way; they come back as empty results.
    """

    def __init__(self, table: str, operation: str, reason: str):
        super().__init__(
            f"Row-level security denied {operation} on {table}: {reason}",
            table=table,
            operation=operation,
            code="rls_denied",
        )
        self.reason = reason


class InvalidOperatorError(StorageLayerError):
    """Raised synchronously when a filter uses an operator outside the fixed set."""

    def __init__(self, operator: str, column: str | None = None, reason: str | None = None):
        details: dict = {"operator": operator}
        if column:
            details["column"] = column
        if reason:
            details["reason"] = reason
        message = f"Invalid filter operator: {operator}"
        if reason:
            message += f" ({reason})"
        super().__init__(message, details)
        self.operator = operator
        self.column = column


class InvalidIdentifierError(StorageLayerError):
    """Raised when a table or column name is not a safe SQL identifier."""

    def __init__(self, identifier: str):
        super().__init__(f"Invalid identifier: {identifier!r}", {"identifier": identifier})
        self.identifier = identifier


class CapabilityNotSupportedError(StorageLayerError):
    """Raised when a caller asserts a capability the provider does not implement."""

    def __init__(self, provider: str, capability: str):
        super().__init__(
            f"Provider '{provider}' does not support {capability}",
            {"provider": provider, "capability": capability},
        )
        self.provider = provider
        self.capability = capability


class MigrationBatchError(StorageLayerError):
    """A batch failed to transfer during a migration."""

    def __init__(self, table: str, reason: str, batch_start: int | None = None):
        details: dict = {"table": table, "reason": reason}
        if batch_start is not None:
            details["batch_start"] = batch_start
        super().__init__(f"Migration batch failed for {table}: {reason}", details)
        self.table = table
        self.reason = reason
        self.batch_start = batch_start


class JobStateError(StorageLayerError):
    """Raised on an illegal migration job transition."""

    def __init__(self, job_id: str, status: str, action: str):
        super().__init__(
            f"Cannot {action} job {job_id} in status '{status}'",
            {"job_id": job_id, "status": status, "action": action},
        )
        self.job_id = job_id
        self.status = status
        self.action = action


class JobBusyError(JobStateError):
    """Raised when deleting or re-entering a job that is currently running."""


class JobNotFoundError(StorageLayerError):
    """Raised when a migration job id is unknown."""

    def __init__(self, job_id: str):
        super().__init__(f"Migration job not found: {job_id}", {"job_id": job_id})
        self.job_id = job_id
