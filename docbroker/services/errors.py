"""
Service layer exceptions.
"""


class ServiceError(Exception):
    """Base exception for service layer errors."""

    def __init__(self, message: str, service_id: str | None = None):
        self.service_id = service_id
        super().__init__(message)


class RetryableError(ServiceError):
    """Backend call was suppressed locally; the caller may retry later."""

    pass


class CircuitOpenError(RetryableError):
    """Circuit breaker is open, request blocked."""

    def __init__(self, service_id: str, reset_after_seconds: float):
        self.reset_after_seconds = reset_after_seconds
        super().__init__(
            f"Circuit breaker open for service '{service_id}', "
            f"retry after {reset_after_seconds:.1f}s",
            service_id=service_id,
        )


class RateLimitExceededError(RetryableError):
    """Local rate limit exhausted for the current window."""

    def __init__(self, service_id: str, retry_after: float | None = None):
        self.retry_after = retry_after
        msg = f"Rate limit exceeded for service '{service_id}'"
        if retry_after:
            msg += f", retry after {retry_after:.1f}s"
        super().__init__(msg, service_id=service_id)


class DocumentStoreError(ServiceError):
    """Document store request failed for a reason other than conflict/not found."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message, service_id="couchdb")


class DocumentConflictError(DocumentStoreError):
    """Revision supplied on write does not match the stored revision."""

    def __init__(self, database: str, doc_id: str):
        self.database = database
        self.doc_id = doc_id
        super().__init__(
            f"Document update conflict for '{doc_id}' in '{database}'",
            status_code=409,
        )


class ConflictRetriesExhaustedError(DocumentConflictError):
    """Save kept conflicting after every allowed attempt."""

    def __init__(self, database: str, doc_id: str, attempts: int):
        self.attempts = attempts
        super().__init__(database, doc_id)
        self.args = (
            f"Document update conflict for '{doc_id}' in '{database}' "
            f"persisted after {attempts} attempts",
        )


class DocumentNotFoundError(DocumentStoreError):
    """Requested document does not exist."""

    def __init__(self, database: str, doc_id: str):
        self.database = database
        self.doc_id = doc_id
        super().__init__(f"Document '{doc_id}' not found in '{database}'", 404)


class ForbiddenFieldError(ServiceError):
    """Document carries a reserved field that must never be persisted."""

    def __init__(self, collection: str, field: str, doc_id: str | None):
        self.collection = collection
        self.field = field
        self.doc_id = doc_id
        super().__init__(
            f"Refusing to save reserved field '{field}' to '{collection}' "
            f"(document {doc_id})"
        )


class InconsistentStateError(ServiceError):
    """Workflow stage and approval status are not a legal combination."""

    def __init__(self, stage: str | None, status: str | None, doc_id: str | None = None):
        self.stage = stage
        self.status = status
        self.doc_id = doc_id
        super().__init__(
            f"Inconsistent workflow state for {doc_id or 'record'}: "
            f"stage={stage!r} status={status!r}"
        )


class ExternalServiceError(ServiceError):
    """Provisioning service could not be reached or returned an error."""

    pass


class CacheError(ServiceError):
    """Cache operation failed."""

    pass
