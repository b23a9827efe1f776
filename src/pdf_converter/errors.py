"""Error taxonomy shared by the ledger, the scheduler and the HTTP layer.

Every error carries a stable ``code`` that ends up in API responses and in
``batch_files.error_code``.
"""


class ConverterError(Exception):
    code = "INTERNAL_ERROR"
    http_status = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ValidationError(ConverterError):
    code = "VALIDATION_ERROR"
    http_status = 400


class NotFoundError(ConverterError):
    code = "NOT_FOUND"
    http_status = 404


class InvalidTransitionError(ConverterError):
    code = "INVALID_TRANSITION"
    http_status = 409


class ConcurrencyConflictError(ConverterError):
    code = "CONCURRENCY_CONFLICT"
    http_status = 409


class NoCompletedFilesError(ConverterError):
    code = "NO_COMPLETED_FILES"
    http_status = 409


class QuotaExceededError(ConverterError):
    code = "LIMIT_EXCEEDED"
    http_status = 402

    def __init__(self, message: str, snapshot) -> None:
        super().__init__(message)
        self.snapshot = snapshot

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["usage"] = self.snapshot.model_dump(mode="json")
        return data


class ProcessingError(ConverterError):
    code = "PROCESSING_ERROR"
    http_status = 502


class TransientProcessingError(ProcessingError):
    """Gateway timeout or temporary unavailability. Eligible for retry."""

    code = "GATEWAY_TRANSIENT"
    http_status = 503

    def __init__(self, message: str = "", reason: str = "GATEWAY_UNAVAILABLE") -> None:
        super().__init__(message)
        self.reason = reason


class PermanentProcessingError(ProcessingError):
    """Corrupt or unsupported document content. Never retried automatically."""

    code = "PROCESSING_FAILED"
    http_status = 422
