"""Exception types shared across the engine."""


class DataQualityError(ValueError):
    """Raised for malformed or non-finite market samples."""


class ExternalServiceError(Exception):
    """Base error for LLM and exchange calls; trading callers fail closed."""


class InvalidModelResponse(ExternalServiceError):
    """Raised when the model reply is not a usable JSON decision."""
