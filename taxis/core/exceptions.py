"""Custom exception hierarchy."""


class AppError(Exception):
    """Base exception for application errors."""
    def __init__(self, message: str, original_error: Exception = None):
        super().__init__(message)
        self.original_error = original_error


class APIClientError(AppError):
    """Raised when an external API call fails."""
    pass


class APITimeoutError(APIClientError):
    """Raised when an external API call times out."""
    pass


class ModelUnavailableError(APIClientError):
    """Raised when the language-model service rejects the requested model.

    Covers not-found, forbidden and ``model_not_found`` replies. This is the
    only error class that moves the classifier on to the next fallback model.
    """
    def __init__(self, message: str, model: str, status_code: int | None = None, original_error: Exception = None):
        super().__init__(message, original_error=original_error)
        self.model = model
        self.status_code = status_code


class DatabaseError(AppError):
    """Raised when a database operation fails."""
    pass


class ValidationError(AppError):
    """Raised when input validation fails."""
    def __init__(self, message: str, details: dict | None = None, original_error: Exception = None):
        super().__init__(message, original_error=original_error)
        self.details = details or {}


class StorageError(AppError):
    """Raised when a blob storage operation fails."""
    pass


class BlobNotFoundError(StorageError):
    """Raised when a required blob does not exist."""
    pass


class PipelineError(AppError):
    """Base exception for processing-slice errors."""
    pass


class RowSourceError(PipelineError):
    """Uploaded file could not be decoded into rows."""
    pass


class JobNotFoundError(PipelineError):
    """Raised when a job is not found."""
    pass


class UploadNotFoundError(PipelineError):
    """Raised when the upload referenced by a job is not found."""
    pass
