"""Custom exceptions for the Box 3 blueprint pipeline.

All exceptions inherit from Box3Error so callers can catch every
pipeline-specific failure in one place. Stage components catch these at
their boundary and degrade to default results; only
PipelinePreconditionError is meant to reach the caller of a pipeline run.

Example:
    try:
        response = await oracle.invoke(prompt, config)
    except OracleError as e:
        if e.recoverable:
            # Degrade the stage to an empty result
            return StageResult.failure(default, str(e))
        raise
"""

from typing import Any, Optional


class Box3Error(Exception):
    """Base exception for all Box 3 pipeline errors.

    Attributes:
        message: Human-readable error description.
        details: Optional dictionary with additional context.
        recoverable: Whether the error is potentially recoverable.
    """

    def __init__(
        self,
        message: str,
        *,
        details: Optional[dict[str, Any]] = None,
        recoverable: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.recoverable = recoverable

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"details={self.details!r}, "
            f"recoverable={self.recoverable!r})"
        )


class ExtractionError(Box3Error):
    """Raised when content cannot be extracted from a source document.

    Attributes:
        source: Filename or id of the document being processed.
        document_type: Detected document type, if known.
    """

    def __init__(
        self,
        message: str,
        *,
        source: Optional[str] = None,
        document_type: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        recoverable: bool = True,
    ) -> None:
        super().__init__(message, details=details, recoverable=recoverable)
        self.source = source
        self.document_type = document_type

        if source:
            self.details["source"] = source
        if document_type:
            self.details["document_type"] = document_type


class OracleError(Box3Error):
    """Raised when a call to the extraction oracle fails.

    Covers network failures, timeouts, API status errors and empty
    responses. Always recoverable: the calling stage degrades instead of
    aborting the run.

    Attributes:
        operation: The pipeline task the call was made for.
        api_error: The underlying provider error message.
    """

    def __init__(
        self,
        message: str,
        *,
        operation: Optional[str] = None,
        api_error: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        recoverable: bool = True,
    ) -> None:
        super().__init__(message, details=details, recoverable=recoverable)
        self.operation = operation
        self.api_error = api_error

        if operation:
            self.details["operation"] = operation
        if api_error:
            self.details["api_error"] = api_error


class ResponseParseError(Box3Error):
    """Raised when oracle output contains no decodable JSON object.

    Attributes:
        operation: The pipeline task whose response failed to decode.
        excerpt: The first characters of the offending response.
    """

    def __init__(
        self,
        message: str,
        *,
        operation: Optional[str] = None,
        excerpt: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        recoverable: bool = True,
    ) -> None:
        super().__init__(message, details=details, recoverable=recoverable)
        self.operation = operation
        self.excerpt = excerpt

        if operation:
            self.details["operation"] = operation
        if excerpt:
            self.details["excerpt"] = excerpt


class ConfigurationError(Box3Error):
    """Raised when configuration is invalid or missing.

    Attributes:
        config_key: The configuration key that is problematic.
        expected: Description of the expected value or format.
    """

    def __init__(
        self,
        message: str,
        *,
        config_key: Optional[str] = None,
        expected: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        recoverable: bool = False,
    ) -> None:
        super().__init__(message, details=details, recoverable=recoverable)
        self.config_key = config_key
        self.expected = expected

        if config_key:
            self.details["config_key"] = config_key
        if expected:
            self.details["expected"] = expected


class PipelinePreconditionError(Box3Error):
    """Raised when a run cannot produce a blueprint at all.

    The only blocking failure of a pipeline run: no input documents, or
    none that can be read from text or vision.
    """

    def __init__(
        self,
        message: str,
        *,
        document_count: int = 0,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details=details, recoverable=False)
        self.document_count = document_count
        self.details["document_count"] = document_count


__all__ = [
    "Box3Error",
    "ExtractionError",
    "OracleError",
    "ResponseParseError",
    "ConfigurationError",
    "PipelinePreconditionError",
]
