"""Custom exceptions for the Tangle Notes store.

Provides a structured exception hierarchy with error codes and
machine-readable error information. Store operations convert these into
failure results at the store boundary instead of letting them escape.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Note errors (1xxx)
    NOTE_NOT_FOUND = 1001
    NOTE_VALIDATION_FAILED = 1002

    # Connection errors (2xxx)
    LINK_INVALID = 2001
    DUPLICATE_CONNECTION = 2002
    CONNECTION_NOT_FOUND = 2003
    LINK_SELF_REFERENCE = 2004
    ORPHANED_CONNECTION = 2005

    # Storage errors (4xxx)
    STORAGE_READ_FAILED = 4001
    STORAGE_WRITE_FAILED = 4002
    STORAGE_TIMEOUT = 4003
    STORAGE_CLOSED = 4004

    # Configuration errors (6xxx)
    CONFIG_INVALID = 6001

    # Validation errors (7xxx)
    VALIDATION_FAILED = 7001
    INVALID_CONNECTION_TYPE = 7002
    INVALID_SORT_KEY = 7003


class TangleError(Exception):
    """Base exception for all Tangle Notes errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "details": self.details
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class NoteNotFoundError(TangleError):
    """Raised when a note cannot be found."""

    def __init__(self, note_id: str, message: Optional[str] = None):
        super().__init__(
            message or f"Note with ID '{note_id}' not found",
            code=ErrorCode.NOTE_NOT_FOUND,
            details={"note_id": note_id}
        )
        self.note_id = note_id


class ConnectionNotFoundError(TangleError):
    """Raised when a connection cannot be found."""

    def __init__(self, connection_id: str, message: Optional[str] = None):
        super().__init__(
            message or f"Connection with ID '{connection_id}' not found",
            code=ErrorCode.CONNECTION_NOT_FOUND,
            details={"connection_id": connection_id}
        )
        self.connection_id = connection_id


class LinkError(TangleError):
    """Raised for connection-related errors (duplicates, self links, orphans)."""

    def __init__(
        self,
        message: str,
        source_id: Optional[str] = None,
        target_id: Optional[str] = None,
        connection_id: Optional[str] = None,
        code: ErrorCode = ErrorCode.LINK_INVALID
    ):
        details = {}
        if source_id:
            details["source_id"] = source_id
        if target_id:
            details["target_id"] = target_id
        if connection_id:
            details["connection_id"] = connection_id

        super().__init__(message, code=code, details=details)
        self.source_id = source_id
        self.target_id = target_id
        self.connection_id = connection_id


class DuplicateConnectionError(LinkError):
    """Raised when the unordered note pair is already connected."""

    def __init__(self, source_id: str, target_id: str, existing_id: Optional[str] = None):
        super().__init__(
            f"Notes '{source_id}' and '{target_id}' are already connected",
            source_id=source_id,
            target_id=target_id,
            connection_id=existing_id,
            code=ErrorCode.DUPLICATE_CONNECTION,
        )


class StorageError(TangleError):
    """Raised for storage/persistence errors."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        path: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_WRITE_FAILED,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if path:
            # Don't expose full paths in error messages
            details["path_hint"] = path.replace("\\", "/").split("/")[-1]
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.path = path
        self.original_error = original_error


class StorageTimeoutError(StorageError):
    """Raised when a mutation could not obtain the store write lock in time."""

    def __init__(self, operation: str, timeout: float):
        super().__init__(
            f"Timed out after {timeout:g}s waiting to {operation}",
            operation=operation,
            code=ErrorCode.STORAGE_TIMEOUT,
        )
        self.details["timeout_seconds"] = timeout
        self.timeout = timeout


class ConfigurationError(TangleError):
    """Raised for configuration-related errors."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        code: ErrorCode = ErrorCode.CONFIG_INVALID
    ):
        details = {}
        if config_key:
            details["config_key"] = config_key

        super().__init__(message, code=code, details=details)
        self.config_key = config_key


class ValidationError(TangleError):
    """Raised for general validation errors."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED
    ):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]

        super().__init__(message, code=code, details=details)
        self.field = field
        self.value = value
