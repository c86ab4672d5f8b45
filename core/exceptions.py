"""
Custom exceptions for the import pipeline with structured error context.

This module provides the exception hierarchy used throughout the worker.
Each exception includes context information for debugging and monitoring.

Exception Hierarchy:
    ETLException (base)
    ├── ExtractionError
    │   ├── ArchiveDownloadError
    │   ├── ArchiveScanError
    │   │   ├── InvalidArchiveError
    │   │   └── ExportNotFoundError
    │   └── ParseError
    ├── LoadError
    │   ├── DatabaseError
    │   └── MetricCatalogError
    ├── ClaimError
    ├── NotificationError
    └── RetryableError / NonRetryableError (mixins)

Only the downstream notifier retries (RetryableError). Everything raised
while processing a claimed import is fatal for that import.
"""

from typing import Optional, Dict, Any
from datetime import datetime, timezone


class ETLException(Exception):
    """
    Base exception for all pipeline errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (import_id, path, etc.)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.now(timezone.utc)

        # Add timestamp to context
        self.context["error_timestamp"] = self.timestamp.isoformat()

        # Chain original exception if provided
        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Extraction Errors
# ============================================================================

class ExtractionError(ETLException):
    """Base exception for getting records out of an uploaded archive."""
    pass


class ArchiveDownloadError(ExtractionError):
    """
    Exception raised when the archive transfer from object storage fails.

    Context should include:
        - storage_path: Path of the object in the bucket
        - status_code: HTTP status code (if applicable)
        - import_id: Import being processed
    """
    pass


class ArchiveScanError(ExtractionError):
    """
    Exception raised when the archive container cannot be used.

    Context should include:
        - zip_path: Local path of the archive
    """
    pass


class InvalidArchiveError(ArchiveScanError):
    """The downloaded file is not a readable zip container."""
    pass


class ExportNotFoundError(ArchiveScanError):
    """
    No export.xml entry exists in the archive.

    Context should include:
        - found_export_cda: Whether export_cda.xml was present instead
        - entries_seen: Sample of entry names
        - total_entries: Number of entries in the container
    """
    pass


class ParseError(ExtractionError):
    """
    Exception raised when the export stream cannot be read at all.

    Individual malformed records never raise; they are counted in the
    parse summary instead.
    """
    pass


# ============================================================================
# Load Errors
# ============================================================================

class LoadError(ETLException):
    """Base exception for data loading failures."""
    pass


class DatabaseError(LoadError):
    """
    Exception raised when database operations fail.

    Context should include:
        - operation: Type of database operation (SELECT, UPDATE, INSERT)
        - table_name: Name of the table
    """
    pass


class MetricCatalogError(LoadError):
    """Metric definitions could not be loaded."""
    pass


# ============================================================================
# Claim / notification errors
# ============================================================================

class ClaimError(ETLException):
    """
    The conditional status update on the import queue failed.

    Context should include:
        - import_id: Candidate import
        - operation: claim, complete, fail, sweep
    """
    pass


class NotificationError(ETLException):
    """Downstream scorecard trigger failed."""
    pass


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(ETLException):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Network timeouts
    - Service unavailable (HTTP 5xx)
    """
    pass


class NonRetryableError(ETLException):
    """
    Mixin for errors that should NOT trigger retry logic.

    Use this for permanent errors like:
    - Client rejections (HTTP 4xx)
    - Resource not found (HTTP 404)
    """
    pass


# ============================================================================
# Specific errors
# ============================================================================

class NetworkError(RetryableError, NotificationError):
    """Network or server-side errors on the notifier that should be retried."""
    pass


class ClientRejectedError(NonRetryableError, NotificationError):
    """The downstream service rejected the call (HTTP 4xx)."""
    pass


class ResourceNotFoundError(NonRetryableError, ArchiveDownloadError):
    """The archive does not exist in object storage (HTTP 404)."""
    pass
