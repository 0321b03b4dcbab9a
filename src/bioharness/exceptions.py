"""
Custom exception classes for the BIOHARNESS validation system.

These exceptions describe failures of the harness itself: a broken
validation environment, a misconfigured invocation or a violated lifecycle
rule. Failures of the implementation under test never travel as exceptions;
they are reported through ``ReturnStatus`` values and recorded in the logs.
"""

from typing import Optional, Dict, Any


class HarnessError(Exception):
    """
    Base exception class for all BIOHARNESS related errors.

    Parameters
    ----------
    message : str
        Human-readable error message.
    context : dict, optional
        Additional context information about the error.
    error_code : str, optional
        Unique error code for programmatic handling.
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ) -> None:
        self.message = message
        self.context = context or {}
        self.error_code = error_code
        super().__init__(self.message)

    def __str__(self) -> str:
        """Return a formatted string representation of the error."""
        parts = [self.message]

        if self.error_code:
            parts.append(f"[Error Code: {self.error_code}]")

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            parts.append(f"[Context: {context_str}]")

        return " ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert the exception to a dictionary for structured logging.

        Returns
        -------
        dict
            Dictionary representation of the exception.
        """
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "context": self.context,
        }


class ConfigurationError(HarnessError):
    """
    Exception raised for configuration-related errors.

    This includes invalid configuration values, unknown actions and
    conflicting command-line options.
    """

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        config_value: Optional[str] = None,
        **kwargs,
    ) -> None:
        context = kwargs.get("context", {})
        if config_key:
            context["config_key"] = config_key
        if config_value is not None:
            context["config_value"] = config_value

        super().__init__(message, context, kwargs.get("error_code", "CONFIG_001"))


class ApiVersionMismatchError(ConfigurationError):
    """Raised when an implementation was built against another interface version."""

    def __init__(self, expected: str, actual: str) -> None:
        message = (
            f"Implementation was built against interface version {actual}; "
            f"re-build it against version {expected}"
        )
        super().__init__(
            message,
            context={"expected_version": expected, "actual_version": actual},
            error_code="CONFIG_002",
        )


class ImplementationLoadError(ConfigurationError):
    """Raised when the implementation factory cannot be imported or called."""

    def __init__(self, message: str, target: str) -> None:
        super().__init__(
            message, context={"implementation": target}, error_code="CONFIG_003"
        )


class ItemSourceError(HarnessError):
    """
    Exception raised for errors related to reading validation work items.

    This includes missing input files, malformed lines and unreadable
    resources referenced by a work item.
    """

    def __init__(
        self,
        message: str,
        input_path: Optional[str] = None,
        item_id: Optional[str] = None,
        **kwargs,
    ) -> None:
        context = kwargs.get("context", {})
        if input_path:
            context["input_path"] = input_path
        if item_id:
            context["item_id"] = item_id

        super().__init__(message, context, kwargs.get("error_code"))


class PartitionError(ItemSourceError):
    """Raised when an input file cannot be split into shards."""

    def __init__(self, message: str, input_path: Optional[str] = None) -> None:
        super().__init__(message, input_path=input_path, error_code="ITEM_001")


class WorkItemError(ItemSourceError):
    """Raised when an input line does not match the action's field layout."""

    def __init__(self, message: str, line: str, action: str) -> None:
        super().__init__(
            message,
            context={"line": line, "action": action},
            error_code="ITEM_002",
        )


class ImageLoadError(ItemSourceError):
    """
    Raised when an image referenced by a work item cannot be read.

    A load failure means the validation dataset itself is broken, so the
    worker that hits it aborts instead of skipping the item.
    """

    def __init__(self, image_path: str, reason: str) -> None:
        super().__init__(
            f"Failed to load image file: {image_path} ({reason})",
            context={"image_path": image_path, "reason": reason},
            error_code="ITEM_003",
        )


class GalleryError(HarnessError):
    """
    Exception raised for errors in the enrollment gallery lifecycle.

    This includes lifecycle state violations, manifest format problems and
    modifications of a gallery after it was finalized.
    """

    def __init__(
        self, message: str, enrollment_dir: Optional[str] = None, **kwargs
    ) -> None:
        context = kwargs.get("context", {})
        if enrollment_dir:
            context["enrollment_dir"] = enrollment_dir

        super().__init__(message, context, kwargs.get("error_code"))


class GalleryStateError(GalleryError):
    """Raised when an operation is not valid in the gallery's current state."""

    def __init__(self, operation: str, state: str, enrollment_dir: str) -> None:
        super().__init__(
            f"Cannot {operation} while gallery is {state}",
            enrollment_dir=enrollment_dir,
            context={"operation": operation, "state": state},
            error_code="GALLERY_001",
        )


class GalleryFinalizedError(GalleryError):
    """Raised on a second finalize call against an already finalized gallery."""

    def __init__(self, enrollment_dir: str) -> None:
        super().__init__(
            "Gallery has already been finalized and is read-only",
            enrollment_dir=enrollment_dir,
            error_code="GALLERY_002",
        )


class GalleryIntegrityError(GalleryError):
    """Raised when a finalized blob or manifest no longer matches its digest."""

    def __init__(self, enrollment_dir: str, file_path: str) -> None:
        super().__init__(
            f"Finalized gallery file was modified: {file_path}",
            enrollment_dir=enrollment_dir,
            context={"file_path": file_path},
            error_code="GALLERY_003",
        )


class ManifestError(GalleryError):
    """Raised for malformed manifest lines or out-of-range offsets."""

    def __init__(self, message: str, manifest_path: Optional[str] = None) -> None:
        super().__init__(
            message,
            context={"manifest_path": manifest_path} if manifest_path else {},
            error_code="GALLERY_004",
        )


class AggregationError(HarnessError):
    """Raised when shard logs cannot be read or merged."""

    def __init__(self, message: str, log_path: Optional[str] = None) -> None:
        super().__init__(
            message,
            context={"log_path": log_path} if log_path else {},
            error_code="AGGREGATE_001",
        )
