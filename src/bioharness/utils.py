"""
Utility functions and decorators for the BIOHARNESS validation system.

This module provides general-purpose helpers used across the harness:
timing, run identifiers, file hashing, file removal with diagnostics and
the one-time structlog configuration performed by the command-line entry
point.
"""

import sys
import time
import uuid
import hashlib
import logging
import functools
from typing import Any, Callable, Optional, TypeVar, Union
from pathlib import Path
import structlog

# Initialize structured logger
logger = structlog.get_logger(__name__)

# Type variable for generic decorators
F = TypeVar("F", bound=Callable[..., Any])

# Read size used when hashing or copying large blobs
CHUNK_SIZE = 1 << 20


def configure_logging(
    level: str = "INFO",
    structured: bool = False,
    log_file: Optional[Path] = None,
) -> None:
    """
    Configure structlog to render harness events on the error stream.

    Diagnostics go to stderr so that stdout stays free for summaries.
    Worker processes inherit this configuration through fork.

    Parameters
    ----------
    level : str, default="INFO"
        Minimum level name to emit.
    structured : bool, default=False
        Render JSON lines instead of human-readable console output.
    log_file : Optional[Path], default=None
        Additional file that receives every event.
    """
    handlers: list = [logging.StreamHandler(sys.stderr)]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level.upper(), logging.INFO),
        handlers=handlers,
        force=True,
    )

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if structured:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def timer(func: F) -> F:
    """
    Decorator to measure and log function execution time.

    Parameters
    ----------
    func : Callable
        Function to be timed.

    Returns
    -------
    Callable
        Wrapped function with timing capability.
    """

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        start_time = time.perf_counter()

        try:
            result = func(*args, **kwargs)
            execution_time = (time.perf_counter() - start_time) * 1000

            logger.debug(
                "Function execution completed",
                function_name=func.__name__,
                module=func.__module__,
                execution_time_ms=execution_time,
                success=True,
            )

            return result

        except Exception as e:
            execution_time = (time.perf_counter() - start_time) * 1000

            logger.error(
                "Function execution failed",
                function_name=func.__name__,
                module=func.__module__,
                execution_time_ms=execution_time,
                error=str(e),
                error_type=type(e).__name__,
                success=False,
            )

            raise

    return wrapper


def generate_run_id(prefix: str = "run") -> str:
    """
    Generate a unique identifier for one harness invocation.

    Examples
    --------
    >>> run_id = generate_run_id("vectorQ")
    >>> print(run_id)  # e.g., "vectorQ_20240101_123456_abc12345"
    """
    timestamp = time.strftime("%Y%m%d_%H%M%S")
    unique_suffix = str(uuid.uuid4())[:8]
    return f"{prefix}_{timestamp}_{unique_suffix}"


def file_sha256(path: Union[str, Path]) -> str:
    """
    Compute the SHA-256 digest of a file without loading it whole.

    Parameters
    ----------
    path : Union[str, Path]
        File to hash.

    Returns
    -------
    str
        Hexadecimal digest.
    """
    hasher = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(CHUNK_SIZE), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def remove_file(path: Union[str, Path]) -> bool:
    """Delete a file, logging instead of raising when it cannot be removed."""
    try:
        Path(path).unlink()
        return True
    except FileNotFoundError:
        return False
    except OSError as e:
        logger.error("Error deleting file", path=str(path), error=str(e))
        return False


def ensure_directory(path: Union[str, Path]) -> Path:
    """Ensure directory exists, creating it if necessary."""
    path_obj = Path(path)
    path_obj.mkdir(parents=True, exist_ok=True)
    return path_obj


def format_bytes(bytes_value: int) -> str:
    """
    Format byte count as human-readable string.

    Examples
    --------
    >>> print(format_bytes(1024))  # "1.0 KB"
    >>> print(format_bytes(1048576))  # "1.0 MB"
    """
    value = float(bytes_value)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if value < 1024.0:
            return f"{value:.1f} {unit}"
        value /= 1024.0
    return f"{value:.1f} PB"


def format_duration(seconds: float) -> str:
    """Format duration in seconds as human-readable string."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        minutes = int(seconds // 60)
        return f"{minutes}m {seconds % 60:.1f}s"
    else:
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        return f"{hours}h {minutes}m {seconds % 60:.1f}s"
