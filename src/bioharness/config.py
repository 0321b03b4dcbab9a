"""
Configuration management for the BIOHARNESS validation system.

Settings are read from environment variables, optionally seeded from a
``.env`` file, and exposed as typed module-level values. Command-line
options override them per invocation.
"""

import os
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv

from .constants import DEFAULT_TOP_K

# Load environment variables from .env file if it exists
load_dotenv()

# =============================================================================
# Validation Directories
# =============================================================================
# Read-only directory handed to the implementation at initialize time
CONFIG_DIR: Path = Path(os.getenv("BIOHARNESS_CONFIG_DIR", "config"))

# Directory receiving shard files and output logs
OUTPUT_DIR: Path = Path(os.getenv("BIOHARNESS_OUTPUT_DIR", "validation"))

# Directory holding the enrollment blob, manifest and gallery marker
ENROLL_DIR: Path = Path(os.getenv("BIOHARNESS_ENROLL_DIR", "enroll"))

# =============================================================================
# Implementation Under Test
# =============================================================================
# "module:factory" reference used to obtain the implementation object
IMPLEMENTATION: str = os.getenv(
    "BIOHARNESS_IMPLEMENTATION", "bioharness.reference_impl:get_implementation"
)

# Free-form value passed through to initialize() for morph actions
CONFIG_VALUE: str = os.getenv("BIOHARNESS_CONFIG_VALUE", "")

# =============================================================================
# Parallel Execution
# =============================================================================
# Number of worker processes (one shard each)
NUM_WORKERS: int = int(os.getenv("BIOHARNESS_NUM_WORKERS", "1"))

# Times a shard whose worker was killed by a signal is re-run (0 disables)
CRASH_RETRIES: int = int(os.getenv("BIOHARNESS_CRASH_RETRIES", "0"))

# =============================================================================
# Identification
# =============================================================================
# Candidate list length requested from every search
TOP_K: int = int(os.getenv("BIOHARNESS_TOP_K", str(DEFAULT_TOP_K)))

# Composition of the gallery passed to finalize ("consolidated" or "unconsolidated")
GALLERY_TYPE: str = os.getenv("BIOHARNESS_GALLERY_TYPE", "consolidated").lower()

# =============================================================================
# Logging Configuration
# =============================================================================
# Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

# Render log events as JSON lines instead of console key/value pairs
STRUCTURED_LOGGING: bool = os.getenv("STRUCTURED_LOGGING", "false").lower() == "true"

# Optional file receiving a copy of harness log events
LOG_FILE: Optional[Path] = None
if log_file := os.getenv("BIOHARNESS_LOG_FILE"):
    LOG_FILE = Path(log_file)

# =============================================================================
# Development and Debugging Configuration
# =============================================================================
# Keep input shards after processing (normally deleted)
KEEP_SHARDS: bool = os.getenv("BIOHARNESS_KEEP_SHARDS", "false").lower() == "true"

# Enable debug mode (skips validation on import)
DEBUG_MODE: bool = os.getenv("DEBUG_MODE", "false").lower() == "true"


# =============================================================================
# Configuration Validation
# =============================================================================
def validate_configuration() -> bool:
    """
    Validate the current configuration settings.

    Returns
    -------
    bool
        True if configuration is valid.

    Raises
    ------
    ValueError
        If critical configuration parameters are invalid.
    """
    errors = []

    if NUM_WORKERS < 1:
        errors.append("BIOHARNESS_NUM_WORKERS must be at least 1")

    if CRASH_RETRIES < 0:
        errors.append("BIOHARNESS_CRASH_RETRIES cannot be negative")

    if TOP_K < 1:
        errors.append("BIOHARNESS_TOP_K must be at least 1")

    if GALLERY_TYPE not in ("consolidated", "unconsolidated"):
        errors.append("BIOHARNESS_GALLERY_TYPE must be consolidated or unconsolidated")

    if ":" not in IMPLEMENTATION:
        errors.append("BIOHARNESS_IMPLEMENTATION must look like 'module:factory'")

    valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    if LOG_LEVEL not in valid_log_levels:
        errors.append(f"LOG_LEVEL must be one of {valid_log_levels}")

    if errors:
        raise ValueError(
            "Configuration validation failed:\n"
            + "\n".join(f"- {error}" for error in errors)
        )

    return True


def get_config_summary() -> dict:
    """
    Get a summary of the current configuration.

    Returns
    -------
    dict
        Dictionary containing key configuration parameters.
    """
    return {
        "paths": {
            "config_dir": str(CONFIG_DIR),
            "output_dir": str(OUTPUT_DIR),
            "enroll_dir": str(ENROLL_DIR),
        },
        "implementation": IMPLEMENTATION,
        "processing": {
            "num_workers": NUM_WORKERS,
            "crash_retries": CRASH_RETRIES,
            "keep_shards": KEEP_SHARDS,
            "top_k": TOP_K,
            "gallery_type": GALLERY_TYPE,
        },
        "logging": {
            "level": LOG_LEVEL,
            "structured": STRUCTURED_LOGGING,
            "file": str(LOG_FILE) if LOG_FILE else None,
        },
    }


# Validate configuration on import
if not DEBUG_MODE:
    validate_configuration()
