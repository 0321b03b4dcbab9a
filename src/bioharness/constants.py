"""
Constants and fixed parameters for the BIOHARNESS validation system.

This module centralizes the values that form the harness's external
interface: process exit codes, the interface version, log formatting
tokens and file naming conventions. Changing any of them changes what a
submitted implementation is validated against.
"""

from typing import Final, Tuple

# =============================================================================
# Process Exit Codes
# =============================================================================

# All items in the invocation were processed and logged
SUCCESS: Final[int] = 0

# Fatal harness, configuration or I/O error
FAILURE: Final[int] = 1

# The implementation declared the requested action unsupported
NOT_IMPLEMENTED: Final[int] = 2

# =============================================================================
# Interface Versioning
# =============================================================================

# Major/minor version of the plugin interface compiled into this harness
API_MAJOR_VERSION: Final[int] = 1
API_MINOR_VERSION: Final[int] = 0

# =============================================================================
# Log Formatting
# =============================================================================

# Literal token written for values that were not computed
NA_TOKEN: Final[str] = "NA"

# Separator used when several resource paths are rendered in one log field
RESOURCE_JOIN: Final[str] = ","

# Prefix marking the optional frame-rate field of a video work item
FPS_PREFIX: Final[str] = "fps="

# =============================================================================
# Gallery / Enrollment
# =============================================================================

# Upper bound (exclusive) for manifest offsets and lengths
MAX_MANIFEST_VALUE: Final[int] = 2**64

# Default names of the concatenated template blob and its manifest
DEFAULT_EDB_NAME: Final[str] = "enroll.edb"
DEFAULT_MANIFEST_NAME: Final[str] = "enroll.manifest"

# Lifecycle marker written into the enrollment directory on finalize
GALLERY_MARKER_NAME: Final[str] = "gallery.json"

# Default candidate list length for identification searches
DEFAULT_TOP_K: Final[int] = 20

# Score carried by an unassigned candidate
UNASSIGNED_SCORE: Final[float] = -1.0

# =============================================================================
# File and Directory Constants
# =============================================================================

# Suffix for per-worker input shards: <stem>.shard.<index>
SHARD_SUFFIX: Final[str] = ".shard"

# Suffix for per-worker output logs: <action>.log.<index>
LOG_SUFFIX: Final[str] = ".log"

# Legal bit depths of an Image (8 or 16 bits per channel, 1 or 3 channels)
VALID_IMAGE_DEPTHS: Final[Tuple[int, ...]] = (8, 16, 24, 48)
