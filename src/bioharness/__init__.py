"""
BIOHARNESS - Biometric Implementation Validation Harness

A command-line harness that loads a third-party biometric implementation,
drives it through its initialize / per-item / finalize / search lifecycle
over a validation dataset using parallel worker processes, and checks that
the produced logs are complete and well-formed before submission.
"""

__version__ = "1.0.0"
__author__ = "BIOHARNESS Validation Team"
__email__ = "validation@bioharness.org"
