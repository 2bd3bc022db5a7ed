"""Teardown operator for a CRD-based distributed block storage system."""

__version__ = "1.0.0"
