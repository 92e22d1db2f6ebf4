"""
Mundoctor Utility Functions
Shared helpers used across middleware and services
"""

from mundoctor.utils.logging_security import sanitize_for_log, sanitize_id_for_log  # noqa: F401
