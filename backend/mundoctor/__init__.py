"""
Mundoctor backend core
Identity verification, provider sync, role-based access control and audit trail
"""

__version__ = "1.0.0"
