"""
Infrastructure module for DataGuard.

- access.py: Owner-or-grant authorization for protected records
"""

from dataguard.infra.access import AccessController, parse_permission, parse_permissions

__all__ = [
    "AccessController",
    "parse_permission",
    "parse_permissions",
]
