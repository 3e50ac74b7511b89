"""
DataGuard: data classification, encryption and DLP policy engine.

Usage:
    from dataguard.services.protection_service import DataProtectionEngine
"""

__version__ = "1.0.0"
