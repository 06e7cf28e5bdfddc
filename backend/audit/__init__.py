"""
Audit logging module for CodeDrop.

Records deployment lifecycle and settings actions to the capped audit_log table.
"""

from .audit_logger import (
    AuditAction,
    AuditEntry,
    AuditTrail,
    log_audit,
)

__all__ = [
    'AuditAction',
    'AuditEntry',
    'AuditTrail',
    'log_audit',
]
