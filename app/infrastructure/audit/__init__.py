"""
Audit logging infrastructure for automation provenance.

Every record created or corrected by the automation engine is written to
the audit trail together with the subject that triggered it.
"""

from app.infrastructure.audit.audit_logger import AuditLogger, audit_logger

__all__ = ["AuditLogger", "audit_logger"]
