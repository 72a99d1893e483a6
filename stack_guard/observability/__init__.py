"""stack-guard observability: audit logging and exporters."""

from stack_guard.observability.audit_log import AuditLog
from stack_guard.observability.exporters import JsonlFileExporter, StdoutExporter

__all__ = [
    "AuditLog",
    "StdoutExporter",
    "JsonlFileExporter",
]
