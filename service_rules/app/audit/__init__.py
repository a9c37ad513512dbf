"""
Audit package for the rule service.
"""

from .sink import AuditSink, LoggingAuditSink, InMemoryAuditSink, AuditDispatcher

__all__ = ["AuditSink", "LoggingAuditSink", "InMemoryAuditSink", "AuditDispatcher"]
