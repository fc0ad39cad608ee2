"""Monitoring and observability package."""
from .audit import SecurityAuditSink, StructlogAuditSink
from .health import HealthCheck
from .logging import setup_logging
from .metrics import metrics

__all__ = ["metrics", "setup_logging", "HealthCheck", "SecurityAuditSink", "StructlogAuditSink"]
