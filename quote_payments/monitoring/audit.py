"""Security audit trail for rejected webhook deliveries."""
from typing import Any, Protocol

import structlog


class SecurityAuditSink(Protocol):
    """Receives security-relevant events (bad signatures, malformed envelopes)."""

    def record(self, event: str, **details: Any) -> None:
        ...


class StructlogAuditSink:
    """Writes security events to a dedicated structured logger."""

    def __init__(self, logger_name: str = "quote_payments.security"):
        self.logger = structlog.get_logger(logger_name)

    def record(self, event: str, **details: Any) -> None:
        self.logger.warning("security_event", security_event=event, **details)
