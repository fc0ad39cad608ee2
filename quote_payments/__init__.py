"""
Quote-to-payment reconciliation service.

Carries a quote from draft through client acceptance, collects payment through
an external processor and reconciles asynchronous processor webhooks with the
quote's state exactly once.
"""

__version__ = "1.0.0"
