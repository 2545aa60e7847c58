"""
Service modules for the podcast inventory engine.

This package contains the business logic: the slot ledger, reservation
lifecycle, campaign stage engine, reconciliation and the alert and
notification fan-out.
"""
