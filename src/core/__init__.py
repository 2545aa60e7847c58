"""
Core components of the podcast inventory engine.

This module contains:
- Configuration management (config.py)
- Tenant-scoped data access (tenant_context.py)
- Domain errors (exceptions.py)
- Request and report schemas (schemas.py)
- Audit logging (audit_logger.py)
"""
