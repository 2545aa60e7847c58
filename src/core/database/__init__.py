"""Database module for the podcast inventory engine.

Key components:
- db_config.py: Connection string assembly from DATABASE_URL or DB_* variables
- database_session.py: Engine creation and session context handlers
- json_type.py: JSON column type (JSONB on PostgreSQL)
- models.py: SQLAlchemy ORM models for all entities
"""
