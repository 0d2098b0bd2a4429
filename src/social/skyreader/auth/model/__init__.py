"""
Data Models

Key Models:
- base.py: Base SQLAlchemy model with common type definitions
- users.py: Durable user rows in PostgreSQL
- oauth.py: Pydantic records for pending authorizations, sessions and tokens,
  stored in Redis
- health.py: Health monitoring gauge
"""
