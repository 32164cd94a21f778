"""Database module for EventID.

Exports:
- Base: SQLAlchemy declarative base
- models: All ORM models
- session: engine / session factory helpers
"""

from eventid.db.models import Base
from eventid.db.session import create_engine, create_session_factory, init_db, session_scope

__all__ = ["Base", "create_engine", "create_session_factory", "init_db", "session_scope"]
