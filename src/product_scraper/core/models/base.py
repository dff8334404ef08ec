"""SQLAlchemy declarative base shared by all ORM models.

Provides:
- Base: the DeclarativeBase subclass all models inherit from
- JSONType: portable JSON column type (``JSONB`` on PostgreSQL, ``JSON`` elsewhere)
"""

from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase

#: JSON column type that degrades gracefully to SQLite's JSON1 storage.
JSONType = sa.JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Shared declarative base for the product scraper models."""
