"""
SQLAlchemy Base for DataGuard.

Usage:
    from dataguard.models.base import Base

    class MyModel(Base):
        __tablename__ = "my_table"
        ...
"""

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Declarative base shared by every DataGuard table."""


__all__ = ["Base"]
