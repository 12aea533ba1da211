"""
SQLAlchemy declarative base and shared model mixins.

Models use the dialect-neutral ``Uuid`` and timezone-aware ``DateTime``
column types so the same metadata builds on PostgreSQL (asyncpg) and on
SQLite (aiosqlite) for tests.
"""

import uuid

from sqlalchemy import Uuid
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, declared_attr, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """
    Base class for all SQLAlchemy models with async support.
    """

    __abstract__ = True

    def __repr__(self) -> str:
        pk_values = []
        for column in self.__table__.primary_key.columns:
            value = getattr(self, column.name, None)
            if value is not None:
                pk_values.append(f"{column.name}={value!r}")

        pk_str = ", ".join(pk_values) if pk_values else "no primary key"
        return f"<{self.__class__.__name__}({pk_str})>"


class UUIDMixin:
    """
    Mixin for a UUID primary key generated on the client side.

    The id is assigned at construction time by the caller or by the column
    default, and never changes afterwards.
    """

    @declared_attr
    def id(cls) -> Mapped[uuid.UUID]:
        return mapped_column(
            Uuid(as_uuid=True),
            primary_key=True,
            default=uuid.uuid4,
            nullable=False,
            comment="Unique identifier for the record",
        )
