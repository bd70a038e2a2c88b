"""Declarative base shared by the ORM models.

``create_schema`` in :mod:`certsign.core.db` creates every table registered
on ``Base.metadata``, both at startup and in the test fixtures.
"""

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass
