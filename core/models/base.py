from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Index,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

__all__ = [
    "Base",
    "Boolean",
    "Column",
    "DateTime",
    "Integer",
    "String",
    "Text",
    "UniqueConstraint",
    "Index",
]
