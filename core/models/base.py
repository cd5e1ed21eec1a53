from sqlalchemy import BigInteger, Boolean, Column, DateTime, Integer, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()

__all__ = [
    "Base",
    "BigInteger",
    "Boolean",
    "Column",
    "DateTime",
    "Integer",
    "String",
    "Text",
]
