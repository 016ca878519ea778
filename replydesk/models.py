"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic domain and API schemas, see schemas.py.
"""

from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.orm import declarative_base

# Base class for SQLAlchemy models
Base = declarative_base()


class MessageRow(Base):
    """
    Append-only message log.

    Table: messages
    Primary Key: id (autoincrement, doubles as insertion order)
    created_at is naive UTC, assigned by the storage layer.
    """
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    from_number = Column(String, nullable=False, index=True)
    to_number = Column(String, nullable=False, index=True)
    direction = Column(String(3), nullable=False)
    text = Column(Text, nullable=True)
    meta = Column(Text, nullable=False, default="{}")  # JSON-encoded
    created_at = Column(DateTime, nullable=False, index=True)


class ContactRow(Base):
    """
    Contacts keyed by peer address.

    Table: contacts
    phone is unique; rows are never updated by the pipeline.
    """
    __tablename__ = "contacts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    phone = Column(String, nullable=False, unique=True, index=True)
    name = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False)
