"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic schemas, see schemas.py.
"""

from sqlalchemy import Boolean, Column, Integer, String, Text, false

from smsthreads.storage import Base


class StoredMessage(Base):
    """
    SQLAlchemy model for one message mirrored from the provider log.

    Table: messages
    Primary Key: id (provider-assigned; makes re-fetched messages upserts)
    """
    __tablename__ = "messages"

    id = Column(String, primary_key=True)
    body = Column(Text, nullable=False, default="")
    # Counterpart phone number; doubles as the thread key
    other_participant = Column("otherParticipant", String, nullable=False, index=True)
    is_sender = Column("isSender", Boolean, nullable=False)
    # Only ever flips False -> True
    is_read = Column("isRead", Boolean, nullable=False, default=False, server_default=false())
    timestamp = Column(Integer, nullable=False, index=True)  # epoch ms, provider creation time
