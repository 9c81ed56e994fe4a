"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import Boolean, Column, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from smsrelay.storage import Base


class Subscriber(Base):
    """
    A phone number known to the relay.

    Table: subscribers
    Unique: phone_number (canonical key, one row per physical line)
    """
    __tablename__ = "subscribers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    phone_number = Column(String, nullable=False, unique=True, index=True)
    active = Column(Boolean, nullable=False, default=False)
    created_at = Column(String, nullable=False)  # Server time ISO-8601
    updated_at = Column(String, nullable=False)


class Message(Base):
    """
    Ledger entry for one inbound or outbound SMS exchange.

    Table: messages
    Rows are append-only.
    """
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    content = Column(Text, nullable=False)
    sender_id = Column(Integer, ForeignKey("subscribers.id"), nullable=False, index=True)
    receiver_id = Column(Integer, ForeignKey("subscribers.id"), nullable=False, index=True)
    created_at = Column(String, nullable=False, index=True)  # Server time ISO-8601

    sender = relationship("Subscriber", foreign_keys=[sender_id])
    receiver = relationship("Subscriber", foreign_keys=[receiver_id])


class ProposalAction(Base):
    """
    First confirm/cancel action taken on a Slack broadcast proposal.

    Table: proposal_actions
    Primary Key: proposal_id (a second action on the same proposal is a duplicate)
    """
    __tablename__ = "proposal_actions"

    proposal_id = Column(String, primary_key=True)
    action = Column(String, nullable=False)  # "send" or "cancel"
    user_id = Column(String, nullable=True)
    created_at = Column(String, nullable=False)
