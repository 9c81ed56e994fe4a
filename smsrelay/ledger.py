"""
Message ledger.

Every inbound receipt and every outbound send attempt is recorded exactly
once. Outbound rows are committed before the carrier is called, so a failed
send still leaves its ledger row behind.
"""

import logging
from typing import List, Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session, joinedload

from smsrelay.phone import mask_phone
from smsrelay.storage import ensure_subscriber, store_errors, utc_now

logger = logging.getLogger(__name__)


def record_message(db: Session, sender_phone: str, receiver_phone: str, content: str):
    """
    Append one message to the ledger.

    Sender and receiver rows are created on first contact with ``active=False``.

    Args:
        db: Database session
        sender_phone: Canonical key of the sender
        receiver_phone: Canonical key of the receiver
        content: Message body

    Returns:
        The committed Message
    """
    from smsrelay.models import Message

    sender = ensure_subscriber(db, sender_phone)
    receiver = ensure_subscriber(db, receiver_phone)

    with store_errors(db, "record message"):
        message = Message(
            content=content,
            sender_id=sender.id,
            receiver_id=receiver.id,
            created_at=utc_now(),
        )
        db.add(message)
        db.commit()
        db.refresh(message)

    logger.info(
        f"Ledger message {message.id}: {mask_phone(sender_phone)} -> {mask_phone(receiver_phone)}"
    )
    return message


def list_messages(db: Session, limit: Optional[int] = None, offset: int = 0) -> List:
    """
    Read the ledger newest first.

    Args:
        db: Database session
        limit: Maximum number of messages, None for all
        offset: Number of messages to skip
    """
    from smsrelay.models import Message

    with store_errors(db, "get messages"):
        query = (
            db.query(Message)
            .options(joinedload(Message.sender), joinedload(Message.receiver))
            .order_by(Message.created_at.desc(), Message.id.desc())
            .offset(offset)
        )
        if limit is not None:
            query = query.limit(limit)
        return query.all()


def list_conversation(db: Session, subscriber_id: int, system_id: int) -> List:
    """Messages exchanged between one subscriber and the system number, newest first."""
    from smsrelay.models import Message

    with store_errors(db, "get messages for conversation"):
        return (
            db.query(Message)
            .options(joinedload(Message.sender), joinedload(Message.receiver))
            .filter(
                or_(
                    and_(Message.sender_id == subscriber_id, Message.receiver_id == system_id),
                    and_(Message.sender_id == system_id, Message.receiver_id == subscriber_id),
                )
            )
            .order_by(Message.created_at.desc(), Message.id.desc())
            .all()
        )
