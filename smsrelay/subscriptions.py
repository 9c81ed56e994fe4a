"""
Keyword-driven subscription state machine for inbound SMS.

``evaluate`` is pure: (prior state, text) -> Transition. ``handle_inbound``
applies a transition against the store and the ledger.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from smsrelay.broadcast import Messenger
from smsrelay.config import Settings
from smsrelay.ledger import record_message
from smsrelay.phone import mask_phone, normalize_phone
from smsrelay.storage import ensure_subscriber, find_by_phone, set_active

logger = logging.getLogger(__name__)

# Carrier-level opt-in keywords, honoured regardless of configuration
NETWORK_SUBSCRIBE_KEYWORDS = frozenset({"start", "unstop"})


@dataclass(frozen=True)
class Transition:
    """
    Outcome of evaluating one inbound message.

    active: new active flag, None when the message changes nothing
    send_confirmation: whether a subscribe confirmation SMS goes out
    """
    active: Optional[bool]
    send_confirmation: bool = False


def evaluate(
    prior_active: Optional[bool],
    text: str,
    subscribe_keyword: str,
    unsubscribe_keyword: str,
) -> Transition:
    """
    Interpret an inbound message against the keyword rules.

    Args:
        prior_active: Current active flag, None if the sender has no subscriber row
        text: Raw inbound body
        subscribe_keyword: Configured opt-in keyword
        unsubscribe_keyword: Configured opt-out keyword

    Returns:
        Transition to apply
    """
    body = (text or "").strip().lower()
    wants_subscribe = body == subscribe_keyword.lower() or body in NETWORK_SUBSCRIBE_KEYWORDS

    # First contact: the row is created with the keyword result, no confirmation
    if prior_active is None:
        return Transition(active=wants_subscribe)

    if wants_subscribe:
        return Transition(active=True, send_confirmation=not prior_active)

    if body == unsubscribe_keyword.lower():
        return Transition(active=False)

    return Transition(active=None)


@dataclass(frozen=True)
class InboundResult:
    phone_number: str
    result: str  # subscribed, unsubscribed, message
    created: bool
    confirmation_sent: bool


def handle_inbound(
    db: Session,
    messenger: Messenger,
    settings: Settings,
    from_number: str,
    to_number: str,
    body: str,
) -> InboundResult:
    """
    Process one inbound SMS.

    Order: read prior state, create or update the subscriber, record the
    inbound ledger row, then send the confirmation if the transition asks for it.

    Raises:
        InvalidPhoneFormat: if either number cannot be normalized
        StoreUnavailable / CarrierError: from the store or the confirmation send
    """
    sender = normalize_phone(from_number)
    receiver = normalize_phone(to_number)
    body = body or ""

    subscriber = find_by_phone(db, sender)
    prior_active = subscriber.active if subscriber is not None else None
    transition = evaluate(prior_active, body, settings.SUBSCRIBE_KEYWORD, settings.UNSUBSCRIBE_KEYWORD)

    logger.debug(f"Inbound from {mask_phone(sender)}: prior={prior_active} -> {transition}")

    if subscriber is None:
        ensure_subscriber(db, sender, active=bool(transition.active))
    elif transition.active is not None and transition.active != subscriber.active:
        set_active(db, subscriber.id, transition.active)

    record_message(db, sender, receiver, body)

    if transition.send_confirmation:
        messenger.send(sender, settings.SUBSCRIBE_MESSAGE)

    if transition.active is True:
        result = "subscribed"
    elif transition.active is False and prior_active is not None:
        result = "unsubscribed"
    else:
        result = "message"

    logger.info(f"SMS from {mask_phone(sender)} to {mask_phone(receiver)}: {result}")
    return InboundResult(
        phone_number=sender,
        result=result,
        created=subscriber is None,
        confirmation_sent=transition.send_confirmation,
    )
