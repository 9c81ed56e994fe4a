"""
Outbound SMS: the single-send path and broadcast fan-out.
"""

import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session

from smsrelay.exceptions import BroadcastAborted, CarrierError
from smsrelay.ledger import record_message
from smsrelay.metrics import record_sms_send
from smsrelay.phone import mask_phone
from smsrelay.storage import list_active

logger = logging.getLogger(__name__)

TEST_MODE_PREFIX = "[TEST MODE] "


class Messenger:
    """
    Sends one SMS from the system number and records it in the ledger.

    The ledger row is committed before the carrier is called. A carrier
    failure is raised after the row exists.
    """

    def __init__(self, db: Session, carrier, system_number: str):
        self.db = db
        self.carrier = carrier
        self.system_number = system_number

    def send(self, to: str, body: str):
        message = record_message(self.db, self.system_number, to, body)
        try:
            self.carrier.send(self.system_number, to, body)
        except CarrierError:
            record_sms_send("failed")
            raise
        record_sms_send("sent")
        return message


@dataclass(frozen=True)
class BroadcastResult:
    count: int
    production: bool


def broadcast(messenger: Messenger, text: str, production: bool, test_number: str) -> BroadcastResult:
    """
    Send ``text`` to every active subscriber, or to the test number.

    Recipients are processed in order. The first failure aborts the
    broadcast; recipients after it are not sent to.

    Args:
        messenger: Single-send path bound to a session and carrier
        text: Message body
        production: True to reach all active subscribers
        test_number: Canonical key of the non-production recipient

    Raises:
        BroadcastAborted: with the number of recipients sent before the failure
    """
    if production:
        recipients = [
            s.phone_number for s in list_active(messenger.db)
            if s.phone_number != messenger.system_number
        ]
        body = text
    else:
        recipients = [test_number]
        body = TEST_MODE_PREFIX + text

    logger.info(f"Broadcasting to {len(recipients)} recipients (production={production})")

    sent = 0
    for phone in recipients:
        try:
            messenger.send(phone, body)
        except CarrierError as e:
            logger.error(f"Broadcast aborted at {mask_phone(phone)} after {sent} sends: {e.message}")
            raise BroadcastAborted(e.message, sent=sent) from e
        sent += 1

    logger.info(f"Broadcast complete: {sent} sent")
    return BroadcastResult(count=sent, production=production)
