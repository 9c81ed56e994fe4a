"""
Twilio SMS carrier.

Thin wrapper around the Twilio REST client: one ``send`` call, failures
re-raised as CarrierError.
"""

import logging
from typing import Optional

from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.rest import Client

from smsrelay.exceptions import CarrierError
from smsrelay.phone import mask_phone

logger = logging.getLogger(__name__)


class TwilioCarrier:
    """
    Sends SMS through Twilio's Messages API.

    Args:
        account_sid: Twilio account SID
        auth_token: Twilio auth token
        client: Pre-built client, used by tests
    """

    def __init__(self, account_sid: str, auth_token: str, client: Optional[Client] = None):
        self._client = client or Client(account_sid, auth_token)

    def send(self, from_: str, to: str, body: str) -> str:
        """
        Send one SMS.

        Returns:
            Twilio message SID

        Raises:
            CarrierError: on transport failure or carrier-side rejection
        """
        logger.info(f"Sending SMS to {mask_phone(to)} ({len(body)} chars)")
        try:
            message = self._client.messages.create(from_=from_, to=to, body=body)
        except TwilioRestException as e:
            logger.error(f"Twilio rejected SMS to {mask_phone(to)}: {e.status} {e.code} {e.msg}")
            raise CarrierError(e.msg or f"Twilio error {e.code}", details={"code": e.code}) from e
        except TwilioException as e:
            logger.error(f"Twilio client error sending to {mask_phone(to)}: {e}")
            raise CarrierError(str(e)) from e

        logger.info(f"SMS sent: sid={message.sid}")
        return message.sid
