"""
Approval-gated broadcasts from Slack.

A message in the proposal channel gets a "Confirm send?" card with SEND and
CANCEL buttons. The proposal (source ts, text, author) travels in the button
values. The first click on a proposal is claimed in ``proposal_actions``;
later clicks are ignored, so one proposal broadcasts at most once.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional

from smsrelay.broadcast import Messenger, broadcast
from smsrelay.config import Settings
from smsrelay.exceptions import ChatError, RelayError
from smsrelay.metrics import record_proposal_action
from smsrelay.storage import Database, claim_proposal

logger = logging.getLogger(__name__)

SEND_ACTION_ID = "send_message"
CANCEL_ACTION_ID = "cancel_message"

SENT_REACTION = "white_check_mark"
CANCELLED_REACTION = "no_entry_sign"
FAILED_REACTION = "warning"

# Slack caps button values at 2000 characters
MAX_BUTTON_VALUE_LENGTH = 2000

EMPTY_PROPOSAL_TEXT = "(no text provided)"

_LINK_MARKUP = re.compile(r"<([^|>]+)(?:\|[^>]+)?>")


def clean_slack_text(text: str) -> str:
    """
    Turn Slack-formatted text back into plain SMS text.

    ``<https://x.y|label>`` and ``<https://x.y>`` become ``https://x.y``;
    ``&gt;``, ``&lt;`` and ``&amp;`` are unescaped.
    """
    text = _LINK_MARKUP.sub(r"\1", text)
    # &amp; last, so "&amp;gt;" stays a literal "&gt;"
    return text.replace("&gt;", ">").replace("&lt;", "<").replace("&amp;", "&")


def build_proposal_blocks(ts: str, text: str, user: Optional[str]) -> List[Dict[str, Any]]:
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": f"\U0001f4e9 *Confirm send?*\n\n\"{text}\"",
            },
        },
        {
            "type": "actions",
            "elements": [
                {
                    "type": "button",
                    "text": {"type": "plain_text", "text": "✅ SEND"},
                    "style": "primary",
                    "value": json.dumps({"ts": ts, "text": text, "user": user}),
                    "action_id": SEND_ACTION_ID,
                },
                {
                    "type": "button",
                    "text": {"type": "plain_text", "text": "❌ CANCEL"},
                    "style": "danger",
                    "value": json.dumps({"ts": ts, "user": user}),
                    "action_id": CANCEL_ACTION_ID,
                },
            ],
        },
    ]


class ApprovalWorkflow:
    """
    Proposal and confirmation handling for broadcast requests posted in Slack.

    Args:
        chat: SlackClient (or compatible)
        database: Database used for the idempotency claim and the broadcast
        carrier: SMS carrier used by the broadcast
        settings: Application settings
        bot_user_id: Slack user id of this app, never treated as a proposer
    """

    def __init__(self, chat, database: Database, carrier, settings: Settings, bot_user_id: Optional[str] = None):
        self.chat = chat
        self.database = database
        self.carrier = carrier
        self.settings = settings
        self.bot_user_id = bot_user_id

    # -- Proposals -----------------------------------------------------------

    def should_propose(self, event: Dict[str, Any]) -> bool:
        """Only plain human messages in the proposal channel become proposals."""
        if event.get("type") != "message":
            return False
        if event.get("subtype") or event.get("bot_id"):
            return False
        if event.get("channel") != self.settings.SLACK_CHANNEL_ID:
            return False

        user = event.get("user")
        if not user or user == self.bot_user_id:
            return False

        allowed = self.settings.slack_allowed_user_ids
        if allowed and user not in allowed:
            logger.info(f"Ignoring proposal from user outside allowlist: {user}")
            return False
        return True

    def propose(self, event: Dict[str, Any]) -> Optional[str]:
        """
        Post the confirmation card for a channel message.

        Returns:
            ts of the posted card, None if the message was too long to embed
        """
        channel = event["channel"]
        ts = event["ts"]
        user = event.get("user")
        text = event.get("text") or EMPTY_PROPOSAL_TEXT

        blocks = build_proposal_blocks(ts, text, user)
        send_value = blocks[1]["elements"][0]["value"]
        if len(send_value) > MAX_BUTTON_VALUE_LENGTH:
            logger.warning(f"Proposal {ts} too long to embed ({len(send_value)} chars)")
            self.chat.post_message(
                channel,
                "This message is too long to send as an SMS broadcast. Please shorten it and post again.",
                thread_ts=ts,
            )
            return None

        card_ts = self.chat.post_message(channel, "Do you want to send this message?", blocks=blocks)
        logger.info(f"Posted proposal card {card_ts} for message {ts} by {user}")
        return card_ts

    def handle_event(self, event: Dict[str, Any]) -> Optional[str]:
        if not self.should_propose(event):
            logger.debug(f"Ignoring Slack event: type={event.get('type')} subtype={event.get('subtype')}")
            return None
        return self.propose(event)

    # -- Actions -------------------------------------------------------------

    def handle_action(self, payload: Dict[str, Any]) -> str:
        """
        Apply a SEND or CANCEL click.

        Returns:
            "sent", "cancelled", "duplicate" or "ignored"

        Raises:
            RelayError: if the broadcast fails (the source message gets a warning reaction)
        """
        actions = payload.get("actions") or []
        if not actions:
            logger.warning("Slack action payload without actions")
            return "ignored"

        action = actions[0]
        action_id = action.get("action_id")
        if action_id == SEND_ACTION_ID:
            kind = "send"
        elif action_id == CANCEL_ACTION_ID:
            kind = "cancel"
        else:
            logger.info(f"Ignoring unknown Slack action: {action_id}")
            return "ignored"

        try:
            value = json.loads(action.get("value") or "")
            proposal_id = value["ts"]
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Malformed proposal payload: {e}")
            return "ignored"

        channel = (payload.get("channel") or {}).get("id") or self.settings.SLACK_CHANNEL_ID
        card_ts = (payload.get("message") or {}).get("ts")
        user_id = (payload.get("user") or {}).get("id")

        with self.database.session() as db:
            if not claim_proposal(db, proposal_id, kind, user_id):
                record_proposal_action(kind, "duplicate")
                return "duplicate"

            if card_ts:
                self._delete_card(channel, card_ts)

            if kind == "cancel":
                self._react(channel, proposal_id, CANCELLED_REACTION)
                record_proposal_action(kind, "done")
                logger.info(f"Proposal {proposal_id} cancelled by {user_id}")
                return "cancelled"

            text = clean_slack_text(value.get("text") or "")
            messenger = Messenger(db, self.carrier, self.settings.TWILIO_SEND_NUMBER)
            try:
                result = broadcast(messenger, text, production=True, test_number=self.settings.TEST_PHONE_NUMBER)
            except RelayError as e:
                logger.error(f"Broadcast for proposal {proposal_id} failed: {e.message}")
                record_proposal_action(kind, "failed")
                self._react(channel, proposal_id, FAILED_REACTION)
                raise

        self._react(channel, proposal_id, SENT_REACTION)
        record_proposal_action(kind, "done")
        logger.info(f"Proposal {proposal_id} sent to {result.count} subscribers, approved by {user_id}")
        return "sent"

    def _delete_card(self, channel: str, card_ts: str) -> None:
        try:
            self.chat.delete_message(channel, card_ts)
        except ChatError as e:
            if e.error == "message_not_found":
                logger.info(f"Proposal card {card_ts} already deleted")
            else:
                logger.error(f"Failed to delete proposal card {card_ts}: {e.message}")

    def _react(self, channel: str, ts: str, name: str) -> None:
        try:
            self.chat.add_reaction(channel, ts, name)
        except ChatError as e:
            if e.error == "already_reacted":
                return
            logger.error(f"Failed to add :{name}: to {ts}: {e.message}")
