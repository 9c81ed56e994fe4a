"""Slack Web API client using raw HTTP via httpx.

Covers the four calls the relay needs: chat.postMessage, chat.delete,
reactions.add and auth.test. Slack answers HTTP 200 with ``"ok": false`` on
API errors; those are raised as ChatError carrying Slack's error string.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from smsrelay.exceptions import ChatError

logger = logging.getLogger(__name__)

SLACK_API_BASE = "https://slack.com/api"


class SlackClient:
    """Sync Slack Web API client.

    Args:
        token: Bot token (xoxb-...).
        base_url: Override for testing; defaults to the Slack Web API.
        http_client: Pre-built client, used by tests.
    """

    def __init__(
        self,
        token: str,
        *,
        base_url: str = SLACK_API_BASE,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self._client = http_client or httpx.Client(
            base_url=base_url.rstrip("/"),
            headers={
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json; charset=utf-8",
            },
            timeout=httpx.Timeout(10.0),
        )
        self._owns_client = http_client is None

    def close(self) -> None:
        """Close the underlying HTTP client if we own it."""
        if self._owns_client and not self._client.is_closed:
            self._client.close()

    def _call(self, method: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = self._client.post(f"/{method}", json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Slack {method} request failed: {e}")
            raise ChatError(f"Slack {method} request failed", error="http_error") from e

        data = response.json()
        if not data.get("ok"):
            error = data.get("error", "unknown_error")
            raise ChatError(f"Slack {method} failed: {error}", error=error)
        return data

    # -- Public API ----------------------------------------------------------

    def post_message(
        self,
        channel: str,
        text: str,
        blocks: Optional[List[Dict[str, Any]]] = None,
        thread_ts: Optional[str] = None,
    ) -> str:
        """Post a message; returns its ``ts``."""
        payload: Dict[str, Any] = {"channel": channel, "text": text}
        if blocks is not None:
            payload["blocks"] = blocks
        if thread_ts is not None:
            payload["thread_ts"] = thread_ts
        data = self._call("chat.postMessage", payload)
        return data["ts"]

    def delete_message(self, channel: str, ts: str) -> None:
        self._call("chat.delete", {"channel": channel, "ts": ts})

    def add_reaction(self, channel: str, ts: str, name: str) -> None:
        self._call("reactions.add", {"channel": channel, "timestamp": ts, "name": name})

    def auth_test(self) -> Dict[str, Any]:
        """Identity of the bot token (``user_id``, ``bot_id``, ``team``)."""
        return self._call("auth.test", {})
