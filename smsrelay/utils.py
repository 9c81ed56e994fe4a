"""
Request authentication helpers.
"""

import hashlib
import hmac
import logging
import time
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

# Slack rejects replays older than five minutes; so do we
SLACK_SIGNATURE_MAX_AGE_SECONDS = 60 * 5


def verify_slack_signature(
    body: bytes,
    timestamp: Optional[str],
    signature: Optional[str],
    secret: str,
    now: Optional[float] = None,
) -> bool:
    """
    Verify a Slack request signature.

    Slack signs ``v0:{timestamp}:{raw body}`` with HMAC-SHA256 using the app's
    signing secret and sends ``v0=<hex digest>`` in X-Slack-Signature.

    Args:
        body: Raw request body bytes
        timestamp: X-Slack-Request-Timestamp header
        signature: X-Slack-Signature header
        secret: SLACK_SIGNING_SECRET
        now: Current unix time, for tests

    Returns:
        True if signature is valid and fresh, False otherwise
    """
    if not timestamp or not signature or not secret:
        logger.info("Slack signature verification: missing header or secret")
        return False

    try:
        request_time = int(timestamp)
    except ValueError:
        logger.info("Slack signature verification: malformed timestamp")
        return False

    current = time.time() if now is None else now
    if abs(current - request_time) > SLACK_SIGNATURE_MAX_AGE_SECONDS:
        logger.info("Slack signature verification: stale timestamp")
        return False

    base = b"v0:" + timestamp.encode("utf-8") + b":" + body
    expected_signature = "v0=" + hmac.new(
        secret.encode("utf-8"),
        base,
        hashlib.sha256
    ).hexdigest()

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected_signature.encode("utf-8"), signature.encode("utf-8"))
    logger.info(f"Slack signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid


def is_valid_api_key(api_key: Optional[str], valid_keys: Iterable[str]) -> bool:
    """Constant-time membership check of a bearer token against the configured keys."""
    if not api_key:
        return False
    matched = False
    for key in valid_keys:
        if hmac.compare_digest(api_key.encode("utf-8"), key.encode("utf-8")):
            matched = True
    return matched
