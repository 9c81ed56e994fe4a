"""Two-way SMS broadcast relay between Slack, Twilio and a subscriber store."""

__version__ = "1.0.0"
