from functools import lru_cache
from typing import List

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from smsrelay.exceptions import InvalidPhoneFormat
from smsrelay.phone import normalize_phone


DEFAULT_SUBSCRIBE_MESSAGE = (
    "You have subscribed to event notifications from /counter. Notifications will "
    "end automatically once the event is over, or reply STOP to unsubscribe.\n\n"
    "Visit https://madebycounter.com/live to check out past, current, and future streams."
)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database
    DATABASE_URL: str = "sqlite:///./relay.db"

    # Logging
    LOG_LEVEL: str = "INFO"

    # Comma-separated bearer tokens accepted by the admin endpoints
    API_KEYS: str = ""

    # Twilio
    TWILIO_ACCOUNT_SID: str
    TWILIO_AUTH_TOKEN: str
    TWILIO_SEND_NUMBER: str

    # Subscription keywords
    SUBSCRIBE_KEYWORD: str
    UNSUBSCRIBE_KEYWORD: str
    SUBSCRIBE_MESSAGE: str = DEFAULT_SUBSCRIBE_MESSAGE

    # Recipient of non-production broadcasts
    TEST_PHONE_NUMBER: str = "+14087977416"

    # Slack
    SLACK_BOT_TOKEN: str
    SLACK_SIGNING_SECRET: str
    SLACK_CHANNEL_ID: str
    SLACK_BOT_USER_ID: str = ""
    SLACK_ALLOWED_USER_IDS: str = ""

    @field_validator("TWILIO_SEND_NUMBER", "TEST_PHONE_NUMBER")
    @classmethod
    def canonical_phone(cls, v: str) -> str:
        """Store phone numbers in canonical form so they compare with subscriber keys."""
        try:
            return normalize_phone(v)
        except InvalidPhoneFormat as e:
            raise ValueError(e.message)

    @field_validator("SUBSCRIBE_KEYWORD", "UNSUBSCRIBE_KEYWORD")
    @classmethod
    def keyword_not_blank(cls, v: str, info) -> str:
        if not v.strip():
            raise ValueError(f"{info.field_name} must not be blank")
        return v.strip()

    @model_validator(mode="after")
    def keywords_differ(self) -> "Settings":
        if self.SUBSCRIBE_KEYWORD.lower() == self.UNSUBSCRIBE_KEYWORD.lower():
            raise ValueError("SUBSCRIBE_KEYWORD and UNSUBSCRIBE_KEYWORD must differ")
        return self

    @property
    def api_keys(self) -> List[str]:
        return _split_csv(self.API_KEYS)

    @property
    def slack_allowed_user_ids(self) -> List[str]:
        return _split_csv(self.SLACK_ALLOWED_USER_IDS)


def _split_csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()
