"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation
- Response models for API responses
"""

from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


# =============================================================================
# Pydantic Request Models
# =============================================================================

class SubscribeRequest(BaseModel):
    """
    Opt-in request for a phone number.

    The phone is normalized by the endpoint so that formatting like
    "(408) 797-7416" is accepted; malformed numbers are answered with 400.
    """
    phone: Optional[str] = Field(None, description="Phone number in any common US format")

    @field_validator("phone", mode="before")
    @classmethod
    def phone_as_text(cls, v: Any) -> Any:
        """Clients often send the number as a JSON integer."""
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    model_config = {
        "json_schema_extra": {
            "examples": [{"phone": "4087977416"}]
        }
    }


class SendRequest(BaseModel):
    """Broadcast request. An empty message is answered with 400."""
    message: Optional[str] = Field(None, description="SMS body to broadcast")


# =============================================================================
# Pydantic Response Models
# =============================================================================

class SubscriberResponse(BaseModel):
    """Full subscriber record."""
    id: int
    phone_number: str = Field(..., description="Canonical phone key")
    active: bool
    created_at: str
    updated_at: str

    model_config = {"from_attributes": True}


class SubscriberSummary(BaseModel):
    """Sender/receiver summary embedded in ledger entries."""
    id: int
    phone_number: str
    active: bool

    model_config = {"from_attributes": True}


class MessageResponse(BaseModel):
    """A ledger entry with its sender and receiver."""
    id: int
    content: str
    created_at: str
    sender_id: int
    receiver_id: int
    sender: SubscriberSummary
    receiver: SubscriberSummary

    model_config = {"from_attributes": True}


class SubscribeResponse(BaseModel):
    status: str = "ok"
    subscriber: SubscriberResponse


class UsersResponse(BaseModel):
    status: str = "ok"
    users: list[SubscriberResponse] = Field(default_factory=list)


class SendResponse(BaseModel):
    """Outcome of POST /send."""
    status: str = "ok"
    message: str = Field(..., description="Human readable summary")
    count: int = Field(..., ge=0, description="Number of recipients sent to")
    production: bool


class MessagesResponse(BaseModel):
    status: str = "ok"
    messages: list[MessageResponse] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    status: str = "error"
    message: str = Field(..., description="Error description")
    code: str = Field(..., description="Machine readable error code")
    details: Optional[Any] = None


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
