"""
Provider-agnostic webhook event model.

Adapters map each provider's payload shape onto WebhookEvent; the receiver
and the ingestion pipeline only ever see this model.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from signvault.models.connection import Provider


class SignaturePolicy(str, Enum):
    """
    What to do when a webhook secret is configured but the request is not
    properly signed.

      reject            missing or mismatched signature -> 401
      warn_if_missing   missing signature -> warning log, processed;
                        mismatched signature -> 401
    """
    REJECT = "reject"
    WARN_IF_MISSING = "warn_if_missing"


class WebhookEvent(BaseModel):
    provider: Provider
    event_type: str
    external_document_id: str
    # Provider account the document belongs to, when the payload says so
    external_account_id: Optional[str] = None
    raw_payload: Any = None
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class IngestionJob(BaseModel):
    """Unit of work placed on the ingestion queue after acknowledgement."""
    provider: Provider
    external_document_id: str
    external_account_id: Optional[str] = None
    # Set on operator retries, where the connection is already known
    connection_id: Optional[str] = None
    event_type: Optional[str] = None


class WebhookAck(BaseModel):
    """Body of the 200 response sent back to the provider."""
    received: bool = True
    events: int = 0
    actionable: int = 0
    queued: int = 0
