"""
Pydantic models for vaulted documents and integrity verification.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from signvault.models.connection import Provider


class DocumentStatus(str, Enum):
    PENDING = "pending"
    DOWNLOADING = "downloading"
    UPLOADED = "uploaded"
    REGISTERED = "registered"
    FAILED = "failed"


class AuditAction(str, Enum):
    VAULTED = "document_vaulted"
    FAILED = "document_failed"


class VaultedDocument(BaseModel):
    """
    Full vaulted_documents record from the database.

    (provider, external_document_id) is unique. Once status is 'registered'
    the row is never updated again.
    """
    model_config = {"extra": "ignore"}

    id: str
    provider: Provider
    external_document_id: str
    connection_id: Optional[str] = None
    storage_path: str
    content_hash: Optional[str] = None
    status: DocumentStatus
    attempts: int = 0
    failure_reason: Optional[str] = None
    # Opaque reference written by an external anchoring process, if any
    anchor_ref: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    registered_at: Optional[datetime] = None


class VaultedDocumentResponse(VaultedDocument):
    """API response for a single document; adds a short-lived download URL."""
    download_url: Optional[str] = None


class HashVerification(BaseModel):
    valid: bool
    registered_at: Optional[datetime] = None
    anchor_ref: Optional[str] = None
    document_id: Optional[str] = None


class FileVerification(BaseModel):
    """
    Result of hashing a user-supplied file.

    Serialized with camelCase aliases (computedHash / storedHash) to match
    the public /verify contract.
    """
    model_config = {"populate_by_name": True}

    valid: bool
    computed_hash: str = Field(serialization_alias="computedHash")
    stored_hash: Optional[str] = Field(default=None, serialization_alias="storedHash")
    document_id: Optional[str] = Field(default=None, serialization_alias="documentId")
    reason: Optional[str] = None


class StoredCopyVerification(BaseModel):
    """Result of re-downloading a vaulted object and re-hashing it."""
    document_id: str
    valid: bool
    stored_hash: Optional[str] = None
    computed_hash: Optional[str] = None
    reason: Optional[str] = None


class AuditEvent(BaseModel):
    """One audit_log row. ``details`` is free-form JSON per action."""
    model_config = {"extra": "ignore"}

    id: str
    action: AuditAction
    document_id: Optional[str] = None
    details: dict = Field(default_factory=dict)
    created_at: datetime
