"""
Integrity verification against registered content hashes.

Only exact SHA-256 matches count. A mismatch is an answer ("this is not
the document we vaulted"), not an error.
"""

import asyncio
import logging
import re
from typing import Optional

from signvault.errors import DocumentNotFound, InvalidRequest, StorageError
from signvault.models.document import (
    DocumentStatus,
    FileVerification,
    HashVerification,
    StoredCopyVerification,
)
from signvault.repository import VaultRepository
from signvault.services.storage import ContentAddressStore, sha256_hex

logger = logging.getLogger(__name__)

_SHA256_HEX = re.compile(r"^[0-9a-f]{64}$")


def normalize_hash(value: Optional[str]) -> str:
    """Lower-case and validate a SHA-256 hex digest; raises InvalidRequest."""
    candidate = (value or "").strip().lower()
    if not _SHA256_HEX.match(candidate):
        raise InvalidRequest("hash must be a 64-character hex SHA-256 digest")
    return candidate


class VerificationService:
    def __init__(self, repo: VaultRepository, store: ContentAddressStore):
        self._repo = repo
        self._store = store

    def verify_by_hash(self, content_hash: str) -> HashVerification:
        row = self._repo.find_registered_by_hash(normalize_hash(content_hash))
        if row is None:
            return HashVerification(valid=False)
        return HashVerification(
            valid=True,
            registered_at=row.get("registered_at"),
            anchor_ref=row.get("anchor_ref"),
            document_id=row["id"],
        )

    def verify_by_file(self, data: bytes, document_id: Optional[str] = None) -> FileVerification:
        """
        Hash an uploaded file and compare it with the vault.

        With ``document_id`` the file is compared against that document only;
        without it, any registered document with the same hash is a match.
        """
        if not data:
            raise InvalidRequest("Uploaded file is empty")
        computed = sha256_hex(data)

        if document_id is None:
            row = self._repo.find_registered_by_hash(computed)
            if row is None:
                return FileVerification(valid=False, computed_hash=computed, reason="hash_not_found")
            return FileVerification(
                valid=True,
                computed_hash=computed,
                stored_hash=row["content_hash"],
                document_id=row["id"],
            )

        row = self._repo.get_document(document_id)
        if row is None:
            return FileVerification(
                valid=False,
                computed_hash=computed,
                document_id=document_id,
                reason="document_not_found",
            )
        stored = row.get("content_hash")
        if row["status"] != DocumentStatus.REGISTERED.value or not stored:
            return FileVerification(
                valid=False,
                computed_hash=computed,
                document_id=document_id,
                reason="document_not_registered",
            )

        valid = stored == computed
        if not valid:
            logger.info(f"File does not match document {document_id}")
        return FileVerification(
            valid=valid,
            computed_hash=computed,
            stored_hash=stored,
            document_id=document_id,
            reason=None if valid else "hash_mismatch",
        )

    async def verify_stored_copy(self, document_id: str) -> StoredCopyVerification:
        """Re-download the vaulted object and check it still hashes to content_hash."""
        row = self._repo.get_document(document_id)
        if row is None:
            raise DocumentNotFound(f"Document {document_id} not found")

        stored = row.get("content_hash")
        if row["status"] != DocumentStatus.REGISTERED.value or not stored:
            return StoredCopyVerification(
                document_id=document_id,
                valid=False,
                stored_hash=stored,
                reason="document_not_registered",
            )

        try:
            data = await asyncio.to_thread(self._store.get, row["storage_path"])
        except StorageError as e:
            logger.error(f"Stored copy of {document_id} unreadable: {e}")
            return StoredCopyVerification(
                document_id=document_id,
                valid=False,
                stored_hash=stored,
                reason=f"storage_error: {e}",
            )

        computed = sha256_hex(data)
        valid = computed == stored
        if not valid:
            logger.error(f"Stored copy of {document_id} no longer matches its registered hash")
        return StoredCopyVerification(
            document_id=document_id,
            valid=valid,
            stored_hash=stored,
            computed_hash=computed,
            reason=None if valid else "hash_mismatch",
        )
