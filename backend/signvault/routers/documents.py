"""
Operator API for vaulted documents (auth: X-Api-Key).

Endpoints:
  GET  /                       — list documents, newest first; filter by
                                 status (e.g. ?status=failed) and provider
  POST /                       — vault an uploaded PDF directly (multipart
                                 "file"); 201, or 200 for content already vaulted
  GET  /{document_id}          — metadata + signed download URL when registered
  POST /{document_id}/retry    — re-queue ingestion of an unregistered document
  POST /{document_id}/verify-stored
                               — re-download the stored object and re-hash it
  GET  /{document_id}/audit    — lifecycle events recorded for the document
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Query, Response, UploadFile

from signvault.dependencies import VaultServices, get_services, http_error, require_api_key
from signvault.errors import DocumentNotFound, StorageError, VaultError
from signvault.models.connection import Provider
from signvault.models.document import (
    AuditEvent,
    DocumentStatus,
    StoredCopyVerification,
    VaultedDocument,
    VaultedDocumentResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_api_key)])

# Signed URLs handed to operators expire after 15 minutes
_DOWNLOAD_URL_TTL_SECONDS = 900


@router.get("/", response_model=List[VaultedDocument])
async def list_documents(
    status: Optional[DocumentStatus] = None,
    provider: Optional[Provider] = None,
    limit: int = Query(100, ge=1, le=1000),
    services: VaultServices = Depends(get_services),
) -> List[VaultedDocument]:
    try:
        rows = services.repo.list_documents(
            status=status.value if status else None,
            provider=provider.value if provider else None,
            limit=limit,
        )
    except VaultError as e:
        raise http_error(e)
    return [VaultedDocument(**row) for row in rows]


@router.get("/{document_id}", response_model=VaultedDocumentResponse)
async def get_document(
    document_id: str,
    services: VaultServices = Depends(get_services),
) -> VaultedDocumentResponse:
    try:
        row = services.repo.get_document(document_id)
    except VaultError as e:
        raise http_error(e)
    if row is None:
        raise http_error(DocumentNotFound(f"Document {document_id} not found"))

    document = VaultedDocumentResponse(**row)
    if document.status == DocumentStatus.REGISTERED:
        try:
            document.download_url = services.store.signed_url(
                document.storage_path, _DOWNLOAD_URL_TTL_SECONDS
            )
        except StorageError as e:
            # Metadata is still useful without the link
            logger.error(f"Could not sign download URL for {document_id}: {e}")
    return document


@router.post("/{document_id}/retry", status_code=202)
async def retry_document(
    document_id: str,
    services: VaultServices = Depends(get_services),
) -> dict:
    """
    Queue another ingestion attempt.

    The worker still goes through the normal claim, so a document that is
    actively being ingested elsewhere is skipped rather than duplicated.
    """
    try:
        job = services.pipeline.retry_job(document_id)
    except VaultError as e:
        raise http_error(e)

    queued = services.queue.enqueue(job)
    logger.info(f"Operator retry of document {document_id}: queued={queued}")
    return {"document_id": document_id, "queued": queued}


@router.post("/{document_id}/verify-stored", response_model=StoredCopyVerification)
async def verify_stored_document(
    document_id: str,
    services: VaultServices = Depends(get_services),
) -> StoredCopyVerification:
    try:
        return await services.verification.verify_stored_copy(document_id)
    except VaultError as e:
        raise http_error(e)


@router.post("/", response_model=VaultedDocument, status_code=201)
async def upload_document(
    response: Response,
    file: UploadFile = File(...),
    services: VaultServices = Depends(get_services),
) -> VaultedDocument:
    """
    Vault a PDF that did not come through a provider webhook.

    The object lands at manual/{sha256}.pdf and goes through the same
    claim, upload and registration steps as webhook ingestion.
    """
    data = await file.read()
    try:
        document, created = await services.pipeline.vault_upload(data, file_name=file.filename)
    except VaultError as e:
        raise http_error(e)

    if not created:
        response.status_code = 200
    logger.info(f"Operator upload {file.filename!r} -> document {document.id} (created={created})")
    return document


@router.get("/{document_id}/audit", response_model=List[AuditEvent])
async def document_audit(
    document_id: str,
    services: VaultServices = Depends(get_services),
) -> List[AuditEvent]:
    try:
        if services.repo.get_document(document_id) is None:
            raise DocumentNotFound(f"Document {document_id} not found")
        rows = services.repo.list_audit_events(document_id)
    except VaultError as e:
        raise http_error(e)
    return [AuditEvent(**row) for row in rows]
