"""
Public integrity verification.

  GET  /verify-hash?hash=<hex>     — is this hash a registered document?
  POST /verify                     — hash an uploaded file and compare
"""

from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from fastapi.responses import JSONResponse

from signvault.dependencies import VaultServices, get_services, http_error
from signvault.errors import VaultError
from signvault.models.document import FileVerification

router = APIRouter()


@router.get("/verify-hash")
async def verify_hash(
    hash: str = Query(...),
    services: VaultServices = Depends(get_services),
):
    """
    200 {valid: true, txid, created_at, document_id} for a registered hash,
    404 {valid: false, reason} otherwise.

    ``txid`` is the external anchoring reference, null until something
    anchors the document; ``created_at`` is the registration time.
    """
    try:
        result = services.verification.verify_by_hash(hash)
    except VaultError as e:
        raise http_error(e)

    if not result.valid:
        return JSONResponse(status_code=404, content={"valid": False, "reason": "hash_not_found"})
    return {
        "valid": True,
        "txid": result.anchor_ref,
        "created_at": result.registered_at,
        "document_id": result.document_id,
    }


@router.post(
    "/verify",
    response_model=FileVerification,
    response_model_exclude_none=True,
)
async def verify_file(
    file: UploadFile = File(...),
    documentId: Optional[str] = Form(None),
    services: VaultServices = Depends(get_services),
) -> FileVerification:
    data = await file.read()
    try:
        return services.verification.verify_by_file(data, document_id=documentId or None)
    except VaultError as e:
        raise http_error(e)
