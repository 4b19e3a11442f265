"""
Provider webhook endpoint.

  POST /{provider}   — DocuSign Connect, SignNow and PandaDoc event callbacks

The raw body is read before parsing because signatures are computed over
the exact bytes the provider sent.

Responses:
  200  {received, events, actionable, queued}   acknowledged
  400  body is not JSON or lacks the event type / document id
  401  signature missing (reject policy) or mismatched
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from signvault.dependencies import VaultServices, get_services
from signvault.errors import AuthenticationFailure, InvalidRequest
from signvault.models.webhook import WebhookAck
from signvault.services.providers import parse_provider

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/{provider}", response_model=WebhookAck)
async def receive_webhook(
    provider: str,
    request: Request,
    services: VaultServices = Depends(get_services),
) -> WebhookAck:
    body = await request.body()
    try:
        resolved = parse_provider(provider)
        return services.webhooks.receive(resolved, body, request.headers, request.query_params)
    except AuthenticationFailure as e:
        raise HTTPException(status_code=401, detail=e.message)
    except InvalidRequest as e:
        logger.warning(f"Rejected {provider} webhook: {e}")
        raise HTTPException(status_code=400, detail=e.message)
